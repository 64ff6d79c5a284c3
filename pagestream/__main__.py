import argparse
import logging
import os

import uvicorn

from .config import COMICS_ENV_VAR


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="pagestream", description="Serve comic and PDF pages by number.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--comics-dir", help=f"library root (default: ${COMICS_ENV_VAR} or ./comics)")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="[%(asctime)s] %(levelname)-8s %(name)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.comics_dir:
        os.environ[COMICS_ENV_VAR] = args.comics_dir
    uvicorn.run("pagestream.main:app", host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
