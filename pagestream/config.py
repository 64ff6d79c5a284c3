import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from .documents import DocumentKind
from .paging import PairingMode

CONFIG_DIR = Path("config").resolve()
READER_JSON = CONFIG_DIR / "reader.json"
DATA_DIR = Path("data")
PDF_CACHE_DIR = DATA_DIR / "pdf_cache"

SERVER_URL_ENV_VAR = "PAGESTREAM_SERVER_URL"
COMICS_ENV_VAR = "COMICS_DIR"
DEFAULT_COMICS_DIR = "comics"

# a full two-page spread must fit in the cache
MIN_CACHED_PAGES = 2


@dataclass
class ReaderSettings:
    server_url: str = "http://127.0.0.1:8000"
    request_timeout: float = 30.0
    prefetch_radius: int = 2
    prefetch_delay: float = 0.1
    max_cached_pages: int | None = None
    pdf_dpi: int = 250
    # Treat HTTP 500 on a page fetch as "past the last page" (old server behaviour)
    server_error_means_end: bool = False
    pairing: dict[str, str] = field(
        default_factory=lambda: {kind.value: kind.default_pairing.value for kind in DocumentKind}
    )

    def pairing_for(self, kind: DocumentKind) -> PairingMode:
        return PairingMode(self.pairing.get(kind.value, kind.default_pairing.value))


def get_comics_dir() -> Path:
    env = os.environ.get(COMICS_ENV_VAR)
    return Path(os.path.expanduser(env or DEFAULT_COMICS_DIR)).resolve()


def load_reader_settings(path: Path | None = None) -> ReaderSettings:
    path = path or READER_JSON
    data: dict = {}
    if path.exists():
        raw = path.read_text(encoding="utf-8").strip()
        if raw:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise RuntimeError(f"{path.name} must be valid JSON") from exc
            if not isinstance(data, dict):
                raise RuntimeError(f"{path.name} must be a JSON object of reader settings")

    known = {f.name for f in fields(ReaderSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise RuntimeError(f"Unknown reader settings in {path.name}: {', '.join(unknown)}")

    if "pairing" in data and not isinstance(data["pairing"], dict):
        raise RuntimeError(f"pairing in {path.name} must be an object of document kind to pairing mode")
    settings = ReaderSettings(**data)
    if "pairing" in data:
        merged = ReaderSettings().pairing
        merged.update(data["pairing"])
        settings.pairing = merged
    try:
        for kind in DocumentKind:
            settings.pairing_for(kind)
    except ValueError as exc:
        raise RuntimeError(f"Invalid pairing mode in {path.name}: {exc}") from exc
    if settings.prefetch_radius < 0:
        raise RuntimeError("prefetch_radius must be zero or positive")
    if settings.max_cached_pages is not None and settings.max_cached_pages < MIN_CACHED_PAGES:
        raise RuntimeError(f"max_cached_pages must be at least {MIN_CACHED_PAGES}")

    env = os.environ.get(SERVER_URL_ENV_VAR)
    if env:
        settings.server_url = env
    return settings


def save_reader_settings(settings: ReaderSettings, path: Path | None = None) -> None:
    path = path or READER_JSON
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {f.name: getattr(settings, f.name) for f in fields(ReaderSettings)}
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
