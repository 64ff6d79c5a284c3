import asyncio
import io
import zipfile

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from pagestream import main as server
from pagestream.cache import PageHandle
from pagestream.fetcher import DocumentInfo, PageFetchError, PageNotFound, decode_page
from pagestream.viewport import DisplaySurface


def png_bytes(color=(200, 30, 30), size=(8, 12)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def make_handle(page: int):
    return decode_page(page, png_bytes((page * 20 % 256, 40, 90)), "image/png")


class SpyImage:
    """Stands in for a decoded image and counts how often it is closed."""

    size = (8, 12)

    def __init__(self):
        self.closes = 0

    def close(self):
        self.closes += 1


def spy_handle(page: int):
    image = SpyImage()
    return PageHandle(page, b"page", image, "image/png"), image


class RecordingDisplay(DisplaySurface):
    """Keeps every spread and status the viewer produced, in order."""

    def __init__(self):
        super().__init__()
        self.shown = []
        self.statuses = []

    def show(self, pages):
        super().show(pages)
        self.shown.append([(page, handle is not None and handle.released) for page, handle in self.pages])

    def set_status(self, text):
        super().set_status(text)
        self.statuses.append(text)

    @property
    def spreads(self):
        return [tuple(page for page, _released in shown) for shown in self.shown]


def make_cbz(path, pages: int):
    with zipfile.ZipFile(path, "w") as zf:
        for i in range(1, pages + 1):
            zf.writestr(f"page{i:03d}.png", png_bytes((i * 30 % 256, 10, 10)))
    return path


def make_pdf(path, pages: int):
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=200, height=300)
        page.insert_text((20, 40), f"Page {i + 1}")
    doc.save(str(path))
    doc.close()
    return path


async def settle(rounds: int = 10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeFetcher:
    """
    Stands in for PageFetcher. Serves pages 1..total (any page when total is
    None), with per-page failures and gates that hold a fetch until set.
    """

    def __init__(self, total=None, *, report_total=True, fmt="CBZ", honour_cancel=True):
        self.total = total
        self.report_total = report_total
        self.fmt = fmt
        self.honour_cancel = honour_cancel
        self.failures = {}
        self.gates = {}
        self.calls = []
        self.handles = []

    async def fetch_info(self, document_id, token):
        token.raise_if_cancelled()
        if not self.report_total or self.total is None:
            raise PageFetchError("Not a supported archive", status_code=400)
        return DocumentInfo(self.total, self.fmt)

    async def fetch(self, document_id, page, token):
        self.calls.append(page)
        token.raise_if_cancelled(page)
        gate = self.gates.get(page)
        if gate is not None:
            await gate.wait()
        if self.honour_cancel:
            token.raise_if_cancelled(page)
        if page in self.failures:
            raise self.failures[page]
        if self.total is not None and page > self.total:
            raise PageNotFound("Page not found", page, 404)
        handle = make_handle(page)
        self.handles.append(handle)
        return handle

    async def aclose(self):
        pass


@pytest.fixture(autouse=True)
def comics_dir(tmp_path, monkeypatch):
    """Point the page server at a temporary library."""
    root = tmp_path / "comics"
    root.mkdir()
    monkeypatch.setenv("COMICS_DIR", str(root))
    monkeypatch.delenv("PAGESTREAM_SERVER_URL", raising=False)
    monkeypatch.setattr(server, "PDF_CACHE_DIR", tmp_path / "pdf_cache")
    return root


@pytest.fixture()
def client():
    return TestClient(server.app)
