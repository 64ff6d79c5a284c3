import logging
from collections import OrderedDict
from typing import Iterator

from PIL import Image

logger = logging.getLogger(__name__)


class PageHandle:
    """
    Owned page image: the raw bytes as served plus the decoded Pillow image.

    A handle is exclusively owned by whoever holds it last (normally the
    PageCache). `release()` closes the decoded image and drops the bytes;
    it is idempotent.
    """

    def __init__(self, page: int, data: bytes, image: Image.Image, media_type: str | None = None):
        self.page = page
        self.media_type = media_type
        self._data: bytes | None = data
        self._image: Image.Image | None = image

    @property
    def released(self) -> bool:
        return self._image is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise RuntimeError(f"Page {self.page} handle has been released")
        return self._data

    @property
    def image(self) -> Image.Image:
        if self._image is None:
            raise RuntimeError(f"Page {self.page} handle has been released")
        return self._image

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    def release(self) -> None:
        if self._image is None:
            return
        self._image.close()
        self._image = None
        self._data = None

    def __repr__(self) -> str:
        state = "released" if self.released else f"{len(self._data or b'')} bytes"
        return f"<PageHandle page={self.page} {state}>"


class PageCache:
    """Page number -> PageHandle for one open document."""

    def __init__(self, document_id: str, max_pages: int | None = None):
        self.document_id = document_id
        self.max_pages = max_pages
        self._pages: OrderedDict[int, PageHandle] = OrderedDict()
        self._pinned: set[int] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._pages)

    def __contains__(self, page: int) -> bool:
        return page in self._pages

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._pages))

    def has(self, page: int) -> bool:
        return page in self._pages

    def get(self, page: int) -> PageHandle | None:
        handle = self._pages.get(page)
        if handle is not None:
            self._pages.move_to_end(page)
        return handle

    def put(self, page: int, handle: PageHandle) -> bool:
        """
        Store `handle` for `page`, releasing any handle it replaces.

        Returns False (and releases `handle`) once the cache is closed, so a
        late fetch can never repopulate a torn-down session.
        """
        if self._closed:
            handle.release()
            return False
        old = self._pages.pop(page, None)
        if old is not None and old is not handle:
            old.release()
        self._pages[page] = handle
        logger.debug("Cached page %s of %s (%s entries)", page, self.document_id, len(self._pages))
        if self.max_pages is not None:
            self._trim(keep=page)
        return True

    def pin(self, pages) -> None:
        """Pages on screen, or about to be, are never evicted by the size cap."""
        self._pinned = set(pages)

    def _trim(self, keep: int) -> None:
        candidates = [p for p in self._pages if p not in self._pinned and p != keep]
        while len(self._pages) > self.max_pages and candidates:
            evicted = candidates.pop(0)
            self._pages.pop(evicted).release()
            logger.debug("Evicted page %s of %s", evicted, self.document_id)

    def evict(self, page: int) -> bool:
        handle = self._pages.pop(page, None)
        if handle is None:
            return False
        handle.release()
        return True

    def clear(self) -> None:
        if not self._pages:
            return
        count = len(self._pages)
        for handle in self._pages.values():
            handle.release()
        self._pages.clear()
        logger.debug("Released %s cached pages of %s", count, self.document_id)

    def close(self) -> None:
        self.clear()
        self._closed = True
