import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from PIL import Image, UnidentifiedImageError

from .cache import PageHandle
from .documents import DocumentKind

logger = logging.getLogger(__name__)

INFO_PATH = "/api/comic-info"


class PageError(Exception):
    """Base class for everything a page load can end with besides a page."""

    def __init__(self, message: str, page: int | None = None):
        super().__init__(message)
        self.message = message
        self.page = page


class PageFetchCancelled(PageError):
    """The request was abandoned because its token was cancelled. Not a user-facing error."""

    def __init__(self, page: int | None = None, reason: str | None = None):
        super().__init__(reason or "cancelled", page)
        self.reason = reason


class PageFetchError(PageError):
    def __init__(self, message: str, page: int | None = None, status_code: int | None = None):
        super().__init__(message, page)
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"HTTP {self.status_code}: {self.message}"
        return self.message


class PageNotFound(PageFetchError):
    """The server has no such page; used to detect the end of a document of unknown length."""


class EmptyPayload(PageFetchError):
    pass


class PageDecodeError(PageFetchError):
    pass


class CancellationToken:
    """
    Cooperative cancellation flag shared by the tasks of one session or one
    navigation. Cancelling a token cancels every child created from it.
    """

    def __init__(self, parent: "CancellationToken | None" = None):
        self._event = asyncio.Event()
        self._children: set[CancellationToken] = set()
        self._parent = parent
        self.reason: str | None = None
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason)
            else:
                parent._children.add(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)
        self._children.clear()
        if self._parent is not None:
            self._parent._children.discard(self)

    def raise_if_cancelled(self, page: int | None = None) -> None:
        if self._event.is_set():
            raise PageFetchCancelled(page, self.reason)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class DocumentInfo:
    total_pages: int
    format: str


def decode_page(page: int, data: bytes, media_type: str | None = None) -> PageHandle:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise PageDecodeError(f"Could not decode page {page}: {exc}", page) from exc
    return PageHandle(page, data, image, media_type)


class PageFetcher:
    """Issues one cancellable HTTP request per page against the page server."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        *,
        timeout: float = 30.0,
        pdf_dpi: int = 250,
        server_error_means_end: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.pdf_dpi = pdf_dpi
        self.server_error_means_end = server_error_means_end
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PageFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _get(self, url: str, params: dict[str, Any], token: CancellationToken, page: int | None) -> httpx.Response:
        token.raise_if_cancelled(page)
        request = asyncio.ensure_future(self._client.get(url, params=params))
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not request.done():
                request.cancel()
                try:
                    await request
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass
        if request.cancelled():
            raise PageFetchCancelled(page, token.reason)
        try:
            return request.result()
        except httpx.HTTPError as exc:
            raise PageFetchError(f"Request failed: {exc}", page) from exc

    def _raise_for_status(self, response: httpx.Response, page: int | None) -> None:
        if response.is_success:
            return
        status = response.status_code
        message = response.text.strip() or response.reason_phrase
        if status in (404, 416):
            raise PageNotFound(message, page, status)
        if status == 500 and self.server_error_means_end and page is not None:
            raise PageNotFound(message, page, status)
        raise PageFetchError(message, page, status)

    async def fetch_info(self, document_id: str, token: CancellationToken) -> DocumentInfo:
        response = await self._get(INFO_PATH, {"path": document_id}, token, None)
        self._raise_for_status(response, None)
        try:
            info = response.json()
            return DocumentInfo(int(info["pages"]), str(info.get("format", "")))
        except (ValueError, KeyError, TypeError) as exc:
            raise PageFetchError(f"Malformed document info: {exc}") from exc

    async def fetch(self, document_id: str, page: int, token: CancellationToken) -> PageHandle:
        """
        Fetch and decode one page. Raises PageFetchCancelled if `token` is
        cancelled before or during the request, or while decoding; the decoded
        image is released in that case.
        """
        kind = DocumentKind.from_path(document_id)
        params: dict[str, Any] = {"path": document_id, "page": page}
        if kind.renders_at_dpi:
            params["dpi"] = self.pdf_dpi
        response = await self._get(kind.page_path, params, token, page)
        self._raise_for_status(response, page)
        data = response.content
        if not data:
            raise EmptyPayload(f"Empty response for page {page}", page, response.status_code)
        token.raise_if_cancelled(page)
        handle = await asyncio.to_thread(decode_page, page, data, response.headers.get("content-type"))
        if token.cancelled:
            handle.release()
            raise PageFetchCancelled(page, token.reason)
        logger.debug("Fetched page %s of %s (%s bytes)", page, document_id, len(data))
        return handle
