import logging

import httpx

from .bindings import Command, InputEvents
from .config import ReaderSettings, load_reader_settings
from .documents import DocumentKind
from .fetcher import PageFetcher
from .paging import PairingMode
from .viewport import DisplaySurface, ViewportController

logger = logging.getLogger(__name__)


class Reader:
    """
    The surface the file browser talks to. Holds at most one open document;
    opening another closes the current viewer and releases its pages first.
    """

    def __init__(
        self,
        settings: ReaderSettings | None = None,
        *,
        fetcher: PageFetcher | None = None,
        display: DisplaySurface | None = None,
        events: InputEvents | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or load_reader_settings()
        self.fetcher = fetcher or PageFetcher(
            self.settings.server_url,
            timeout=self.settings.request_timeout,
            pdf_dpi=self.settings.pdf_dpi,
            server_error_means_end=self.settings.server_error_means_end,
            transport=transport,
        )
        self.display = display if display is not None else DisplaySurface()
        self.events = events if events is not None else InputEvents()
        self.viewer: ViewportController | None = None
        self.kind: DocumentKind | None = None

    async def __aenter__(self) -> "Reader":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self, document_id: str, pairing: PairingMode | None = None) -> ViewportController:
        await self.close_document()
        self.kind = DocumentKind.from_path(document_id)
        self.viewer = ViewportController(
            self.fetcher,
            self.display,
            self.events,
            pairing=pairing or self.settings.pairing_for(self.kind),
            prefetch_radius=self.settings.prefetch_radius,
            prefetch_delay=self.settings.prefetch_delay,
            max_cached_pages=self.settings.max_cached_pages,
        )
        logger.info("Opening %s as %s", document_id, self.kind.value)
        await self.viewer.open(document_id)
        return self.viewer

    async def navigate(self, command: Command) -> bool:
        if self.viewer is None:
            return False
        return await self.viewer.navigate(command)

    async def set_pairing_mode(self, mode: PairingMode) -> None:
        if self.viewer is not None:
            await self.viewer.set_pairing_mode(mode)

    async def close_document(self) -> None:
        if self.viewer is not None:
            await self.viewer.close()
            self.viewer = None
            self.kind = None

    async def close(self) -> None:
        await self.close_document()
        await self.fetcher.aclose()
