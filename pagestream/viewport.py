import asyncio
import logging
from enum import Enum
from typing import Iterable

from .bindings import Command, InputEvent, InputEvents, JumpTo, NavCommand, command_for
from .cache import PageCache, PageHandle
from .fetcher import (
    CancellationToken,
    PageDecodeError,
    PageFetchCancelled,
    PageFetchError,
    PageFetcher,
    PageNotFound,
)
from .paging import PagingPolicy, PairingMode
from .prefetch import DEFAULT_RADIUS, PrefetchScheduler

logger = logging.getLogger(__name__)

ShownPage = tuple[int, PageHandle | None]


class ViewerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    NAVIGATING = "navigating"
    CLOSED = "closed"


class DisplaySurface:
    """
    Where the viewer puts its output. This implementation just keeps the
    latest state so a host (or a test) can read it back; a UI would draw.
    A slot holding None is a page that failed to decode.
    """

    def __init__(self):
        self.pages: list[ShownPage] = []
        self.status = ""
        self.page_info = ""

    @property
    def page_numbers(self) -> tuple[int, ...]:
        return tuple(page for page, _handle in self.pages)

    def show(self, pages: Iterable[ShownPage]) -> None:
        self.pages = list(pages)

    def set_status(self, text: str) -> None:
        self.status = text

    def set_page_info(self, text: str) -> None:
        self.page_info = text

    def clear(self) -> None:
        self.pages = []
        self.status = ""
        self.page_info = ""


class ViewportController:
    """
    Pages through one document: resolves navigation commands with the paging
    policy, loads the pages through the scheduler and puts them on the display.

    Navigation is last-write-wins. Every navigation takes a sequence number and
    a child token of the session token; starting a new navigation cancels the
    previous token, and results of any navigation that is no longer the latest
    are dropped.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        display: DisplaySurface | None = None,
        events: InputEvents | None = None,
        *,
        pairing: PairingMode = PairingMode.DOUBLE_CONTIGUOUS,
        prefetch_radius: int = DEFAULT_RADIUS,
        prefetch_delay: float = 0.1,
        max_cached_pages: int | None = None,
    ):
        self.fetcher = fetcher
        self.display = display if display is not None else DisplaySurface()
        self.events = events
        self.policy = PagingPolicy(PairingMode(pairing))
        self.prefetch_radius = prefetch_radius
        self.prefetch_delay = prefetch_delay
        self.max_cached_pages = max_cached_pages

        self.state = ViewerState.IDLE
        self.document_id: str | None = None
        self.anchor = 1
        self.cache: PageCache | None = None
        self.prefetcher: PrefetchScheduler | None = None
        self._target: int | None = None
        self._token: CancellationToken | None = None
        self._nav_token: CancellationToken | None = None
        self._nav_seq = 0
        self._unsubscribe = None
        self._input_tasks: set[asyncio.Task] = set()

    @property
    def total_pages(self) -> int | None:
        return self.policy.total_pages

    @property
    def shown_pages(self) -> tuple[int, ...]:
        return self.policy.pages(self.anchor)

    async def __aenter__(self) -> "ViewportController":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self, document_id: str) -> None:
        if self.state is not ViewerState.IDLE:
            raise RuntimeError(f"Viewer is {self.state.value}; open a new one for {document_id!r}")
        self.document_id = document_id
        self._token = CancellationToken()
        self.cache = PageCache(document_id, self.max_cached_pages)
        self.prefetcher = PrefetchScheduler(
            self.fetcher,
            self.cache,
            self._token,
            radius=self.prefetch_radius,
            delay=self.prefetch_delay,
        )
        if self.events is not None:
            self._unsubscribe = self.events.subscribe(self._on_input)
        self.state = ViewerState.LOADING
        self._set_status("Loading document info...")

        try:
            info = await self.fetcher.fetch_info(document_id, self._token)
        except PageFetchCancelled:
            return
        except PageFetchError as exc:
            logger.warning("Page count unavailable for %s, continuing without it: %s", document_id, exc)
        else:
            if info.total_pages > 0:
                self.policy = self.policy.with_total(info.total_pages)
                self._set_status(f"{info.format} - {info.total_pages} pages")

        self.state = ViewerState.READY
        await self._show(1)

    async def navigate(self, command: Command) -> bool:
        """Returns True when the display moved to a new spread."""
        if self.state not in (ViewerState.READY, ViewerState.NAVIGATING):
            return False
        base = self._target if self._target is not None else self.anchor
        target = self._resolve(command, base)
        if target is None or target == base:
            return False
        return await self._show(target)

    async def set_pairing_mode(self, mode: PairingMode) -> None:
        self.policy = self.policy.with_mode(mode)
        if self.state in (ViewerState.READY, ViewerState.NAVIGATING):
            base = self._target if self._target is not None else self.anchor
            await self._show(self.policy.align(base))

    async def wait_idle(self) -> None:
        """Wait for navigations started from input events and for background prefetch."""
        while self._input_tasks:
            await asyncio.gather(*list(self._input_tasks), return_exceptions=True)
        if self.prefetcher is not None:
            await self.prefetcher.join()

    async def close(self) -> None:
        if self.state is ViewerState.CLOSED:
            return
        self.state = ViewerState.CLOSED
        self._nav_seq += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._token is not None:
            self._token.cancel("closed")
        for task in list(self._input_tasks):
            task.cancel()
        if self.prefetcher is not None:
            await self.prefetcher.close()
        if self.cache is not None:
            self.cache.close()
        self.display.clear()
        logger.debug("Closed viewer for %s", self.document_id)

    def _resolve(self, command: Command, base: int) -> int | None:
        if isinstance(command, JumpTo):
            if command.page < 1:
                return None
            return self.policy.align(command.page)
        command = NavCommand(command)
        if command is NavCommand.NEXT:
            return self.policy.next_anchor(base)
        if command is NavCommand.PREVIOUS:
            return self.policy.previous_anchor(base)
        if command is NavCommand.FIRST:
            return 1
        return self.policy.last_anchor(base)

    async def _show(self, target: int) -> bool:
        self._nav_seq += 1
        seq = self._nav_seq
        if self._nav_token is not None:
            self._nav_token.cancel("superseded")
        token = self._nav_token = self._token.child()
        self._target = target
        self.state = ViewerState.NAVIGATING
        wanted = self.policy.pages(target)
        self.cache.pin({*self.display.page_numbers, *wanted})

        loaded: list[ShownPage] = []
        undecodable: PageDecodeError | None = None
        for page in wanted:
            if not self.cache.has(page):
                self._set_status(f"Loading page {page}...")
            try:
                loaded.append((page, await self.prefetcher.request(page, token)))
            except PageFetchCancelled:
                return False
            except PageDecodeError as exc:
                loaded.append((page, None))
                undecodable = exc
            except PageNotFound as exc:
                if seq != self._nav_seq:
                    return False
                if not self._reached_end(page, loaded):
                    return self._fail(seq, exc)
                if not loaded:
                    return self._settle_at_end(seq)
                break
            except PageFetchError as exc:
                return self._fail(seq, exc)

        if seq != self._nav_seq or self._token.cancelled:
            return False
        self.anchor = target
        self._target = None
        self.cache.pin(page for page, _handle in loaded)
        self.display.show(loaded)
        self._set_status(f"Error: could not decode page {undecodable.page}" if undecodable else "")
        self._update_page_info()
        self.state = ViewerState.READY
        self.prefetcher.schedule(target, self.policy)
        return True

    def _reached_end(self, page: int, loaded: list[ShownPage]) -> bool:
        """
        A missing page ends a document of unknown length when the page before
        it is known to exist.
        """
        if self.policy.total_pages is not None or page <= 1:
            return False
        previous = page - 1
        if not (self.cache.has(previous) or any(p == previous for p, _h in loaded)):
            return False
        self.policy = self.policy.with_total(previous)
        self.prefetcher.discard_beyond(previous)
        logger.info("End of %s detected: %s pages", self.document_id, previous)
        return True

    def _settle_at_end(self, seq: int) -> bool:
        if seq != self._nav_seq:
            return False
        self._target = None
        self._set_status("")
        self._update_page_info()
        self.state = ViewerState.READY
        return False

    def _fail(self, seq: int, exc: PageFetchError) -> bool:
        if seq != self._nav_seq:
            return False
        logger.warning("Failed to load page %s of %s: %s", exc.page, self.document_id, exc)
        self._target = None
        self._set_status(f"Error loading page {exc.page}: {exc}")
        self.state = ViewerState.READY
        return False

    def _set_status(self, text: str) -> None:
        self.display.set_status(text)

    def _update_page_info(self) -> None:
        self.display.set_page_info(self.policy.describe(self.anchor))

    def _on_input(self, event: InputEvent) -> None:
        command = command_for(event, self.policy.total_pages is not None)
        if command is None:
            return
        task = asyncio.get_running_loop().create_task(self.navigate(command))
        self._input_tasks.add(task)
        task.add_done_callback(self._input_tasks.discard)
