import asyncio
import logging
from collections import deque

from .cache import PageCache, PageHandle
from .fetcher import CancellationToken, PageFetchCancelled, PageFetchError, PageFetcher
from .paging import PagingPolicy

logger = logging.getLogger(__name__)

DEFAULT_RADIUS = 2


class PrefetchScheduler:
    """
    Loads pages for one document session.

    Two lanes share one in-flight table, so a page is never requested twice
    at the same time:
      - `request()` is the foreground lane used by navigation; it joins an
        in-flight fetch of the same page instead of issuing a second one.
      - `schedule()` queues neighbours of an anchor for background loading;
        the queue is drained by a single worker, one page at a time, and the
        worker holds off while a foreground request is pending.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        cache: PageCache,
        token: CancellationToken,
        *,
        radius: int = DEFAULT_RADIUS,
        delay: float = 0.1,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.document_id = cache.document_id
        self.token = token
        self.radius = max(0, radius)
        self.delay = delay
        self.policy = PagingPolicy()
        self._queue: deque[int] = deque()
        self._in_flight: dict[int, asyncio.Task] = {}
        self._worker: asyncio.Task | None = None
        self._foreground = 0
        self._foreground_idle = asyncio.Event()
        self._foreground_idle.set()

    @property
    def queued(self) -> list[int]:
        return list(self._queue)

    @property
    def in_flight(self) -> set[int]:
        return set(self._in_flight)

    def neighbourhood(self, anchor: int, policy: PagingPolicy) -> list[int]:
        """
        Pages worth having around `anchor`: at least `radius` pages in each
        direction, rounded up to whole spreads so pairing partners come along.
        Nearest spreads first, forward before backward.
        """
        shown = set(policy.pages(anchor))
        forward = self._spreads(anchor, policy.next_anchor, policy)
        backward = self._spreads(anchor, policy.previous_anchor, policy)
        wanted: list[int] = []
        for i in range(max(len(forward), len(backward))):
            if i < len(forward):
                wanted.extend(forward[i])
            if i < len(backward):
                wanted.extend(reversed(backward[i]))
        return [p for p in dict.fromkeys(wanted) if p not in shown]

    def _spreads(self, anchor: int, step, policy: PagingPolicy) -> list[tuple[int, ...]]:
        spreads: list[tuple[int, ...]] = []
        covered = 0
        current = anchor
        while covered < self.radius:
            following = step(current)
            if following == current:
                break
            spread = policy.pages(following)
            spreads.append(spread)
            covered += len(spread)
            current = following
        return spreads

    def schedule(self, anchor: int, policy: PagingPolicy) -> list[int]:
        """Queue the missing neighbours of `anchor` ahead of older entries and start draining."""
        if self.token.cancelled:
            return []
        self.policy = policy
        fresh = [
            p
            for p in self.neighbourhood(anchor, policy)
            if not self.cache.has(p) and p not in self._in_flight
        ]
        stale = [p for p in self._queue if p not in fresh]
        self._queue = deque(fresh + stale)
        if fresh:
            logger.debug("Prefetch queue for %s around %s: %s", self.document_id, anchor, list(self._queue))
        if self._queue and (self._worker is None or self._worker.done()):
            self._worker = asyncio.create_task(self._drain())
        return fresh

    async def request(self, page: int, token: CancellationToken) -> PageHandle:
        """Foreground load of one page, from cache, an in-flight fetch, or a new fetch."""
        handle = self.cache.get(page)
        if handle is not None:
            return handle
        self._foreground += 1
        self._foreground_idle.clear()
        try:
            while True:
                token.raise_if_cancelled(page)
                handle = self.cache.get(page)
                if handle is not None:
                    return handle
                task = self._in_flight.get(page)
                if task is None or task.done():
                    task = self._start(page, token)
                try:
                    return await self._join(task, token, page)
                except PageFetchCancelled:
                    # the fetch we joined belonged to another token; retry under ours
                    token.raise_if_cancelled(page)
                    self.token.raise_if_cancelled(page)
        finally:
            self._foreground -= 1
            if self._foreground == 0:
                self._foreground_idle.set()

    async def _join(self, task: asyncio.Task, token: CancellationToken, page: int) -> PageHandle:
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if not task.done():
            raise PageFetchCancelled(page, token.reason)
        if task.cancelled():
            raise PageFetchCancelled(page, "fetch task cancelled")
        return task.result()

    def _start(self, page: int, token: CancellationToken) -> asyncio.Task:
        task = asyncio.create_task(self._load(page, token))
        self._in_flight[page] = task

        def _done(t: asyncio.Task) -> None:
            if self._in_flight.get(page) is t:
                del self._in_flight[page]
            if not t.cancelled():
                t.exception()

        task.add_done_callback(_done)
        return task

    async def _load(self, page: int, token: CancellationToken) -> PageHandle:
        handle = await self.fetcher.fetch(self.document_id, page, token)
        if token.cancelled or self.token.cancelled:
            handle.release()
            raise PageFetchCancelled(page, token.reason or self.token.reason)
        if not self.cache.put(page, handle):
            raise PageFetchCancelled(page, "cache closed")
        return handle

    async def _drain(self) -> None:
        while self._queue:
            await self._foreground_idle.wait()
            if self.token.cancelled:
                break
            if not self._queue:
                break
            page = self._queue.popleft()
            if self.cache.has(page) or page in self._in_flight:
                continue
            total = self.policy.total_pages
            if total is not None and page > total:
                continue
            try:
                await self._start(page, self.token)
            except PageFetchCancelled:
                break
            except PageFetchError as exc:
                logger.warning("Prefetch failed for page %s of %s: %s", page, self.document_id, exc)
            if self.delay:
                await asyncio.sleep(self.delay)

    async def join(self) -> None:
        """Wait until the background queue is drained (or abandoned)."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    def discard_beyond(self, total_pages: int) -> None:
        self._queue = deque(p for p in self._queue if p <= total_pages)

    async def close(self) -> None:
        """Stop background work; the session token must already be cancelled."""
        self._queue.clear()
        tasks = list(self._in_flight.values())
        if self._worker is not None:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._worker = None
