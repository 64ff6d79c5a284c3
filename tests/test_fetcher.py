import asyncio

import httpx
import pytest

from conftest import png_bytes
from pagestream.fetcher import (
    CancellationToken,
    EmptyPayload,
    PageDecodeError,
    PageFetchCancelled,
    PageFetchError,
    PageFetcher,
    PageNotFound,
)


def fetch_with(handler, document_id="book.cbz", page=1, token=None, **kwargs):
    async def go():
        async with PageFetcher("http://test", transport=httpx.MockTransport(handler), **kwargs) as fetcher:
            return await fetcher.fetch(document_id, page, token or CancellationToken())

    return asyncio.run(go())


def test_fetch_decodes_page_and_encodes_path():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=png_bytes(size=(8, 12)), headers={"content-type": "image/png"})

    handle = fetch_with(handler, document_id="Some Dir/book #1.cbz", page=3)
    assert handle.page == 3
    assert handle.size == (8, 12)
    assert handle.media_type == "image/png"
    request = seen[0]
    assert request.url.path == "/comic-preview"
    assert request.url.params["path"] == "Some Dir/book #1.cbz"
    assert request.url.params["page"] == "3"
    assert b"%23" in request.url.raw_path


def test_pdf_pages_use_pdf_endpoint_with_dpi():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=png_bytes())

    fetch_with(handler, document_id="manual.PDF", page=2, pdf_dpi=150)
    assert seen[0].url.path == "/pdf-page"
    assert seen[0].url.params["dpi"] == "150"


def test_404_is_page_not_found():
    with pytest.raises(PageNotFound) as excinfo:
        fetch_with(lambda request: httpx.Response(404, text="Page not found: 9"), page=9)
    assert excinfo.value.status_code == 404
    assert excinfo.value.page == 9


def test_500_is_transport_error_unless_heuristic_enabled():
    handler = lambda request: httpx.Response(500, text="Comic extraction failed")
    with pytest.raises(PageFetchError) as excinfo:
        fetch_with(handler)
    assert not isinstance(excinfo.value, PageNotFound)
    assert excinfo.value.status_code == 500
    assert "HTTP 500" in str(excinfo.value)

    with pytest.raises(PageNotFound):
        fetch_with(handler, server_error_means_end=True)


def test_empty_body_is_an_error():
    with pytest.raises(EmptyPayload):
        fetch_with(lambda request: httpx.Response(200, content=b""))


def test_undecodable_body():
    with pytest.raises(PageDecodeError):
        fetch_with(lambda request: httpx.Response(200, content=b"definitely not an image"))


def test_connection_failure_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PageFetchError) as excinfo:
        fetch_with(handler)
    assert excinfo.value.status_code is None


def test_already_cancelled_token_skips_the_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=png_bytes())

    token = CancellationToken()
    token.cancel("closed")
    with pytest.raises(PageFetchCancelled):
        fetch_with(handler, token=token)
    assert calls == []


def test_cancel_mid_flight():
    async def go():
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(30)
            return httpx.Response(200, content=png_bytes())

        token = CancellationToken()
        async with PageFetcher("http://test", transport=httpx.MockTransport(handler)) as fetcher:
            task = asyncio.create_task(fetcher.fetch("book.cbz", 1, token))
            await started.wait()
            token.cancel("superseded")
            with pytest.raises(PageFetchCancelled) as excinfo:
                await task
        return excinfo.value

    cancelled = asyncio.run(go())
    assert cancelled.reason == "superseded"


def test_child_tokens_follow_parent():
    async def go():
        parent = CancellationToken()
        child = parent.child()
        parent.cancel("closed")
        late_child = parent.child()
        return child, late_child

    child, late_child = asyncio.run(go())
    assert child.cancelled and child.reason == "closed"
    assert late_child.cancelled


def test_fetch_info():
    def handler(request):
        assert request.url.path == "/api/comic-info"
        return httpx.Response(200, json={"pages": 42, "format": "CBZ"})

    async def go():
        async with PageFetcher("http://test", transport=httpx.MockTransport(handler)) as fetcher:
            return await fetcher.fetch_info("book.cbz", CancellationToken())

    info = asyncio.run(go())
    assert info.total_pages == 42
    assert info.format == "CBZ"


def test_fetch_info_malformed():
    async def go():
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"format": "CBZ"}))
        async with PageFetcher("http://test", transport=transport) as fetcher:
            await fetcher.fetch_info("book.cbz", CancellationToken())

    with pytest.raises(PageFetchError):
        asyncio.run(go())
