import pytest

from conftest import make_handle, spy_handle
from pagestream.cache import PageCache


def test_put_then_get_returns_same_handle():
    cache = PageCache("book.cbz")
    handle = make_handle(1)
    cache.put(1, handle)
    assert cache.get(1) is handle
    assert cache.has(1)
    assert cache.get(2) is None


def test_replacing_a_page_releases_the_old_handle_once():
    cache = PageCache("book.cbz")
    (first, first_image), (second, _image) = spy_handle(1), spy_handle(1)
    cache.put(1, first)
    cache.put(1, second)
    assert first.released
    assert first_image.closes == 1
    assert not second.released
    assert cache.get(1) is second
    assert len(cache) == 1


def test_putting_the_same_handle_twice_keeps_it_alive():
    cache = PageCache("book.cbz")
    handle = make_handle(3)
    cache.put(3, handle)
    cache.put(3, handle)
    assert not handle.released


def test_clear_releases_everything_and_is_idempotent():
    cache = PageCache("book.cbz")
    spies = [spy_handle(p) for p in range(1, 5)]
    for page, (handle, _image) in enumerate(spies, start=1):
        cache.put(page, handle)
    cache.clear()
    cache.clear()
    assert len(cache) == 0
    assert all(h.released and image.closes == 1 for h, image in spies)


def test_closed_cache_rejects_late_pages():
    cache = PageCache("book.cbz")
    cache.close()
    late = make_handle(2)
    assert cache.put(2, late) is False
    assert late.released
    assert not cache.has(2)


def test_size_cap_evicts_oldest_unpinned():
    cache = PageCache("book.cbz", max_pages=3)
    handles = {p: make_handle(p) for p in range(1, 5)}
    cache.pin([1])
    for page in range(1, 5):
        cache.put(page, handles[page])
    assert list(cache) == [1, 3, 4]
    assert handles[2].released
    assert not handles[1].released


def test_evict_releases_single_page():
    cache = PageCache("book.cbz")
    handle = make_handle(5)
    cache.put(5, handle)
    assert cache.evict(5)
    assert handle.released
    assert not cache.evict(5)


def test_released_handle_refuses_access():
    handle, image = spy_handle(1)
    handle.release()
    handle.release()
    assert image.closes == 1
    with pytest.raises(RuntimeError):
        handle.image


def test_size_cap_never_evicts_the_page_being_stored():
    cache = PageCache("book.cbz", max_pages=2)
    cache.pin([1, 2, 3])
    handles = {p: make_handle(p) for p in range(1, 5)}
    for page in range(1, 5):
        cache.put(page, handles[page])
    assert not handles[4].released
    assert cache.get(4) is handles[4]
    assert not any(handles[p].released for p in (1, 2, 3))
