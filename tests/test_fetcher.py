from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from dboxserver.common.settings import OriginSettings
from dboxserver.origin.cache import CacheStore
from dboxserver.origin.fetcher import Fetcher
from dboxserver.origin.invalidation import InvalidationSignal
from dboxserver.remote.dropbox import RemoteStoreError


@pytest.fixture
def store() -> CacheStore:
    return CacheStore()


@pytest.fixture
def signal(clock) -> InvalidationSignal:
    return InvalidationSignal(initial=clock() - timedelta(hours=1))


@pytest.fixture
def fetcher(remote, store, signal, clock) -> Fetcher:
    return Fetcher(remote, store, signal, folder="/Public", clock=clock)


def _invalidate(signal: InvalidationSignal, clock) -> None:
    signal.invalidate(clock.advance(1))
    clock.advance(1)


@pytest.mark.asyncio
async def test_fresh_entry_served_without_remote_calls(fetcher, remote):
    remote.put("/Public/index.html", b"<h1>hi</h1>", "rev-1")

    first = await fetcher.resolve("/index.html")
    second = await fetcher.resolve("/index.html")

    assert second is first
    assert remote.metadata_calls == ["/Public/index.html"]
    assert remote.download_calls == ["/Public/index.html"]


@pytest.mark.asyncio
async def test_missing_path_is_cached_until_invalidation(fetcher, remote, signal, clock):
    for _ in range(3):
        entry = await fetcher.resolve("/missing.txt")
        assert entry.exists is False
        assert entry.body == b""
        assert entry.revision == ""
    assert remote.metadata_calls == ["/Public/missing.txt"]

    _invalidate(signal, clock)
    await fetcher.resolve("/missing.txt")
    assert len(remote.metadata_calls) == 2
    assert remote.download_calls == []


@pytest.mark.asyncio
async def test_directory_is_treated_as_not_found(fetcher, remote, store):
    remote.folders.add("/Public/assets")

    entry = await fetcher.resolve("/assets")

    assert entry.exists is False
    assert store.get("/assets") == entry
    assert remote.download_calls == []


@pytest.mark.asyncio
async def test_unchanged_revision_reuses_body_across_invalidation(fetcher, remote, signal, clock, store):
    remote.put("/Public/data.json", b'{"a": 1}', "rev-1")
    first = await fetcher.resolve("/data.json")

    _invalidate(signal, clock)
    second = await fetcher.resolve("/data.json")

    assert len(remote.metadata_calls) == 2
    assert len(remote.download_calls) == 1
    assert second.body == first.body
    assert second.content_type == first.content_type == "application/json"
    assert second.fetched_at > first.fetched_at
    assert store.get("/data.json") is second


@pytest.mark.asyncio
async def test_changed_revision_downloads_new_body(fetcher, remote, signal, clock):
    remote.put("/Public/notes.txt", b"old", "rev-1")
    await fetcher.resolve("/notes.txt")
    remote.put("/Public/notes.txt", b"new", "rev-2")

    _invalidate(signal, clock)
    metadata_before = len(remote.metadata_calls)
    downloads_before = len(remote.download_calls)
    entry = await fetcher.resolve("/notes.txt")

    assert len(remote.metadata_calls) == metadata_before + 1
    assert len(remote.download_calls) == downloads_before + 1
    assert entry.body == b"new"
    assert entry.revision == "rev-2"


@pytest.mark.asyncio
async def test_previously_missing_path_downloads_once_created(fetcher, remote, signal, clock):
    assert (await fetcher.resolve("/late.html")).exists is False
    remote.put("/Public/late.html", b"<p>now</p>", "rev-9")

    _invalidate(signal, clock)
    entry = await fetcher.resolve("/late.html")

    assert entry.exists is True
    assert entry.body == b"<p>now</p>"
    assert entry.content_type == "text/html"


@pytest.mark.asyncio
async def test_entry_fetched_at_invalidation_instant_is_fresh(fetcher, remote, signal, clock):
    remote.put("/Public/a.txt", b"a", "rev-1")
    entry = await fetcher.resolve("/a.txt")

    signal.invalidate(entry.fetched_at)
    await fetcher.resolve("/a.txt")

    assert len(remote.metadata_calls) == 1


@pytest.mark.asyncio
async def test_generic_type_corrected_and_native_type_kept(fetcher, remote):
    remote.put("/Public/config.json", b"{}", "rev-1")
    remote.put("/Public/photo.json", b"\x89PNG", "rev-1", content_type="image/png")
    remote.put("/Public/blob.unknownext", b"??", "rev-1")

    assert (await fetcher.resolve("/config.json")).content_type == "application/json"
    assert (await fetcher.resolve("/photo.json")).content_type == "image/png"
    assert (await fetcher.resolve("/blob.unknownext")).content_type == "application/octet-stream"


@pytest.mark.asyncio
async def test_mime_overrides_take_precedence(remote, store, signal, clock):
    fetcher = Fetcher(
        remote,
        store,
        signal,
        folder="/Public",
        clock=clock,
        mime_overrides={".json": "application/vnd.api+json"},
    )
    remote.put("/Public/feed.json", b"{}", "rev-1")

    entry = await fetcher.resolve("/feed.json")

    assert entry.content_type == "application/vnd.api+json"


@pytest.mark.asyncio
async def test_metadata_failure_propagates_without_caching(fetcher, remote, store, remote_error):
    remote.metadata_error = remote_error

    with pytest.raises(RemoteStoreError):
        await fetcher.resolve("/a.txt")

    assert store.get("/a.txt") is None


@pytest.mark.asyncio
async def test_download_failure_keeps_previous_entry(fetcher, remote, store, signal, clock):
    remote.put("/Public/a.txt", b"v1", "rev-1")
    original = await fetcher.resolve("/a.txt")
    remote.put("/Public/a.txt", b"v2", "rev-2")
    remote.download_error = RemoteStoreError("dropbox download failed (500): internal")

    _invalidate(signal, clock)
    with pytest.raises(RemoteStoreError):
        await fetcher.resolve("/a.txt")
    assert store.get("/a.txt") is original

    remote.download_error = None
    recovered = await fetcher.resolve("/a.txt")
    assert recovered.body == b"v2"


@pytest.mark.asyncio
async def test_keys_are_case_and_slash_sensitive(fetcher, remote, store):
    remote.put("/Public/Readme.md", b"# readme", "rev-1")

    assert (await fetcher.resolve("/Readme.md")).exists is True
    assert (await fetcher.resolve("/readme.md")).exists is False
    assert (await fetcher.resolve("/Readme.md/")).exists is False
    assert len(store) == 3


@pytest.mark.asyncio
async def test_oversized_body_served_but_not_cached(remote, store, signal, clock):
    fetcher = Fetcher(remote, store, signal, folder="/Public", clock=clock, max_object_bytes=4)
    remote.put("/Public/big.bin", b"0123456789", "rev-1")

    entry = await fetcher.resolve("/big.bin")

    assert entry.body == b"0123456789"
    assert store.get("/big.bin") is None


@pytest.mark.asyncio
async def test_concurrent_cold_requests_converge(fetcher, remote, store):
    remote.put("/Public/shared.css", b"body { color: red }", "rev-1")
    remote.download_delay = 0.01

    entries = await asyncio.gather(*(fetcher.resolve("/shared.css") for _ in range(10)))

    assert {entry.body for entry in entries} == {b"body { color: red }"}
    assert {entry.revision for entry in entries} == {"rev-1"}
    cached = store.get("/shared.css")
    assert cached is not None
    assert cached.body == b"body { color: red }"
    assert 1 <= len(remote.download_calls) <= 10


@pytest.mark.asyncio
async def test_coalesced_fetch_shares_one_remote_call(remote, store, signal, clock):
    fetcher = Fetcher(remote, store, signal, folder="/Public", clock=clock, coalesce=True)
    remote.put("/Public/shared.css", b"body {}", "rev-1")
    remote.download_delay = 0.01

    entries = await asyncio.gather(*(fetcher.resolve("/shared.css") for _ in range(5)))

    assert all(entry is entries[0] for entry in entries)
    assert len(remote.metadata_calls) == 1
    assert len(remote.download_calls) == 1


@pytest.mark.asyncio
async def test_coalesced_failure_reaches_every_waiter(remote, store, signal, clock, remote_error):
    fetcher = Fetcher(remote, store, signal, folder="/Public", clock=clock, coalesce=True)
    remote.put("/Public/a.txt", b"a", "rev-1")
    remote.download_delay = 0.01
    remote.download_error = remote_error

    results = await asyncio.gather(*(fetcher.resolve("/a.txt") for _ in range(3)), return_exceptions=True)

    assert all(isinstance(result, RemoteStoreError) for result in results)
    assert len(remote.download_calls) == 1
    assert store.get("/a.txt") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(("folder", "expected"), [("/Public", "/Public/img/a.png"), ("/", "/img/a.png")])
async def test_request_path_maps_under_configured_folder(remote, store, signal, clock, folder, expected):
    fetcher = Fetcher(remote, store, signal, folder=OriginSettings(folder=folder).folder, clock=clock)

    await fetcher.resolve("/img/a.png")

    assert remote.metadata_calls == [expected]


@pytest.mark.asyncio
async def test_cached_hits_are_not_blocked_by_slow_refresh(fetcher, remote, clock):
    remote.put("/Public/fast.txt", b"fast", "rev-1")
    remote.put("/Public/slow.txt", b"slow", "rev-1")
    await fetcher.resolve("/fast.txt")
    remote.download_delay = 0.2

    slow = asyncio.create_task(fetcher.resolve("/slow.txt"))
    await asyncio.sleep(0)
    hit = await asyncio.wait_for(fetcher.resolve("/fast.txt"), timeout=0.05)

    assert hit.body == b"fast"
    assert slow.done() is False
    assert (await slow).body == b"slow"
