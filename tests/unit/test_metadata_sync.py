import asyncio

import httpx
import pytest

from autodj.core.exceptions import ListenerPollError, MetadataSyncError
from autodj.core.types import PlaybackState
from autodj.services.metadata_sync import MetadataSynchronizer, parse_listener_count
from autodj.services.playback_state import PlaybackStateStore

STATS = """<?xml version="1.0"?>
<icestats>
  <listeners>42</listeners>
  <source mount="/other">
    <listeners>3</listeners>
  </source>
  <source mount="/stream">
    <server_name>AutoDJ Live</server_name>
    <listeners>7</listeners>
  </source>
</icestats>
"""


def test_parse_listener_count_for_mount() -> None:
    assert parse_listener_count(STATS, "/stream") == 7
    assert parse_listener_count(STATS, "/other") == 3


def test_parse_listener_count_unknown_mount_is_none() -> None:
    assert parse_listener_count(STATS, "/missing") is None


def test_parse_listener_count_malformed_is_none() -> None:
    assert parse_listener_count("<html>Service unavailable</html>", "/stream") is None
    assert parse_listener_count('<source mount="/stream"><listeners>n/a</listeners></source>', "/stream") is None
    assert parse_listener_count("", "/stream") is None


def _synchronizer(handler, state=None, **kwargs) -> MetadataSynchronizer:
    return MetadataSynchronizer(
        state=state or PlaybackStateStore(),
        base_url="http://icecast.test:8000",
        mount="/stream",
        credentials=("admin", "secret"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _playing(store: PlaybackStateStore, title: str) -> None:
    store.update(lambda current: PlaybackState(current_title=title, listener_count=current.listener_count))


@pytest.mark.anyio("asyncio")
async def test_push_metadata_sends_title_once() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text="<iceresponse><return>1</return></iceresponse>")

    store = PlaybackStateStore()
    sync = _synchronizer(handler, store)
    _playing(store, "Band - Song & More")

    assert await sync.push_metadata() is True
    assert await sync.push_metadata() is False

    assert len(requests) == 1
    request = requests[0]
    assert request.url.path == "/admin/metadata"
    assert request.url.params["mode"] == "updinfo"
    assert request.url.params["mount"] == "/stream"
    assert request.url.params["song"] == "Band - Song & More"
    assert request.headers["authorization"].startswith("Basic ")
    await sync.stop()


@pytest.mark.anyio("asyncio")
async def test_push_metadata_failure_is_retried_next_tick() -> None:
    statuses = [500, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.pop(0))

    store = PlaybackStateStore()
    sync = _synchronizer(handler, store)
    _playing(store, "Song")

    with pytest.raises(MetadataSyncError):
        await sync.push_metadata()
    assert sync.pushed_title is None
    assert await sync.push_metadata() is True
    assert sync.pushed_title == "Song"
    await sync.stop()


@pytest.mark.anyio("asyncio")
async def test_poll_listeners_updates_state() -> None:
    store = PlaybackStateStore()
    sync = _synchronizer(lambda request: httpx.Response(200, text=STATS), store)

    assert await sync.poll_listeners() == 7
    assert store.snapshot.listener_count == 7
    await sync.stop()


@pytest.mark.anyio("asyncio")
async def test_poll_failure_marks_listeners_unknown() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = PlaybackStateStore()
    store.set_listener_count(12)
    sync = _synchronizer(handler, store)

    with pytest.raises(ListenerPollError):
        await sync.poll_listeners()
    assert store.snapshot.listener_count is None
    await sync.stop()


@pytest.mark.anyio("asyncio")
async def test_loops_survive_failures_and_stop_cleanly() -> None:
    calls = {"metadata": 0, "stats": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/admin/stats":
            calls["stats"] += 1
            return httpx.Response(503)
        calls["metadata"] += 1
        return httpx.Response(401)

    store = PlaybackStateStore()
    _playing(store, "Song")
    sync = _synchronizer(handler, store, metadata_interval=0.01, listener_interval=0.01)

    sync.start()
    await asyncio.sleep(0.1)
    await asyncio.wait_for(sync.stop(), timeout=1.0)

    assert calls["metadata"] > 1
    assert calls["stats"] > 1
    assert store.snapshot.listener_count is None
    assert store.snapshot.current_title == "Song"
