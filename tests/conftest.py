import asyncio
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_SCRATCH = Path(tempfile.mkdtemp(prefix="autodj-tests-"))

os.environ.setdefault("ICECAST_HOST", "icecast.test")
os.environ.setdefault("ICECAST_PASS", "hackme")
os.environ.setdefault("CACHE_DIR", str(_SCRATCH / "cache"))
os.environ.setdefault("TMP_DIR", str(_SCRATCH / "tmp"))
os.environ.setdefault("LOGS_DIR", str(_SCRATCH / "logs"))
os.environ.setdefault("COOKIES_PATH", str(_SCRATCH / "secrets" / "cookies.txt"))
os.environ.setdefault("SOURCES_FILE", str(_SCRATCH / "sources.txt"))

from autodj.core.exceptions import TranscodeFailed
from autodj.core.types import TrackMetadata


@pytest.fixture()
def anyio_backend():
    """Restrict AnyIO-based tests to asyncio only."""

    return "asyncio"


class FakeFetcher:
    """Stands in for :class:`MediaFetcher` without spawning yt-dlp."""

    def __init__(self, titles=None, failures=None, playlists=None, delay: float = 0.0) -> None:
        self.titles = dict(titles or {})
        self.failures = dict(failures or {})
        self.playlists = dict(playlists or {})
        self.delay = delay
        self.probes: list[str] = []
        self.downloads: list[str] = []
        self.listings: list[str] = []

    async def probe(self, ref):
        self.probes.append(ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        if ref in self.failures:
            raise self.failures[ref]
        title, uploader = self.titles.get(ref, (ref, None))
        return TrackMetadata(id=ref.rsplit("/", 1)[-1], title=title, uploader=uploader)

    async def download(self, ref, scratch_dir, file_id):
        self.downloads.append(ref)
        target = Path(scratch_dir) / f"{file_id}.webm"
        target.write_bytes(f"audio:{ref}".encode())
        return target

    async def list_playlist(self, ref):
        self.listings.append(ref)
        entry = self.playlists[ref]
        if isinstance(entry, Exception):
            raise entry
        return list(entry)


class FakeEncoder:
    """Copies bytes instead of running FFmpeg."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[Path, Path]] = []

    async def encode_once(self, source, target, bitrate):
        self.calls.append((Path(source), Path(target)))
        if self.fail:
            raise TranscodeFailed("encoder exploded")
        Path(target).write_bytes(b"mp3:" + Path(source).read_bytes())

    async def render_silence(self, target, seconds, bitrate):
        Path(target).write_bytes(b"\x00" * 16)
        return Path(target)

    def persistent_command(self, pipe_path, ingest_url, bitrate, *, station_name):
        return ["ffmpeg", "-i", str(pipe_path), ingest_url]


@pytest.fixture()
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture()
def fake_supervisor():
    """A supervisor double that records restart requests."""

    restarts: list[str] = []
    listeners: list = []

    async def ensure_running() -> int:
        return fake.generation

    async def request_restart(reason: str) -> None:
        restarts.append(reason)
        fake.generation += 1
        for callback in listeners:
            callback()

    fake = SimpleNamespace(
        generation=1,
        is_shut_down=False,
        restarts=restarts,
        ensure_running=ensure_running,
        request_restart=request_restart,
        add_release_listener=listeners.append,
    )
    return fake


@pytest.fixture()
def make_fetcher():
    """Factory for fetchers with scripted titles, failures and playlists."""

    return FakeFetcher


@pytest.fixture()
def make_encoder():
    return FakeEncoder
