"""Best-effort synchronisation with the Icecast admin interface."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

import httpx

from autodj.core.exceptions import ListenerPollError, MetadataSyncError, SynchronizerError
from autodj.services.playback_state import PlaybackStateStore

logger = logging.getLogger(__name__)

_LISTENERS = re.compile(r"<listeners>\s*(\d+)\s*</listeners>", re.IGNORECASE)


def parse_listener_count(document: str, mount: str) -> Optional[int]:
    """Return the listener count of ``mount`` in an ``/admin/stats`` document.

    ``None`` when the mount has no source block or the block has no count.
    """

    block = re.search(
        rf'<source\b[^>]*\bmount="{re.escape(mount)}"[^>]*>(.*?)</source>',
        document,
        re.IGNORECASE | re.DOTALL,
    )
    if block is None:
        return None
    listeners = _LISTENERS.search(block.group(1))
    if listeners is None:
        return None
    return int(listeners.group(1))


class MetadataSynchronizer:
    """Two periodic tasks that never touch the audio path.

    One pushes the current title to ``/admin/metadata`` when it changes, the
    other polls ``/admin/stats`` for the listener count of our mount.
    """

    def __init__(
        self,
        *,
        state: PlaybackStateStore,
        base_url: str,
        mount: str,
        credentials: tuple[str, str],
        metadata_interval: float = 1.0,
        listener_interval: float = 10.0,
        timeout: float = 4.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.state = state
        self.mount = mount
        self.metadata_interval = metadata_interval
        self.listener_interval = listener_interval
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(*credentials),
            timeout=timeout,
            transport=transport,
        )
        self._pushed_title: Optional[str] = None
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def pushed_title(self) -> Optional[str]:
        return self._pushed_title

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(
                self._periodic("metadata-push", self.metadata_interval, self.push_metadata),
                name="metadata-push",
            ),
            asyncio.create_task(
                self._periodic("listener-poll", self.listener_interval, self.poll_listeners),
                name="listener-poll",
            ),
        ]
        logger.info("Metadata synchronizer started")

    async def stop(self, timeout: float = 10.0) -> None:
        """Let the current tick finish, then stop both loops."""

        self._stopping.set()
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        await self._client.aclose()
        logger.info("Metadata synchronizer stopped")

    async def push_metadata(self) -> bool:
        """Push the current title if it has not been pushed yet."""

        title = self.state.snapshot.current_title
        if not title or title == self._pushed_title:
            return False
        params = {"mount": self.mount, "mode": "updinfo", "song": title}
        try:
            response = await self._client.get("/admin/metadata", params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MetadataSyncError(f"Metadata update failed: {exc}") from exc
        self._pushed_title = title
        logger.info("Icecast metadata updated", extra={"title": title})
        return True

    async def poll_listeners(self) -> Optional[int]:
        """Refresh the listener count; any failure stores ``None``."""

        try:
            response = await self._client.get("/admin/stats")
            response.raise_for_status()
            count = parse_listener_count(response.text, self.mount)
        except httpx.HTTPError as exc:
            self.state.set_listener_count(None)
            raise ListenerPollError(f"Listener poll failed: {exc}") from exc
        self.state.set_listener_count(count)
        return count

    async def _periodic(self, name: str, interval: float, tick: Callable[[], Awaitable[object]]) -> None:
        while not self._stopping.is_set():
            try:
                await tick()
            except SynchronizerError as exc:
                logger.debug("%s tick failed", name, extra={"error": str(exc)})
            except Exception:
                logger.warning("%s tick raised unexpectedly", name, exc_info=True)
                if name == "listener-poll":
                    self.state.set_listener_count(None)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
