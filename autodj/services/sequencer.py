"""The playback loop: resolve, fetch, bumper, stream, forever."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from autodj.core.exceptions import ConfigurationError, FetchError, PipeWriteFailed
from autodj.core.types import CacheEntry, PlaybackState, SequencerState, TrackReference
from autodj.services.content_cache import ContentCache
from autodj.services.pipe_writer import PipeWriter
from autodj.services.playback_state import PlaybackStateStore
from autodj.services.queue_resolver import QueueResolver

logger = logging.getLogger(__name__)


class BumperSet:
    """Station identifiers played in order, one before every track."""

    def __init__(self, paths: Sequence[Path]) -> None:
        self._paths = list(paths)
        self._index = 0

    def __len__(self) -> int:
        return len(self._paths)

    @property
    def index(self) -> int:
        return self._index

    def next(self) -> Optional[Path]:
        """Return the next bumper; the index advances whatever happens next."""

        if not self._paths:
            return None
        path = self._paths[self._index % len(self._paths)]
        self._index += 1
        return path


class PlaybackSequencer:
    """Drive the rotation with local error containment.

    Fetch and write failures skip the item. Anything else unexpected is caught
    at the top of the loop, which waits and starts a fresh rotation.
    Configuration errors are the only ones that end the loop.
    """

    def __init__(
        self,
        *,
        resolver: QueueResolver,
        cache: ContentCache,
        writer: PipeWriter,
        state: PlaybackStateStore,
        bumpers: BumperSet,
        fetch_failure_delay: float = 4.0,
        rotation_pause: float = 1.0,
        error_delay: float = 5.0,
        write_retries: Optional[int] = None,
    ) -> None:
        self.resolver = resolver
        self.cache = cache
        self.writer = writer
        self.state = state
        self.bumpers = bumpers
        self.fetch_failure_delay = fetch_failure_delay
        self.rotation_pause = rotation_pause
        self.error_delay = error_delay
        self.write_retries = write_retries
        self.phase = SequencerState.STOPPED
        self.rotations = 0
        self.tracks_streamed = 0
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Prevent new iterations from starting."""

        self._stopping.set()

    async def run(self, initial_queue: Optional[Sequence[TrackReference]] = None) -> None:
        """Run until :meth:`stop` is called or the configuration is unusable.

        ``initial_queue`` is played as the first rotation instead of resolving
        the sources again.
        """

        self._stopping.clear()
        pending = list(initial_queue) if initial_queue else None
        logger.info("Playback sequencer started")
        try:
            while not self.stopping:
                queue, pending = pending, None
                try:
                    await self.run_rotation(queue)
                    await self._pause(self.rotation_pause)
                except ConfigurationError:
                    logger.critical("Playback cannot continue: no usable sources")
                    raise
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Unexpected error in playback loop; restarting rotation")
                    await self._pause(self.error_delay)
        finally:
            self.phase = SequencerState.STOPPED
            logger.info("Playback sequencer stopped")

    async def run_rotation(self, queue: Optional[Sequence[TrackReference]] = None) -> None:
        """Play ``queue`` once, resolving a fresh shuffled one when none is given."""

        self.phase = SequencerState.RESOLVING
        if queue is None:
            queue = await self.resolver.resolve()
        self.rotations += 1
        logger.info("Starting rotation", extra={"rotation": self.rotations, "items": len(queue)})

        for position, ref in enumerate(queue, start=1):
            if self.stopping:
                return
            logger.info("Queue item %s/%s: %s", position, len(queue), ref)
            await self.play_item(ref)

    async def play_item(self, ref: TrackReference) -> bool:
        """Fetch, announce and stream one reference. Return whether it streamed."""

        self.phase = SequencerState.FETCHING
        try:
            entry = await self.cache.ensure_artifact(ref)
        except FetchError as exc:
            logger.error("Fetch failed; skipping item", extra={"reference": ref, "error": str(exc)})
            await self._pause(self.fetch_failure_delay)
            return False

        if self.stopping:
            return False
        await self._inject_bumper()
        return await self._stream(entry)

    async def _inject_bumper(self) -> None:
        self.phase = SequencerState.BUMPER_INJECT
        bumper = self.bumpers.next()
        try:
            if bumper is not None and bumper.is_file():
                logger.info("Injecting bumper", extra={"bumper": bumper.name})
                await self.writer.write_artifact(bumper, self.write_retries)
            else:
                if bumper is not None:
                    logger.warning("Bumper missing; using silence", extra={"bumper": str(bumper)})
                await self.writer.write_silence(self.write_retries)
        except PipeWriteFailed as exc:
            logger.error("Bumper write failed", extra={"error": str(exc)})

    async def _stream(self, entry: CacheEntry) -> bool:
        self.phase = SequencerState.STREAMING
        # Announced before the write starts: the encoder buffers ahead of the listener.
        self.state.update(
            lambda current: PlaybackState(
                current_title=entry.title,
                last_updated_at=datetime.now(timezone.utc),
                listener_count=current.listener_count,
            )
        )
        logger.info("Now playing: %s", entry.title, extra={"cached": entry.cached})
        try:
            await self.writer.write_artifact(entry.artifact_path, self.write_retries)
        except PipeWriteFailed as exc:
            logger.error("Stream write failed; skipping item", extra={"title": entry.title, "error": str(exc)})
            return False
        self.tracks_streamed += 1
        return True

    async def _pause(self, seconds: float) -> None:
        """Sleep, returning early when a stop is requested."""

        if seconds <= 0 or self.stopping:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
