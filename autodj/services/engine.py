"""Wiring of every relay component into one start/stop unit."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from autodj.core.config import Settings, get_settings
from autodj.core.exceptions import ConfigurationError, TranscodeFailed
from autodj.core.retry import RetryConfig
from autodj.schemas import FetcherStatus, HealthStatus, RelayStatus, StatusResponse
from autodj.services.content_cache import ContentCache, sanitize_filename
from autodj.services.cookies import cookie_status, materialize_cookies
from autodj.services.encoder import Encoder
from autodj.services.fetcher import MediaFetcher
from autodj.services.metadata_sync import MetadataSynchronizer
from autodj.services.monitoring import RelayMonitor
from autodj.services.pipe_writer import PipeWriter
from autodj.services.playback_state import PlaybackStateStore
from autodj.services.queue_resolver import QueueResolver
from autodj.services.relay_supervisor import RelaySupervisor
from autodj.services.sequencer import BumperSet, PlaybackSequencer

logger = logging.getLogger(__name__)

SILENCE_FILENAME = "_guard_silence.mp3"
BUMPER_DIRNAME = "_bumpers"


class RelayEngine:
    """Owns the relay components and the shared playback state.

    The status API and the process entry point only talk to this object.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        fetcher: Optional[MediaFetcher] = None,
        encoder: Optional[Encoder] = None,
        admin_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        cfg = self.settings
        self.cache_dir = Path(cfg.cache_dir)
        self.scratch_dir = Path(cfg.scratch_dir)
        self.pipe_path = Path(cfg.pipe_path or self.scratch_dir / "relay.pipe")
        self.cookies_path = Path(cfg.cookies_path)

        self.state = PlaybackStateStore()
        self.fetcher = fetcher or MediaFetcher(
            cookies_path=self.cookies_path,
            probe_timeout=cfg.fetch_timeout_seconds,
            download_timeout=cfg.download_timeout_seconds,
        )
        self.encoder = encoder or Encoder(timeout=cfg.transcode_timeout_seconds)
        self.cache = ContentCache(
            cache_dir=self.cache_dir,
            scratch_dir=self.scratch_dir,
            fetcher=self.fetcher,
            encoder=self.encoder,
            bitrate=cfg.bitrate,
            key_max_bytes=cfg.title_max_bytes,
        )
        extra = [cfg.youtube_playlist] if cfg.youtube_playlist else []
        self.resolver = QueueResolver(
            fetcher=self.fetcher,
            sources_file=Path(cfg.sources_file),
            extra_sources=extra,
        )
        self.supervisor = RelaySupervisor(
            command=self.encoder.persistent_command(
                self.pipe_path, cfg.ingest_url, cfg.bitrate, station_name=cfg.station_name
            ),
            pipe_path=self.pipe_path,
            restart_policy=RetryConfig.fixed("relay-restart", cfg.relay_restart_delay_seconds),
            stop_timeout=cfg.relay_stop_timeout_seconds,
        )
        self.writer = PipeWriter(
            supervisor=self.supervisor,
            pipe_path=self.pipe_path,
            retry_policy=RetryConfig.fixed(
                "pipe-write", cfg.pipe_retry_delay_seconds, max_attempts=cfg.pipe_write_max_retries
            ),
            open_timeout=cfg.pipe_open_timeout_seconds,
            write_timeout=cfg.pipe_write_timeout_seconds,
            chunk_size=cfg.pipe_chunk_bytes,
        )
        self.sequencer = PlaybackSequencer(
            resolver=self.resolver,
            cache=self.cache,
            writer=self.writer,
            state=self.state,
            bumpers=BumperSet([]),
            fetch_failure_delay=cfg.fetch_failure_delay_seconds,
            rotation_pause=cfg.rotation_pause_seconds,
            error_delay=cfg.loop_error_delay_seconds,
        )
        self.synchronizer = MetadataSynchronizer(
            state=self.state,
            base_url=cfg.admin_base_url,
            mount=cfg.icecast_mount,
            credentials=cfg.admin_credentials,
            metadata_interval=cfg.metadata_interval_seconds,
            listener_interval=cfg.listener_poll_interval_seconds,
            timeout=cfg.http_timeout_seconds,
            transport=admin_transport,
        )
        self.monitor = RelayMonitor(cache_dir=self.cache_dir, disk_threshold_gb=cfg.disk_free_threshold_gb)
        self._sequencer_task: Optional[asyncio.Task[None]] = None
        self._halt_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self.fatal_error: Optional[str] = None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def playback_running(self) -> bool:
        task = self._sequencer_task
        return task is not None and not task.done()

    async def start(self) -> None:
        """Prepare assets, check the sources and bring every component up.

        Raises :class:`ConfigurationError` when no source resolves.
        """

        if self._started:
            return
        cfg = self.settings
        for directory in (self.cache_dir, self.scratch_dir, self.pipe_path.parent):
            directory.mkdir(parents=True, exist_ok=True)
        materialize_cookies(cfg.cookies_content, self.cookies_path)

        self.writer.silence_path = await self._prepare_silence()
        self.sequencer.bumpers = BumperSet(await self._prepare_bumpers(cfg.bumpers))

        queue = await self.resolver.resolve()
        logger.info("Sources resolved", extra={"items": len(queue), "station": cfg.station_name})

        await self.supervisor.start()
        self.fatal_error = None
        self._sequencer_task = asyncio.create_task(self.sequencer.run(queue), name="playback-sequencer")
        self._sequencer_task.add_done_callback(self._on_sequencer_done)
        self.synchronizer.start()
        self._started = True
        logger.info(
            "Relay engine started",
            extra={"mount": cfg.icecast_mount, "bitrate": cfg.bitrate, "pipe": str(self.pipe_path)},
        )

    async def stop(self) -> None:
        """Stop the loop, then the encoder, then the periodic tasks."""

        self._started = False
        self.sequencer.stop()
        halt = self._halt_task
        self._halt_task = None
        if halt is not None and not halt.done():
            await halt
        await self.supervisor.shutdown()
        await self.synchronizer.stop()

        task = self._sequencer_task
        self._sequencer_task = None
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=self.settings.relay_stop_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("Playback loop did not finish in time; cancelled")
            except ConfigurationError:
                pass
        await self.writer.close()
        logger.info("Relay engine stopped")

    def status_snapshot(self) -> StatusResponse:
        """Read-only view of the engine; never waits on a lock."""

        playback = self.state.snapshot
        relay = self.supervisor.snapshot()
        diagnostics = self.fetcher.diagnostics
        return StatusResponse(
            station=self.settings.station_name,
            now_playing=playback.current_title,
            bitrate=self.settings.bitrate,
            listeners=playback.listener_count,
            updated=playback.last_updated_at,
            sequencer_state=self.sequencer.phase.value,
            rotations=self.sequencer.rotations,
            tracks_streamed=self.sequencer.tracks_streamed,
            relay=RelayStatus(
                state=relay.state.value,
                running=relay.running,
                pid=relay.pid,
                generation=relay.generation,
                restarts=relay.restarts,
                started_at=relay.started_at,
                last_exit_code=relay.last_exit_code,
                last_error=relay.last_error,
            ),
            fetcher=FetcherStatus(
                last_reference=diagnostics.last_reference,
                command=list(diagnostics.command),
                stderr=diagnostics.stderr,
                error=diagnostics.error,
                auth_state=diagnostics.auth_state,
            ),
            cookies=cookie_status(self.cookies_path),
        )

    def health(self) -> HealthStatus:
        return self.monitor.check_health(
            self.supervisor.snapshot(),
            playback_running=self.playback_running,
            playback_error=self.fatal_error,
        )

    async def _prepare_silence(self) -> Optional[Path]:
        if self.settings.guard_silence_seconds <= 0:
            return None
        target = self.cache_dir / SILENCE_FILENAME
        if target.is_file():
            return target
        try:
            return await self.encoder.render_silence(
                target, self.settings.guard_silence_seconds, self.settings.bitrate
            )
        except TranscodeFailed as exc:
            logger.warning("Guard silence unavailable; tracks will be written back to back", extra={"error": str(exc)})
            return None

    async def _prepare_bumpers(self, sources: list[str]) -> list[Path]:
        """Re-encode bumpers into the stream format once per cache directory.

        A bumper that cannot be prepared keeps its slot and falls back to
        silence when its turn comes.
        """

        directory = self.cache_dir / BUMPER_DIRNAME
        directory.mkdir(parents=True, exist_ok=True)
        prepared: list[Path] = []
        for position, source in enumerate(sources):
            origin = Path(source).expanduser()
            target = directory / f"{position:02d}-{sanitize_filename(origin.stem, 80)}.mp3"
            prepared.append(target)
            if target.is_file():
                continue
            if not origin.is_file():
                logger.warning("Bumper source missing", extra={"bumper": source})
                continue
            try:
                await self.encoder.encode_once(origin, target, self.settings.bitrate)
            except TranscodeFailed as exc:
                target.unlink(missing_ok=True)
                logger.warning("Bumper could not be prepared", extra={"bumper": source, "error": str(exc)})
                continue
            logger.info("Bumper prepared", extra={"bumper": target.name})
        return prepared

    def _on_sequencer_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.critical("Playback loop ended", exc_info=exc)
        self.fatal_error = str(exc)
        if isinstance(exc, ConfigurationError) and self._started:
            self._halt_task = asyncio.create_task(self._halt(), name="relay-halt")

    async def _halt(self) -> None:
        """Take the relay off the air after the playback loop died for good."""

        logger.critical("Stopping relay: playback cannot continue", extra={"error": self.fatal_error})
        await self.supervisor.shutdown()
        await self.synchronizer.stop()
        await self.writer.close()
        self._started = False
