"""Feed artifacts into the relay pipe without ever closing it between tracks."""
from __future__ import annotations

import asyncio
import errno
import logging
import os
import time
from pathlib import Path
from typing import BinaryIO, Optional, Sequence

from autodj.core.exceptions import PipeWriteFailed, RelayProcessError
from autodj.core.retry import RetryCalculator, RetryConfig
from autodj.services.relay_supervisor import RelaySupervisor
from autodj.utils import ObservedLock

logger = logging.getLogger(__name__)


class PipeWriter:
    """The single writer attached to the encoder's input pipe.

    The handle stays open across tracks; closing it would deliver EOF and the
    encoder would exit. A failed attempt restarts from the beginning of the
    file, so a recovery may repeat a few seconds of audio.
    """

    def __init__(
        self,
        *,
        supervisor: RelaySupervisor,
        pipe_path: Path,
        retry_policy: RetryConfig,
        silence_path: Optional[Path] = None,
        open_timeout: float = 15.0,
        write_timeout: float = 30.0,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._supervisor = supervisor
        self.pipe_path = pipe_path
        self.silence_path = silence_path
        self._retry_calculator = RetryCalculator(retry_policy)
        self._open_timeout = open_timeout
        self._write_timeout = write_timeout
        self._chunk_size = chunk_size
        self._lock = ObservedLock("pipe_writer_lock")
        self._handle: Optional[BinaryIO] = None
        self._handle_generation: Optional[int] = None
        self._pending: Optional[asyncio.Future[int]] = None
        self.bytes_written = 0
        supervisor.add_release_listener(self.release_handle)

    @property
    def attached(self) -> bool:
        return self._handle is not None and not self._handle.closed

    async def write_artifact(self, path: Path, max_retries: Optional[int] = None) -> int:
        """Write guard silence followed by ``path``; return the bytes written."""

        if not path.is_file():
            raise PipeWriteFailed(f"Artifact missing: {path}")
        payloads = [self.silence_path, path] if self._has_silence() else [path]
        return await self._write_with_retries(payloads, label=path.name, max_retries=max_retries)

    async def write_silence(self, max_retries: Optional[int] = None) -> int:
        """Write only the guard silence; a no-op when none was rendered."""

        silence = self.silence_path
        if silence is None or not silence.is_file():
            logger.debug("No guard silence available; skipping")
            return 0
        return await self._write_with_retries([silence], label="silence", max_retries=max_retries)

    def release_handle(self) -> None:
        """Drop the pipe handle; the next write reopens against the live process."""

        handle = self._handle
        self._handle = None
        self._handle_generation = None
        if handle is None:
            return
        pending = self._pending
        if pending is not None and not pending.done():
            # A worker thread may still be blocked inside write(); close after it returns.
            pending.add_done_callback(lambda fut, h=handle: self._close_quietly(h, fut))
        else:
            self._close_quietly(handle)

    async def close(self) -> None:
        async with self._lock:
            self.release_handle()

    def _has_silence(self) -> bool:
        return self.silence_path is not None and self.silence_path.is_file()

    async def _write_with_retries(
        self, payloads: Sequence[Optional[Path]], *, label: str, max_retries: Optional[int]
    ) -> int:
        limit = self._retry_calculator.config.max_attempts if max_retries is None else max_retries
        async with self._lock:
            attempt = 0
            while True:
                attempt += 1
                try:
                    written = await self._write_once([p for p in payloads if p is not None])
                except (OSError, RelayProcessError) as exc:
                    self.release_handle()
                    if self._supervisor.is_shut_down:
                        logger.info("Relay is shutting down; abandoning write", extra={"artifact": label})
                        raise PipeWriteFailed(f"Writing {label} abandoned: relay shut down") from exc
                    if limit is not None and attempt > limit:
                        logger.error(
                            "Pipe write failed; giving up",
                            extra={"artifact": label, "attempts": attempt, "error": str(exc)},
                        )
                        raise PipeWriteFailed(f"Writing {label} failed after {attempt} attempts: {exc}") from exc
                    delay = self._retry_calculator.config.base_delay
                    logger.warning(
                        "Pipe write failed; restarting encoder and retrying from the start",
                        extra={"artifact": label, "attempt": attempt, "error": str(exc)},
                    )
                    await self._supervisor.request_restart(f"pipe write failed: {exc}")
                    await asyncio.sleep(delay)
                    continue
                self.bytes_written += written
                return written

    async def _write_once(self, payloads: Sequence[Path]) -> int:
        generation = await self._supervisor.ensure_running()
        handle = await self._acquire_handle(generation)
        total = 0
        for source in payloads:
            total += await self._copy_file(source, handle)
        return total

    async def _acquire_handle(self, generation: int) -> BinaryIO:
        if (
            self._handle is not None
            and not self._handle.closed
            and self._handle_generation == generation
        ):
            return self._handle
        self.release_handle()
        handle = await self._open_pipe()
        self._handle = handle
        self._handle_generation = generation
        logger.info("Attached to relay pipe", extra={"pipe": str(self.pipe_path), "generation": generation})
        return handle

    async def _open_pipe(self) -> BinaryIO:
        """Open the FIFO for writing once the encoder has opened it for reading."""

        deadline = time.monotonic() + self._open_timeout
        flags = os.O_WRONLY | os.O_APPEND | os.O_NONBLOCK
        while True:
            try:
                fd = os.open(self.pipe_path, flags)
            except OSError as exc:
                if exc.errno != errno.ENXIO:
                    raise
                if time.monotonic() >= deadline:
                    raise TimeoutError(f"No reader on {self.pipe_path} after {self._open_timeout:.0f}s") from exc
                await asyncio.sleep(0.1)
                continue
            os.set_blocking(fd, True)
            return os.fdopen(fd, "ab")

    async def _copy_file(self, source: Path, handle: BinaryIO) -> int:
        total = 0
        with source.open("rb") as reader:
            while True:
                if handle.closed or self._handle is not handle:
                    raise BrokenPipeError(errno.EPIPE, "relay pipe handle was released")
                pending = asyncio.ensure_future(asyncio.to_thread(self._pump_chunk, reader, handle))
                self._pending = pending
                try:
                    count = await asyncio.wait_for(asyncio.shield(pending), timeout=self._write_timeout)
                except asyncio.TimeoutError as exc:
                    raise TimeoutError(f"Write into {self.pipe_path} stalled for {self._write_timeout:.0f}s") from exc
                if count == 0:
                    return total
                total += count

    def _pump_chunk(self, reader: BinaryIO, handle: BinaryIO) -> int:
        data = reader.read(self._chunk_size)
        if not data:
            return 0
        handle.write(data)
        handle.flush()
        return len(data)

    @staticmethod
    def _close_quietly(handle: BinaryIO, finished: Optional[asyncio.Future] = None) -> None:
        if finished is not None and not finished.cancelled():
            finished.exception()
        try:
            handle.close()
        except OSError:
            # Closing a pipe whose reader died reports EPIPE on the final flush.
            pass
