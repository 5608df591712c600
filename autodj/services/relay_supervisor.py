"""Supervision of the single persistent FFmpeg relay process."""
from __future__ import annotations

import asyncio
import logging
import os
import stat
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

from autodj.core.exceptions import RelayProcessError
from autodj.core.retry import RetryCalculator, RetryConfig
from autodj.core.types import RelaySnapshot, RelayState
from autodj.utils import LockAcquisitionTimeout, ObservedLock

logger = logging.getLogger(__name__)

# A process that stayed up this long is considered healthy again.
STABLE_RUN_SECONDS = 60.0


@dataclass(frozen=True)
class RelayExit:
    """Exit notification travelling from a watcher to the supervision task."""

    generation: int
    returncode: Optional[int]
    reason: str


class RelaySupervisor:
    """Keep exactly one encoder process alive, reading from a FIFO.

    Exits are reported through an internal queue; the supervision task is the
    only place restarts are scheduled from, and it never gives up.
    """

    def __init__(
        self,
        *,
        command: Sequence[str],
        pipe_path: Path,
        restart_policy: RetryConfig,
        stop_timeout: float = 10.0,
        lock_timeout: float = 30.0,
    ) -> None:
        self._command = list(command)
        self.pipe_path = pipe_path
        self._lock = ObservedLock("relay_process_lock")
        self._process: Optional[asyncio.subprocess.Process] = None
        self._state = RelayState.IDLE
        self._generation = 0
        self._restarts = 0
        self._consecutive_failures = 0
        self._started_at: Optional[datetime] = None
        self._last_exit_code: Optional[int] = None
        self._last_error: Optional[str] = None
        self._stderr_lines: deque[str] = deque(maxlen=50)
        self._exits: asyncio.Queue[RelayExit] = asyncio.Queue()
        self._supervise_task: Optional[asyncio.Task[None]] = None
        self._watch_task: Optional[asyncio.Task[None]] = None
        self._stderr_task: Optional[asyncio.Task[None]] = None
        self._release_listeners: list[Callable[[], None]] = []
        self._retry_calculator = RetryCalculator(restart_policy)
        self._stop_timeout = stop_timeout
        self._lock_timeout = lock_timeout
        self._shutdown = False

    @property
    def generation(self) -> int:
        """Incremented on every spawn; handles opened earlier are stale."""

        return self._generation

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def add_release_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked whenever the process goes away."""

        self._release_listeners.append(callback)

    def snapshot(self) -> RelaySnapshot:
        process = self._process
        running = process is not None and process.returncode is None
        return RelaySnapshot(
            state=self._state,
            pid=process.pid if running else None,
            generation=self._generation,
            restarts=self._restarts,
            started_at=self._started_at,
            last_exit_code=self._last_exit_code,
            last_error=self._last_error,
        )

    async def start(self) -> None:
        """Spawn the first process and begin supervising exits."""

        self._shutdown = False
        if self._supervise_task is None or self._supervise_task.done():
            self._supervise_task = asyncio.create_task(self._supervise(), name="relay-supervisor")
        try:
            await self.ensure_running()
        except RelayProcessError as exc:
            logger.error("Initial encoder launch failed; will retry", extra={"error": str(exc)})
            await self._exits.put(RelayExit(self._generation, None, str(exc)))

    async def ensure_running(self) -> int:
        """Spawn the encoder unless one is alive; return the live generation."""

        if self._shutdown:
            raise RelayProcessError("Relay supervisor has been shut down")

        try:
            await self._lock.acquire(timeout=self._lock_timeout)
        except LockAcquisitionTimeout as exc:
            logger.error("Encoder lock unavailable", extra={"error": str(exc)})
            raise RelayProcessError(f"Encoder lock unavailable: {exc}") from exc
        try:
            if self._process is not None and self._process.returncode is None:
                return self._generation

            self._state = RelayState.STARTING
            try:
                self._prepare_pipe()
                process = await self._spawn_process(self._command)
            except (OSError, RelayProcessError) as exc:
                self._state = RelayState.RESTARTING
                self._last_error = str(exc)
                logger.exception("Failed to launch encoder")
                if isinstance(exc, RelayProcessError):
                    raise
                raise RelayProcessError(f"Failed to launch encoder: {exc}") from exc

            self._generation += 1
            self._process = process
            self._state = RelayState.RUNNING
            self._started_at = datetime.now(timezone.utc)
            self._stderr_lines.clear()
            self._stderr_task = asyncio.create_task(self._capture_stderr(process.stderr))
            self._watch_task = asyncio.create_task(self._watch_process(process, self._generation))
            logger.info(
                "Encoder started",
                extra={"pid": process.pid, "generation": self._generation, "pipe": str(self.pipe_path)},
            )
            return self._generation
        finally:
            self._lock.release()

    async def request_restart(self, reason: str) -> None:
        """Ask for a fresh process; the supervision task performs the restart."""

        if self._shutdown:
            return
        async with self._lock:
            process = self._process
            generation = self._generation
        logger.warning("Encoder restart requested", extra={"reason": reason, "generation": generation})
        if process is not None and process.returncode is None:
            # The watcher reports the exit, which drives the restart.
            process.terminate()
        else:
            await self._exits.put(RelayExit(generation, None, reason))

    async def shutdown(self) -> None:
        """Stop supervising, cancel pending restarts and terminate the process."""

        self._shutdown = True
        current = asyncio.current_task()
        for task in (self._supervise_task, self._watch_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await asyncio.wait_for(task, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
        self._supervise_task = None
        self._watch_task = None

        async with self._lock:
            process = self._process
            self._process = None
            self._state = RelayState.STOPPED

        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Force killing encoder after timeout")
                process.kill()
                await process.wait()

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._stderr_task = None
        self._notify_release()
        logger.info("Encoder supervisor stopped")

    async def _supervise(self) -> None:
        while not self._shutdown:
            event = await self._exits.get()
            if self._shutdown:
                break
            async with self._lock:
                if self._process is not None and self._process.returncode is None:
                    # A newer process already replaced the one that exited.
                    logger.debug("Ignoring stale exit", extra={"generation": event.generation})
                    continue
                ran_for = None
                if self._started_at is not None:
                    ran_for = (datetime.now(timezone.utc) - self._started_at).total_seconds()
                if ran_for is not None and ran_for >= STABLE_RUN_SECONDS:
                    self._consecutive_failures = 0
                self._process = None
                self._state = RelayState.RESTARTING
                self._restarts += 1
                self._consecutive_failures += 1
                self._last_exit_code = event.returncode
                if event.reason:
                    self._last_error = event.reason
                attempt = self._consecutive_failures

            self._notify_release()

            delay = self._retry_calculator.calculate_delay(attempt)
            logger.warning(
                "Restarting encoder after backoff",
                extra={
                    "attempt": attempt,
                    "delay_seconds": f"{delay:.2f}",
                    "returncode": event.returncode,
                    "reason": event.reason,
                },
            )
            await asyncio.sleep(delay)
            if self._shutdown:
                break

            try:
                await self.ensure_running()
            except RelayProcessError as exc:
                await self._exits.put(RelayExit(self._generation, None, str(exc)))

    async def _watch_process(self, process: asyncio.subprocess.Process, generation: int) -> None:
        returncode = await process.wait()
        stderr = "\n".join(self._stderr_lines).strip()
        reason = stderr.splitlines()[-1] if stderr else f"Encoder exited with code {returncode}"
        if self._shutdown:
            return
        logger.error(
            "Encoder exited",
            extra={"returncode": returncode, "generation": generation, "stderr": stderr[-2000:]},
        )
        await self._exits.put(RelayExit(generation, returncode, reason))

    async def _capture_stderr(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return

        max_line_length = 8192

        while True:
            try:
                line = await asyncio.wait_for(stream.readline(), timeout=5.0)
            except asyncio.TimeoutError:
                continue

            if not line:
                break

            if len(line) > max_line_length:
                continue

            decoded = line.decode("utf-8", "ignore").strip()
            if decoded:
                self._stderr_lines.append(decoded)
                logger.info("Encoder: %s", decoded)

    def _notify_release(self) -> None:
        for callback in self._release_listeners:
            try:
                callback()
            except Exception:  # pragma: no cover - listeners are internal
                logger.exception("Release listener failed")

    def _prepare_pipe(self) -> None:
        """Create the FIFO, replacing anything else that sits at its path."""

        path = self.pipe_path
        try:
            if path.exists() or path.is_symlink():
                if stat.S_ISFIFO(path.stat().st_mode):
                    return
                path.unlink()
            path.parent.mkdir(parents=True, exist_ok=True)
            os.mkfifo(path)
        except OSError as exc:
            raise RelayProcessError(f"Unable to create pipe at {path}: {exc}") from exc

    async def _spawn_process(self, command: Sequence[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
