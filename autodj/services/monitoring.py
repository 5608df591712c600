"""Relay health checks."""
from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil

from autodj.core.types import RelaySnapshot
from autodj.schemas import HealthStatus
from autodj.utils import collect_lock_warnings

logger = logging.getLogger(__name__)


class RelayMonitor:
    """Summarise encoder, host and lock health into a :class:`HealthStatus`."""

    # The pipe writer holds its lock for a whole track, so holds are only
    # suspicious past the length of a long mix.
    def __init__(
        self,
        *,
        cache_dir: Path,
        disk_threshold_gb: float = 2.0,
        lock_wait_threshold: float = 30.0,
        lock_hold_threshold: float = 4 * 3600.0,
    ) -> None:
        self.cache_dir = cache_dir
        self.disk_threshold_gb = disk_threshold_gb
        self.lock_wait_threshold = lock_wait_threshold
        self.lock_hold_threshold = lock_hold_threshold

    def check_health(
        self,
        relay: RelaySnapshot,
        *,
        playback_running: bool = True,
        playback_error: Optional[str] = None,
    ) -> HealthStatus:
        encoder_running = relay.running
        disk_ok, free_gb = self._check_disk_space(self.cache_dir, self.disk_threshold_gb)
        cpu_ok, cpu_value = self._check_cpu_usage()
        memory_ok, memory_value = self._check_memory_usage()
        lock_warnings = collect_lock_warnings(
            wait_threshold=self.lock_wait_threshold, hold_threshold=self.lock_hold_threshold
        )

        checks = {
            "encoder_running": encoder_running,
            "playback_loop": playback_running,
            "disk_space": disk_ok,
            "cpu_usage": cpu_ok,
            "memory_usage": memory_ok,
            "locks": not lock_warnings,
        }

        issues: list[str] = []
        if not encoder_running:
            issues.append(f"Encoder not running ({relay.state.value})")
        if not playback_running:
            issues.append(f"Playback loop stopped: {playback_error}" if playback_error else "Playback loop not running")
        if not disk_ok:
            issues.append(f"Low disk space: {free_gb:.1f} GB free")
        if not cpu_ok:
            issues.append(f"CPU usage high: {cpu_value:.1f}%")
        if not memory_ok:
            issues.append(f"Memory usage high: {memory_value:.1f}%")
        issues.extend(lock_warnings)
        if relay.last_error and not encoder_running:
            issues.append(relay.last_error)

        severity = self._determine_severity(checks)
        metrics = {
            "cpu_percent": cpu_value,
            "memory_percent": memory_value,
            "disk_free_gb": round(free_gb, 2),
            "restarts": relay.restarts,
            "uptime_seconds": self._uptime_seconds(relay.started_at if encoder_running else None),
        }
        status = HealthStatus(checks=checks, metrics=metrics, issues=issues, severity=severity)
        if severity != "ok":
            logger.warning("Relay degraded", extra={"severity": severity, "summary": status.summary})
        return status

    def _check_disk_space(self, path: Path, threshold_gb: float) -> tuple[bool, float]:
        target = path
        while not target.exists() and target != target.parent:
            target = target.parent
        usage = shutil.disk_usage(target)
        free_gb = usage.free / 1024 / 1024 / 1024
        return free_gb >= threshold_gb, free_gb

    def _check_cpu_usage(self) -> tuple[bool, float]:
        value = psutil.cpu_percent(interval=0.1)
        return value < 90.0, value

    def _check_memory_usage(self) -> tuple[bool, float]:
        memory = psutil.virtual_memory()
        return memory.percent < 90.0, memory.percent

    def _uptime_seconds(self, started_at: datetime | None) -> int:
        if not started_at:
            return 0
        now = datetime.now(timezone.utc)
        return int((now - started_at).total_seconds())

    def _determine_severity(self, checks: dict[str, bool]) -> str:
        if not checks.get("encoder_running") or not checks.get("playback_loop", True):
            return "critical"
        if any(not healthy for healthy in checks.values()):
            return "warning"
        return "ok"
