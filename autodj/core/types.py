"""Shared type definitions for the AutoDJ relay."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

TrackReference = str


@dataclass(frozen=True)
class TrackMetadata:
    """What the media fetcher reports about a source."""

    id: str
    title: str
    uploader: Optional[str] = None


@dataclass(frozen=True)
class CacheEntry:
    """A ready-to-stream artifact in the content cache."""

    key: str
    artifact_path: Path
    created_at: datetime
    cached: bool = False

    @property
    def title(self) -> str:
        return self.key


@dataclass(frozen=True)
class PlaybackState:
    """Immutable now-playing snapshot; replaced wholesale on every change."""

    current_title: Optional[str] = None
    last_updated_at: Optional[datetime] = None
    listener_count: Optional[int] = None


class RelayState(str, Enum):
    """Lifecycle of the persistent encoder process."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class SequencerState(str, Enum):
    """Playback loop phases."""

    RESOLVING = "resolving"
    FETCHING = "fetching"
    BUMPER_INJECT = "bumper_inject"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RelaySnapshot:
    """Immutable snapshot of encoder supervision state."""

    state: RelayState
    pid: Optional[int]
    generation: int
    restarts: int
    started_at: Optional[datetime]
    last_exit_code: Optional[int]
    last_error: Optional[str]

    @property
    def running(self) -> bool:
        return self.state == RelayState.RUNNING and self.pid is not None


@dataclass
class FetcherDiagnostics:
    """Details about the most recent media fetcher invocation."""

    last_reference: Optional[str] = None
    command: list[str] = field(default_factory=list)
    stderr: Optional[str] = None
    error: Optional[str] = None
    auth_state: str = "Unknown"
