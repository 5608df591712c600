"""Pydantic models served by the status API."""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class RelayStatus(BaseModel):
    """Health of the persistent encoder process."""

    state: Literal["idle", "starting", "running", "restarting", "stopped"]
    running: bool
    pid: Optional[int]
    generation: int = Field(ge=0)
    restarts: int = Field(ge=0)
    started_at: Optional[datetime]
    last_exit_code: Optional[int]
    last_error: Optional[str]


class FetcherStatus(BaseModel):
    last_reference: Optional[str]
    command: list[str] = Field(default_factory=list)
    stderr: Optional[str]
    error: Optional[str]
    auth_state: str


class CookieStatus(BaseModel):
    """What is known about the credential bundle, never its contents."""

    path: str
    exists: bool
    size_bytes: Optional[int] = Field(None, ge=0)
    lines: Optional[int] = Field(None, ge=0)


class StatusResponse(BaseModel):
    station: str
    now_playing: Optional[str]
    bitrate: str
    listeners: Optional[int]
    updated: Optional[datetime]
    sequencer_state: str
    rotations: int = Field(0, ge=0)
    tracks_streamed: int = Field(0, ge=0)
    relay: RelayStatus
    fetcher: FetcherStatus
    cookies: CookieStatus


class HealthStatus(BaseModel):
    checks: dict[str, bool]
    metrics: dict[str, float | int]
    issues: list[str]
    severity: Literal["ok", "warning", "critical"]

    @property
    def summary(self) -> str:
        if not self.issues:
            return "All systems operational"
        return "; ".join(self.issues)
