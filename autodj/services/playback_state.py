"""Shared now-playing state."""
from __future__ import annotations

from typing import Callable

from autodj.core.types import PlaybackState


class PlaybackStateStore:
    """Holds the current :class:`PlaybackState`.

    Writers build a new immutable snapshot and swap the reference; readers
    take whatever snapshot is current and never wait.
    """

    def __init__(self) -> None:
        self._snapshot = PlaybackState()

    @property
    def snapshot(self) -> PlaybackState:
        return self._snapshot

    def update(self, change: Callable[[PlaybackState], PlaybackState]) -> PlaybackState:
        # Runs to completion on the event loop thread, so no interleaving.
        self._snapshot = change(self._snapshot)
        return self._snapshot

    def set_listener_count(self, count: int | None) -> PlaybackState:
        return self.update(
            lambda current: PlaybackState(
                current_title=current.current_title,
                last_updated_at=current.last_updated_at,
                listener_count=count,
            )
        )
