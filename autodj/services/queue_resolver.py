"""Expand configured sources into a shuffled rotation."""
from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlparse

from autodj.core.exceptions import FetchError, NoSourcesConfigured
from autodj.core.types import TrackReference
from autodj.services.fetcher import MediaFetcher, is_local_reference, local_path

logger = logging.getLogger(__name__)


def is_playlist_reference(ref: TrackReference) -> bool:
    """Return whether ``ref`` names a collection rather than a single track."""

    if is_local_reference(ref):
        return local_path(ref).is_dir()
    parsed = urlparse(ref)
    if "list" in parse_qs(parsed.query) and "/watch" not in parsed.path:
        return True
    return "/playlist" in parsed.path or "/sets/" in parsed.path


def read_sources_file(path: Path) -> list[TrackReference]:
    """One reference per line; blank lines and ``#`` comments are skipped."""

    if not path.exists():
        return []
    lines = (line.strip() for line in path.read_text(encoding="utf-8").splitlines())
    return [line for line in lines if line and not line.startswith("#")]


class QueueResolver:
    """Produce the track references for one rotation."""

    def __init__(
        self,
        *,
        fetcher: MediaFetcher,
        sources_file: Path,
        extra_sources: Optional[list[TrackReference]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.fetcher = fetcher
        self.sources_file = sources_file
        self.extra_sources = list(extra_sources or [])
        self._rng = rng or random.Random()

    def load_sources(self) -> list[TrackReference]:
        """Read the configured entries; the file is re-read on every call."""

        return [*self.extra_sources, *read_sources_file(self.sources_file)]

    async def resolve(self) -> list[TrackReference]:
        """Return a freshly shuffled, flattened rotation."""

        queue: list[TrackReference] = []
        for entry in self.load_sources():
            if not is_playlist_reference(entry):
                queue.append(entry)
                continue
            try:
                items = await self.fetcher.list_playlist(entry)
            except FetchError as exc:
                logger.warning(
                    "Playlist expansion failed; keeping entry as a single item",
                    extra={"reference": entry, "error": str(exc)},
                )
                queue.append(entry)
                continue
            logger.info("Expanded playlist", extra={"reference": entry, "items": len(items)})
            queue.extend(items)

        if not queue:
            raise NoSourcesConfigured(
                f"No sources found in {self.sources_file} and no playlist configured"
            )

        self._rng.shuffle(queue)
        return queue
