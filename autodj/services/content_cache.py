"""Content cache mapping source references to ready-to-stream MP3 files."""
from __future__ import annotations

import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from autodj.core.exceptions import CacheStorageError, FetchError
from autodj.core.types import CacheEntry, TrackMetadata, TrackReference
from autodj.services.encoder import Encoder
from autodj.services.fetcher import MediaFetcher
from autodj.utils import SingleFlight

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".mp3"

_BRACKETED = (
    re.compile(r"\[[^\]]*\]"),
    re.compile(r"\([^)]*\)"),
    re.compile(r"\{[^}]*\}"),
)
_NOISE = re.compile(
    r"\b("
    r"official music video|official video|music video|lyric video|lyrics|"
    r"hd|hq|audio|video|official|remastered|visualizer|clip"
    r")\b",
    re.IGNORECASE,
)
_DASHES = re.compile(r"\s*[-–—]\s*")
_UNSAFE = re.compile(r'[\x00-\x1f<>:"/\\|?*\x7f]')
_SPACES = re.compile(r"\s+")


def clean_title(raw: str) -> str:
    """Strip bracketed annotations and marketing noise from a title."""

    if not raw:
        return ""
    text = raw
    for pattern in _BRACKETED:
        text = pattern.sub("", text)
    text = _NOISE.sub("", text)
    text = _DASHES.sub(" - ", text)
    text = _SPACES.sub(" ", text).strip()
    # Noise removal can leave dangling separators behind.
    text = text.strip(" -")
    return text or raw.strip()


def sanitize_filename(name: str, max_bytes: int = 200) -> str:
    """Remove filesystem-unsafe characters and cap the UTF-8 length.

    Filesystems limit names in bytes, so multibyte titles are cut on a
    character boundary at ``max_bytes``.
    """

    text = _UNSAFE.sub("", name)
    text = _SPACES.sub(" ", text).strip()
    text = text.lstrip(".")
    encoded = text.encode("utf-8")
    if len(encoded) > max_bytes:
        text = encoded[:max_bytes].decode("utf-8", "ignore")
    return text.rstrip()


def canonical_key(metadata: TrackMetadata, max_bytes: int = 200) -> str:
    """Derive the "Uploader - Title" key addressing the cache."""

    title = clean_title(metadata.title)
    human = title
    if metadata.uploader and " - " not in title:
        human = f"{metadata.uploader} - {title}"
    key = sanitize_filename(human, max_bytes)
    return key or sanitize_filename(metadata.id or "unknown", max_bytes) or "unknown"


class ContentCache:
    """Materialise track references as MP3 files in ``cache_dir``.

    Entries are never evicted: once a canonical path exists it is reused for
    every later request that derives the same key.
    """

    def __init__(
        self,
        *,
        cache_dir: Path,
        scratch_dir: Path,
        fetcher: MediaFetcher,
        encoder: Encoder,
        bitrate: str,
        key_max_bytes: int = 200,
    ) -> None:
        self.cache_dir = cache_dir
        self.scratch_dir = scratch_dir
        self.fetcher = fetcher
        self.encoder = encoder
        self.bitrate = bitrate
        self.key_max_bytes = key_max_bytes
        self._by_reference: dict[TrackReference, CacheEntry] = {}
        self._reference_flight: SingleFlight[CacheEntry] = SingleFlight("cache-reference")
        self._key_flight: SingleFlight[CacheEntry] = SingleFlight("cache-key")
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)

    def path_for_key(self, key: str) -> Path:
        return self.cache_dir / f"{key}{ARTIFACT_SUFFIX}"

    def lookup(self, ref: TrackReference) -> Optional[CacheEntry]:
        """Return the remembered entry for ``ref`` if its artifact still exists."""

        entry = self._by_reference.get(ref)
        if entry is not None and entry.artifact_path.exists():
            return entry
        return None

    async def ensure_artifact(self, ref: TrackReference) -> CacheEntry:
        """Return a cache entry for ``ref``, fetching and transcoding on a miss."""

        remembered = self.lookup(ref)
        if remembered is not None:
            return CacheEntry(
                key=remembered.key,
                artifact_path=remembered.artifact_path,
                created_at=remembered.created_at,
                cached=True,
            )
        return await self._reference_flight.do(ref, lambda: self._resolve(ref))

    async def _resolve(self, ref: TrackReference) -> CacheEntry:
        metadata = await self.fetcher.probe(ref)
        key = canonical_key(metadata, self.key_max_bytes)
        path = self.path_for_key(key)

        try:
            if path.exists():
                entry = self._existing_entry(key, path)
                logger.info("Cache hit", extra={"reference": ref, "key": key})
            else:
                entry = await self._key_flight.do(key, lambda: self._materialise(ref, metadata, key, path))
        except OSError as exc:
            logger.error("Cache storage failed", extra={"reference": ref, "key": key, "error": str(exc)})
            raise CacheStorageError(f"Unable to use cache path {path.name}: {exc}", reference=ref) from exc
        self._by_reference[ref] = entry
        return entry

    @staticmethod
    def _existing_entry(key: str, path: Path) -> CacheEntry:
        created = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return CacheEntry(key=key, artifact_path=path, created_at=created, cached=True)

    async def _materialise(self, ref: TrackReference, metadata: TrackMetadata, key: str, path: Path) -> CacheEntry:
        # Another reference with the same key may have finished while this one probed.
        if path.exists():
            return self._existing_entry(key, path)

        file_id = sanitize_filename(metadata.id, 64) or uuid.uuid4().hex
        logger.info("Cache miss; fetching", extra={"reference": ref, "key": key})
        downloaded = await self.fetcher.download(ref, self.scratch_dir, file_id)
        partial = self.cache_dir / f".{uuid.uuid4().hex}.partial{ARTIFACT_SUFFIX}"
        try:
            await self.encoder.encode_once(downloaded, partial, self.bitrate)
            try:
                os.replace(partial, path)
            except OSError as exc:
                raise CacheStorageError(f"Unable to place artifact at {path}: {exc}") from exc
        except FetchError as exc:
            if exc.reference is None:
                exc.reference = ref
            raise
        finally:
            partial.unlink(missing_ok=True)
            downloaded.unlink(missing_ok=True)

        logger.info("Cached new artifact", extra={"reference": ref, "path": str(path)})
        return CacheEntry(key=key, artifact_path=path, created_at=datetime.now(timezone.utc), cached=False)
