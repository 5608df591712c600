"""yt-dlp backed media fetcher."""
from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from autodj.core.exceptions import DownloadFailed, MediaNotFound, MetadataFetchFailed
from autodj.core.types import FetcherDiagnostics, TrackMetadata, TrackReference
from autodj.utils.process import CommandError, run_captured

logger = logging.getLogger(__name__)

AUDIO_SUFFIXES = {".mp3", ".m4a", ".aac", ".ogg", ".opus", ".flac", ".wav", ".webm"}

# Phrases yt-dlp prints when the item itself is gone rather than unreachable.
_NOT_FOUND_MARKERS = (
    "video unavailable",
    "http error 404",
    "does not exist",
    "this video has been removed",
    "private video",
    "unable to find",
)


def is_local_reference(ref: TrackReference) -> bool:
    parsed = urlparse(ref)
    return parsed.scheme in {"", "file"}


def local_path(ref: TrackReference) -> Path:
    parsed = urlparse(ref)
    return Path(parsed.path if parsed.scheme == "file" else ref).expanduser()


class MediaFetcher:
    """Probe, download and list sources through the ``yt-dlp`` command."""

    def __init__(
        self,
        *,
        binary: str = "yt-dlp",
        cookies_path: Optional[Path] = None,
        probe_timeout: float = 120.0,
        download_timeout: float = 900.0,
    ) -> None:
        self.binary = binary
        self.cookies_path = cookies_path
        self.probe_timeout = probe_timeout
        self.download_timeout = download_timeout
        self.diagnostics = FetcherDiagnostics()

    def _cookie_args(self) -> list[str]:
        if self.cookies_path is not None and self.cookies_path.exists():
            self.diagnostics.auth_state = "Cookies loaded"
            return ["--cookies", str(self.cookies_path)]
        self.diagnostics.auth_state = "No cookies"
        return []

    async def _run(self, ref: TrackReference, args: list[str], *, timeout: float) -> str:
        command = [self.binary, *args]
        self.diagnostics.last_reference = ref
        self.diagnostics.command = command
        self.diagnostics.stderr = None
        self.diagnostics.error = None
        try:
            result = await run_captured(command, timeout=timeout)
        except CommandError as exc:
            self.diagnostics.stderr = exc.stderr or None
            self.diagnostics.error = str(exc)
            raise
        self.diagnostics.stderr = result.stderr or None
        return result.stdout

    @staticmethod
    def _is_not_found(exc: CommandError) -> bool:
        text = (exc.stderr or str(exc)).lower()
        return any(marker in text for marker in _NOT_FOUND_MARKERS)

    async def probe(self, ref: TrackReference) -> TrackMetadata:
        """Return structured metadata for ``ref``."""

        if is_local_reference(ref):
            path = local_path(ref)
            if not path.is_file():
                raise MediaNotFound(f"Local source missing: {path}", reference=ref)
            return TrackMetadata(id=path.stem, title=path.stem, uploader=None)

        args = ["-j", "--no-warnings", "--no-playlist", *self._cookie_args(), ref]
        try:
            stdout = await self._run(ref, args, timeout=self.probe_timeout)
        except CommandError as exc:
            if self._is_not_found(exc):
                raise MediaNotFound(f"Source not found: {ref}", reference=ref) from exc
            raise MetadataFetchFailed(f"yt-dlp metadata fetch failed: {exc}", reference=ref) from exc

        try:
            payload = json.loads(stdout.strip().splitlines()[0])
        except (IndexError, ValueError) as exc:
            raise MetadataFetchFailed(f"yt-dlp returned unreadable metadata for {ref}", reference=ref) from exc

        title = payload.get("title") or payload.get("fulltitle") or "unknown"
        return TrackMetadata(
            id=str(payload.get("id") or ""),
            title=str(title),
            uploader=payload.get("uploader") or payload.get("channel"),
        )

    async def download(self, ref: TrackReference, scratch_dir: Path, file_id: str) -> Path:
        """Download the best available audio for ``ref`` into ``scratch_dir``."""

        scratch_dir.mkdir(parents=True, exist_ok=True)
        if is_local_reference(ref):
            source = local_path(ref)
            target = scratch_dir / f"{file_id}{source.suffix}"
            try:
                shutil.copyfile(source, target)
            except OSError as exc:
                raise DownloadFailed(f"Unable to copy {source}: {exc}", reference=ref) from exc
            return target

        template = scratch_dir / f"{file_id}.%(ext)s"
        args = [
            "-f",
            "bestaudio",
            "--no-playlist",
            "--no-progress",
            "-o",
            str(template),
            *self._cookie_args(),
            ref,
        ]
        logger.info("Downloading source", extra={"reference": ref})
        try:
            await self._run(ref, args, timeout=self.download_timeout)
        except CommandError as exc:
            if self._is_not_found(exc):
                raise MediaNotFound(f"Source not found: {ref}", reference=ref) from exc
            raise DownloadFailed(f"yt-dlp download failed: {exc}", reference=ref) from exc

        candidates = sorted(
            path for path in scratch_dir.glob(f"{file_id}.*") if not path.name.endswith(".part")
        )
        if not candidates:
            raise DownloadFailed(f"Downloaded file not found in {scratch_dir}", reference=ref)
        return candidates[0]

    async def list_playlist(self, ref: TrackReference) -> list[TrackReference]:
        """Expand a playlist into its item references."""

        if is_local_reference(ref):
            directory = local_path(ref)
            if not directory.is_dir():
                raise MediaNotFound(f"Local playlist missing: {directory}", reference=ref)
            return [
                str(path)
                for path in sorted(directory.iterdir())
                if path.is_file() and path.suffix.lower() in AUDIO_SUFFIXES
            ]

        args = ["--flat-playlist", "-J", "--no-warnings", *self._cookie_args(), ref]
        try:
            stdout = await self._run(ref, args, timeout=self.probe_timeout)
        except CommandError as exc:
            if self._is_not_found(exc):
                raise MediaNotFound(f"Playlist not found: {ref}", reference=ref) from exc
            raise MetadataFetchFailed(f"yt-dlp playlist listing failed: {exc}", reference=ref) from exc

        try:
            payload = json.loads(stdout)
        except ValueError as exc:
            raise MetadataFetchFailed(f"yt-dlp returned unreadable playlist for {ref}", reference=ref) from exc

        references: list[TrackReference] = []
        for entry in payload.get("entries") or []:
            if not entry:
                continue
            url = entry.get("webpage_url") or entry.get("url")
            if not url and entry.get("id"):
                url = f"https://www.youtube.com/watch?v={entry['id']}"
            if url:
                references.append(str(url))
        return references
