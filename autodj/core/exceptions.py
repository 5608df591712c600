"""Custom exception hierarchy for the AutoDJ relay."""
from __future__ import annotations


class AutoDJError(Exception):
    """Base exception for all AutoDJ errors."""


class ConfigurationError(AutoDJError):
    """Configuration-related errors. Fatal at startup."""


class NoSourcesConfigured(ConfigurationError):
    """The rotation resolved to an empty queue."""


class FetchError(AutoDJError):
    """A track could not be materialised; the item is skipped."""

    def __init__(self, message: str, *, reference: str | None = None) -> None:
        super().__init__(message)
        self.reference = reference


class MetadataFetchFailed(FetchError):
    """Probing the source for metadata failed."""


class MediaNotFound(MetadataFetchFailed):
    """The fetcher reported that the source does not exist."""


class DownloadFailed(FetchError):
    """Downloading the source audio failed."""


class TranscodeFailed(FetchError):
    """Converting the downloaded audio to the cache format failed."""


class CacheStorageError(FetchError):
    """The cache directory could not be read or written for this item."""


class RelayProcessError(AutoDJError):
    """The persistent encoder could not be spawned or exited."""


class PipeWriteError(AutoDJError):
    """Writing into the encoder pipe failed."""


class PipeWriteFailed(PipeWriteError):
    """Writing an artifact failed after all retries."""


class SynchronizerError(AutoDJError):
    """Broadcast server synchronisation errors. Never propagated."""


class MetadataSyncError(SynchronizerError):
    """Pushing now-playing metadata failed."""


class ListenerPollError(SynchronizerError):
    """Fetching or parsing listener statistics failed."""
