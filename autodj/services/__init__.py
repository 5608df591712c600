"""Relay components."""

from .content_cache import ContentCache
from .encoder import Encoder
from .engine import RelayEngine
from .fetcher import MediaFetcher
from .metadata_sync import MetadataSynchronizer
from .pipe_writer import PipeWriter
from .queue_resolver import QueueResolver
from .relay_supervisor import RelaySupervisor
from .sequencer import BumperSet, PlaybackSequencer

__all__ = [
    "BumperSet",
    "ContentCache",
    "Encoder",
    "MediaFetcher",
    "MetadataSynchronizer",
    "PipeWriter",
    "PlaybackSequencer",
    "QueueResolver",
    "RelayEngine",
    "RelaySupervisor",
]
