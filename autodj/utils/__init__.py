"""Utility helpers for the AutoDJ relay."""

from .locks import LockAcquisitionTimeout, LockSnapshot, ObservedLock, collect_lock_warnings
from .singleflight import SingleFlight

__all__ = [
    "ObservedLock",
    "collect_lock_warnings",
    "LockSnapshot",
    "LockAcquisitionTimeout",
    "SingleFlight",
]
