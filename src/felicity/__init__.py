"""Poll Felicity Solar battery packs and serve their latest state over HTTP."""

from felicity.client import Client
from felicity.exceptions import (
    AuthenticationError,
    DirectoryError,
    EncodingError,
    FelicityError,
    MalformedResponseError,
    NotAuthenticated,
    SnapshotError,
    UnsupportedDeviceError,
)
from felicity.session import Session, SessionManager, SessionStore
from felicity.snapshot import BatterySnapshot, CacheEntry
from felicity.worker import Poller

__all__ = [
    "AuthenticationError",
    "BatterySnapshot",
    "CacheEntry",
    "Client",
    "DirectoryError",
    "EncodingError",
    "FelicityError",
    "MalformedResponseError",
    "NotAuthenticated",
    "Poller",
    "Session",
    "SessionManager",
    "SessionStore",
    "SnapshotError",
    "UnsupportedDeviceError",
]
