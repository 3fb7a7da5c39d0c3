"""Exceptions raised by the Felicity client, session manager and poller."""

from __future__ import annotations


class FelicityError(Exception):
    """Base class for all errors raised by this package."""


class EncodingError(FelicityError):
    """Raised when the password cannot be RSA-encrypted for login.

    Either the public key material is malformed or the password is longer
    than the key's PKCS#1 v1.5 block allows.
    """


class AuthenticationError(FelicityError):
    """Raised when the login call fails or returns an unusable token."""


class NotAuthenticated(FelicityError):
    """Raised when an authorized call is attempted without a valid session.

    :meth:`SessionManager.ensure_valid` must be awaited first.
    """


class DirectoryError(FelicityError):
    """Raised when the device list cannot be fetched or parsed."""


class SnapshotError(FelicityError):
    """Raised when a single device's snapshot cannot be fetched.

    Failures of this kind are local to one device; the poller keeps going.
    """


class MalformedResponseError(SnapshotError):
    """Raised when a snapshot response has no usable data payload."""


class UnsupportedDeviceError(SnapshotError):
    """Raised when a snapshot reports a product type other than a battery pack."""

    def __init__(self, product_type: str) -> None:
        super().__init__(f"Unsupported device type: {product_type}")
        self.product_type = product_type
