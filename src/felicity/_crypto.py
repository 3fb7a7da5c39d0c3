"""Internal cryptographic helpers for Felicity API authentication."""

from __future__ import annotations

import base64
import binascii

from Crypto.Cipher import PKCS1_v1_5
from Crypto.PublicKey import RSA

from felicity._constants import RSA_PUBLIC_KEY_B64
from felicity.exceptions import EncodingError


def encode_password(password: str, pub_key_b64: str = RSA_PUBLIC_KEY_B64) -> str:
    """Encrypt *password* for the login body and return it base64-encoded.

    The key is a base64 DER public key; encryption is RSA with PKCS#1 v1.5
    padding, which is randomized, so two calls with the same password
    produce different ciphertexts.  The server accepts either.

    Raises :class:`EncodingError` if the key cannot be imported or the
    password does not fit in a single RSA block.
    """
    try:
        cipher = PKCS1_v1_5.new(RSA.import_key(base64.b64decode(pub_key_b64)))
        encrypted: bytes = cipher.encrypt(password.encode("utf-8"))
    except (ValueError, IndexError, TypeError, binascii.Error) as e:
        raise EncodingError(f"Cannot encrypt password: {e}") from e
    return base64.b64encode(encrypted).decode("ascii")
