"""Session lifecycle: token validity, persisted-token reuse and login.

:class:`SessionManager` owns the bearer token for one account.  Every poll
cycle calls :meth:`SessionManager.ensure_valid`, which is free while the
in-memory token is unexpired, falls back to the token file shared with
previous runs, and only then performs the encrypted login::

    sessions = SessionManager("user@example.com", "password")
    session = await sessions.ensure_valid()
    headers = {"authorization": sessions.authorization}
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import enum
import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import aiohttp

from felicity._constants import (
    API_BASE,
    APP_HEADERS,
    DEFAULT_TIMEOUT,
    LOGIN_PATH,
    LOGIN_VERSION,
    TOKEN_FILE,
    TOKEN_PREFIX,
)
from felicity._crypto import encode_password
from felicity.exceptions import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """A bearer token and its absolute expiry (Unix seconds)."""

    token: str
    expires_at: float

    def is_valid(self, now: float | None = None) -> bool:
        """True when the token is non-empty and expires strictly after *now*."""
        if now is None:
            now = time.time()
        return bool(self.token) and self.expires_at > now


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class SessionStore:
    """Token file shared by every process logging in to the same service.

    The file is a JSON array of ``{"email", "bearer", "exp"}`` objects with
    ``exp`` in epoch milliseconds, one entry per account.
    """

    def __init__(self, path: Path | str = TOKEN_FILE) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, account_id: str) -> Session | None:
        """Return the stored session for *account_id*, or ``None``.

        A missing or unparsable file counts as empty; the caller simply
        logs in again.  Entries without a string bearer or a numeric
        expiry are skipped.
        """
        for entry in self._read():
            if entry.get("email") != account_id:
                continue
            bearer = entry.get("bearer")
            exp = _entry_exp(entry)
            if not isinstance(bearer, str) or not bearer or exp is None:
                logger.warning("Ignoring malformed token entry for %s in %s", account_id, self._path)
                continue
            logger.info("Loaded bearer token from %s", self._path)
            return Session(bearer, exp / 1000)
        return None

    def save(self, account_id: str, session: Session) -> bool:
        """Upsert the entry for *account_id*; return ``True`` if the file changed.

        An entry that is still valid and expires no earlier than *session*
        is left alone, so a slower process cannot replace a fresher token
        and repeated saves do not rewrite the file.

        Raises :class:`OSError` if the file cannot be written.
        """
        entries = self._read()
        exp_ms = int(session.expires_at * 1000)
        now_ms = time.time() * 1000

        for entry in entries:
            if entry.get("email") != account_id:
                continue
            stored_exp = _entry_exp(entry)
            usable = isinstance(entry.get("bearer"), str) and bool(entry["bearer"])
            if usable and stored_exp is not None and stored_exp > now_ms and stored_exp >= exp_ms:
                return False
            entry["bearer"] = session.token
            entry["exp"] = exp_ms
            break
        else:
            entries.append({"email": account_id, "bearer": session.token, "exp": exp_ms})

        self._write(entries)
        return True

    def _read(self) -> list[dict[str, object]]:
        try:
            text = self._path.read_text()
        except FileNotFoundError:
            return []
        except OSError:
            logger.warning("Cannot read token file %s", self._path, exc_info=True)
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Failed to parse token file %s", self._path)
            return []
        if not isinstance(data, list):
            logger.warning("Failed to parse token file %s: expected a JSON array", self._path)
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    def _write(self, entries: list[dict[str, object]]) -> None:
        """Replace the file atomically: write a sibling temp file, then rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(entries, f)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise


class SessionManager:
    """Authentication state for a single account.

    The session is only ever written inside :meth:`ensure_valid`; all other
    code reads :attr:`authorization`.
    """

    def __init__(
        self,
        account_id: str,
        password: str,
        store: SessionStore | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._account_id = account_id
        self._password = password
        self._store = store if store is not None else SessionStore()
        self._timeout = timeout
        self._session: Session | None = None
        self._authenticating = False
        self._lock = asyncio.Lock()

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._authenticating:
            return SessionState.AUTHENTICATING
        if self._session is None:
            return SessionState.UNAUTHENTICATED
        if self._session.is_valid():
            return SessionState.AUTHENTICATED
        return SessionState.EXPIRED

    @property
    def authorization(self) -> str:
        """Value for the ``authorization`` header (the token, verbatim)."""
        return self._session.token if self._session is not None else ""

    def is_valid(self) -> bool:
        """Whether the in-memory session can be used right now."""
        return self._session is not None and self._session.is_valid()

    def invalidate(self) -> None:
        """Forget the in-memory session; the next call reloads or logs in."""
        self._session = None

    async def ensure_valid(self) -> Session:
        """Return a valid session, loading or logging in only when needed.

        Raises:
            AuthenticationError: If the login call fails or its token has
                no decodable expiry.
            EncodingError: If the password cannot be encrypted.
        """
        if self._session is not None and self._session.is_valid():
            return self._session

        async with self._lock:
            # Another task may have logged in while we were waiting.
            if self._session is not None and self._session.is_valid():
                return self._session

            stored = self._store.load(self._account_id)
            if stored is not None and stored.is_valid():
                self._session = stored
                return stored

            self._authenticating = True
            try:
                session = await self._authenticate()
            finally:
                self._authenticating = False
            self._session = session

            try:
                self._store.save(self._account_id, session)
            except OSError:
                logger.warning(
                    "Could not persist token to %s; continuing in memory",
                    self._store.path,
                    exc_info=True,
                )
            return session

    async def _authenticate(self) -> Session:
        encoded = encode_password(self._password)
        async with aiohttp.ClientSession() as http:
            token = await _http_login(self._account_id, encoded, http, timeout=self._timeout)
        # The expiry is read from the token just issued to us; the signature
        # is not checked and the claims are not used for identity.
        exp = _decode_jwt_exp(token)
        if exp is None:
            raise AuthenticationError("Failed to decode token expiry")
        logger.info("Logged in as %s; token valid until %s", self._account_id, time.ctime(exp))
        return Session(token, exp)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _entry_exp(entry: dict[str, object]) -> float | None:
    exp = entry.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float, str)):
        return None
    try:
        value = float(exp)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _decode_jwt_exp(token: str) -> float | None:
    """Extract the ``exp`` claim from a JWT without verifying the signature.

    Accepts the API's ``Bearer_`` prefixed form.  Returns the expiry as a
    Unix timestamp (float), or ``None`` if the token cannot be decoded
    (e.g. not a JWT, malformed base64, missing claim).
    """
    if token.startswith(TOKEN_PREFIX):
        token = token[len(TOKEN_PREFIX) :]
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        # base64url padding: length must be a multiple of 4
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
        return float(payload["exp"])
    except Exception:
        return None


async def _http_login(
    account_id: str,
    encoded_password: str,
    session: aiohttp.ClientSession,
    *,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Submit the encrypted credentials and return the issued token."""
    body = {"userName": account_id, "password": encoded_password, "version": LOGIN_VERSION}
    try:
        async with session.post(
            f"{API_BASE}{LOGIN_PATH}",
            json=body,
            headers=APP_HEADERS,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, TimeoutError, ValueError) as e:
        raise AuthenticationError(f"Login failed: {e}") from e

    payload = data.get("data") if isinstance(data, dict) else None
    token = payload.get("token") if isinstance(payload, dict) else None
    if not isinstance(token, str) or not token:
        msg = data.get("message") if isinstance(data, dict) else None
        raise AuthenticationError(f"Login failed: {msg or 'no token in response'}")
    return token
