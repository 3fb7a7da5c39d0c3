"""Felicity Solar cloud API client.

Provides read access to Felicity battery packs through the "shine" HTTP
API.  Authentication is delegated to a
:class:`~felicity.session.SessionManager`; the :class:`Client` adds the
device directory and per-device snapshots::

    from felicity import Client

    client = Client.from_credentials("email@example.com", "password")
    sns = await client.refresh_devices()
    snapshot = await client.fetch_snapshot(sns[0])
    print(snapshot.batt_soc, snapshot.batt_volt)
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import aiohttp

from felicity._constants import (
    API_BASE,
    APP_HEADERS,
    BATTERY_DEVICE_TYPE,
    DEFAULT_TIMEOUT,
    DEVICE_LIST_PAGE_SIZE,
    DEVICE_LIST_PATH,
    DEVICE_SNAPSHOT_PATH,
)
from felicity.exceptions import (
    DirectoryError,
    MalformedResponseError,
    NotAuthenticated,
    UnsupportedDeviceError,
)
from felicity.session import SessionManager, SessionStore
from felicity.snapshot import BatterySnapshot, UnsupportedSnapshot, parse_snapshot


class Client:
    """Device directory and snapshot access for one account.

    Every request carries the manager's current token.  Callers are
    expected to await :meth:`SessionManager.ensure_valid` (or use
    :meth:`refresh_devices`) before the first request of a cycle.
    """

    def __init__(self, sessions: SessionManager, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._sessions = sessions
        self._timeout = timeout
        self._device_sns: list[str] = []

    @classmethod
    def from_credentials(
        cls,
        account_id: str,
        password: str,
        *,
        token_file: Path | str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Client:
        """Build a client with its own session manager and token file."""
        store = SessionStore(token_file) if token_file is not None else SessionStore()
        return cls(SessionManager(account_id, password, store, timeout=timeout), timeout=timeout)

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def device_sns(self) -> list[str]:
        """Serial numbers from the last directory listing."""
        return list(self._device_sns)

    # ------------------------------------------------------------------
    # Device directory
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[str]:
        """Fetch the serial numbers of all devices on the account.

        Raises:
            NotAuthenticated: If there is no valid session.
            DirectoryError: If the request fails or the response has no
                device list.
        """
        token = self._require_token()
        async with aiohttp.ClientSession() as session:
            sns = await _fetch_device_list(token, session, timeout=self._timeout)
        self._device_sns = sns
        return list(sns)

    async def refresh_devices(self) -> list[str]:
        """Ensure a valid session, then refresh the device list."""
        await self._sessions.ensure_valid()
        return await self.list_devices()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def fetch_snapshot(self, device_sn: str) -> BatterySnapshot:
        """Fetch the current snapshot of one battery pack.

        Raises:
            NotAuthenticated: If there is no valid session.
            MalformedResponseError: If the request fails or the response
                carries no usable device data.
            UnsupportedDeviceError: If the device is not a
                ``LITHIUM_BATTERY_PACK``.
        """
        token = self._require_token()
        async with aiohttp.ClientSession() as session:
            payload = await _fetch_device_snapshot(token, device_sn, session, timeout=self._timeout)
        snapshot = parse_snapshot(payload)
        if isinstance(snapshot, UnsupportedSnapshot):
            raise UnsupportedDeviceError(snapshot.product_type)
        return snapshot

    def _require_token(self) -> str:
        if not self._sessions.is_valid():
            raise NotAuthenticated("Not logged in. Call SessionManager.ensure_valid() first.")
        return self._sessions.authorization


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _auth_headers(token: str) -> dict[str, str]:
    return {**APP_HEADERS, "authorization": token}


def _snapshot_date(now: datetime | None = None) -> str:
    """Query date for snapshots: local time, truncated to whole seconds."""
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


async def _fetch_device_list(
    token: str, session: aiohttp.ClientSession, *, timeout: float = DEFAULT_TIMEOUT
) -> list[str]:
    """Fetch the first page of devices and return their serial numbers."""
    body = {
        "pageNum": 1,
        "pageSize": DEVICE_LIST_PAGE_SIZE,
        "deviceSn": "",
        "status": "",
        "sampleFlag": "",
        "oscFlag": "",
    }
    try:
        async with session.post(
            f"{API_BASE}{DEVICE_LIST_PATH}",
            json=body,
            headers=_auth_headers(token),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            if not resp.ok:
                raise DirectoryError(f"Failed to list devices: {resp.status} {resp.reason}")
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, TimeoutError, ValueError) as e:
        raise DirectoryError(f"Failed to list devices: {e}") from e

    payload = data.get("data") if isinstance(data, dict) else None
    devices = payload.get("dataList") if isinstance(payload, dict) else None
    if not isinstance(devices, list):
        raise DirectoryError(f"Unexpected device list response: {data!r}")

    sns: list[str] = []
    for device in devices:
        sn = device.get("deviceSn") if isinstance(device, dict) else None
        if not isinstance(sn, str) or not sn:
            raise DirectoryError(f"Device entry without deviceSn: {device!r}")
        sns.append(sn)
    return sns


async def _fetch_device_snapshot(
    token: str,
    device_sn: str,
    session: aiohttp.ClientSession,
    *,
    timeout: float = DEFAULT_TIMEOUT,
) -> object:
    """Fetch the raw ``data`` payload of a device snapshot."""
    body = {
        "deviceSn": device_sn,
        "deviceType": BATTERY_DEVICE_TYPE,
        "dateStr": _snapshot_date(),
    }
    try:
        async with session.post(
            f"{API_BASE}{DEVICE_SNAPSHOT_PATH}",
            json=body,
            headers=_auth_headers(token),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, TimeoutError, ValueError) as e:
        raise MalformedResponseError(f"Failed to get device snapshot for {device_sn}: {e}") from e

    if not isinstance(data, dict) or data.get("data") is None:
        raise MalformedResponseError(f"Failed to get device snapshot: {data!r}")
    return data["data"]
