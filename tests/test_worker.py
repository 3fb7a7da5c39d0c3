"""Tests for felicity.worker."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from aioresponses import aioresponses

from felicity._constants import API_BASE, DEVICE_LIST_PATH, DEVICE_SNAPSHOT_PATH, LOGIN_PATH
from felicity.client import Client
from felicity.exceptions import (
    AuthenticationError,
    DirectoryError,
    MalformedResponseError,
    NotAuthenticated,
    UnsupportedDeviceError,
)
from felicity.session import SessionManager
from felicity.snapshot import BatterySnapshot
from felicity.worker import FAILURE_ALERT_THRESHOLD, Poller


def _snapshot(sn: str, volt: str = "52.3", soc: str = "87") -> BatterySnapshot:
    return BatterySnapshot.from_payload(
        {
            "deviceSn": sn,
            "productTypeEnum": "LITHIUM_BATTERY_PACK",
            "battVolt": volt,
            "battSoc": soc,
        }
    )


def _fake_client(devices: list[str], snapshots: dict[str, Any]) -> MagicMock:
    """A Client stand-in; *snapshots* values may be exceptions to raise."""
    client = MagicMock(spec=Client)
    client.sessions = MagicMock(spec=SessionManager)
    client.sessions.ensure_valid = AsyncMock()
    client.list_devices = AsyncMock(return_value=devices)

    async def fetch(sn: str) -> BatterySnapshot:
        result = snapshots[sn]
        if isinstance(result, Exception):
            raise result
        return result

    client.fetch_snapshot = AsyncMock(side_effect=fetch)
    return client


def _by_sn(poller: Poller) -> dict[str, Any]:
    return {e.serial_number: e for e in poller.get_cache()}


class TestPollerCycle:
    async def test_first_cycle_fills_cache(self):
        client = _fake_client(["SN001"], {"SN001": _snapshot("SN001")})
        poller = Poller(client)

        assert poller.get_cache() == []
        assert await poller.run_cycle() is True

        [entry] = poller.get_cache()
        assert entry.serial_number == "SN001"
        assert entry.data.battery.voltage == 52.3
        assert entry.data.battery.soc == 87
        assert poller.ready

    async def test_steps_in_order(self):
        calls: list[str] = []
        client = _fake_client(["SN001", "SN002"], {})
        client.sessions.ensure_valid.side_effect = lambda: calls.append("session")
        client.list_devices.side_effect = lambda: calls.append("list") or ["SN001", "SN002"]

        async def fetch(sn: str) -> BatterySnapshot:
            calls.append(sn)
            return _snapshot(sn)

        client.fetch_snapshot.side_effect = fetch
        await Poller(client).run_cycle()

        assert calls == ["session", "list", "SN001", "SN002"]

    async def test_last_write_wins_and_failed_device_kept(self):
        snapshots: dict[str, Any] = {
            "A": _snapshot("A", volt="50.0"),
            "B": _snapshot("B", volt="51.0"),
        }
        client = _fake_client(["A", "B"], snapshots)
        poller = Poller(client)
        await poller.run_cycle()
        b_before = _by_sn(poller)["B"]

        snapshots["A"] = _snapshot("A", volt="53.0")
        snapshots["B"] = MalformedResponseError("boom")
        assert await poller.run_cycle() is True

        cache = _by_sn(poller)
        assert cache["A"].data.battery.voltage == 53.0
        assert cache["B"] == b_before

    async def test_device_missing_from_listing_is_kept(self):
        client = _fake_client(["A", "B"], {"A": _snapshot("A"), "B": _snapshot("B")})
        poller = Poller(client)
        await poller.run_cycle()

        client.list_devices.return_value = ["A"]
        await poller.run_cycle()

        assert set(_by_sn(poller)) == {"A", "B"}

    async def test_replacement_keeps_position(self):
        snapshots: dict[str, Any] = {"A": _snapshot("A"), "B": _snapshot("B")}
        client = _fake_client(["A", "B"], snapshots)
        poller = Poller(client)
        await poller.run_cycle()

        client.list_devices.return_value = ["C", "A"]
        snapshots["C"] = _snapshot("C")
        await poller.run_cycle()

        assert [e.serial_number for e in poller.get_cache()] == ["A", "B", "C"]

    async def test_unsupported_device_does_not_abort(self, caplog):
        client = _fake_client(
            ["INV1", "SN001"],
            {"INV1": UnsupportedDeviceError("HYBRID_INVERTER"), "SN001": _snapshot("SN001")},
        )
        poller = Poller(client)
        with caplog.at_level(logging.WARNING, logger="felicity.worker"):
            assert await poller.run_cycle() is True

        assert list(_by_sn(poller)) == ["SN001"]
        assert "INV1" in caplog.text

    async def test_session_failure_aborts_cycle(self):
        client = _fake_client(["SN001"], {"SN001": _snapshot("SN001")})
        client.sessions.ensure_valid.side_effect = AuthenticationError("Login failed: 401")
        poller = Poller(client)

        assert await poller.run_cycle() is False

        client.list_devices.assert_not_awaited()
        client.fetch_snapshot.assert_not_awaited()
        assert poller.get_cache() == []
        assert not poller.ready
        assert poller.consecutive_failures == 1

    async def test_session_expiring_mid_cycle_aborts_cycle(self):
        client = _fake_client(
            ["A", "B"],
            {"A": NotAuthenticated("Session expired"), "B": _snapshot("B")},
        )
        poller = Poller(client)

        assert await poller.run_cycle() is False

        assert client.fetch_snapshot.await_count == 1
        assert poller.get_cache() == []
        assert poller.consecutive_failures == 1
        assert not poller.ready

    async def test_session_expiring_mid_cycle_keeps_updated_devices(self):
        snapshots: dict[str, Any] = {"A": _snapshot("A", volt="50.0"), "B": _snapshot("B")}
        client = _fake_client(["A", "B"], snapshots)
        poller = Poller(client)
        await poller.run_cycle()

        snapshots["A"] = _snapshot("A", volt="53.0")
        snapshots["B"] = NotAuthenticated("Session expired")
        assert await poller.run_cycle() is False

        cache = _by_sn(poller)
        assert cache["A"].data.battery.voltage == 53.0
        assert set(cache) == {"A", "B"}

    async def test_directory_failure_keeps_cache(self):
        client = _fake_client(["SN001"], {"SN001": _snapshot("SN001")})
        poller = Poller(client)
        await poller.run_cycle()

        client.list_devices.side_effect = DirectoryError("Failed to list devices: 502")
        assert await poller.run_cycle() is False

        assert list(_by_sn(poller)) == ["SN001"]
        assert poller.ready

    async def test_failure_count_resets_after_success(self):
        client = _fake_client([], {})
        client.sessions.ensure_valid.side_effect = AuthenticationError("nope")
        poller = Poller(client)
        await poller.run_cycle()
        await poller.run_cycle()
        assert poller.consecutive_failures == 2

        client.sessions.ensure_valid.side_effect = None
        await poller.run_cycle()
        assert poller.consecutive_failures == 0

    async def test_repeated_failures_escalate_to_error(self, caplog):
        client = _fake_client([], {})
        client.sessions.ensure_valid.side_effect = AuthenticationError("nope")
        poller = Poller(client)

        with caplog.at_level(logging.WARNING, logger="felicity.worker"):
            for _ in range(FAILURE_ALERT_THRESHOLD):
                await poller.run_cycle()

        levels = [r.levelno for r in caplog.records if r.name == "felicity.worker"]
        assert levels[:-1] == [logging.WARNING] * (FAILURE_ALERT_THRESHOLD - 1)
        assert levels[-1] == logging.ERROR

    async def test_empty_account_is_ready(self):
        poller = Poller(_fake_client([], {}))
        assert await poller.run_cycle() is True
        assert poller.ready
        assert poller.get_cache() == []

    async def test_overlapping_cycle_is_skipped(self):
        release = asyncio.Event()
        client = _fake_client(["SN001"], {})

        async def slow_fetch(sn: str) -> BatterySnapshot:
            await release.wait()
            return _snapshot(sn)

        client.fetch_snapshot.side_effect = slow_fetch
        poller = Poller(client)

        first = asyncio.create_task(poller.run_cycle())
        await asyncio.sleep(0)
        assert await poller.run_cycle() is False

        release.set()
        assert await first is True
        assert client.list_devices.await_count == 1

    async def test_get_cache_returns_copy(self):
        poller = Poller(_fake_client(["SN001"], {"SN001": _snapshot("SN001")}))
        await poller.run_cycle()

        view = poller.get_cache()
        view.clear()
        assert len(poller.get_cache()) == 1


class TestPollerScheduling:
    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError, match="positive"):
            Poller(_fake_client([], {}), interval=0)

    async def test_runs_immediately_then_on_interval(self):
        client = _fake_client(["SN001"], {"SN001": _snapshot("SN001")})
        poller = Poller(client, interval=0.01)

        poller.start()
        try:
            async with asyncio.timeout(2):
                while client.list_devices.await_count < 3:
                    await asyncio.sleep(0.005)
        finally:
            await poller.stop()

        assert poller.ready
        assert not poller.running

    async def test_start_is_idempotent(self):
        poller = Poller(_fake_client([], {}), interval=10)
        first = poller.start()
        try:
            assert poller.start() is first
            assert poller.running
        finally:
            await poller.stop()

    async def test_failed_cycles_keep_loop_alive(self):
        client = _fake_client([], {})
        client.sessions.ensure_valid.side_effect = AuthenticationError("nope")
        poller = Poller(client, interval=0.01)

        poller.start()
        try:
            async with asyncio.timeout(2):
                while client.sessions.ensure_valid.await_count < 3:
                    await asyncio.sleep(0.005)
            assert poller.running
        finally:
            await poller.stop()

    async def test_unexpected_error_keeps_loop_alive(self, caplog):
        client = _fake_client([], {})
        client.sessions.ensure_valid.side_effect = RuntimeError("boom")
        poller = Poller(client, interval=0.01)

        with caplog.at_level(logging.ERROR, logger="felicity.worker"):
            poller.start()
            try:
                async with asyncio.timeout(2):
                    while client.sessions.ensure_valid.await_count < 3:
                        await asyncio.sleep(0.005)
                assert poller.running
            finally:
                await poller.stop()

        assert "Unexpected error in poll cycle" in caplog.text

    async def test_stop_without_start(self):
        await Poller(_fake_client([], {})).stop()


# ---------------------------------------------------------------------------
# End to end against mocked HTTP
# ---------------------------------------------------------------------------


def _make_token(exp: float) -> str:
    def segment(obj: dict[str, object]) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()

    return f"Bearer_{segment({'alg': 'HS256'})}.{segment({'exp': int(exp)})}.sig"


class TestPollerWithHttp:
    async def test_fresh_start_single_device(self, tmp_path):
        token = _make_token(time.time() + 3600)
        client = Client.from_credentials("u1", "password", token_file=tmp_path / "token.json")
        poller = Poller(client)

        with aioresponses() as m:
            m.post(f"{API_BASE}{LOGIN_PATH}", payload={"data": {"token": token}})
            m.post(
                f"{API_BASE}{DEVICE_LIST_PATH}",
                payload={"data": {"dataList": [{"deviceSn": "SN001"}]}},
            )
            m.post(
                f"{API_BASE}{DEVICE_SNAPSHOT_PATH}",
                payload={
                    "data": {
                        "deviceSn": "SN001",
                        "productTypeEnum": "LITHIUM_BATTERY_PACK",
                        "battVolt": "52.3",
                        "battSoc": "87",
                    }
                },
            )
            assert await poller.run_cycle() is True

        [entry] = poller.get_cache()
        as_json = entry.to_dict()
        assert as_json["serialNumber"] == "SN001"
        assert as_json["data"]["battery"]["voltage"] == 52.3
        assert as_json["data"]["battery"]["soc"] == 87
        assert json.loads((tmp_path / "token.json").read_text())[0]["bearer"] == token

    async def test_undecodable_snapshot_stays_local(self, tmp_path):
        token = _make_token(time.time() + 3600)
        client = Client.from_credentials("u1", "password", token_file=tmp_path / "token.json")
        poller = Poller(client)

        with aioresponses() as m:
            m.post(f"{API_BASE}{LOGIN_PATH}", payload={"data": {"token": token}})
            m.post(
                f"{API_BASE}{DEVICE_LIST_PATH}",
                payload={"data": {"dataList": [{"deviceSn": "BAD"}, {"deviceSn": "GOOD"}]}},
            )
            m.post(f"{API_BASE}{DEVICE_SNAPSHOT_PATH}", body=b"\xff\xfe{")
            m.post(
                f"{API_BASE}{DEVICE_SNAPSHOT_PATH}",
                payload={
                    "data": {
                        "deviceSn": "GOOD",
                        "productTypeEnum": "LITHIUM_BATTERY_PACK",
                        "battVolt": "52.3",
                    }
                },
            )
            assert await poller.run_cycle() is True

        assert [e.serial_number for e in poller.get_cache()] == ["GOOD"]
        assert poller.consecutive_failures == 0

    async def test_second_cycle_reuses_session(self, tmp_path):
        token = _make_token(time.time() + 3600)
        client = Client.from_credentials("u1", "password", token_file=tmp_path / "token.json")
        poller = Poller(client)
        list_payload = {"data": {"dataList": []}}

        with aioresponses() as m:
            m.post(f"{API_BASE}{LOGIN_PATH}", payload={"data": {"token": token}})
            m.post(f"{API_BASE}{DEVICE_LIST_PATH}", payload=list_payload, repeat=True)
            await poller.run_cycle()
            await poller.run_cycle()

            login_calls = [k for k in m.requests if str(k[1]).endswith(LOGIN_PATH)]
            assert len(login_calls) == 1
            assert sum(len(v) for v in m.requests.values()) == 3
