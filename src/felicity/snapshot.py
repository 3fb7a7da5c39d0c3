"""Device snapshot model: the raw payload variants and the cached summary."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from felicity._constants import BATTERY_PRODUCT_TYPE
from felicity.exceptions import MalformedResponseError

# Attribute name -> payload key, for every field carried by BatterySnapshot.
_BATTERY_FIELDS: dict[str, str] = {
    "device_sn": "deviceSn",
    "product_type": "productTypeEnum",
    "device_model": "deviceModel",
    "device_type": "deviceType",
    "plant_name": "plantName",
    "status": "status",
    "data_time": "dataTime",
    "data_time_str": "dataTimeStr",
    "time_zone": "timeZone",
    # Battery
    "batt_volt": "battVolt",
    "batt_curr": "battCurr",
    "batt_soc": "battSoc",
    "batt_soh": "battSoh",
    "batt_capacity": "battCapacity",
    "battery_capacity": "batteryCapacity",
    "bms_power": "bmsPower",
    "bms_state": "bmsState",
    "bms_charging_state": "bmsChargingState",
    "bms_flag": "bmsFlag",
    "volt": "volt",
    "curr": "curr",
    "rated_energy": "ratedEnergy",
    "rated_power": "ratedPower",
    "nameplate_rated_power": "nameplateRatedPower",
    "capacity": "capacity",
    "energy": "energy",
    "energy_unit": "energyUnit",
    "total_energy": "totalEnergy",
    "total_energy_unit": "totalEnergyUnit",
    # Energy management system
    "ems_voltage": "emsVoltage",
    "ems_current": "emsCurrent",
    "ems_soc": "emsSoc",
    "ems_soh": "emsSoh",
    "ems_capacity": "emsCapacity",
    "total_ems_capacity": "totalEmsCapacity",
    # Charge / discharge limits
    "bms_lc_volt": "BMSLCVolt",
    "bms_ld_volt": "BMSLDVolt",
    "bms_lc_curr": "BMSLCCurr",
    "bms_ld_curr": "BMSLDCurr",
    # Temperatures and cells
    "temp_max": "tempMax",
    "temp_min": "tempMin",
    "max_cell_temp_num": "maxCellTempNum",
    "min_batt_temp_num": "minBattTempNum",
    "max_voltage_2bms": "maxVoltage2bms",
    "max_voltage_num_2bms": "maxVoltageNum2bms",
    "min_voltage_2bms": "minVoltage2bms",
    "min_voltage_num_2bms": "minVoltageNum2bms",
    "cell_number": "cellNumber",
    "bms_voltage_list": "bmsVoltageList",
    "cell_temp_list": "cellTempList",
    # Firmware
    "firmware_version": "firmwareVersion",
    "hardware_version": "hardwareVersion",
    "control_version": "controlVersion",
    "control_version2": "controlVersion2",
    "iap_version": "iapVersion",
    "slave_version": "slaveVersion",
    "collector_sn2": "collectorSn2",
    "collector_version2": "collectorVersion2",
    # Status flags
    "warning_count": "warningCount",
    "activation_flag": "activationFlag",
    "bat_high_vol_flag": "batHighVolFlag",
    "bat_bms_online_str": "batBmsOnlineStr",
    "wifi_signal": "wifiSignal",
    "report_freq": "reportFreq",
    "series_parallel_status": "seriesParallelStatus",
    "bat_count": "batCount",
}


@dataclass(frozen=True)
class BatterySnapshot:
    """Snapshot of a ``LITHIUM_BATTERY_PACK`` device.

    Values are passed through exactly as the API reports them; most numeric
    readings arrive as strings (``"52.3"``).  Keys without a dedicated
    attribute (per-cell ``cellVolt1..16``, display strings, ...) remain
    reachable through :attr:`raw`.
    """

    device_sn: str
    product_type: str = BATTERY_PRODUCT_TYPE
    device_model: str | None = None
    device_type: str | None = None
    plant_name: str | None = None
    status: str | None = None
    data_time: int | None = None
    data_time_str: str | None = None
    time_zone: str | None = None

    batt_volt: str | None = None
    batt_curr: str | None = None
    batt_soc: str | None = None
    batt_soh: str | None = None
    batt_capacity: str | None = None
    battery_capacity: str | None = None
    bms_power: str | None = None
    bms_state: str | None = None
    bms_charging_state: int | None = None
    bms_flag: bool | None = None
    volt: str | None = None
    curr: str | None = None
    rated_energy: str | None = None
    rated_power: str | None = None
    nameplate_rated_power: str | None = None
    capacity: str | None = None
    energy: str | None = None
    energy_unit: str | None = None
    total_energy: str | None = None
    total_energy_unit: str | None = None

    ems_voltage: str | None = None
    ems_current: str | None = None
    ems_soc: str | None = None
    ems_soh: str | None = None
    ems_capacity: str | None = None
    total_ems_capacity: str | None = None

    bms_lc_volt: str | None = None
    bms_ld_volt: str | None = None
    bms_lc_curr: str | None = None
    bms_ld_curr: str | None = None

    temp_max: str | None = None
    temp_min: str | None = None
    max_cell_temp_num: str | None = None
    min_batt_temp_num: str | None = None
    max_voltage_2bms: str | None = None
    max_voltage_num_2bms: str | None = None
    min_voltage_2bms: str | None = None
    min_voltage_num_2bms: str | None = None
    cell_number: str | None = None
    bms_voltage_list: list[str] = field(default_factory=list)
    cell_temp_list: list[str] = field(default_factory=list)

    firmware_version: str | None = None
    hardware_version: str | None = None
    control_version: str | None = None
    control_version2: str | None = None
    iap_version: str | None = None
    slave_version: str | None = None
    collector_sn2: str | None = None
    collector_version2: str | None = None

    warning_count: int | None = None
    activation_flag: bool | None = None
    bat_high_vol_flag: bool | None = None
    bat_bms_online_str: str | None = None
    wifi_signal: str | None = None
    report_freq: int | None = None
    series_parallel_status: int | None = None
    bat_count: int | None = None

    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> BatterySnapshot:
        """Build a snapshot from the ``data`` object of a snapshot response."""
        values = {attr: payload[key] for attr, key in _BATTERY_FIELDS.items() if key in payload}
        for list_attr in ("bms_voltage_list", "cell_temp_list"):
            if values.get(list_attr) is None:
                values.pop(list_attr, None)
        values.setdefault("device_sn", "")
        return cls(**values, raw=dict(payload))

    def cell_voltages(self) -> list[str]:
        """Per-cell voltages ``cellVolt1..cellVoltN`` as reported, in cell order."""
        cells: list[str] = []
        i = 1
        while f"cellVolt{i}" in self.raw:
            cells.append(self.raw[f"cellVolt{i}"])
            i += 1
        return cells


@dataclass(frozen=True)
class UnsupportedSnapshot:
    """Snapshot of any product type other than a battery pack."""

    product_type: str
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


Snapshot = BatterySnapshot | UnsupportedSnapshot


def parse_snapshot(payload: object) -> Snapshot:
    """Classify a snapshot ``data`` payload by its ``productTypeEnum``.

    Raises :class:`MalformedResponseError` if the payload is not an object
    or carries no product type.
    """
    if not isinstance(payload, Mapping):
        raise MalformedResponseError(f"Invalid device data: {payload!r}")
    product_type = payload.get("productTypeEnum")
    if not isinstance(product_type, str) or not product_type:
        raise MalformedResponseError(f"Invalid device data: missing productTypeEnum in {payload!r}")
    if product_type == BATTERY_PRODUCT_TYPE:
        return BatterySnapshot.from_payload(payload)
    return UnsupportedSnapshot(product_type, raw=dict(payload))


# ---------------------------------------------------------------------------
# Cache records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatteryStatus:
    voltage: float | None
    current: float | None
    soc: int | None
    soh: int | None
    rated_energy: float | None
    energy_unit: str | None
    nameplate_rated_power: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "voltage": self.voltage,
            "current": self.current,
            "soc": self.soc,
            "soh": self.soh,
            "ratedEnergy": self.rated_energy,
            "energyUnit": self.energy_unit,
            "nameplateRatedPower": self.nameplate_rated_power,
        }


@dataclass(frozen=True)
class EmsStatus:
    voltage: float | None
    current: float | None
    soc: int | None
    soh: int | None

    def to_dict(self) -> dict[str, object]:
        return {
            "voltage": self.voltage,
            "current": self.current,
            "soc": self.soc,
            "soh": self.soh,
        }


@dataclass(frozen=True)
class BatteryData:
    """Compact battery + EMS summary kept in the cache."""

    battery: BatteryStatus
    ems: EmsStatus

    def to_dict(self) -> dict[str, object]:
        return {"battery": self.battery.to_dict(), "ems": self.ems.to_dict()}


@dataclass(frozen=True)
class CacheEntry:
    """One device in the poller cache, keyed by :attr:`serial_number`."""

    device_type: str
    serial_number: str
    data: BatteryData

    def to_dict(self) -> dict[str, object]:
        """JSON-ready form served by the read endpoint."""
        return {
            "deviceType": self.device_type,
            "serialNumber": self.serial_number,
            "data": self.data.to_dict(),
        }


def derive_entry(serial_number: str, snapshot: BatterySnapshot) -> CacheEntry:
    """Reduce a full battery snapshot to the cached summary record."""
    return CacheEntry(
        device_type=snapshot.product_type,
        serial_number=serial_number,
        data=BatteryData(
            battery=BatteryStatus(
                voltage=_to_float(snapshot.batt_volt),
                current=_to_float(snapshot.batt_curr),
                soc=_to_int(snapshot.batt_soc),
                soh=_to_int(snapshot.batt_soh),
                rated_energy=_to_float(snapshot.rated_energy),
                energy_unit=snapshot.energy_unit,
                nameplate_rated_power=snapshot.nameplate_rated_power,
            ),
            ems=EmsStatus(
                voltage=_to_float(snapshot.ems_voltage),
                current=_to_float(snapshot.ems_current),
                soc=_to_int(snapshot.ems_soc),
                soh=_to_int(snapshot.ems_soh),
            ),
        ),
    )


def _to_float(raw: object) -> float | None:
    """Parse a reading such as ``"52.3"``; ``None`` when absent or not numeric."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return value


def _to_int(raw: object) -> int | None:
    """Parse the integer part of a reading (``"87"`` and ``"87.6"`` both give 87)."""
    value = _to_float(raw)
    if value is None:
        return None
    return int(value)
