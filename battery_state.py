import glob
import logging
import os
from enum import Enum

logger = logging.getLogger("battery-monitor.state")

PROC_INFO = "/proc/acpi/battery/BAT1/info"
PROC_STATE = "/proc/acpi/battery/BAT1/state"
SYSFS_GLOB = "/sys/class/power_supply/BAT*"


class ChargingState(Enum):
    INVALID = "invalid"
    CHARGING = "charging"
    CHARGED = "charged"
    DISCHARGING = "discharging"
    NO_BATTERY = "no battery"
    OTHER = "other"


# Tokens reported by the battery, as found in the ACPI state file
TOKENS = {
    "charging": ChargingState.CHARGING,
    "charged": ChargingState.CHARGED,
    "discharging": ChargingState.DISCHARGING,
}


def read_field(path: str, key: str) -> str | None:
    """Return the first token after ``key:`` in a ``key: value unit`` file.

    None when the file can't be read, the key is missing or has no value.
    """
    try:
        with open(path, mode="r") as fd:
            for line in fd:
                name, sep, value = line.partition(":")
                if not sep or name.strip() != key:
                    continue
                tokens = value.split()
                return tokens[0] if tokens else None
    except OSError as e:
        logger.debug(f"Unable to read {path}: {e}")
    return None


def read_int_field(path: str, key: str) -> int | None:
    value = read_field(path, key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _read_value(path: str) -> str | None:
    """Read a single-value sysfs attribute."""
    try:
        with open(path, mode="r") as fd:
            value = fd.read().strip()
    except OSError:
        return None
    return value or None


def _read_int_value(path: str) -> int | None:
    value = _read_value(path)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class ProcAcpiReader:
    """Battery fields from the legacy /proc/acpi/battery interface."""

    def __init__(self, info_path: str = PROC_INFO, state_path: str = PROC_STATE):
        self.info_path = info_path
        self.state_path = state_path

    def present(self) -> bool:
        return read_field(self.state_path, "present") == "yes"

    def charging_state(self) -> str | None:
        return read_field(self.state_path, "charging state")

    def design_capacity_low(self) -> int | None:
        return read_int_field(self.info_path, "design capacity low")

    def remaining_capacity(self) -> int | None:
        return read_int_field(self.state_path, "remaining capacity")

    def present_rate(self) -> int | None:
        return read_int_field(self.state_path, "present rate")


class SysfsReader:
    """Same fields, read from a /sys/class/power_supply/BAT* directory."""

    statuses = {
        "charging": "charging",
        "full": "charged",
        # on AC but held below its charge threshold
        "not charging": "charged",
        "discharging": "discharging",
    }

    def __init__(self, device_dir: str):
        self.device_dir = device_dir

    def _path(self, name: str) -> str:
        return os.path.join(self.device_dir, name)

    def present(self) -> bool:
        return _read_value(self._path("present")) == "1"

    def charging_state(self) -> str | None:
        status = _read_value(self._path("status"))
        if status is None:
            return None
        status = status.lower()
        return self.statuses.get(status, status)

    def design_capacity_low(self) -> int | None:
        # many firmwares leave the alarm unset
        value = _read_int_value(self._path("alarm"))
        return value or None

    def remaining_capacity(self) -> int | None:
        value = _read_int_value(self._path("energy_now"))
        if value is None:
            value = _read_int_value(self._path("charge_now"))
        return value

    def present_rate(self) -> int | None:
        value = _read_int_value(self._path("power_now"))
        if value is None:
            value = _read_int_value(self._path("current_now"))
        return value


def default_reader():
    if os.path.exists(PROC_INFO):
        return ProcAcpiReader()

    try:
        device_dir = next(d for d in sorted(glob.glob(SYSFS_GLOB)))
    except StopIteration:
        logger.warning(f"No battery found, falling back to {PROC_STATE}")
        return ProcAcpiReader()

    logger.debug(f"Reading battery state from {device_dir}")
    return SysfsReader(device_dir)


def resolve_charging_state(reader) -> ChargingState:
    if not reader.present():
        return ChargingState.NO_BATTERY

    token = reader.charging_state()
    if token is None:
        return ChargingState.INVALID

    return TOKENS.get(token, ChargingState.OTHER)
