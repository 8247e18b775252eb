from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Final

from .codec import obscure, reveal

SYSINFO_REALTIME_REQUEST: Final[bytes] = (
    b'{"system":{"get_sysinfo":{}},"emeter":{"get_realtime":{}}}'
)


class PayloadDecodeError(ValueError):
    """Raised when a revealed device payload does not have the expected structure."""


@dataclass(frozen=True, slots=True)
class RawRealtime:
    """`emeter.get_realtime` reply.

    Generation-1 hardware reports floats in base units (V, A, W, kWh); generation-2 hardware
    reports scaled integers (mV, mA, mW, Wh). Normally only one family is populated.
    """

    voltage: float | None = None
    current: float | None = None
    power: float | None = None
    total: float | None = None
    voltage_mv: int | None = None
    current_ma: int | None = None
    power_mw: int | None = None
    total_wh: int | None = None


@dataclass(frozen=True, slots=True)
class RawDeviceResponse:
    alias: str
    device_id: str
    realtime: RawRealtime | None = None


_GEN1_FIELDS: Final[tuple[str, ...]] = ("voltage", "current", "power", "total")
_GEN2_FIELDS: Final[tuple[str, ...]] = ("voltage_mv", "current_ma", "power_mw", "total_wh")


def _optional_number(obj: dict[str, Any], key: str) -> float | None:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise PayloadDecodeError(f"get_realtime.{key} must be numeric, got {value!r}")
    try:
        number = float(value)
    except OverflowError as exc:
        raise PayloadDecodeError(f"get_realtime.{key} is out of range") from exc
    if not math.isfinite(number):
        raise PayloadDecodeError(f"get_realtime.{key} must be finite, got {value!r}")
    return number


def _optional_int(obj: dict[str, Any], key: str) -> int | None:
    value = _optional_number(obj, key)
    if value is None:
        return None
    # Some firmware revisions emit e.g. 230512.0 for integer fields.
    return int(value)


def _require_object(obj: Any, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise PayloadDecodeError(f"{path} must be a JSON object, got {type(obj).__name__}")
    return obj


def parse_realtime(obj: Any) -> RawRealtime | None:
    """Parse an `emeter.get_realtime` object.

    Returns None when the device reports an error (`err_code` != 0) instead of readings.
    """

    realtime = _require_object(obj, "emeter.get_realtime")
    err_code = realtime.get("err_code", 0)
    if err_code not in (0, None):
        return None
    values: dict[str, Any] = {key: _optional_number(realtime, key) for key in _GEN1_FIELDS}
    values.update({key: _optional_int(realtime, key) for key in _GEN2_FIELDS})
    return RawRealtime(**values)


def parse_device_response(payload: bytes) -> RawDeviceResponse:
    """Parse a revealed (plaintext) sysinfo+realtime JSON reply.

    Expected layout:

        {"system": {"get_sysinfo": {"alias": ..., "deviceId": ..., ...}},
         "emeter": {"get_realtime": {...}}}

    The `emeter` section is optional: plugs without a meter omit it or answer with an
    `err_code`, which yields `realtime=None`.
    """

    try:
        data = json.loads(payload)
    except (ValueError, RecursionError) as exc:
        # Also covers int literals beyond the interpreter's digit limit.
        raise PayloadDecodeError(f"Device reply is not valid JSON: {exc}") from exc

    root = _require_object(data, "reply")
    system = _require_object(root.get("system"), "system")
    sysinfo = _require_object(system.get("get_sysinfo"), "system.get_sysinfo")

    alias = sysinfo.get("alias")
    device_id = sysinfo.get("deviceId")
    if not isinstance(alias, str):
        raise PayloadDecodeError("system.get_sysinfo.alias must be a string")
    if not isinstance(device_id, str) or not device_id:
        raise PayloadDecodeError("system.get_sysinfo.deviceId must be a non-empty string")

    realtime: RawRealtime | None = None
    emeter = root.get("emeter")
    if isinstance(emeter, dict) and emeter.get("get_realtime") is not None:
        realtime = parse_realtime(emeter["get_realtime"])

    return RawDeviceResponse(alias=alias, device_id=device_id, realtime=realtime)


def encode_request(request: bytes = SYSINFO_REALTIME_REQUEST) -> bytes:
    return obscure(request)


def decode_reply(datagram: bytes) -> RawDeviceResponse:
    return parse_device_response(reveal(datagram))
