from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from ..protocol.messages import RawDeviceResponse, RawRealtime

MILLI: Final[float] = 1000.0
JOULES_PER_WH: Final[float] = 3600.0
JOULES_PER_KWH: Final[float] = 3600.0 * 1000.0


@dataclass(frozen=True, slots=True)
class RealtimeValues:
    voltage_v: float
    current_a: float
    power_w: float
    energy_j: float


@dataclass(frozen=True, slots=True)
class CanonicalReading:
    device_alias: str
    device_id: str
    voltage_v: float
    current_a: float
    power_w: float
    energy_j: float


def _milli(value: int | None) -> float | None:
    return None if value is None else value / MILLI


def _prefer_gen1(gen1: float | None, gen2: float | None) -> float:
    # A generation-1 value of exactly 0.0 is indistinguishable from "missing" on the wire,
    # so it falls through to the generation-2 field. A genuine zero reading still ends up
    # as 0.0 when the generation-2 field is absent too.
    if gen1 is not None and gen1 != 0.0:
        return gen1
    if gen2 is not None:
        return gen2
    return 0.0


def normalize(raw: RawRealtime) -> RealtimeValues:
    """Resolve each quantity from whichever hardware generation populated it.

    Generation-1 floats are authoritative when present and non-zero; otherwise the
    generation-2 scaled integers are used (mV, mA, mW -> /1000; Wh -> J *3600). Energy
    from generation-1 is kWh (-> J *3.6e6). Quantities absent from both families are 0.0.
    """

    gen1_energy = None if raw.total is None else raw.total * JOULES_PER_KWH
    gen2_energy = None if raw.total_wh is None else raw.total_wh * JOULES_PER_WH
    return RealtimeValues(
        voltage_v=_prefer_gen1(raw.voltage, _milli(raw.voltage_mv)),
        current_a=_prefer_gen1(raw.current, _milli(raw.current_ma)),
        power_w=_prefer_gen1(raw.power, _milli(raw.power_mw)),
        energy_j=_prefer_gen1(gen1_energy, gen2_energy),
    )


def to_canonical(response: RawDeviceResponse) -> CanonicalReading | None:
    """Build the canonical reading for one device, or None if it reported no realtime data."""

    if response.realtime is None:
        return None
    values = normalize(response.realtime)
    return CanonicalReading(
        device_alias=response.alias,
        device_id=response.device_id,
        voltage_v=values.voltage_v,
        current_a=values.current_a,
        power_w=values.power_w,
        energy_j=values.energy_j,
    )
