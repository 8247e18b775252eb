from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Final

from prometheus_client import CollectorRegistry
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST, generate_latest

from ..discovery.normalize import CanonicalReading

CONTENT_TYPE: Final[str] = CONTENT_TYPE_LATEST
LABELS: Final[list[str]] = ["device_alias", "device_id"]


class ReadingsCollector:
    """Projects one scrape's canonical readings into metric families."""

    def __init__(self, readings: Sequence[CanonicalReading]) -> None:
        self._readings = tuple(readings)

    def collect(self) -> Iterator[Metric]:
        voltage = GaugeMetricFamily(
            "device_electric_potential_volts",
            "Voltage reading from device",
            labels=LABELS,
        )
        current = GaugeMetricFamily(
            "device_electric_current_amperes",
            "Current reading from device",
            labels=LABELS,
        )
        power = GaugeMetricFamily(
            "device_electric_power_watts",
            "Power reading from device",
            labels=LABELS,
        )
        # Exposed as device_electric_energy_joules_total.
        energy = CounterMetricFamily(
            "device_electric_energy_joules",
            "Total energy consumed",
            labels=LABELS,
        )

        for reading in self._readings:
            labels = [reading.device_alias, reading.device_id]
            voltage.add_metric(labels, reading.voltage_v)
            current.add_metric(labels, reading.current_a)
            power.add_metric(labels, reading.power_w)
            energy.add_metric(labels, reading.energy_j)

        yield voltage
        yield current
        yield power
        yield energy


def build_registry(readings: Sequence[CanonicalReading]) -> CollectorRegistry:
    """Create a throw-away registry holding the readings of a single scrape."""

    registry = CollectorRegistry(auto_describe=False)
    registry.register(ReadingsCollector(readings))
    return registry


def render_metrics(readings: Sequence[CanonicalReading]) -> bytes:
    return generate_latest(build_registry(readings))
