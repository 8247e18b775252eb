from __future__ import annotations

from kasa_exporter.discovery.normalize import CanonicalReading
from kasa_exporter.exporter.metrics import CONTENT_TYPE, build_registry, render_metrics


def _reading(alias: str, device_id: str, *, energy_j: float = 7_200_000.0) -> CanonicalReading:
    return CanonicalReading(
        device_alias=alias,
        device_id=device_id,
        voltage_v=230.5,
        current_a=0.25,
        power_w=57.5,
        energy_j=energy_j,
    )


def test_content_type_is_openmetrics() -> None:
    assert CONTENT_TYPE.startswith("application/openmetrics-text")


def test_empty_readings_still_describe_families() -> None:
    text = render_metrics([]).decode("utf-8")
    assert "# TYPE device_electric_potential_volts gauge" in text
    assert "# TYPE device_electric_current_amperes gauge" in text
    assert "# TYPE device_electric_power_watts gauge" in text
    assert "# TYPE device_electric_energy_joules counter" in text
    assert text.endswith("# EOF\n")
    assert "device_alias=" not in text


def test_samples_carry_device_labels() -> None:
    text = render_metrics([_reading("Living Room", "ID-A")]).decode("utf-8")
    labels = 'device_alias="Living Room",device_id="ID-A"'
    assert f"device_electric_potential_volts{{{labels}}} 230.5" in text
    assert f"device_electric_current_amperes{{{labels}}} 0.25" in text
    assert f"device_electric_power_watts{{{labels}}} 57.5" in text
    assert f"device_electric_energy_joules_total{{{labels}}}" in text


def test_registry_values_per_device() -> None:
    registry = build_registry([_reading("A", "ID-A"), _reading("B", "ID-B", energy_j=3600.0)])
    labels_a = {"device_alias": "A", "device_id": "ID-A"}
    labels_b = {"device_alias": "B", "device_id": "ID-B"}
    assert registry.get_sample_value("device_electric_energy_joules_total", labels_a) == 7_200_000.0
    assert registry.get_sample_value("device_electric_energy_joules_total", labels_b) == 3600.0
    assert registry.get_sample_value("device_electric_power_watts", labels_b) == 57.5


def test_label_values_are_escaped() -> None:
    text = render_metrics([_reading('Desk "lamp"', "ID-Q")]).decode("utf-8")
    assert 'device_alias="Desk \\"lamp\\""' in text


def test_each_scrape_builds_a_fresh_registry() -> None:
    first = render_metrics([_reading("A", "ID-A")]).decode("utf-8")
    second = render_metrics([_reading("B", "ID-B")]).decode("utf-8")
    assert 'device_id="ID-A"' in first
    assert 'device_id="ID-A"' not in second
