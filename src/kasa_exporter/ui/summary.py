from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..discovery.engine import CycleReport
from ..discovery.normalize import CanonicalReading


def _fmt(value: float, unit: str, *, digits: int = 2) -> str:
    return f"{value:.{digits}f} {unit}"


def build_readings_table(readings: Sequence[CanonicalReading]) -> Table:
    table = Table(title="Devices", show_lines=False)
    table.add_column("Alias")
    table.add_column("Device ID", overflow="fold")
    table.add_column("Voltage", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("Power", justify="right")
    table.add_column("Energy", justify="right")

    for reading in sorted(readings, key=lambda r: (r.device_alias.lower(), r.device_id)):
        table.add_row(
            reading.device_alias or "n/a",
            reading.device_id,
            _fmt(reading.voltage_v, "V"),
            _fmt(reading.current_a, "A", digits=3),
            _fmt(reading.power_w, "W"),
            # kWh is easier to read than joules for humans.
            _fmt(reading.energy_j / 3_600_000.0, "kWh", digits=3),
        )
    return table


def render_summary(
    console: Console,
    readings: Sequence[CanonicalReading],
    *,
    report: CycleReport | None = None,
) -> None:
    if not readings:
        console.print(Text("No devices answered.", style="yellow"))
    else:
        console.print(build_readings_table(readings))

    if report is None:
        return
    line = Text()
    line.append(f"broadcast={len(report.broadcast)} ")
    line.append(f"discovered={len(report.discovered)} ", style="green")
    line.append(f"rechecked={len(report.rechecked)} ")
    line.append(f"recovered={len(report.recovered)} ")
    line.append(f"failed={len(report.failed)}", style="red" if report.failed else "")
    if report.evicted:
        line.append(f" evicted={len(report.evicted)}", style="red")
    console.print(line)
