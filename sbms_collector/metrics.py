"""Derived electrical metrics computed from decoded telemetry."""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .models import BalancingStatus, EnergyCounters, Telemetry

INFO_FLAGS: Tuple[str, ...] = ("OV", "UV", "CFET", "DFET", "EOC", "OVLK", "UVLK")
ERROR_FLAGS: Tuple[str, ...] = ("IOT", "COC", "DOC", "DSC", "CELF", "OPEN", "LVC", "ECCF")


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like the device UI does (halves go up), not banker's rounding."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


@dataclass(frozen=True)
class MetricsPlan:
    """Which optional metrics a session computes.

    Built once from the feature configuration so the hot path does not
    branch on raw config values.
    """

    use_pv1: bool = False
    use_pv2: bool = False
    use_adcx: bool = False
    use_heat1: bool = False
    use_temp_ext: bool = False
    full_message: bool = False
    # Only counters, parameters and detail; another transport owns the rest.
    supplement_only: bool = False

    @classmethod
    def from_features(cls, features) -> "MetricsPlan":
        return cls(
            use_pv1=features.use_pv1,
            use_pv2=features.use_pv2,
            use_adcx=features.use_adcx,
            use_heat1=features.use_heat1,
            use_temp_ext=features.use_temp_ext,
            full_message=features.full_message,
        )


@dataclass
class FlagSummary:
    """Flags split into info and error groups."""

    info: Dict[str, bool]
    errors: Dict[str, bool]
    active_errors: List[str]

    @property
    def error_active(self) -> bool:
        return bool(self.active_errors)

    @property
    def error_count(self) -> int:
        return len(self.active_errors)


@dataclass
class CellStats:
    """Min/max/delta over the cell voltages."""

    min: int
    max: int
    min_index: int
    max_index: int

    @property
    def delta(self) -> int:
        return self.max - self.min


@dataclass
class CommonMetrics:
    """Metrics shared by every transport."""

    voltage: float
    power_battery: int
    current_battery_a: float
    state_of_charge: int
    temp_internal: float
    cells_millivolt: List[int]
    flags: FlagSummary
    temp_external: Optional[float] = None
    current_pv1_a: Optional[float] = None
    current_pv2_a: Optional[float] = None
    load_current_a: Optional[float] = None
    power_pv1: Optional[int] = None
    power_pv2: Optional[int] = None
    power_load: Optional[int] = None
    adc2: Optional[float] = None
    adc3: Optional[float] = None
    heat1: Optional[int] = None
    cells: Optional[CellStats] = None

    def as_dict(self) -> Dict[str, object]:
        """Map metric names to sink paths, skipping metrics not computed."""
        values = {
            "voltage": self.voltage,
            "power.battery": self.power_battery,
            "current.battery": self.current_battery_a,
            "current.pv1": self.current_pv1_a,
            "current.pv2": self.current_pv2_a,
            "current.load": self.load_current_a,
            "power.pv1": self.power_pv1,
            "power.pv2": self.power_pv2,
            "power.load": self.power_load,
            "soc": self.state_of_charge,
            "tempInt": self.temp_internal,
            "tempExt": self.temp_external,
            "adc2": self.adc2,
            "adc3": self.adc3,
            "heat1": self.heat1,
        }
        for index, millivolt in enumerate(self.cells_millivolt, start=1):
            values[f"cells.{index}"] = millivolt
        return {k: v for k, v in values.items() if v is not None}


@dataclass
class BalancingAggregate:
    """Per-cell balancing view with running extremes."""

    per_cell: Dict[int, Tuple[int, bool]] = field(default_factory=dict)
    any_active: bool = False
    active_count: int = 0
    max: int = 0
    min: int = 0
    max_index: int = 0
    min_index: int = 0


def classify_flags(flags: Dict[str, bool]) -> FlagSummary:
    """Partition flags into info and error sets."""
    info = {name: flags.get(name, False) for name in INFO_FLAGS}
    errors = {name: flags.get(name, False) for name in ERROR_FLAGS}
    return FlagSummary(
        info=info,
        errors=errors,
        active_errors=[name for name, active in errors.items() if active],
    )


def cell_stats(cells: Sequence[int]) -> CellStats:
    """Min/max with 1-based indices; the first occurrence wins on ties."""
    min_index = min(range(len(cells)), key=lambda i: cells[i])
    max_index = max(range(len(cells)), key=lambda i: cells[i])
    return CellStats(
        min=cells[min_index],
        max=cells[max_index],
        min_index=min_index + 1,
        max_index=max_index + 1,
    )


def compute_common(
    telemetry: Telemetry,
    balancing_active: bool = False,
    plan: MetricsPlan = MetricsPlan(),
) -> CommonMetrics:
    """Compute voltage, currents, powers, flags and (when not balancing) cell extremes."""
    voltage = sum(telemetry.cells_millivolt) / 1000
    battery = telemetry.current_battery

    metrics = CommonMetrics(
        voltage=round_half_up(voltage, 2),
        power_battery=int(round_half_up(battery * 0.001 * voltage)),
        current_battery_a=round_half_up(battery / 10) / 100,
        state_of_charge=telemetry.state_of_charge,
        temp_internal=telemetry.temp_internal,
        cells_millivolt=list(telemetry.cells_millivolt),
        flags=classify_flags(telemetry.flags),
    )

    if plan.use_pv1:
        load = max(0.0, (telemetry.current_pv1 + telemetry.current_pv2 - battery) * 0.001)
        metrics.current_pv1_a = round_half_up(telemetry.current_pv1 / 10) / 100
        metrics.load_current_a = round_half_up(load, 2)
        metrics.power_pv1 = int(round_half_up(telemetry.current_pv1 * 0.001 * voltage))
        metrics.power_load = int(round_half_up(load * voltage))

    if plan.use_pv2:
        metrics.current_pv2_a = round_half_up(telemetry.current_pv2 / 10) / 100
        metrics.power_pv2 = int(round_half_up(telemetry.current_pv2 * 0.001 * voltage))

    if plan.use_temp_ext:
        metrics.temp_external = telemetry.temp_external

    if plan.use_adcx:
        metrics.adc2 = telemetry.ad4 / 1000
        metrics.adc3 = telemetry.ad3 / 1000

    if plan.use_heat1:
        metrics.heat1 = telemetry.heat1

    if not balancing_active:
        metrics.cells = cell_stats(telemetry.cells_millivolt)

    return metrics


def compute_balancing_aggregate(
    balancing: BalancingStatus,
    cells_millivolt: Sequence[int],
) -> BalancingAggregate:
    """Walk all cells tracking extremes and how many cells are balancing."""
    aggregate = BalancingAggregate()
    for index, millivolt in enumerate(cells_millivolt, start=1):
        active = balancing.cells_balancing.get(index, False)
        aggregate.per_cell[index] = (millivolt, active)

        if active:
            aggregate.active_count += 1
        if aggregate.max_index == 0 or millivolt > aggregate.max:
            aggregate.max = millivolt
            aggregate.max_index = index
        if aggregate.min_index == 0 or millivolt < aggregate.min:
            aggregate.min = millivolt
            aggregate.min_index = index

    aggregate.any_active = aggregate.active_count > 0
    return aggregate


def energy_kwh(energy: EnergyCounters, plan: MetricsPlan) -> Dict[str, float]:
    """Convert device energy counters to kWh sink values."""
    values = {"counter.battery": energy.battery_wh / 1000}
    if plan.use_pv1:
        values["counter.pv1"] = energy.pv1_wh / 1000
        values["counter.load"] = energy.load_wh / 1000 + energy.ext_load_wh / 1000
    if plan.use_pv2:
        values["counter.pv2"] = energy.pv2_wh / 1000
    return values
