"""Data models for decoded SBMS telemetry."""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

CELL_COUNT = 8

# Flag name -> index into the 14-character binary flag string (MSB first).
# Index 14 is never present in a 14-bit rendering and is the reserved slot.
FLAG_POSITIONS: Dict[str, int] = {
    "OV": 14,
    "OVLK": 13,
    "UV": 12,
    "UVLK": 11,
    "IOT": 10,
    "COC": 9,
    "DOC": 8,
    "DSC": 7,
    "CELF": 6,
    "OPEN": 5,
    "LVC": 4,
    "ECCF": 3,
    "CFET": 2,
    "EOC": 1,
    "DFET": 0,
}

FLAG_NAMES: Tuple[str, ...] = tuple(FLAG_POSITIONS)


@dataclass
class DeviceTime:
    """Device-local clock fields as reported (year already offset by 2000)."""

    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int

    def to_datetime(self) -> Optional[datetime]:
        """Return a naive datetime, or None if the fields are not a valid date."""
        try:
            return datetime(self.year, self.month, self.day,
                            self.hour, self.minute, self.second)
        except ValueError:
            return None

    def __str__(self) -> str:
        return (
            f"{self.year:04d}-{self.month:02d}-{self.day:02d} "
            f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"
        )


@dataclass
class Telemetry:
    """Core telemetry snapshot (the ``sbms`` variable)."""

    time: DeviceTime
    state_of_charge: int
    cells_millivolt: List[int]
    temp_internal: float
    temp_external: float
    current_battery: int
    current_pv1: int
    current_pv2: int
    current_ext_load: int
    ad3: int = 0
    ad4: int = 0
    heat1: int = 0
    dual_pv_level: int = 0
    flags: Dict[str, bool] = field(
        default_factory=lambda: {name: False for name in FLAG_NAMES}
    )

    def __post_init__(self):
        if len(self.cells_millivolt) != CELL_COUNT:
            raise ValueError(
                f"Expected {CELL_COUNT} cell voltages, got {len(self.cells_millivolt)}"
            )
        self.flags = {name: bool(self.flags.get(name, False)) for name in FLAG_NAMES}

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.time.to_datetime()

    @property
    def time_str(self) -> str:
        """Timestamp key used for change detection."""
        return str(self.time)


@dataclass
class Identity:
    """Device identity (the ``s1`` variable)."""

    model: str


@dataclass
class BalancingStatus:
    """Per-cell balancing state (the ``s2`` variable)."""

    cells_balancing: Dict[int, bool]
    cells_min_index: int
    cells_max_index: int
    pv_on: bool
    load_on: bool

    @property
    def any_active(self) -> bool:
        return any(self.cells_balancing.values())


@dataclass
class EnergyCounters:
    """Lifetime energy counters in Wh (the ``eW`` variable)."""

    battery_wh: float
    pv1_wh: float
    pv2_wh: float
    load_wh: float
    ext_load_wh: float


@dataclass
class BatteryProfile:
    """Configured battery parameters (the ``xsbms`` variable)."""

    chemistry_type: int
    capacity_ah: int
    under_voltage_lock_mv: int
    over_voltage_lock_mv: int
    cv: int


@dataclass
class Frame:
    """One integrity-checked snapshot, composed of up to five variables."""

    telemetry: Telemetry
    identity: Optional[Identity] = None
    balancing: Optional[BalancingStatus] = None
    energy: Optional[EnergyCounters] = None
    profile: Optional[BatteryProfile] = None


def flatten(prefix: str, value: Any) -> Iterator[Tuple[str, Any]]:
    """Yield ``(dotted_path, value)`` pairs for a record.

    Dataclasses and dicts are descended by field/key, lists are numbered
    from 1. A ``DeviceTime`` collapses to its string form.
    """
    if isinstance(value, DeviceTime):
        yield prefix, str(value)
    elif is_dataclass(value) and not isinstance(value, type):
        for f in fields(value):
            yield from flatten(f"{prefix}.{f.name}", getattr(value, f.name))
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from flatten(f"{prefix}.{key}", item)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value, start=1):
            yield from flatten(f"{prefix}.{index}", item)
    else:
        yield prefix, value
