"""Decoder for the SBMS base-91 text encoding.

The device publishes its state as five JavaScript variables::

    var sbms="...";      core telemetry + checksum (base-91)
    var s1=[...];        identity, comma separated
    var s2=[...];        balancing / min-max / on-off, comma separated
    var eW="...";        energy counters (base-91)
    var xsbms="...";     battery profile (base-91)

Each base-91 character carries ``ord(char) - 35``. Multi-character fields
are big-endian. None of the parse functions raise for absent input; they
return None so the caller can discard the cycle.
"""

import logging
import math
import re
from typing import Dict, Optional

from .errors import MalformedEncoding
from .models import (
    CELL_COUNT,
    FLAG_POSITIONS,
    BalancingStatus,
    BatteryProfile,
    DeviceTime,
    EnergyCounters,
    Frame,
    Identity,
    Telemetry,
)

logger = logging.getLogger(__name__)

DIGIT_OFFSET = 35
BASE = 91
CHECKSUM_CONSTANT = 1995
NEGATIVE_MARKER = "-"

# Shortest sbms string that covers every field including the flags
SBMS_MIN_LENGTH = 59
FLAG_BITS = 14

VARIABLE_NAMES = ("sbms", "s1", "s2", "eW", "xsbms")
QUOTED_VARIABLES = ("sbms", "eW", "xsbms")
ARRAY_VARIABLES = ("s1", "s2")

_QUOTED_PATTERNS = {
    name: re.compile(rf'var {name}="([^"]+)"') for name in QUOTED_VARIABLES
}
_ARRAY_PATTERNS = {
    name: re.compile(rf"var {name}=\[(.*?)\];") for name in ARRAY_VARIABLES
}


def decode_digits(offset: int, length: int, text: str) -> int:
    """Decode ``length`` base-91 characters of ``text`` starting at ``offset``.

    Raises:
        MalformedEncoding: If a character is outside the device alphabet
            or the text ends before the field does.
    """
    digits = text[offset:offset + length]
    if len(digits) < length:
        raise MalformedEncoding(
            f"Field at offset {offset} needs {length} characters, got {len(digits)}"
        )
    value = 0
    for char in digits:
        digit = ord(char) - DIGIT_OFFSET
        if not 0 <= digit < BASE:
            raise MalformedEncoding(
                f"Character {char!r} at offset {offset} is outside the base-91 alphabet"
            )
        value = value * BASE + digit
    return value


def checksum(text: str) -> int:
    """Additive checksum over the telemetry and flag positions."""
    total = sum(decode_digits(i, 1, text) for i in range(54))
    total += decode_digits(56, 1, text)
    total += decode_digits(57, 1, text)
    total += decode_digits(58, 1, text)
    return total + CHECKSUM_CONSTANT


def verify_integrity(text: Optional[str]) -> bool:
    """Compare the stored checksum (offset 54, 2 digits) with the computed one."""
    if not text or len(text) < SBMS_MIN_LENGTH:
        return False
    try:
        return decode_digits(54, 2, text) == checksum(text)
    except MalformedEncoding as e:
        logger.debug(f"Integrity check failed: {e}")
        return False


def _polarity(marker: str) -> int:
    return -1 if marker == NEGATIVE_MARKER else 1


def parse_flags(value: int) -> Dict[str, bool]:
    """Map the decoded flag integer onto the named flags."""
    bits = format(value, "b").zfill(FLAG_BITS)
    return {
        name: index < len(bits) and bits[index] == "1"
        for name, index in FLAG_POSITIONS.items()
    }


def parse_telemetry(text: Optional[str]) -> Optional[Telemetry]:
    """Parse the ``sbms`` variable. Callers must check integrity first."""
    if not text:
        return None

    time = DeviceTime(
        year=2000 + decode_digits(0, 1, text),
        month=decode_digits(1, 1, text),
        day=decode_digits(2, 1, text),
        hour=decode_digits(3, 1, text),
        minute=decode_digits(4, 1, text),
        second=decode_digits(5, 1, text),
    )

    return Telemetry(
        time=time,
        state_of_charge=decode_digits(6, 2, text),
        cells_millivolt=[decode_digits(8 + i * 2, 2, text) for i in range(CELL_COUNT)],
        temp_internal=(decode_digits(24, 2, text) - 450) / 10,
        temp_external=(decode_digits(26, 2, text) - 450) / 10,
        current_battery=decode_digits(29, 3, text) * _polarity(text[28]),
        current_pv1=decode_digits(32, 3, text),
        current_pv2=decode_digits(35, 3, text),
        current_ext_load=decode_digits(38, 3, text),
        ad3=decode_digits(44, 3, text),
        ad4=decode_digits(47, 3, text),
        heat1=decode_digits(50, 3, text),
        dual_pv_level=decode_digits(53, 1, text),
        flags=parse_flags(decode_digits(56, 3, text)),
    )


def parse_identity(text: Optional[str]) -> Optional[Identity]:
    """Parse the ``s1`` array; the model is the third entry."""
    if not text:
        return None
    values = text.split(",")
    if len(values) < 3:
        return None
    return Identity(model=values[2].strip().strip("\"'").strip())


def _to_number(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        return 0
    return number if math.isfinite(number) else 0


def parse_balancing(text: Optional[str]) -> Optional[BalancingStatus]:
    """Parse the ``s2`` array: 8 balancing entries, then min/max index and PV/load state."""
    if not text:
        return None
    values = [_to_number(v) for v in text.split(",")]
    values += [0] * (CELL_COUNT + 4 - len(values))

    return BalancingStatus(
        cells_balancing={i + 1: bool(values[i]) for i in range(CELL_COUNT)},
        cells_min_index=int(values[CELL_COUNT]),
        cells_max_index=int(values[CELL_COUNT + 1]),
        pv_on=bool(values[CELL_COUNT + 2]),
        load_on=bool(values[CELL_COUNT + 3]),
    )


def parse_energy(text: Optional[str]) -> Optional[EnergyCounters]:
    """Parse the ``eW`` variable: 6-digit slots in tenths of Wh."""
    if not text:
        return None

    def slot(index: int) -> float:
        return decode_digits(index * 6, 6, text) / 10

    return EnergyCounters(
        battery_wh=slot(0),
        pv1_wh=slot(1),
        pv2_wh=slot(2),
        load_wh=slot(5),
        ext_load_wh=slot(6),
    )


def parse_battery_profile(text: Optional[str]) -> Optional[BatteryProfile]:
    """Parse the ``xsbms`` variable."""
    if not text:
        return None
    return BatteryProfile(
        chemistry_type=decode_digits(7, 1, text),
        capacity_ah=decode_digits(8, 3, text),
        under_voltage_lock_mv=decode_digits(5, 2, text),
        over_voltage_lock_mv=decode_digits(3, 2, text),
        cv=decode_digits(0, 3, text),
    )


def unescape(value: str) -> str:
    """Collapse JavaScript-escaped backslashes."""
    return value.replace("\\\\", "\\")


def extract_variable(name: str, text: str) -> Optional[str]:
    """Return the raw value of ``var <name>=...`` in ``text``, or None."""
    if name in _QUOTED_PATTERNS:
        match = _QUOTED_PATTERNS[name].search(text)
        return unescape(match.group(1)) if match else None
    if name in _ARRAY_PATTERNS:
        match = _ARRAY_PATTERNS[name].search(text)
        return match.group(1) if match and match.group(1) else None
    raise KeyError(f"Unknown SBMS variable: {name}")


def extract_variables(text: str) -> Dict[str, Optional[str]]:
    """Extract all five variables from an HTML body or serial line."""
    return {name: extract_variable(name, text) for name in VARIABLE_NAMES}


def decode_frame(raw: Dict[str, Optional[str]]) -> Optional[Frame]:
    """Decode a set of raw variables into a Frame.

    Returns None when ``sbms`` is missing or fails the integrity check;
    the frame is then discarded as a whole. Secondary variables that are
    absent decode to None.
    """
    sbms = raw.get("sbms")
    if not sbms or not verify_integrity(sbms):
        return None

    try:
        return Frame(
            telemetry=parse_telemetry(sbms),
            identity=parse_identity(raw.get("s1")),
            balancing=parse_balancing(raw.get("s2")),
            energy=parse_energy(raw.get("eW")),
            profile=parse_battery_profile(raw.get("xsbms")),
        )
    except (ValueError, OverflowError) as e:
        logger.warning(f"Discarding frame with malformed variable: {e}")
        return None
