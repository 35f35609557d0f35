"""
Shared fixtures for SBMS collector tests.

Provides an encoder that builds valid base-91 ``sbms`` strings (with a
correct checksum) so tests can describe frames by their decoded values.
"""

from __future__ import annotations

from typing import Iterable, Optional

import pytest

from sbms_collector.metrics import MetricsPlan
from sbms_collector.models import FLAG_POSITIONS
from sbms_collector.sink import MemorySink
from sbms_collector.writer import FrameWriter


def encode_digits(value: int, length: int) -> str:
    """Inverse of ``decode_digits``: big-endian base-91, offset 35."""
    chars = []
    for _ in range(length):
        value, digit = divmod(value, 91)
        chars.append(chr(digit + 35))
    assert value == 0, "value does not fit"
    return "".join(reversed(chars))


def flags_value(*names: str) -> int:
    """Integer whose 14-bit rendering has the named flags set."""
    return sum(1 << (13 - FLAG_POSITIONS[name]) for name in names)


def encode_sbms(
    year: int = 24,
    month: int = 5,
    day: int = 17,
    hour: int = 12,
    minute: int = 30,
    second: int = 0,
    soc: int = 80,
    cells: Iterable[int] = (3700,) * 8,
    temp_int: float = 21.5,
    temp_ext: float = 20.0,
    current_battery: int = 1500,
    current_pv1: int = 0,
    current_pv2: int = 0,
    current_ext_load: int = 0,
    ad3: int = 0,
    ad4: int = 0,
    heat1: int = 0,
    dual_pv_level: int = 0,
    flags: int = 0,
) -> str:
    """Build a 59-character sbms string with a valid checksum."""
    head = "".join([
        encode_digits(year, 1),
        encode_digits(month, 1),
        encode_digits(day, 1),
        encode_digits(hour, 1),
        encode_digits(minute, 1),
        encode_digits(second, 1),
        encode_digits(soc, 2),
        "".join(encode_digits(mv, 2) for mv in cells),
        encode_digits(int(round(temp_int * 10)) + 450, 2),
        encode_digits(int(round(temp_ext * 10)) + 450, 2),
        "-" if current_battery < 0 else "+",
        encode_digits(abs(current_battery), 3),
        encode_digits(current_pv1, 3),
        encode_digits(current_pv2, 3),
        encode_digits(current_ext_load, 3),
        encode_digits(0, 3),
        encode_digits(ad3, 3),
        encode_digits(ad4, 3),
        encode_digits(heat1, 3),
        encode_digits(dual_pv_level, 1),
    ])
    assert len(head) == 54
    tail = encode_digits(flags, 3)
    total = sum(ord(c) - 35 for c in head + tail) + 1995
    return head + encode_digits(total, 2) + tail


def encode_energy(
    battery_wh: float = 0,
    pv1_wh: float = 0,
    pv2_wh: float = 0,
    load_wh: float = 0,
    ext_load_wh: float = 0,
) -> str:
    """Build an eW string: seven 6-digit slots in tenths of Wh."""
    slots = [battery_wh, pv1_wh, pv2_wh, 0, 0, load_wh, ext_load_wh]
    return "".join(encode_digits(int(round(wh * 10)), 6) for wh in slots)


def encode_profile(
    cv: int = 3500,
    over_voltage_lock_mv: int = 3650,
    under_voltage_lock_mv: int = 2800,
    chemistry_type: int = 1,
    capacity_ah: int = 280,
) -> str:
    """Build an xsbms string."""
    return "".join([
        encode_digits(cv, 3),
        encode_digits(over_voltage_lock_mv, 2),
        encode_digits(under_voltage_lock_mv, 2),
        encode_digits(chemistry_type, 1),
        encode_digits(capacity_ah, 3),
    ])


def js_escape(value: str) -> str:
    return value.replace("\\", "\\\\")


def variable_lines(
    sbms: str,
    s1: Optional[str] = '"v1","2024","SBMS0"',
    s2: Optional[str] = "0,0,0,0,0,0,0,0,1,2,1,0",
    ew: Optional[str] = None,
    xsbms: Optional[str] = None,
) -> list:
    """The five ``var`` lines as the device prints them."""
    ew = encode_energy() if ew is None else ew
    xsbms = encode_profile() if xsbms is None else xsbms
    return [
        f'var sbms="{js_escape(sbms)}";',
        f"var s1=[{s1}];",
        f"var s2=[{s2}];",
        f'var eW="{js_escape(ew)}";',
        f'var xsbms="{js_escape(xsbms)}";',
    ]


def raw_data_page(sbms: str, **kwargs) -> str:
    """An HTML body shaped like the device's /rawData page."""
    lines = "\n".join(variable_lines(sbms, **kwargs))
    return f"<html><head><script>\n{lines}\n</script></head><body></body></html>"


@pytest.fixture()
def sbms_text() -> str:
    """A valid default sbms string (SOC 80, 8 x 3700 mV, +1500 mA)."""
    return encode_sbms()


@pytest.fixture()
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture()
def full_plan() -> MetricsPlan:
    return MetricsPlan(
        use_pv1=True,
        use_pv2=True,
        use_adcx=True,
        use_heat1=True,
        use_temp_ext=True,
        full_message=True,
    )


@pytest.fixture()
def writer_factory(memory_sink: MemorySink):
    """Build a FrameWriter on the shared memory sink."""

    def _make(plan: Optional[MetricsPlan] = None, source: str = "html") -> FrameWriter:
        return FrameWriter(memory_sink, plan or MetricsPlan(use_pv1=True), source)

    return _make
