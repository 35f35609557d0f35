"""
Tests for the SBMS base-91 codec.

Covers digit decoding, the checksum, the five variable parsers and the
extraction of ``var`` assignments from page bodies and serial lines.
"""

from __future__ import annotations

import pytest
from conftest import (
    encode_energy,
    encode_profile,
    encode_sbms,
    flags_value,
    raw_data_page,
)

from sbms_collector.codec import (
    checksum,
    decode_digits,
    decode_frame,
    extract_variable,
    extract_variables,
    parse_balancing,
    parse_battery_profile,
    parse_energy,
    parse_flags,
    parse_identity,
    parse_telemetry,
    unescape,
    verify_integrity,
)
from sbms_collector.errors import MalformedEncoding
from sbms_collector.models import FLAG_NAMES

# ===========================================================================
# Digit decoding
# ===========================================================================


class TestDecodeDigits:
    """Base-91 digits are ord(char) - 35, big-endian."""

    def test_lowest_digit_is_zero(self) -> None:
        assert decode_digits(0, 2, "##") == 0

    def test_single_digit(self) -> None:
        assert decode_digits(0, 1, "$") == 1
        assert decode_digits(0, 1, "}") == 90

    def test_big_endian(self) -> None:
        assert decode_digits(0, 2, "$#") == 91
        assert decode_digits(0, 2, "#$") == 1

    def test_offset_into_text(self) -> None:
        assert decode_digits(2, 1, "##&#") == 3

    def test_character_below_alphabet_raises(self) -> None:
        with pytest.raises(MalformedEncoding):
            decode_digits(0, 1, " ")

    def test_character_above_alphabet_raises(self) -> None:
        with pytest.raises(MalformedEncoding):
            decode_digits(0, 1, "~")

    def test_malformed_encoding_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            decode_digits(0, 1, "\x7f")

    def test_text_shorter_than_field_raises(self) -> None:
        with pytest.raises(MalformedEncoding, match="needs 3"):
            decode_digits(0, 3, "##")
        with pytest.raises(MalformedEncoding):
            decode_digits(4, 1, "####")


# ===========================================================================
# Integrity
# ===========================================================================


class TestIntegrity:
    """Stored checksum at offset 54 must match the computed one."""

    def test_valid_string_passes(self, sbms_text: str) -> None:
        assert verify_integrity(sbms_text) is True

    def test_checksum_matches_stored_value(self, sbms_text: str) -> None:
        assert checksum(sbms_text) == decode_digits(54, 2, sbms_text)

    @pytest.mark.parametrize("position", list(range(54)) + [56, 57, 58])
    def test_altering_any_covered_character_fails(self, sbms_text: str, position: int) -> None:
        original = sbms_text[position]
        replacement = chr(ord(original) - 1) if original == "}" else chr(ord(original) + 1)
        altered = sbms_text[:position] + replacement + sbms_text[position + 1:]
        assert verify_integrity(altered) is False

    def test_none_fails(self) -> None:
        assert verify_integrity(None) is False

    def test_empty_fails(self) -> None:
        assert verify_integrity("") is False

    def test_short_string_fails(self, sbms_text: str) -> None:
        assert verify_integrity(sbms_text[:58]) is False

    def test_out_of_alphabet_character_fails_without_raising(self, sbms_text: str) -> None:
        altered = sbms_text[:10] + " " + sbms_text[11:]
        assert verify_integrity(altered) is False


# ===========================================================================
# Telemetry
# ===========================================================================


class TestParseTelemetry:
    """The sbms variable decodes to a Telemetry record."""

    def test_decodes_clock(self, sbms_text: str) -> None:
        telemetry = parse_telemetry(sbms_text)
        assert telemetry.time_str == "2024-05-17 12:30:00"
        assert telemetry.timestamp.year == 2024

    def test_decodes_core_values(self) -> None:
        cells = [3300, 3310, 3320, 3330, 3340, 3350, 3360, 3370]
        text = encode_sbms(
            soc=55,
            cells=cells,
            temp_int=-5.0,
            temp_ext=31.2,
            current_pv1=2000,
            current_pv2=300,
            current_ext_load=120,
            ad3=1234,
            ad4=4321,
            heat1=7,
            dual_pv_level=3,
        )
        telemetry = parse_telemetry(text)

        assert telemetry.state_of_charge == 55
        assert telemetry.cells_millivolt == cells
        assert telemetry.temp_internal == pytest.approx(-5.0)
        assert telemetry.temp_external == pytest.approx(31.2)
        assert telemetry.current_pv1 == 2000
        assert telemetry.current_pv2 == 300
        assert telemetry.current_ext_load == 120
        assert telemetry.ad3 == 1234
        assert telemetry.ad4 == 4321
        assert telemetry.heat1 == 7
        assert telemetry.dual_pv_level == 3

    def test_always_eight_cells_and_fifteen_flags(self, sbms_text: str) -> None:
        telemetry = parse_telemetry(sbms_text)
        assert len(telemetry.cells_millivolt) == 8
        assert set(telemetry.flags) == set(FLAG_NAMES)
        assert len(telemetry.flags) == 15

    def test_positive_polarity(self) -> None:
        assert parse_telemetry(encode_sbms(current_battery=1500)).current_battery == 1500

    def test_negative_polarity(self) -> None:
        assert parse_telemetry(encode_sbms(current_battery=-1500)).current_battery == -1500

    def test_empty_input_returns_none(self) -> None:
        assert parse_telemetry("") is None
        assert parse_telemetry(None) is None


class TestParseFlags:
    """Flags come from a 14-bit zero-padded binary rendering."""

    def test_no_flags(self) -> None:
        assert not any(parse_flags(0).values())

    def test_named_flags_set(self) -> None:
        flags = parse_flags(flags_value("DFET", "COC", "OVLK"))
        assert flags["DFET"] is True
        assert flags["COC"] is True
        assert flags["OVLK"] is True
        assert sum(flags.values()) == 3

    def test_reserved_slot_is_never_set(self) -> None:
        assert parse_flags(2 ** 14 - 1)["OV"] is False

    def test_flags_decoded_from_sbms(self) -> None:
        telemetry = parse_telemetry(encode_sbms(flags=flags_value("EOC", "IOT")))
        assert telemetry.flags["EOC"] is True
        assert telemetry.flags["IOT"] is True
        assert telemetry.flags["DFET"] is False


# ===========================================================================
# Secondary variables
# ===========================================================================


class TestSecondaryParsers:
    """s1, s2, eW and xsbms."""

    def test_identity_model_is_third_entry(self) -> None:
        assert parse_identity('"v1","2024","SBMS0"').model == "SBMS0"

    def test_identity_too_short(self) -> None:
        assert parse_identity('"v1","2024"') is None

    def test_balancing_ordering(self) -> None:
        status = parse_balancing("0,1,0,0,0,0,0,1,3,7,1,0")
        assert status.cells_balancing[2] is True
        assert status.cells_balancing[8] is True
        assert status.cells_balancing[1] is False
        assert status.cells_min_index == 3
        assert status.cells_max_index == 7
        assert status.pv_on is True
        assert status.load_on is False
        assert status.any_active is True

    def test_balancing_non_numeric_entries_are_zero(self) -> None:
        status = parse_balancing("x,0,0,0,0,0,0,0,y,2")
        assert status.cells_balancing[1] is False
        assert status.cells_min_index == 0
        assert status.cells_max_index == 2
        assert status.load_on is False

    @pytest.mark.parametrize("entry", ["nan", "inf", "-inf", "1e999"])
    def test_balancing_non_finite_entries_are_zero(self, entry: str) -> None:
        status = parse_balancing(f"0,0,0,0,0,0,0,0,{entry},{entry},1,{entry}")
        assert status.cells_min_index == 0
        assert status.cells_max_index == 0
        assert status.pv_on is True
        assert status.load_on is False

    def test_energy_slots(self) -> None:
        energy = parse_energy(
            encode_energy(battery_wh=1234.5, pv1_wh=500, pv2_wh=20.1, load_wh=300, ext_load_wh=7.5)
        )
        assert energy.battery_wh == pytest.approx(1234.5)
        assert energy.pv1_wh == pytest.approx(500)
        assert energy.pv2_wh == pytest.approx(20.1)
        assert energy.load_wh == pytest.approx(300)
        assert energy.ext_load_wh == pytest.approx(7.5)

    def test_battery_profile(self) -> None:
        profile = parse_battery_profile(encode_profile())
        assert profile.cv == 3500
        assert profile.over_voltage_lock_mv == 3650
        assert profile.under_voltage_lock_mv == 2800
        assert profile.chemistry_type == 1
        assert profile.capacity_ah == 280

    def test_truncated_energy_raises(self) -> None:
        with pytest.raises(MalformedEncoding):
            parse_energy("#####$")
        with pytest.raises(MalformedEncoding):
            parse_energy(encode_energy()[:41])

    def test_truncated_profile_raises(self) -> None:
        with pytest.raises(MalformedEncoding):
            parse_battery_profile(encode_profile()[:10])

    @pytest.mark.parametrize(
        "parser", [parse_identity, parse_balancing, parse_energy, parse_battery_profile]
    )
    def test_empty_input_returns_none(self, parser) -> None:
        assert parser("") is None
        assert parser(None) is None


# ===========================================================================
# Extraction
# ===========================================================================


class TestExtraction:
    """var assignments are found in page bodies and serial lines."""

    def test_unescape_collapses_double_backslash(self) -> None:
        assert unescape("a\\\\b") == "a\\b"

    def test_extract_all_variables(self, sbms_text: str) -> None:
        raw = extract_variables(raw_data_page(sbms_text))
        assert raw["sbms"] == sbms_text
        assert raw["s1"] == '"v1","2024","SBMS0"'
        assert raw["s2"] == "0,0,0,0,0,0,0,0,1,2,1,0"
        assert raw["eW"] == encode_energy()
        assert raw["xsbms"] == encode_profile()

    def test_backslash_survives_page_escaping(self) -> None:
        # Cell 1 = 57 * 91 + 57 renders as two backslashes
        text = encode_sbms(cells=[57 * 91 + 57] + [3700] * 7)
        assert "\\" in text
        raw = extract_variables(raw_data_page(text))
        assert raw["sbms"] == text
        assert verify_integrity(raw["sbms"]) is True

    def test_missing_variable_is_none(self) -> None:
        raw = extract_variables("<html>nothing here</html>")
        assert raw == {"sbms": None, "s1": None, "s2": None, "eW": None, "xsbms": None}

    def test_unknown_variable_name_raises(self) -> None:
        with pytest.raises(KeyError):
            extract_variable("foo", "var foo=1;")


# ===========================================================================
# Frame decoding
# ===========================================================================


class TestDecodeFrame:
    """A frame is decoded only if sbms passes integrity."""

    def test_full_frame(self, sbms_text: str) -> None:
        frame = decode_frame(extract_variables(raw_data_page(sbms_text)))
        assert frame.telemetry.state_of_charge == 80
        assert frame.identity.model == "SBMS0"
        assert frame.balancing.cells_min_index == 1
        assert frame.energy.battery_wh == 0
        assert frame.profile.capacity_ah == 280

    def test_missing_sbms_discards_frame(self) -> None:
        assert decode_frame({"s1": '"a","b","c"'}) is None

    def test_corrupt_sbms_discards_frame(self, sbms_text: str) -> None:
        corrupt = sbms_text[:6] + chr(ord(sbms_text[6]) + 1) + sbms_text[7:]
        assert decode_frame({"sbms": corrupt}) is None

    def test_absent_secondary_variables_decode_to_none(self, sbms_text: str) -> None:
        frame = decode_frame({"sbms": sbms_text})
        assert frame.identity is None
        assert frame.balancing is None
        assert frame.energy is None
        assert frame.profile is None

    def test_malformed_secondary_variable_discards_frame(self, sbms_text: str) -> None:
        assert decode_frame({"sbms": sbms_text, "eW": "      "}) is None

    def test_truncated_energy_discards_frame(self, sbms_text: str) -> None:
        assert decode_frame({"sbms": sbms_text, "eW": "#####$"}) is None

    def test_truncated_profile_discards_frame(self, sbms_text: str) -> None:
        assert decode_frame({"sbms": sbms_text, "xsbms": encode_profile()[:7]}) is None

    def test_non_finite_balancing_entries_keep_frame(self, sbms_text: str) -> None:
        frame = decode_frame({"sbms": sbms_text, "s2": "0,0,0,0,0,0,0,0,inf,nan,0,0"})
        assert frame is not None
        assert frame.balancing.cells_min_index == 0
