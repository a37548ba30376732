"""
Tests for Mode 03 reassembly and DTC formatting.
"""

import pytest

from obd_link.dtc import (
    correct_dtc_code,
    decode_dtc,
    extract_dtc_chunks,
    get_dtc_description,
    parse_dtc_response,
)
from obd_link.errors import ParseError
from obd_link.models import DTCCode, DTCType


class TestDTCDecoding:
    """Test 2-byte DTC decoding."""

    def test_powertrain(self):
        assert decode_dtc("0301") == "P0301"
        assert decode_dtc("0171") == "P0171"
        assert decode_dtc("0420") == "P0420"

    def test_oil_temperature_codes(self):
        assert decode_dtc("0195") == "P0195"
        assert decode_dtc("0196") == "P0196"

    def test_categories(self):
        assert decode_dtc("4123") == "C0123"
        assert decode_dtc("8001") == "B0001"
        assert decode_dtc("C100") == "U0100"

    def test_high_digits(self):
        assert decode_dtc("1234") == "P1234"
        assert decode_dtc("2A0F") == "P2A0F"

    def test_invalid_chunk(self):
        with pytest.raises(ParseError):
            decode_dtc("01G5")
        with pytest.raises(ParseError):
            decode_dtc("019")


class TestCorrection:

    def test_rewrites_0095_0096(self):
        assert correct_dtc_code("P0095") == "P0195"
        assert correct_dtc_code("P0096") == "P0196"

    def test_leaves_others(self):
        assert correct_dtc_code("P0301") == "P0301"
        assert correct_dtc_code("P0195") == "P0195"
        assert correct_dtc_code("C0095") == "C0095"


class TestExtractChunks:
    """Test reassembly across response shapes."""

    def test_no_headers(self):
        assert extract_dtc_chunks("43 02 01 95 01 96") == ["0195", "0196"]

    def test_compact_with_header(self):
        assert extract_dtc_chunks("7E806430201950196") == ["0195", "0196"]

    def test_padding_dropped(self):
        assert extract_dtc_chunks("43 02 03 01 00 00 04 20") == ["0301", "0420"]

    def test_multi_frame(self):
        text = "7E8 10 0A 43 04 01 95 01 96\n7E8 21 03 01 03 02 00 00 00"
        assert extract_dtc_chunks(text) == ["0195", "0196", "0301", "0302"]

    def test_two_ecus(self):
        text = "7E8 04 43 01 03 01\n7E9 04 43 01 07 00"
        assert extract_dtc_chunks(text) == ["0301", "0700"]

    def test_iso_tp_line_indexes(self):
        text = "00A\n0: 43 04 01 95 01\n1: 96 03 01 03 02"
        assert extract_dtc_chunks(text) == ["0195", "0196", "0301", "0302"]

    def test_zero_count(self):
        assert extract_dtc_chunks("43 00") == []

    @pytest.mark.parametrize("text", ["NO DATA", "UNABLE TO CONNECT", "", ">", "SEARCHING..."])
    def test_empty_answers(self, text):
        assert extract_dtc_chunks(text) == []

    def test_garbage_raises(self):
        with pytest.raises(ParseError):
            extract_dtc_chunks("41 0C 1A F8")


class TestParseDTCResponse:

    def test_applies_correction(self):
        assert parse_dtc_response("43 02 00 95 00 96") == ["P0195", "P0196"]

    def test_correction_can_be_disabled(self):
        assert parse_dtc_response("43 02 00 95 00 96", correct=False) == ["P0095", "P0096"]

    def test_duplicates_removed(self):
        text = "7E8 04 43 01 03 01\n7E9 04 43 01 03 01"
        assert parse_dtc_response(text) == ["P0301"]

    def test_searching_prefix(self):
        assert parse_dtc_response("SEARCHING...\r43 01 01 71\r\r>") == ["P0171"]


class TestDescriptions:

    def test_known(self):
        assert get_dtc_description("P0195") == "Engine Oil Temperature Sensor Circuit Malfunction"
        assert get_dtc_description("p0301") == "Cylinder 1 Misfire Detected"

    def test_unknown(self):
        assert get_dtc_description("P1ABC") == "Unknown DTC"

    def test_dtc_code_properties(self):
        dtc = DTCCode(code="P1234")
        assert dtc.type == DTCType.POWERTRAIN
        assert dtc.is_manufacturer_specific
        assert not DTCCode(code="U0100").is_manufacturer_specific
