"""
Tests for command building, response classification and payload extraction.
"""

import pytest

from obd_link.codec import (
    ResponseStatus,
    build_command,
    classify_response,
    clean_response,
    extract_payload,
    has_frame_marker,
    is_adapter_initializing,
)
from obd_link.commands import SENSOR_COMMANDS
from obd_link.errors import AdapterError, ErrorKind, ParseError


class TestBuildCommand:
    """Test wire command construction."""

    def test_mode_01(self):
        assert build_command(0x01, "0C") == "010C"
        assert build_command(0x01, "2f") == "012F"

    def test_bare_modes_ignore_pid(self):
        assert build_command(0x03) == "03"
        assert build_command(0x04, "00") == "04"

    def test_vehicle_info(self):
        assert build_command(0x09, "02") == "0902"


class TestExtractPayload:
    """Every adapter formatting yields the same data bytes."""

    @pytest.mark.parametrize("text", [
        "41 0C 1A F8",
        "410C1AF8",
        "7E8:410C1AF8",
        "7E804410C1AF8",
        "7E8 04 41 0C 1A F8",
        "SEARCHING...\r41 0C 1A F8\r\r>",
    ])
    def test_rpm_shapes(self, text):
        assert extract_payload(text, 0x01, "0C") == [0x1A, 0xF8]

    def test_single_byte(self):
        assert extract_payload("41 0D 32", 0x01, "0D") == [0x32]

    def test_empty_raises_with_raw(self):
        with pytest.raises(ParseError) as exc_info:
            extract_payload(">", 0x01, "0C")
        assert exc_info.value.raw == ">"
        assert exc_info.value.kind == ErrorKind.PARSE

    def test_no_data_bytes_raises(self):
        with pytest.raises(ParseError):
            extract_payload("41 0C", 0x01, "0C")

    def test_adapter_error_text(self):
        with pytest.raises(AdapterError) as exc_info:
            extract_payload("NO DATA\r\r>", 0x01, "0C")
        assert exc_info.value.kind == ErrorKind.ADAPTER
        assert "010C" in str(exc_info.value)


class TestSensorRoundTrip:
    """Decode realistic responses through the command registry."""

    def test_rpm(self):
        # (0x1A*256 + 0xF8) / 4 = 1726
        assert SENSOR_COMMANDS["0C"].parse("410C1AF8") == "1726"
        assert SENSOR_COMMANDS["0C"].parse("41 0C 1A F8") == "1726"

    def test_speed(self):
        assert SENSOR_COMMANDS["0D"].parse("41 0D 32") == "50"

    def test_coolant(self):
        assert SENSOR_COMMANDS["05"].parse("41 05 5A") == "50"
        assert SENSOR_COMMANDS["05"].parse("41 05 00") == "-40"

    def test_fuel_level(self):
        assert SENSOR_COMMANDS["2F"].parse("41 2F 80") == "50.2"

    def test_maf(self):
        assert SENSOR_COMMANDS["10"].parse("41 10 01 F4") == "5.00"

    def test_maf_single_byte(self):
        assert SENSOR_COMMANDS["10"].parse("41 10 64") == "255.00"

    def test_short_payload(self):
        with pytest.raises(ParseError):
            SENSOR_COMMANDS["0C"].parse("41 0C 1A")


class TestClassifyResponse:
    """Test coarse response classification."""

    def test_data(self):
        assert classify_response("41 0C 1A F8") == ResponseStatus.DATA

    def test_no_data(self):
        assert classify_response("NO DATA") == ResponseStatus.NO_DATA

    def test_unable_to_connect(self):
        assert classify_response("UNABLE TO CONNECT") == ResponseStatus.UNABLE_TO_CONNECT

    def test_errors(self):
        assert classify_response("CAN ERROR") == ResponseStatus.ERROR
        assert classify_response("BUS INIT: ...ERROR") == ResponseStatus.ERROR

    def test_prompt_only(self):
        assert classify_response("") == ResponseStatus.PROMPT_ONLY
        assert classify_response(" > ") == ResponseStatus.PROMPT_ONLY

    def test_searching(self):
        assert classify_response("SEARCHING...") == ResponseStatus.SEARCHING
        assert classify_response("STOPPED") == ResponseStatus.SEARCHING

    def test_searching_then_data(self):
        assert classify_response("SEARCHING...\n41 0C 1A F8") == ResponseStatus.DATA


class TestHelpers:

    def test_clean_response(self):
        assert clean_response("searching...\r41 0c 1a f8\r\r>") == "41 0C 1A F8"

    def test_is_adapter_initializing(self):
        assert is_adapter_initializing("SEARCHING...")
        assert is_adapter_initializing("stopped")
        assert not is_adapter_initializing("41 0C 1A F8")

    def test_has_frame_marker(self):
        assert has_frame_marker("7E8 06 43 02 01 95 01 96")
        assert has_frame_marker("43 00")
        assert not has_frame_marker("SEARCHING...")
        assert not has_frame_marker("NO DATA")
