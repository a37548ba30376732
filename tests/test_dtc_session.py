"""
Tests for the DTC read/clear session.
"""

import pytest

from conftest import FakeChannel
from obd_link.commands import CLEAR_DTC_COMMAND
from obd_link.dtc_session import DTCSession
from obd_link.errors import AdapterConnectionError, ErrorKind
from obd_link.gate import CommunicationGate


def make_session(channel, timings):
    return DTCSession(CommunicationGate(channel, timings))


class TestReadDTCs:
    """Test the primed Mode 03 read."""

    @pytest.mark.asyncio
    async def test_reads_codes_with_descriptions(self, vehicle_channel, fast_timings):
        session = make_session(vehicle_channel, fast_timings)

        result = await session.read_dtcs()

        assert result.success
        assert [d.code for d in result.dtcs] == ["P0195", "P0196"]
        assert result.dtcs[0].description == "Engine Oil Temperature Sensor Circuit Malfunction"
        assert not result.from_cache
        assert [d.code for d in session.cached_dtcs] == ["P0195", "P0196"]

    @pytest.mark.asyncio
    async def test_priming_answer_is_discarded(self, fast_timings):
        channel = FakeChannel({"03": ["NO DATA", "43 01 03 01"]})
        session = make_session(channel, fast_timings)

        result = await session.read_dtcs()

        assert channel.sent == ["03", "03"]
        assert [d.code for d in result.dtcs] == ["P0301"]

    @pytest.mark.asyncio
    async def test_priming_timeout_is_ignored(self, fast_timings):
        channel = FakeChannel({"03": [(1.0, ""), "43 01 03 01"]})
        session = make_session(channel, fast_timings)

        result = await session.read_dtcs()

        assert result.success
        assert [d.code for d in result.dtcs] == ["P0301"]

    @pytest.mark.asyncio
    async def test_resends_while_searching(self, fast_timings):
        channel = FakeChannel({"03": ["SEARCHING...", "SEARCHING...", "43 01 03 01"]})
        session = make_session(channel, fast_timings)

        result = await session.read_dtcs()

        assert channel.sent == ["03", "03", "03"]
        assert [d.code for d in result.dtcs] == ["P0301"]

    @pytest.mark.asyncio
    async def test_searching_with_frame_is_used(self, fast_timings):
        channel = FakeChannel({"03": ["NO DATA", "SEARCHING...\r7E8 04 43 01 03 01"]})
        session = make_session(channel, fast_timings)

        result = await session.read_dtcs()

        assert channel.sent == ["03", "03"]
        assert [d.code for d in result.dtcs] == ["P0301"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["NO DATA", "UNABLE TO CONNECT", "43 00"])
    async def test_no_codes(self, fast_timings, text):
        session = make_session(FakeChannel({"03": text}), fast_timings)

        result = await session.read_dtcs()

        assert result.success
        assert result.dtcs == []
        assert result.error is None

    @pytest.mark.asyncio
    async def test_adapter_error(self, fast_timings):
        session = make_session(FakeChannel({"03": "CAN ERROR"}), fast_timings)

        result = await session.read_dtcs()

        assert not result.success
        assert result.error == ErrorKind.ADAPTER

    @pytest.mark.asyncio
    async def test_parse_error_keeps_raw(self, fast_timings):
        session = make_session(FakeChannel({"03": "41 0C 1A F8"}), fast_timings)

        result = await session.read_dtcs()

        assert not result.success
        assert result.error == ErrorKind.PARSE
        assert result.raw == "41 0C 1A F8"

    @pytest.mark.asyncio
    async def test_timeout(self, fast_timings):
        session = make_session(FakeChannel({"03": (1.0, "43 00")}), fast_timings)

        result = await session.read_dtcs()

        assert not result.success
        assert result.error == ErrorKind.TIMEOUT


class TestCacheFallback:
    """Connection loss serves the last good result."""

    @pytest.mark.asyncio
    async def test_disconnected_returns_cache(self, vehicle_channel, fast_timings):
        session = make_session(vehicle_channel, fast_timings)
        await session.read_dtcs()

        vehicle_channel.is_connected = False
        result = await session.read_dtcs()

        assert result.success
        assert result.from_cache
        assert [d.code for d in result.dtcs] == ["P0195", "P0196"]

    @pytest.mark.asyncio
    async def test_link_lost_mid_read_returns_cache(self, vehicle_channel, fast_timings):
        session = make_session(vehicle_channel, fast_timings)
        await session.read_dtcs()

        vehicle_channel.responses["03"] = [AdapterConnectionError("link lost")]
        result = await session.read_dtcs()

        assert result.from_cache
        assert len(result.dtcs) == 2

    @pytest.mark.asyncio
    async def test_disconnected_without_cache(self, fast_timings):
        channel = FakeChannel()
        channel.is_connected = False
        session = make_session(channel, fast_timings)

        result = await session.read_dtcs()

        assert not result.success
        assert result.error == ErrorKind.CONNECTION
        assert not result.from_cache

    @pytest.mark.asyncio
    async def test_no_codes_clears_cache(self, vehicle_channel, fast_timings):
        session = make_session(vehicle_channel, fast_timings)
        await session.read_dtcs()

        vehicle_channel.responses["03"] = ["NO DATA"]
        await session.read_dtcs()

        assert session.cached_dtcs == []


class TestClearDTCs:
    """Test Mode 04."""

    @pytest.mark.asyncio
    async def test_acknowledged(self, vehicle_channel, fast_timings):
        session = make_session(vehicle_channel, fast_timings)
        await session.read_dtcs()

        result = await session.clear_dtcs()

        assert result
        assert result.message == "DTCs cleared"
        assert session.cached_dtcs == []
        assert vehicle_channel.sent[-1] == "04"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["44", "OK", "NO DATA"])
    async def test_accepted_answers(self, fast_timings, text):
        session = make_session(FakeChannel({"04": text}), fast_timings)
        assert (await session.clear_dtcs()).success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["44", "NO DATA", "ERROR", "?", "CAN ERROR"])
    async def test_agrees_with_command_parser(self, fast_timings, text):
        result = await make_session(FakeChannel({"04": text}), fast_timings).clear_dtcs()

        parsed = CLEAR_DTC_COMMAND.parse(text)
        assert result.success == (parsed == "DTCs Cleared Successfully")

    @pytest.mark.asyncio
    async def test_adapter_error(self, fast_timings):
        session = make_session(FakeChannel({"04": "CAN ERROR"}), fast_timings)

        result = await session.clear_dtcs()

        assert not result
        assert result.error == ErrorKind.ADAPTER

    @pytest.mark.asyncio
    async def test_not_acknowledged(self, fast_timings):
        session = make_session(FakeChannel({"04": "?"}), fast_timings)

        result = await session.clear_dtcs()

        assert not result.success
        assert result.raw == "?"

    @pytest.mark.asyncio
    async def test_disconnected(self, fast_timings):
        channel = FakeChannel()
        channel.is_connected = False

        result = await make_session(channel, fast_timings).clear_dtcs()

        assert not result.success
        assert result.error == ErrorKind.CONNECTION
