"""
Shared fixtures: a scripted in-memory adapter channel and fast timings.
"""

import asyncio
import time
from typing import Dict, List, Optional, Union

import pytest

from obd_link.codec import ERROR_STATUSES, classify_response
from obd_link.config import Timings
from obd_link.connection import AdapterChannel
from obd_link.errors import AdapterConnectionError
from obd_link.models import RawResponse

# A scripted step is the response text, a (delay_seconds, text) pair, or an
# exception to raise from send().
Step = Union[str, tuple, Exception]


class FakeChannel(AdapterChannel):
    """
    In-memory adapter.

    responses maps a command to one step or a list of steps. Lists are
    consumed in order and the last step repeats. Unknown commands answer
    with `default`.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Union[Step, List[Step]]]] = None,
        default: str = "NO DATA",
        delay: float = 0.0,
    ):
        self.responses = {k: list(v) if isinstance(v, list) else [v] for k, v in (responses or {}).items()}
        self.default = default
        self.delay = delay
        self.is_connected = True
        self.sent: List[str] = []
        self.active = 0
        self.max_active = 0
        self.spans: List[tuple] = []

    @property
    def connected(self) -> bool:
        return self.is_connected

    async def connect(self) -> bool:
        self.is_connected = True
        return True

    async def disconnect(self) -> None:
        self.is_connected = False

    def _next_step(self, command: str) -> Step:
        steps = self.responses.get(command)
        if not steps:
            return self.default
        if len(steps) > 1:
            return steps.pop(0)
        return steps[0]

    async def send(self, command: str):
        if not self.is_connected:
            raise AdapterConnectionError("Fake channel disconnected")

        self.sent.append(command)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        try:
            step = self._next_step(command)
            delay = self.delay
            if isinstance(step, tuple):
                delay, step = step
            if delay:
                await asyncio.sleep(delay)
            if isinstance(step, Exception):
                raise step
            yield RawResponse(
                command=command,
                text=step,
                is_error=classify_response(step) in ERROR_STATUSES,
            )
        finally:
            self.active -= 1
            self.spans.append((started, time.monotonic()))


@pytest.fixture
def fast_timings():
    """Timings with no sleeps and short timeouts."""
    return Timings(
        priming_timeout=0.2,
        read_timeout=0.2,
        dtc_timeout=0.2,
        vin_timeout=0.2,
        read_retry_delay=0.0,
        dtc_settle_delay=0.0,
        dtc_searching_delay=0.0,
        probe_retry_delay=0.0,
        priming_backoff=0.0,
        min_cycle_sleep=0.001,
        not_connected_delay=0.01,
    )


# Answers of a healthy car with engine idling
VEHICLE_RESPONSES = {
    "ATI": "ELM327 v1.5",
    "0100": "41 00 BE 1F A8 13",
    "0104": "41 04 7F",
    "0105": "41 05 5A",
    "010C": "41 0C 1A F8",
    "010D": "41 0D 32",
    "010F": "41 0F 46",
    "0110": "41 10 01 F4",
    "0111": "41 11 33",
    "0902": "014\n0: 49 02 01 31 47 31\n1: 4A 43 35 34 34 34 52\n2: 37 32 35 32 33 36 37",
    "03": "43 02 01 95 01 96",
    "04": "44",
}


@pytest.fixture
def vehicle_channel():
    return FakeChannel(dict(VEHICLE_RESPONSES))
