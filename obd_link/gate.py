"""
Communication Gate

The adapter channel only carries one request at a time. Every caller goes
through the gate, which holds an asyncio.Lock for exactly one round trip:

    acquire -> send -> first response (or timeout) -> close stream -> release

Decoding happens in the caller after the lock is released, so concurrent
readers only serialize on the physical I/O.
"""

import asyncio
import dataclasses
import logging
import time
from typing import Optional

from .config import Timings
from .connection import AdapterChannel
from .errors import AdapterConnectionError, AdapterTimeoutError
from .models import RawResponse

logger = logging.getLogger(__name__)


class CommunicationGate:
    """Single-flight access to an AdapterChannel."""

    def __init__(self, channel: AdapterChannel, timings: Optional[Timings] = None):
        """
        Args:
            channel: Connected adapter channel
            timings: Timeouts and retry delays
        """
        self.channel = channel
        self.timings = timings or Timings()
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.channel.connected

    @property
    def busy(self) -> bool:
        """True while a round trip is in flight."""
        return self._lock.locked()

    async def request(self, command: str, timeout: Optional[float] = None) -> RawResponse:
        """
        Send one command and wait for the first response.

        Args:
            command: Wire command ("010C", "03", "ATI")
            timeout: Seconds to wait for the first response

        Returns:
            RawResponse with round_trip_ms filled in

        Raises:
            AdapterConnectionError: Channel disconnected or stream ended empty
            AdapterTimeoutError: No response within timeout
        """
        timeout = timeout if timeout is not None else self.timings.read_timeout

        async with self._lock:
            if not self.channel.connected:
                raise AdapterConnectionError(f"Channel not connected, cannot send {command}")

            started = time.monotonic()
            stream = self.channel.send(command)
            try:
                response = await asyncio.wait_for(self._first(stream, command), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(f"No response to {command} within {timeout * 1000:.0f}ms")
                raise AdapterTimeoutError(f"Timeout waiting for response to {command}") from None
            finally:
                await self._close(stream)

            elapsed_ms = (time.monotonic() - started) * 1000

        return dataclasses.replace(response, round_trip_ms=elapsed_ms)

    async def request_with_retry(
        self,
        command: str,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> RawResponse:
        """
        Request with a bounded retry on timeout (sensor read policy).

        Only timeouts are retried; connection errors propagate at once.
        """
        retries = self.timings.read_retries if retries is None else retries
        retry_delay = self.timings.read_retry_delay if retry_delay is None else retry_delay

        attempt = 0
        while True:
            try:
                return await self.request(command, timeout)
            except AdapterTimeoutError:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.debug(f"Retrying {command} in {retry_delay * 1000:.0f}ms (attempt {attempt + 1})")
                await asyncio.sleep(retry_delay)

    async def verify_connection(self) -> bool:
        """
        Probe the adapter with ATI.

        Tries up to probe_attempts times, waiting probe_retry_delay * attempt
        between attempts.

        Returns:
            True if the adapter answered
        """
        attempts = self.timings.probe_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = await self.request("ATI", timeout=self.timings.read_timeout)
                if response.text and not response.is_error:
                    logger.info(f"Adapter answered ATI: {response.text}")
                    return True
                logger.warning(f"Empty ATI response (attempt {attempt}/{attempts})")
            except (AdapterConnectionError, AdapterTimeoutError) as e:
                logger.warning(f"Connection check failed (attempt {attempt}/{attempts}): {e}")

            if attempt < attempts:
                await asyncio.sleep(self.timings.probe_retry_delay * attempt)

        logger.error("Adapter did not answer ATI")
        return False

    @staticmethod
    async def _first(stream, command: str) -> RawResponse:
        async for item in stream:
            return item
        raise AdapterConnectionError(f"Channel closed without answering {command}")

    @staticmethod
    async def _close(stream) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
