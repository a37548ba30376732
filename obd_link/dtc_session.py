"""
Trouble code session: read and clear DTCs.

Reading follows the sequence that works on slow adapters:

    1. verify the channel (ATI with retries) if it looks disconnected
    2. send "03" once and discard the answer (wakes the protocol search)
    3. wait, send "03" again and use that answer
    4. if the adapter is still SEARCHING..., wait longer and send once more

The last good result is cached and served when the adapter drops out.
"""

import asyncio
import logging
from typing import List, Optional

from .codec import ResponseStatus, classify_response, has_frame_marker
from .commands import CLEAR_DTC_COMMAND, READ_DTC_COMMAND, is_clear_acknowledged
from .config import Timings
from .dtc import get_dtc_description, parse_dtc_response
from .errors import (
    AdapterConnectionError,
    AdapterTimeoutError,
    ErrorKind,
    ParseError,
)
from .gate import CommunicationGate
from .models import ClearResult, DTCCode, DTCResult, RawResponse

logger = logging.getLogger(__name__)

NO_CODES_STATUSES = (
    ResponseStatus.NO_DATA,
    ResponseStatus.UNABLE_TO_CONNECT,
    ResponseStatus.PROMPT_ONLY,
    ResponseStatus.SEARCHING,
)


class DTCSession:
    """Reads and clears trouble codes through the gate."""

    def __init__(self, gate: CommunicationGate, timings: Optional[Timings] = None):
        self.gate = gate
        self.timings = timings or gate.timings
        self._cache: List[DTCCode] = []

    @property
    def cached_dtcs(self) -> List[DTCCode]:
        return list(self._cache)

    def clear_cache(self) -> None:
        self._cache = []

    # -------------------------------------------------------------------------
    # Mode 03: Read
    # -------------------------------------------------------------------------

    async def read_dtcs(self) -> DTCResult:
        """
        Read stored trouble codes.

        Returns:
            DTCResult; never raises for adapter or parse problems
        """
        if not self.gate.connected and not await self.gate.verify_connection():
            return self._connection_failure("Adapter not connected")

        try:
            response = await self._read_with_priming()
        except AdapterConnectionError as e:
            return self._connection_failure(str(e))
        except AdapterTimeoutError as e:
            logger.warning(f"DTC read timed out: {e}")
            return DTCResult(success=False, error=ErrorKind.TIMEOUT, message=str(e))

        return self._process(response)

    async def _read_with_priming(self) -> RawResponse:
        command = READ_DTC_COMMAND.command

        # Priming request, answer discarded
        try:
            await self.gate.request(command, timeout=self.timings.priming_timeout)
        except AdapterTimeoutError:
            logger.debug("DTC priming request timed out")

        await asyncio.sleep(self.timings.dtc_settle_delay)
        response = await self.gate.request(command, timeout=self.timings.dtc_timeout)

        if "SEARCHING" in response.text.upper() and not has_frame_marker(response.text):
            logger.info("Adapter still searching for protocol, retrying DTC read")
            await asyncio.sleep(self.timings.dtc_searching_delay)
            response = await self.gate.request(command, timeout=self.timings.dtc_timeout)

        return response

    def _process(self, response: RawResponse) -> DTCResult:
        text = response.text
        status = classify_response(text)

        if status in NO_CODES_STATUSES and not has_frame_marker(text):
            logger.info(f"No trouble codes ({status.value})")
            self._cache = []
            return DTCResult(success=True, message="No trouble codes", raw=text)

        if status == ResponseStatus.ERROR and not has_frame_marker(text):
            logger.error(f"Adapter error reading DTCs: {text}")
            return DTCResult(
                success=False,
                error=ErrorKind.ADAPTER,
                message=f"Adapter error: {text}",
                raw=text,
            )

        try:
            codes = parse_dtc_response(text)
        except ParseError as e:
            logger.error(f"Could not parse DTC response {text!r}: {e}")
            return DTCResult(success=False, error=ErrorKind.PARSE, message=str(e), raw=text)

        self._cache = [DTCCode(code=c, description=get_dtc_description(c)) for c in codes]
        logger.info(f"Read {len(self._cache)} stored DTCs")
        return DTCResult(success=True, dtcs=list(self._cache), raw=text)

    def _connection_failure(self, message: str) -> DTCResult:
        if self._cache:
            logger.warning(f"{message}; returning {len(self._cache)} cached DTCs")
            return DTCResult(
                success=True,
                dtcs=list(self._cache),
                message=message,
                from_cache=True,
            )
        logger.error(message)
        return DTCResult(success=False, error=ErrorKind.CONNECTION, message=message)

    # -------------------------------------------------------------------------
    # Mode 04: Clear
    # -------------------------------------------------------------------------

    async def clear_dtcs(self) -> ClearResult:
        """
        Clear stored DTCs and freeze frame.

        WARNING: This clears the check engine light. Only do this
        after repairs have been made.
        """
        if not self.gate.connected and not await self.gate.verify_connection():
            return ClearResult(success=False, error=ErrorKind.CONNECTION, message="Adapter not connected")

        logger.warning("Clearing DTCs and freeze frame data")
        try:
            response = await self.gate.request(
                CLEAR_DTC_COMMAND.command,
                timeout=self.timings.dtc_timeout,
            )
        except AdapterConnectionError as e:
            return ClearResult(success=False, error=ErrorKind.CONNECTION, message=str(e))
        except AdapterTimeoutError as e:
            return ClearResult(success=False, error=ErrorKind.TIMEOUT, message=str(e))

        text = response.text
        if classify_response(text) == ResponseStatus.ERROR:
            logger.error(f"Clear DTCs failed: {text}")
            return ClearResult(success=False, error=ErrorKind.ADAPTER, message=f"Adapter error: {text}", raw=text)

        if is_clear_acknowledged(text):
            self._cache = []
            logger.info("DTCs cleared")
            return ClearResult(success=True, message="DTCs cleared", raw=text)

        logger.warning(f"Clear DTCs not acknowledged: {text}")
        return ClearResult(success=False, error=ErrorKind.ADAPTER, message="Clear command not acknowledged", raw=text)
