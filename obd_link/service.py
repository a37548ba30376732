"""
OBD Link Service - Main API

High-level interface tying the channel, gate, detector, DTC session and
polling scheduler together for one adapter session.

Usage:
    async with OBDLinkService() as obd:
        await obd.connect('wifi', '192.168.0.10:35000')

        vin = await obd.read_vin()
        result = await obd.read_dtcs()

        await obd.start_monitoring(high=['0C', '0D'], low=['05'])
        queue = obd.subscribe()
        reading = await queue.get()
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Union

from .commands import VIN_COMMAND
from .config import Timings
from .connection import (
    AdapterChannel,
    ConnectionType,
    DEFAULT_ADDRESSES,
    create_connection,
)
from .detector import PIDSupportDetector
from .dtc_session import DTCSession
from .errors import AdapterConnectionError, OBDLinkError
from .gate import CommunicationGate
from .models import ClearResult, DTCResult, SensorReading
from .scheduler import PollingScheduler

logger = logging.getLogger(__name__)


class OBDLinkService:
    """
    One adapter session: transport, gate, PID support, trouble codes and
    live monitoring behind a single object.

    Every read raises AdapterConnectionError before connect() or attach().
    """

    def __init__(self, timings: Optional[Timings] = None):
        self.timings = timings or Timings()
        self._channel: Optional[AdapterChannel] = None
        self._gate: Optional[CommunicationGate] = None
        self._detector: Optional[PIDSupportDetector] = None
        self._dtc_session: Optional[DTCSession] = None
        self._scheduler: Optional[PollingScheduler] = None
        self._vin: Optional[str] = None

    @property
    def connected(self) -> bool:
        """True while the channel is open."""
        return self._channel is not None and self._channel.connected

    @property
    def vin(self) -> Optional[str]:
        """VIN read when the session started, if the vehicle reported one."""
        return self._vin

    @property
    def scheduler(self) -> Optional[PollingScheduler]:
        return self._scheduler

    # -------------------------------------------------------------------------
    # Context Manager Support
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> 'OBDLinkService':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(
        self,
        connection_type: Union[str, ConnectionType],
        address: Optional[str] = None,
        **kwargs
    ) -> bool:
        """
        Open a transport and start a session on it.

        Args:
            connection_type: ConnectionType or its value ("wifi", "usb", ...)
            address: Serial device or host:port; DEFAULT_ADDRESSES when omitted
            **kwargs: Passed to ConnectionConfig (baudrate, timeout, ...)

        Returns:
            False if the adapter could not be reached

        Raises:
            ValueError: Unknown type, or no address and no default for it
        """
        if isinstance(connection_type, str):
            connection_type = ConnectionType(connection_type.lower())

        if address is None:
            address = DEFAULT_ADDRESSES.get(connection_type)
            if address is None:
                raise ValueError(f"{connection_type.value} connections need an explicit address")

        logger.info(f"Opening {connection_type.value} channel to {address}")
        channel = create_connection(connection_type, address, **kwargs)

        if not await channel.connect():
            logger.error(f"Adapter on {address} did not come up")
            return False

        await self.attach(channel)
        return True

    async def attach(self, channel: AdapterChannel) -> None:
        """Start a session on an already connected channel."""
        if self._channel is not None:
            await self.disconnect()

        self._channel = channel
        self._gate = CommunicationGate(channel, self.timings)
        self._detector = PIDSupportDetector(self._gate)
        self._dtc_session = DTCSession(self._gate)
        self._scheduler = PollingScheduler(self._gate, self._detector)

        try:
            supported = await self._detector.detect()
            logger.info(f"Vehicle supports {len(supported)} known PIDs")
        except OBDLinkError as e:
            logger.warning(f"PID support detection failed: {e}")

        try:
            self._vin = await self.read_vin()
            if self._vin:
                logger.info(f"Session started for VIN {self._vin}")
        except OBDLinkError as e:
            logger.debug(f"VIN read failed: {e}")

    async def disconnect(self) -> None:
        """Stop monitoring, drop session caches and close the channel."""
        if self._scheduler is not None:
            await self._scheduler.stop()
        if self._channel is not None:
            await self._channel.disconnect()
        if self._detector is not None:
            self._detector.reset()
        if self._dtc_session is not None:
            self._dtc_session.clear_cache()

        self._channel = None
        self._gate = None
        self._detector = None
        self._dtc_session = None
        self._scheduler = None
        self._vin = None
        logger.info("Adapter session closed")

    def _ensure_connected(self) -> None:
        if self._gate is None:
            raise AdapterConnectionError("Not connected. Call connect() first.")

    # -------------------------------------------------------------------------
    # Vehicle Information
    # -------------------------------------------------------------------------

    async def read_vin(self) -> Optional[str]:
        """
        Ask the vehicle for its VIN (Mode 09 PID 02).

        Returns:
            17-character VIN or None if the vehicle does not report one
        """
        self._ensure_connected()
        response = await self._gate.request(VIN_COMMAND.command, timeout=self.timings.vin_timeout)
        if response.is_error:
            logger.info(f"VIN not available: {response.text}")
            return None
        try:
            self._vin = VIN_COMMAND.parse(response.text)
        except OBDLinkError as e:
            logger.info(f"VIN not available: {e}")
            return None
        return self._vin

    async def supported_pids(self, force: bool = False) -> List[str]:
        """
        Known PIDs the vehicle supports, detected once per session.

        Args:
            force: Query the vehicle again instead of using the cached set
        """
        self._ensure_connected()
        supported = await self._detector.detect(force=force)
        return sorted(supported)

    # -------------------------------------------------------------------------
    # DTC Operations
    # -------------------------------------------------------------------------

    async def read_dtcs(self) -> DTCResult:
        """Read stored Diagnostic Trouble Codes."""
        self._ensure_connected()
        return await self._dtc_session.read_dtcs()

    async def clear_dtcs(self) -> ClearResult:
        """Clear stored DTCs and freeze frame."""
        self._ensure_connected()
        return await self._dtc_session.clear_dtcs()

    # -------------------------------------------------------------------------
    # Sensor Reading
    # -------------------------------------------------------------------------

    async def read_sensor(self, pid: str) -> SensorReading:
        """
        Read a single sensor value.

        Args:
            pid: PID string or name (e.g., '0C' or 'RPM')
        """
        self._ensure_connected()
        return await self._scheduler.request_reading(pid)

    async def read_sensors(self, pids: List[str]) -> Dict[str, SensorReading]:
        """
        Read several sensors concurrently; the gate still serializes the I/O.

        Returns:
            Dict mapping the requested PID to its reading
        """
        self._ensure_connected()
        readings = await asyncio.gather(*(self._scheduler.request_reading(pid) for pid in pids))
        return dict(zip(pids, readings))

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def start_monitoring(
        self,
        high: Iterable[str],
        medium: Iterable[str] = (),
        low: Iterable[str] = (),
        period_ms: float = 500.0,
    ) -> None:
        """Start prioritized background polling."""
        self._ensure_connected()
        await self._scheduler.start(high, medium, low, period_ms)

    async def stop_monitoring(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()

    def latest_readings(self) -> Dict[str, SensorReading]:
        if self._scheduler is None:
            return {}
        return self._scheduler.latest

    def subscribe(self) -> asyncio.Queue:
        self._ensure_connected()
        return self._scheduler.subscribe()

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if self._scheduler is not None:
            self._scheduler.unsubscribe(queue)
