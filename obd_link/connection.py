"""
Adapter channels.

An ELM327 is a line-oriented command interpreter: write "010C\r", read until
the ">" prompt comes back. The same exchange runs over a serial device
(USB cable or a paired Bluetooth SPP port such as /dev/rfcomm0 or COM5) or a
TCP socket for WiFi dongles.

Every channel implements AdapterChannel.send(), an async stream of
RawResponse items. The CommunicationGate consumes the first item and closes
the stream.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Tuple

import serial_asyncio

from .codec import ERROR_STATUSES, classify_response
from .errors import AdapterConnectionError
from .models import RawResponse

logger = logging.getLogger(__name__)

PROMPT = b">"
READ_CHUNK = 1024

StreamPair = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


class ConnectionType(Enum):
    """Transport used to reach the adapter."""
    BLUETOOTH = "bluetooth"
    WIFI = "wifi"
    USB = "usb"
    SERIAL = "serial"


@dataclass
class ConnectionConfig:
    """Where the adapter lives and how patient to be with it."""
    connection_type: ConnectionType
    address: str  # serial device, or host[:port] for WiFi
    baudrate: int = 38400
    timeout: float = 5.0
    wifi_port: int = 35000

    def host_and_port(self) -> Tuple[str, int]:
        host, sep, port = self.address.rpartition(':')
        if not sep:
            return self.address, self.wifi_port
        return host, int(port)


class AdapterChannel(ABC):
    """A channel to the adapter that carries one request at a time."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> bool:
        """Open the transport and run the adapter setup sequence."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport."""

    @abstractmethod
    def send(self, command: str) -> AsyncIterator[RawResponse]:
        """
        Send a command and stream the adapter's responses.

        Callers must not have more than one send() outstanding.
        """


class ELM327Connection(AdapterChannel):
    """
    Prompt-terminated command exchange over an asyncio stream pair.

    Subclasses provide _open(); the rest (setup, reads, echo handling,
    teardown) is shared.
    """

    transport_name = "stream"

    # Echo off, linefeeds off, spaces off, automatic protocol search
    SETUP_COMMANDS = ("ATE0", "ATL0", "ATS0", "ATSP0")
    RESET_TIMEOUT = 10.0
    RESET_SETTLE = 1.0

    def __init__(self, config: ConnectionConfig):
        self.config = config
        self._connected = False
        self._stale = False
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def _open(self) -> StreamPair:
        ...

    async def connect(self) -> bool:
        try:
            self._reader, self._writer = await self._open()
            self._connected = True
            await self._setup_adapter()
        except (OSError, asyncio.TimeoutError, AdapterConnectionError) as e:
            logger.error(f"{self.transport_name} connection to {self.config.address} failed: {e}")
            await self._teardown()
            return False

        logger.info(f"Connected to ELM327 via {self.transport_name}: {self.config.address}")
        return True

    async def disconnect(self) -> None:
        await self._teardown()
        logger.info(f"{self.transport_name} connection to {self.config.address} closed")

    async def send(self, command: str) -> AsyncIterator[RawResponse]:
        text = await self.send_command(command)
        yield RawResponse(
            command=command,
            text=text,
            is_error=classify_response(text) in ERROR_STATUSES,
        )

    async def send_command(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Write one command and collect the answer up to the prompt.

        Args:
            command: AT or OBD command ("ATZ", "010C")
            timeout: Seconds to wait for the prompt; config.timeout if None

        Returns:
            Answer text without prompt or echo. A timeout returns whatever
            arrived so far.

        Raises:
            AdapterConnectionError: Not connected, or the transport failed
        """
        if not self._connected or self._writer is None:
            raise AdapterConnectionError(f"Not connected to ELM327, cannot send {command}")

        if self._stale:
            await self._discard_pending()

        try:
            self._writer.write(command.encode('ascii') + b"\r")
            await self._writer.drain()
        except OSError as e:
            self._connected = False
            raise AdapterConnectionError(f"Write of {command} failed: {e}") from e
        logger.debug(f">> {command}")

        try:
            raw = await self._read_until_prompt(timeout or self.config.timeout)
        except asyncio.CancelledError:
            # The rest of this answer is still on the wire
            self._stale = True
            raise

        text = self._strip_echo(command, raw)
        logger.debug(f"<< {text!r}")
        return text

    async def _read_until_prompt(self, timeout: float) -> str:
        if self._reader is None:
            raise AdapterConnectionError("Reader not initialized")

        received = bytearray()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while PROMPT not in received:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"No prompt within {timeout:.1f}s, partial answer: {bytes(received)!r}")
                break
            try:
                chunk = await asyncio.wait_for(self._reader.read(READ_CHUNK), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            except OSError as e:
                self._connected = False
                raise AdapterConnectionError(f"Read failed: {e}") from e
            if not chunk:
                self._connected = False
                raise AdapterConnectionError("Adapter closed the connection")
            received += chunk

        text = received.decode('ascii', errors='ignore').replace('\r', '\n')
        return text.split('>', 1)[0].strip()

    @staticmethod
    def _strip_echo(command: str, text: str) -> str:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if lines and lines[0].replace(' ', '').upper() == command.upper():
            del lines[0]
        return '\n'.join(lines)

    async def _discard_pending(self) -> None:
        """Drop the tail of an answer whose reader was cancelled."""
        while True:
            try:
                chunk = await asyncio.wait_for(self._reader.read(READ_CHUNK), timeout=0.05)
            except asyncio.TimeoutError:
                break
            if not chunk or PROMPT in chunk:
                break
        self._stale = False

    async def _setup_adapter(self) -> None:
        await self.send_command("ATZ", timeout=self.RESET_TIMEOUT)
        await asyncio.sleep(self.RESET_SETTLE)
        for command in self.SETUP_COMMANDS:
            answer = await self.send_command(command)
            logger.debug(f"{command}: {answer or '(no answer)'}")
        logger.debug("ELM327 setup complete")

    async def _teardown(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        self._connected = False
        self._stale = False
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Ignoring error while closing {self.transport_name}: {e}")


class SerialConnection(ELM327Connection):
    """USB cable or Bluetooth SPP port, with baud rate detection."""

    transport_name = "serial"

    # Tried after the configured rate, most common first
    BAUD_RATES = (38400, 9600, 115200, 57600, 19200)
    RESET_SETTLE = 2.0

    def _candidate_rates(self):
        yield self.config.baudrate
        yield from (rate for rate in self.BAUD_RATES if rate != self.config.baudrate)

    async def _open(self) -> StreamPair:
        return await serial_asyncio.open_serial_connection(
            url=self.config.address,
            baudrate=self.config.baudrate,
        )

    async def connect(self) -> bool:
        for baudrate in list(self._candidate_rates()):
            self.config.baudrate = baudrate
            logger.info(f"Probing {self.config.address} at {baudrate} baud")
            try:
                self._reader, self._writer = await self._open()
                self._connected = True
                identity = await self._identify()
                if identity:
                    if "ELM" not in identity.upper():
                        logger.info(f"{self.config.address} answered ATI with {identity[:50]!r}, trying it anyway")
                    await self._setup_adapter()
                    logger.info(f"Connected to {identity} on {self.config.address} @ {baudrate}")
                    return True
                logger.info(f"Silence at {baudrate} baud")
            except (OSError, AdapterConnectionError) as e:
                logger.warning(f"{self.config.address} @ {baudrate} failed: {e}")
            await self._teardown()

        logger.error(f"No ELM327 answered on {self.config.address} at any baud rate")
        return False

    async def _identify(self) -> str:
        # Bluetooth clones often drop the first command after pairing
        self._writer.write(b"\r\n")
        await self._writer.drain()
        try:
            await asyncio.wait_for(self._reader.read(READ_CHUNK), timeout=1.5)
        except asyncio.TimeoutError:
            pass
        return await self.send_command("ATI", timeout=2.0)


class WiFiConnection(ELM327Connection):
    """TCP socket to a WiFi dongle (usually 192.168.0.10:35000)."""

    transport_name = "wifi"

    async def _open(self) -> StreamPair:
        host, port = self.config.host_and_port()
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.config.timeout)


CHANNEL_CLASSES = {
    ConnectionType.BLUETOOTH: SerialConnection,
    ConnectionType.USB: SerialConnection,
    ConnectionType.SERIAL: SerialConnection,
    ConnectionType.WIFI: WiFiConnection,
}

DEFAULT_ADDRESSES = {
    ConnectionType.BLUETOOTH: "/dev/rfcomm0",
    ConnectionType.WIFI: "192.168.0.10:35000",
    ConnectionType.USB: "/dev/ttyUSB0",
}


def create_connection(connection_type: ConnectionType, address: str, **kwargs) -> ELM327Connection:
    """
    Build an unconnected channel for the given transport.

    Extra keyword arguments go to ConnectionConfig (baudrate, timeout,
    wifi_port).
    """
    channel_class = CHANNEL_CLASSES.get(connection_type)
    if channel_class is None:
        raise ValueError(f"Unknown connection type: {connection_type}")
    return channel_class(ConnectionConfig(connection_type=connection_type, address=address, **kwargs))
