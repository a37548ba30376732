"""
Adapter discovery.

Lists serial ports (COMx on Windows, /dev/tty* and /dev/rfcomm* elsewhere),
opens each as a SerialConnection and keeps the ones whose ATI answer names
an ELM327-compatible chip.

Run directly to scan from a terminal:

    python -m obd_link.autodetect
"""

import asyncio
import glob
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from serial.tools import list_ports

from .config import Timings, setup_logging
from .connection import ConnectionConfig, ConnectionType, SerialConnection
from .errors import OBDLinkError
from .gate import CommunicationGate

logger = logging.getLogger(__name__)

# Bluetooth serial devices often do not show up in comports()
EXTRA_PORT_PATTERNS = ["/dev/rfcomm*", "/dev/tty.OBD*"]
ADAPTER_MARKERS = ("ELM327", "ELM329", "OBDLINK", "STN")
PORT_TYPE_ORDER = {"bluetooth": 0, "usb": 1, "serial": 2, "unknown": 3}

# (port type, substrings of the description, substrings of the device name)
PORT_TYPE_RULES = (
    ("bluetooth", ("bluetooth",), ("rfcomm", "tty.obd")),
    ("usb", ("usb",), ("ttyusb", "ttyacm")),
    ("serial", ("serial",), ()),
)


@dataclass
class DetectedAdapter:
    port: str           # COM4, /dev/rfcomm0, ...
    name: str           # "OBDLink MX+", "ELM327", ...
    version: str        # version from ATI, or the raw answer
    port_type: str      # key of PORT_TYPE_ORDER

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "name": self.name,
            "version": self.version,
            "type": self.port_type,
        }


def _guess_port_type(port: str, description: str = "") -> str:
    description = (description or "").lower()
    port = port.lower()
    for port_type, desc_hints, name_hints in PORT_TYPE_RULES:
        if any(h in description for h in desc_hints) or any(h in port for h in name_hints):
            return port_type
    return "unknown"


def _port_entry(device: str, description: str = "", hwid: str = "") -> dict:
    return {
        "port": device,
        "description": description or "",
        "hwid": hwid or "",
        "type": _guess_port_type(device, description),
    }


def list_candidate_ports() -> List[dict]:
    """Serial ports worth probing, in discovery order, without duplicates."""
    entries = [_port_entry(p.device, p.description, p.hwid) for p in list_ports.comports()]
    known = {entry["port"] for entry in entries}

    for pattern in EXTRA_PORT_PATTERNS:
        for path in sorted(glob.glob(pattern)):
            if path not in known:
                known.add(path)
                entries.append(_port_entry(path))

    return entries


def identify_adapter(text: str) -> Optional[Tuple[str, str]]:
    """
    Name and version from an ATI answer.

    Returns:
        (name, version) or None if the answer is not from an ELM327 clone
    """
    upper = text.upper()
    if not any(marker in upper for marker in ADAPTER_MARKERS):
        return None

    if "OBDLINK" in upper:
        match = re.search(r"(OBDLink\s+[\w+]+)", text, re.IGNORECASE)
        name = match.group(1) if match else "OBDLink"
    elif "STN" in upper:
        name = "STN-based adapter"
    elif "ELM329" in upper:
        name = "ELM329"
    else:
        name = "ELM327"

    version_match = re.search(r"v\d+(\.\d+)*", text)
    return name, version_match.group(0) if version_match else text.strip()


async def _probe_port(port: str, timings: Optional[Timings] = None) -> Optional[DetectedAdapter]:
    """Open one port and ask ATI; None unless an ELM327-compatible chip answers."""
    connection = SerialConnection(ConnectionConfig(connection_type=ConnectionType.SERIAL, address=port))

    try:
        if not await connection.connect():
            return None
        response = await CommunicationGate(connection, timings).request("ATI")
    except OBDLinkError as e:
        logger.debug(f"{port}: probe failed: {e}")
        return None
    finally:
        await connection.disconnect()

    identified = identify_adapter(response.text)
    logger.debug(f"{port}: ATI -> {response.text!r} ({'match' if identified else 'no match'})")
    if identified is None:
        return None
    return DetectedAdapter(port=port, name=identified[0], version=identified[1], port_type="unknown")


async def detect_adapters(timings: Optional[Timings] = None) -> List[DetectedAdapter]:
    """
    Probe every candidate port one after the other.

    Returns:
        Adapters found, Bluetooth first, then USB, then the rest
    """
    candidates = list_candidate_ports()
    logger.info(f"Probing {len(candidates)} serial port(s) for an OBD adapter")

    detected = []
    for candidate in candidates:
        adapter = await _probe_port(candidate["port"], timings)
        if adapter is None:
            continue
        adapter.port_type = candidate["type"]
        logger.info(f"{adapter.name} {adapter.version} answered on {adapter.port} ({adapter.port_type})")
        detected.append(adapter)

    if not detected:
        logger.info("No OBD adapter answered")
    detected.sort(key=lambda a: PORT_TYPE_ORDER.get(a.port_type, len(PORT_TYPE_ORDER)))
    return detected


async def detect_adapter(timings: Optional[Timings] = None) -> Optional[DetectedAdapter]:
    """Most likely adapter, or None."""
    adapters = await detect_adapters(timings)
    if not adapters:
        return None
    logger.info(f"Using {adapters[0].name} on {adapters[0].port}")
    return adapters[0]


async def _scan() -> None:
    adapters = await detect_adapters()
    if not adapters:
        print("[ERR] No adapters found. Is it plugged in and the ignition ON?")
        return
    print(f"[OK] {len(adapters)} adapter(s):")
    for a in adapters:
        print(f"  - {a.name} ({a.version}) on {a.port} [{a.port_type}]")


if __name__ == "__main__":
    setup_logging("INFO")
    asyncio.run(_scan())
