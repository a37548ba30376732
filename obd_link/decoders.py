"""
OBD-II Response Decoders

Per-parameter formulas turning payload bytes into display values, plus the
supported-PID bitmap and the multi-frame VIN decoder.

Reference: SAE J1979 / ISO 15031-5
"""

import logging
import re
from typing import Dict, List

from .codec import HEX_RE
from .errors import ParseError

logger = logging.getLogger(__name__)

VIN_LENGTH = 17
VIN_FORBIDDEN = set("IOQ")


# -----------------------------------------------------------------------------
# Mode 01 formulas
# -----------------------------------------------------------------------------

def _need(data: bytes, count: int, what: str) -> None:
    if len(data) < count:
        raise ParseError(f"{what}: expected {count} bytes, got {len(data)}")


def decode_rpm(data: bytes) -> str:
    """(A*256 + B) / 4"""
    _need(data, 2, "RPM")
    return str(int(((data[0] * 256) + data[1]) / 4))


def decode_speed(data: bytes) -> str:
    _need(data, 1, "Speed")
    return str(data[0])


def decode_temperature(data: bytes) -> str:
    """A - 40, used for coolant and intake air."""
    _need(data, 1, "Temperature")
    return str(data[0] - 40)


def decode_fuel_level(data: bytes) -> str:
    _need(data, 1, "Fuel level")
    return f"{data[0] * 100 / 255:.1f}"


def decode_percent(data: bytes) -> str:
    """A * 100 / 255, used for throttle position and engine load."""
    _need(data, 1, "Percent")
    return str(int(data[0] * 100 / 255))


def decode_maf(data: bytes) -> str:
    """
    (A*256 + B) / 100 grams per second.

    Some adapters truncate the answer to a single byte; the value is then
    approximated as A * 2.55.
    """
    _need(data, 1, "MAF")
    if len(data) == 1:
        logger.debug(f"MAF single-byte fallback for 0x{data[0]:02X}")
        return f"{data[0] * 2.55:.2f}"
    return f"{((data[0] * 256) + data[1]) / 100:.2f}"


def decode_pressure(data: bytes) -> str:
    _need(data, 1, "Manifold pressure")
    return str(data[0])


def decode_timing_advance(data: bytes) -> str:
    """A/2 - 64 degrees before TDC."""
    _need(data, 1, "Timing advance")
    return f"{(data[0] / 2) - 64:.1f}"


def decode_supported_pids(data: bytes, base_pid: int = 0x00) -> str:
    """
    Decode a PID-support bitmap.

    Bit 31 of A..D stands for base_pid + 1, bit 0 for base_pid + 32.

    Returns:
        Comma-joined PID list, e.g. "01,03,04,05"
    """
    _need(data, 4, "Supported PIDs")
    bitmap = (data[0] << 24) | (data[1] << 16) | (data[2] << 8) | data[3]
    supported = [
        f"{base_pid + i + 1:02X}"
        for i in range(32)
        if bitmap & (1 << (31 - i))
    ]
    return ','.join(supported)


# -----------------------------------------------------------------------------
# Mode 09: VIN
# -----------------------------------------------------------------------------

def _hex_bytes(text: str) -> List[int]:
    """Parse space-separated or continuous hex, skipping junk tokens."""
    text = text.strip()
    parts = text.split() if ' ' in text else [text[i:i + 2] for i in range(0, len(text), 2)]
    return [int(p, 16) for p in parts if p and len(p) <= 2 and HEX_RE.match(p)]


def _parse_can_vin(lines: List[str]) -> List[int]:
    """CAN frames: optional byte-count line, then "0: 49 02 01 ...", "1: ..."."""
    start = 1 if re.fullmatch(r'[0-9A-F]+', lines[0]) and ':' not in lines[0] else 0
    data: List[int] = []
    for index, line in enumerate(lines[start:]):
        if ':' not in line:
            continue
        values = _hex_bytes(line.split(':', 1)[1])
        # First frame echoes 49 02 and the message count
        if index == 0 and len(values) >= 3:
            values = values[3:]
        data.extend(values)
    return data


def _parse_legacy_vin(lines: List[str]) -> List[int]:
    """Legacy frames "49 02 nn xx xx xx xx" keyed by frame number nn."""
    frames: Dict[int, List[int]] = {}
    for line in lines:
        if "49" not in line or "02" not in line:
            continue
        values = _hex_bytes(line)
        if len(values) >= 3:
            frames[values[2]] = values[3:]
    data: List[int] = []
    for number in sorted(frames):
        data.extend(frames[number])
    return data


def decode_vin(text: str) -> str:
    """
    Decode a Mode 09 PID 02 response into a VIN.

    Args:
        text: Raw multi-line adapter response

    Returns:
        17-character VIN

    Raises:
        ParseError: If the vehicle does not report a VIN or it is malformed
    """
    upper = text.upper()
    compact = ''.join(upper.split())
    if "FF" in compact and compact.count('F') > len(compact) / 3:
        raise ParseError("VIN not supported by vehicle (response is mostly FF)", raw=text)

    lines = [l.strip() for l in re.split(r'[\r\n>]', upper) if l.strip()]
    lines = [l for l in lines if not l.startswith('SEARCHING')]
    if not lines:
        raise ParseError("Empty VIN response", raw=text)

    data = _parse_can_vin(lines) if ':' in upper else _parse_legacy_vin(lines)
    while data and data[0] == 0:
        data.pop(0)

    vin = ''.join(chr(b) for b in data)
    logger.debug(f"VIN candidate: {vin!r}")

    if len(vin) != VIN_LENGTH or not is_valid_vin(vin):
        raise ParseError(f"Invalid VIN format: {vin!r}", raw=text)
    return vin


def is_valid_vin(vin: str) -> bool:
    """17 alphanumerics, never I, O or Q."""
    if len(vin) != VIN_LENGTH:
        return False
    return all(c.isascii() and c.isalnum() and c.upper() not in VIN_FORBIDDEN for c in vin)
