"""
Diagnostic Trouble Code reassembly and formatting.

Mode 03 answers arrive in two shapes:

1. With CAN headers (ATH1), possibly spread over ISO-TP frames:
       7E8 10 0A 43 04 01 95 01 96
       7E8 21 03 01 03 02 00 00 00
   7E8 = PCM, 7E9 = TCM. "43" is the Mode 03 response byte, "04" the count.
2. Without headers (ATH0): "43 02 01 95 01 96"

Each trouble code is 4 hex characters (2 bytes); "0000" is padding.
"""

import logging
import re
from typing import List, Tuple

from .codec import (
    FRAME_MARKERS,
    HEX_RE,
    ResponseStatus,
    classify_response,
)
from .errors import ParseError

logger = logging.getLogger(__name__)

RESPONSE_BYTE = "43"
PADDING = "0000"
HEADER_LENGTH = 5  # "7E8" + PCI byte

# Top two bits of the first byte
CATEGORY_LETTERS = {0: 'P', 1: 'C', 2: 'B', 3: 'U'}

FRAME_INDEX_RE = re.compile(r'^[0-9A-F]:')
FRAME_SPLIT_RE = re.compile(r'(?=7E[89])')

EMPTY_STATUSES = (
    ResponseStatus.NO_DATA,
    ResponseStatus.UNABLE_TO_CONNECT,
    ResponseStatus.PROMPT_ONLY,
    ResponseStatus.SEARCHING,
)


def _compact(text: str) -> str:
    """Strip whitespace, prompt, SEARCHING... and ISO-TP line indexes ("0:", "1:")."""
    lines = re.split(r'[\r\n]', text.upper().replace('>', '').replace('SEARCHING...', ''))
    return ''.join(FRAME_INDEX_RE.sub('', ''.join(line.split())) for line in lines)


def split_frames(compact: str) -> List[str]:
    """Split a compact response into frames, one per 7E8/7E9 header."""
    return [f for f in FRAME_SPLIT_RE.split(compact) if f.startswith(FRAME_MARKERS)]


def _consume(stream: str) -> Tuple[List[str], int]:
    """
    Read a count byte, then that many 4-char chunks.

    Continuation headers met mid-stream are skipped.

    Returns:
        (chunks, characters consumed)
    """
    if len(stream) < 2 or not HEX_RE.match(stream[:2]):
        return [], 0

    count = int(stream[:2], 16)
    idx = 2
    chunks: List[str] = []

    while len(chunks) < count and idx + 4 <= len(stream):
        if stream[idx:idx + 3] in FRAME_MARKERS and idx + HEADER_LENGTH <= len(stream):
            idx += HEADER_LENGTH
            continue
        chunk = stream[idx:idx + 4]
        if not HEX_RE.match(chunk):
            break
        idx += 4
        if chunk == PADDING:
            continue
        chunks.append(chunk)

    if len(chunks) < count:
        logger.debug(f"DTC count said {count}, found {len(chunks)}")
    return chunks, idx


def extract_dtc_chunks(text: str) -> List[str]:
    """
    Reassemble the 4-hex-char DTC chunks from a Mode 03 response.

    Args:
        text: Raw adapter text

    Returns:
        Chunks such as ["0195", "0196"]; empty when the vehicle has no codes

    Raises:
        ParseError: If the response carries no Mode 03 data
    """
    compact = _compact(text)

    if RESPONSE_BYTE not in compact:
        if classify_response(text) in EMPTY_STATUSES or not compact:
            return []
        raise ParseError("No Mode 03 response byte in DTC response", raw=text)

    if not any(marker in compact for marker in FRAME_MARKERS):
        chunks, _ = _consume(compact[compact.find(RESPONSE_BYTE) + 2:])
        return chunks

    frames = split_frames(compact)
    chunks: List[str] = []
    i = 0
    while i < len(frames):
        frame = frames[i]
        pos = frame.find(RESPONSE_BYTE, 3)
        if pos < 0:
            i += 1
            continue

        tail = frame[pos + 2:]
        found, consumed = _consume(tail + ''.join(frames[i + 1:]))
        chunks.extend(found)

        # Skip continuation frames already read
        offset = len(tail)
        j = i + 1
        while offset < consumed and j < len(frames):
            offset += len(frames[j])
            j += 1
        i = j

    return chunks


def decode_dtc(chunk: str) -> str:
    """
    Decode a 4-hex-char chunk into a DTC.

    Byte 1: bits 7-6 category (P/C/B/U), bits 5-4 first digit,
    bits 3-0 second digit. Byte 2: last two digits.

    Args:
        chunk: 4 hex characters (e.g., "0301")

    Returns:
        DTC string (e.g., "P0301")
    """
    if len(chunk) != 4 or not HEX_RE.match(chunk):
        raise ParseError(f"Invalid DTC chunk: {chunk!r}", raw=chunk)

    b1 = int(chunk[:2], 16)
    b2 = int(chunk[2:], 16)

    if b1 == 0x01:
        return f"P01{b2:02X}"

    letter = CATEGORY_LETTERS[b1 >> 6]
    return f"{letter}{(b1 >> 4) & 0x03}{b1 & 0x0F:X}{b2:02X}".upper()


def correct_dtc_code(code: str) -> str:
    """
    Rewrite P0x95/P0x96 to P01x95/P01x96.

    Some ECU/adapter pairs report the oil temperature sensor codes P0195 and
    P0196 as P0095 and P0096. Only applied to Mode 03 results.
    """
    if len(code) == 5 and code.startswith("P00") and code.endswith(("95", "96")):
        corrected = "P01" + code[3:]
        logger.info(f"Correcting DTC {code} -> {corrected}")
        return corrected
    return code


def parse_dtc_response(text: str, correct: bool = True) -> List[str]:
    """
    Parse a Mode 03 response into DTC codes.

    Args:
        text: Raw adapter text
        correct: Apply the P0095/P0096 correction

    Returns:
        Codes in response order, duplicates removed
    """
    codes: List[str] = []
    for chunk in extract_dtc_chunks(text):
        code = decode_dtc(chunk)
        if correct:
            code = correct_dtc_code(code)
        if code not in codes:
            codes.append(code)
            logger.info(f"Parsed DTC: {code}")
    return codes


# Descriptions for codes raised by the sensors this client polls
DTC_DESCRIPTIONS = {
    # Airflow and manifold pressure (PIDs 10, 0B)
    "P0100": "MAF Sensor Circuit",
    "P0101": "MAF Sensor Range/Performance",
    "P0105": "MAP/Barometric Pressure Circuit",
    "P0106": "MAP/Barometric Pressure Range/Performance",

    # Temperatures (PIDs 05, 0F)
    "P0110": "Intake Air Temperature Sensor Circuit",
    "P0115": "Coolant Temperature Sensor Circuit",
    "P0128": "Coolant Below Thermostat Regulating Temperature",
    "P0195": "Engine Oil Temperature Sensor Circuit Malfunction",
    "P0196": "Engine Oil Temperature Sensor Range/Performance",

    # Throttle (PID 11)
    "P0120": "Throttle Position Sensor A Circuit",
    "P0121": "Throttle Position Sensor A Range/Performance",

    # Oxygen sensor and mixture
    "P0133": "O2 Sensor Slow Response (Bank 1, Sensor 1)",
    "P0171": "Fuel Trim Too Lean (Bank 1)",
    "P0172": "Fuel Trim Too Rich (Bank 1)",

    # Engine speed and misfire (PID 0C)
    "P0300": "Random/Multiple Cylinder Misfire",
    "P0301": "Cylinder 1 Misfire Detected",
    "P0335": "Crankshaft Position Sensor A Circuit",

    # Vehicle speed and fuel level (PIDs 0D, 2F)
    "P0460": "Fuel Level Sensor Circuit",
    "P0500": "Vehicle Speed Sensor A",
}


def get_dtc_description(code: str) -> str:
    return DTC_DESCRIPTIONS.get(code.upper(), "Unknown DTC")
