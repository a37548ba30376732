"""
Command building and payload extraction.

ELM327 answers come in several shapes depending on adapter settings
(ATS0/ATS1, ATH0/ATH1, CAN vs legacy protocols):

    41 0C 1A F8          spaces, no headers
    410C1AF8             compact (ATS0)
    7E8:410C1AF8         header separated by a colon
    7E804410C1AF8        compact with CAN header and length byte

extract_payload() returns the data bytes that follow mode+PID for all of them.
"""

import logging
import re
from enum import Enum
from typing import List

from .errors import AdapterError, ParseError

logger = logging.getLogger(__name__)

# Modes whose requests carry no PID
BARE_MODES = (0x03, 0x04, 0x07, 0x0A)

HEX_RE = re.compile(r'^[0-9A-Fa-f]+$')
SEARCHING_RE = re.compile(r'SEARCHING\.*')
RESPONSE_TOKENS = tuple(f"{0x40 + mode:02X}" for mode in range(1, 10))  # "41".."49"

ERROR_MARKERS = ("BUS ERROR", "CAN ERROR", "BUS INIT", "DATA ERROR", "ERROR")
NO_DATA_MARKERS = ("NO DATA", "NODATA")
FRAME_MARKERS = ("7E8", "7E9")


class ResponseStatus(Enum):
    """Coarse classification of adapter text."""
    DATA = "data"
    NO_DATA = "no_data"
    UNABLE_TO_CONNECT = "unable_to_connect"
    SEARCHING = "searching"
    PROMPT_ONLY = "prompt_only"
    ERROR = "error"


# Adapter answered, but with error text instead of data
ERROR_STATUSES = (ResponseStatus.ERROR, ResponseStatus.NO_DATA, ResponseStatus.UNABLE_TO_CONNECT)


def build_command(mode: int, pid: str = "") -> str:
    """
    Build an OBD command string.

    Args:
        mode: OBD mode (0x01, 0x03, ...)
        pid: PID as hex string (e.g., "0C"); ignored for Mode 03/04

    Returns:
        Command such as "010C" or "03"
    """
    if mode in BARE_MODES:
        return f"{mode:02X}"
    return f"{mode:02X}{pid.upper()}"


def clean_response(text: str) -> str:
    """Drop the prompt and SEARCHING... noise, normalize line endings."""
    cleaned = SEARCHING_RE.sub('', text.upper()).replace('>', '')
    lines = [l.strip() for l in cleaned.replace('\r', '\n').split('\n') if l.strip()]
    return '\n'.join(lines)


def chunk_hex(hex_str: str) -> List[int]:
    """Split a hex run into byte values, stopping at the first non-hex pair."""
    values = []
    for i in range(0, len(hex_str) - 1, 2):
        pair = hex_str[i:i + 2]
        if not HEX_RE.match(pair):
            break
        values.append(int(pair, 16))
    return values


def _tokens_to_bytes(tokens: List[str]) -> List[int]:
    values = []
    for token in tokens:
        if len(token) != 2 or not HEX_RE.match(token):
            break
        values.append(int(token, 16))
    return values


def extract_payload(text: str, mode: int, pid: str = "") -> List[int]:
    """
    Extract data bytes from a raw adapter response.

    Args:
        text: Raw response text
        mode: Mode of the request that produced it
        pid: PID of the request

    Returns:
        Data bytes following the echoed mode+PID

    Raises:
        AdapterError: If the adapter answered NO DATA, ERROR and the like
        ParseError: If no data bytes could be recovered
    """
    if classify_response(text) in ERROR_STATUSES:
        raise AdapterError(f"Adapter answered {text.strip()!r} to {build_command(mode, pid)}", raw=text)

    cleaned = clean_response(text)
    if not cleaned:
        raise ParseError("Empty response", raw=text)

    response_token = f"{0x40 + mode:02X}"
    pid = pid.upper()
    data: List[int] = []

    if ':' in cleaned:
        # HEADER:payload - payload starts with echoed mode+PID
        payload = ''.join(cleaned.split(':', 1)[1].split())
        data = chunk_hex(payload[4:])

    elif ' ' in cleaned and any(t in cleaned.split() for t in RESPONSE_TOKENS):
        lines = [line.split() for line in cleaned.split('\n')]
        tokens = next((l for l in lines if response_token in l), None)
        token = response_token
        if tokens is None:
            tokens = next(l for l in lines if any(t in l for t in RESPONSE_TOKENS))
            token = next(t for t in tokens if t in RESPONSE_TOKENS)
        idx = tokens.index(token)
        data = _tokens_to_bytes(tokens[idx + 2:])

    elif HEX_RE.match(cleaned.replace('\n', '')):
        compact = cleaned.replace('\n', '')
        marker = f"{response_token}{pid}"
        pos = compact.find(marker)
        if pos >= 0:
            data = chunk_hex(compact[pos + len(marker):])
        else:
            # Assume header + length prefix
            data = chunk_hex(compact[6:])

    else:
        data = _tokens_to_bytes(cleaned.split()[2:])

    if not data:
        raise ParseError(f"No data bytes in response to {build_command(mode, pid)}", raw=text)

    logger.debug(f"Extracted {len(data)} bytes: {' '.join(f'{b:02X}' for b in data)}")
    return data


def classify_response(text: str) -> ResponseStatus:
    """Classify raw adapter text before decoding."""
    upper = text.upper()
    stripped = ''.join(upper.split())

    if not stripped or stripped == '>':
        return ResponseStatus.PROMPT_ONLY
    if "UNABLE TO CONNECT" in upper:
        return ResponseStatus.UNABLE_TO_CONNECT
    if any(marker in upper for marker in NO_DATA_MARKERS):
        return ResponseStatus.NO_DATA
    if any(marker in upper for marker in ERROR_MARKERS):
        return ResponseStatus.ERROR
    if is_adapter_initializing(upper) and not clean_response(upper).replace('STOPPED', '').strip():
        return ResponseStatus.SEARCHING
    return ResponseStatus.DATA


def is_adapter_initializing(text: str) -> bool:
    """True while the adapter is still searching for a protocol."""
    upper = text.upper()
    return "SEARCHING" in upper or "STOPPED" in upper


def has_frame_marker(text: str) -> bool:
    """True if the text carries a CAN header or a Mode 03 response byte."""
    compact = ''.join(text.upper().split())
    return any(marker in compact for marker in FRAME_MARKERS) or "43" in compact
