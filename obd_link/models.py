"""
Data model shared by the codec, sessions, scheduler and gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ErrorKind


@dataclass(frozen=True)
class RawResponse:
    """One adapter round trip: the command sent and the text that came back."""
    command: str
    text: str
    is_error: bool = False
    timestamp: datetime = field(default_factory=datetime.now)
    round_trip_ms: float = 0.0


@dataclass
class SensorReading:
    """A decoded sensor value, or a tagged failure with the raw text attached."""
    name: str
    pid: str
    mode: int
    value: str
    unit: str
    is_error: bool = False
    raw_value: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    error: Optional[ErrorKind] = None

    def __str__(self) -> str:
        if self.is_error:
            return f"{self.name}: error ({self.value})"
        return f"{self.name}: {self.value} {self.unit}".rstrip()

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form for the gateway."""
        return {
            'name': self.name,
            'pid': self.pid,
            'mode': self.mode,
            'value': self.value,
            'unit': self.unit,
            'is_error': self.is_error,
            'error': self.error.value if self.error else None,
            'raw': self.raw_value,
            'timestamp': self.timestamp.isoformat(),
        }


class DTCType(Enum):
    """DTC category types."""
    POWERTRAIN = "P"  # P0xxx, P1xxx, P2xxx, P3xxx
    CHASSIS = "C"     # C0xxx, C1xxx, C2xxx, C3xxx
    BODY = "B"        # B0xxx, B1xxx, B2xxx, B3xxx
    NETWORK = "U"     # U0xxx, U1xxx, U2xxx, U3xxx


@dataclass
class DTCCode:
    """One decoded trouble code with its description."""
    code: str  # e.g., "P0171"
    description: str = ""

    @property
    def type(self) -> DTCType:
        """System letter of the code (P, C, B or U)."""
        return DTCType(self.code[0].upper())

    @property
    def is_manufacturer_specific(self) -> bool:
        """Second character 1 or 3 marks a manufacturer-defined code."""
        if len(self.code) >= 2:
            return self.code[1] in ('1', '3')
        return False

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code, 'description': self.description}


@dataclass
class DTCResult:
    """Outcome of a trouble code read."""
    success: bool
    dtcs: List[DTCCode] = field(default_factory=list)
    error: Optional[ErrorKind] = None
    message: str = ""
    raw: str = ""
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'dtcs': [d.to_dict() for d in self.dtcs],
            'error': self.error.value if self.error else None,
            'message': self.message,
            'raw': self.raw,
            'from_cache': self.from_cache,
        }


@dataclass
class ClearResult:
    """Outcome of a Mode 04 clear."""
    success: bool
    error: Optional[ErrorKind] = None
    message: str = ""
    raw: str = ""

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'error': self.error.value if self.error else None,
            'message': self.message,
            'raw': self.raw,
        }
