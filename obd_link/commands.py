"""
OBD-II Command Definitions

One CommandSpec per parameter. Mode 01 sensors are registered in
SENSOR_COMMANDS keyed by PID string; VIN and DTC commands are module
constants because they are not polled.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .codec import ResponseStatus, build_command, classify_response, extract_payload
from .decoders import (
    decode_fuel_level,
    decode_maf,
    decode_percent,
    decode_pressure,
    decode_rpm,
    decode_speed,
    decode_supported_pids,
    decode_temperature,
    decode_timing_advance,
    decode_vin,
)
from .dtc import parse_dtc_response

MODE_CURRENT_DATA = 0x01
MODE_STORED_DTCS = 0x03
MODE_CLEAR_DTCS = 0x04
MODE_VEHICLE_INFO = 0x09


@dataclass(frozen=True)
class CommandSpec:
    """Definition of a single OBD command."""
    mode: int
    pid: str
    name: str
    display_name: str
    unit: str
    min_value: float
    max_value: float
    num_bytes: int
    formula: Optional[Callable[[bytes], str]] = None

    # Commands whose answer is not a plain byte payload parse the raw text
    parser: Optional[Callable[[str], str]] = None
    aliases: Tuple[str, ...] = ()

    @property
    def command(self) -> str:
        """Wire command, e.g. "010C"."""
        return build_command(self.mode, self.pid)

    def decode(self, data: bytes) -> str:
        """Decode payload bytes using the formula."""
        if self.formula is None:
            raise ValueError(f"{self.name} has no byte formula")
        return self.formula(bytes(data))

    def parse(self, text: str) -> str:
        """Decode a raw adapter response into a display value."""
        if self.parser is not None:
            return self.parser(text)
        return self.decode(bytes(extract_payload(text, self.mode, self.pid)))


SENSOR_COMMANDS: Dict[str, CommandSpec] = {}


def register_command(
    pid: str,
    name: str,
    display_name: str,
    num_bytes: int,
    unit: str,
    min_val: float,
    max_val: float,
    formula: Callable[[bytes], str],
    aliases: List[str] = None
) -> CommandSpec:
    """Register a Mode 01 sensor command."""
    spec = CommandSpec(
        mode=MODE_CURRENT_DATA,
        pid=pid,
        name=name,
        display_name=display_name,
        unit=unit,
        min_value=min_val,
        max_value=max_val,
        num_bytes=num_bytes,
        formula=formula,
        aliases=tuple(aliases or []),
    )
    SENSOR_COMMANDS[pid] = spec
    return spec


# -----------------------------------------------------------------------------
# Mode 01 sensors
# -----------------------------------------------------------------------------

SUPPORTED_PIDS_COMMAND = register_command(
    pid="00",
    name="SUPPORTED_PIDS",
    display_name="Supported PIDs",
    num_bytes=4,
    unit="",
    min_val=0,
    max_val=0,
    formula=decode_supported_pids,
)

register_command(
    pid="04",
    name="LOAD",
    display_name="Engine Load",
    num_bytes=1,
    unit="%",
    min_val=0,
    max_val=100,
    formula=decode_percent,
    aliases=["ENGINE_LOAD", "CALC_LOAD"]
)

register_command(
    pid="05",
    name="COOLANT_TEMP",
    display_name="Coolant Temperature",
    num_bytes=1,
    unit="°C",
    min_val=-40,
    max_val=215,
    formula=decode_temperature,
    aliases=["ECT", "COOLANT"]
)

register_command(
    pid="0B",
    name="MAP",
    display_name="Intake Manifold Pressure",
    num_bytes=1,
    unit="kPa",
    min_val=0,
    max_val=255,
    formula=decode_pressure,
    aliases=["MANIFOLD_PRESSURE"]
)

register_command(
    pid="0C",
    name="RPM",
    display_name="Engine RPM",
    num_bytes=2,
    unit="rpm",
    min_val=0,
    max_val=16383.75,
    formula=decode_rpm,
    aliases=["ENGINE_RPM"]
)

register_command(
    pid="0D",
    name="SPEED",
    display_name="Vehicle Speed",
    num_bytes=1,
    unit="km/h",
    min_val=0,
    max_val=255,
    formula=decode_speed,
    aliases=["VSS", "VEHICLE_SPEED"]
)

register_command(
    pid="0E",
    name="TIMING_ADV",
    display_name="Timing Advance",
    num_bytes=1,
    unit="°",
    min_val=-64,
    max_val=63.5,
    formula=decode_timing_advance,
    aliases=["TIMING_ADVANCE"]
)

register_command(
    pid="0F",
    name="IAT",
    display_name="Intake Air Temperature",
    num_bytes=1,
    unit="°C",
    min_val=-40,
    max_val=215,
    formula=decode_temperature,
    aliases=["INTAKE_TEMP"]
)

register_command(
    pid="10",
    name="MAF",
    display_name="Mass Air Flow",
    num_bytes=1,  # two normally, one on some adapters
    unit="g/s",
    min_val=0,
    max_val=655.35,
    formula=decode_maf,
    aliases=["MAF_RATE"]
)

register_command(
    pid="11",
    name="THROTTLE_POS",
    display_name="Throttle Position",
    num_bytes=1,
    unit="%",
    min_val=0,
    max_val=100,
    formula=decode_percent,
    aliases=["TPS", "THROTTLE"]
)

register_command(
    pid="2F",
    name="FUEL_LEVEL",
    display_name="Fuel Level",
    num_bytes=1,
    unit="%",
    min_val=0,
    max_val=100,
    formula=decode_fuel_level,
    aliases=["FUEL"]
)


# -----------------------------------------------------------------------------
# Vehicle info and trouble codes
# -----------------------------------------------------------------------------

def is_clear_acknowledged(text: str) -> bool:
    """
    True when the adapter accepted a Mode 04 clear.

    "44" or OK acknowledges it. Vehicles that clear without answering give
    NO DATA or a bare prompt, which also counts. ERROR never does.
    """
    status = classify_response(text)
    if status == ResponseStatus.ERROR:
        return False
    upper = text.upper()
    return "44" in upper or "OK" in upper or ">" in upper or status == ResponseStatus.NO_DATA


def _clear_result_text(text: str) -> str:
    if is_clear_acknowledged(text):
        return "DTCs Cleared Successfully"
    return "Failed to clear DTCs"


VIN_COMMAND = CommandSpec(
    mode=MODE_VEHICLE_INFO,
    pid="02",
    name="VIN",
    display_name="Vehicle Identification Number",
    unit="",
    min_value=0,
    max_value=0,
    num_bytes=17,
    parser=decode_vin,
)

READ_DTC_COMMAND = CommandSpec(
    mode=MODE_STORED_DTCS,
    pid="",
    name="DTC_READ",
    display_name="Trouble Codes",
    unit="",
    min_value=0,
    max_value=0,
    num_bytes=0,
    parser=lambda text: ','.join(parse_dtc_response(text)),
)

CLEAR_DTC_COMMAND = CommandSpec(
    mode=MODE_CLEAR_DTCS,
    pid="",
    name="DTC_CLEAR",
    display_name="Clear Trouble Codes",
    unit="",
    min_value=0,
    max_value=0,
    num_bytes=0,
    parser=_clear_result_text,
)


def get_command_by_name(name: str) -> Optional[str]:
    """
    Look up a sensor PID by name or alias.

    Args:
        name: PID name like "RPM" or alias like "ENGINE_RPM"

    Returns:
        PID string or None if not found
    """
    name_upper = name.upper().strip()
    for pid, spec in SENSOR_COMMANDS.items():
        if spec.name == name_upper or name_upper in spec.aliases:
            return pid
    return None


class CommandRegistry:
    """Registry for accessing sensor command definitions."""

    @staticmethod
    def get(pid: str) -> Optional[CommandSpec]:
        """
        Get a command by PID string ("0C") or name/alias ("RPM").

        Returns:
            CommandSpec or None
        """
        key = pid.upper().strip()
        if key in SENSOR_COMMANDS:
            return SENSOR_COMMANDS[key]
        resolved = get_command_by_name(key)
        return SENSOR_COMMANDS.get(resolved) if resolved else None

    @staticmethod
    def list_all() -> List[CommandSpec]:
        """List all registered sensor commands."""
        return list(SENSOR_COMMANDS.values())

    @staticmethod
    def list_names() -> List[str]:
        """List all sensor names."""
        return [spec.name for spec in SENSOR_COMMANDS.values()]
