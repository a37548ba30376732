"""
PID support detection.

Asks the vehicle once per session which Mode 01 PIDs it supports (0100) and
narrows the sensor registry to those. Vehicles that do not answer get a
fallback list of commonly supported PIDs.
"""

import logging
from typing import Dict, List, Optional

from .commands import SENSOR_COMMANDS, SUPPORTED_PIDS_COMMAND, CommandSpec
from .config import Timings
from .errors import OBDLinkError
from .gate import CommunicationGate

logger = logging.getLogger(__name__)

# Load, coolant, RPM, speed, intake temp, MAF, throttle, fuel level
FALLBACK_PIDS = ["04", "05", "0C", "0D", "0F", "10", "11", "2F"]


class PIDSupportDetector:
    """Negotiates and caches the supported sensor set for one session."""

    def __init__(
        self,
        gate: CommunicationGate,
        registry: Optional[Dict[str, CommandSpec]] = None,
        timings: Optional[Timings] = None,
    ):
        self.gate = gate
        self.registry = registry if registry is not None else SENSOR_COMMANDS
        self.timings = timings or gate.timings
        self._supported: Optional[Dict[str, CommandSpec]] = None
        self.used_fallback = False

    @property
    def detected(self) -> bool:
        return self._supported is not None

    @property
    def supported(self) -> Dict[str, CommandSpec]:
        """Supported commands; the whole registry until detection has run."""
        if self._supported is None:
            return dict(self.registry)
        return dict(self._supported)

    @property
    def supported_pids(self) -> List[str]:
        return sorted(self.supported)

    async def detect(self, force: bool = False) -> Dict[str, CommandSpec]:
        """
        Detect supported PIDs.

        Args:
            force: Query the vehicle again even if already detected

        Returns:
            Mapping of PID to CommandSpec
        """
        if self._supported is not None and not force:
            return dict(self._supported)

        pids: List[str] = []
        try:
            response = await self.gate.request(
                SUPPORTED_PIDS_COMMAND.command,
                timeout=self.timings.read_timeout,
            )
            if response.is_error:
                logger.warning(f"PID support query failed: {response.text}")
            else:
                decoded = SUPPORTED_PIDS_COMMAND.parse(response.text)
                pids = [p for p in decoded.split(',') if p]
        except OBDLinkError as e:
            logger.warning(f"PID support query failed: {e}")

        supported = {pid: self.registry[pid] for pid in pids if pid in self.registry}

        if supported:
            self.used_fallback = False
            logger.info(f"Vehicle reports {len(pids)} PIDs, {len(supported)} known: {sorted(supported)}")
        else:
            self.used_fallback = True
            supported = {pid: self.registry[pid] for pid in FALLBACK_PIDS if pid in self.registry}
            logger.warning(f"Using fallback PID list: {sorted(supported)}")

        supported[SUPPORTED_PIDS_COMMAND.pid] = self.registry.get(
            SUPPORTED_PIDS_COMMAND.pid, SUPPORTED_PIDS_COMMAND
        )
        self._supported = supported
        return dict(supported)

    def reset(self) -> None:
        """Forget the detected set (session end)."""
        self._supported = None
        self.used_fallback = False
