"""
Configuration and logging setup.

Settings live in ~/.obd_link/config.json and are merged over DEFAULT_CONFIG,
so new keys pick up their defaults on older config files.
"""

import json
import logging
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".obd_link"
CONFIG_FILE = CONFIG_DIR / "config.json"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ============================================================================
# Timing budgets
# ============================================================================

@dataclass
class Timings:
    """Timeouts and delays, in seconds."""
    priming_timeout: float = 1.0
    read_timeout: float = 1.5
    dtc_timeout: float = 1.5
    vin_timeout: float = 5.0
    read_retry_delay: float = 0.2
    read_retries: int = 1
    dtc_settle_delay: float = 1.0
    dtc_searching_delay: float = 2.0
    probe_retry_delay: float = 1.0
    probe_attempts: int = 3
    priming_attempts: int = 5
    priming_backoff: float = 0.5
    min_cycle_sleep: float = 0.02
    not_connected_delay: float = 0.5

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> 'Timings':
        """Build from the "timings" section of a config dict, ignoring unknown keys."""
        section = (config or {}).get("timings", {})
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in section.items() if k in known})


# ============================================================================
# Configuration
# ============================================================================

DEFAULT_CONFIG = {
    "adapter_type": "serial",  # serial, bluetooth, usb, wifi
    "adapter_port": "",  # Empty = auto-detect
    "baudrate": 38400,
    "gateway_host": "0.0.0.0",
    "gateway_port": 8327,
    "log_level": "INFO",
    "poll_period_ms": 500,
    "priorities": {
        "high": ["0C", "0D"],
        "medium": ["04", "11", "10"],
        "low": ["05", "0F", "2F"],
    },
    "timings": {},
}


def load_config(path: Path = CONFIG_FILE) -> dict:
    """Read the JSON config; missing or unreadable files give DEFAULT_CONFIG."""
    if path.exists():
        try:
            with open(path) as f:
                saved = json.load(f)
            # Keys added since the file was written take their defaults
            return {**DEFAULT_CONFIG, **saved}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {path}: {e}")
    return dict(DEFAULT_CONFIG)


def save_config(config: dict, path: Path = CONFIG_FILE) -> None:
    """Write the config as indented JSON, creating the directory if needed."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(config, f, indent=2)
    except OSError as e:
        logger.error(f"Could not write {path}: {e}")


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure root logging for the gateway process."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
