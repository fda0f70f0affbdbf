"""
Configuration for the OBD monitor.

Connection settings, engine timing policy, and the JSON config file
stored under ~/.obd_monitor/config.json.
"""

import copy
import json
import logging
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".obd_monitor"
CONFIG_FILE = CONFIG_DIR / "config.json"

# Typical WiFi ELM327 access point
DEFAULT_WIFI_HOST = "192.168.0.10"
DEFAULT_WIFI_PORT = 35000

# Generic BLE ELM327 profile (FFF0 service, FFF1 notify, FFF2 write)
BLE_SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
BLE_NOTIFY_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"
BLE_WRITE_UUID = "0000fff2-0000-1000-8000-00805f9b34fb"


class ConnectionType(Enum):
    """Adapter connection types."""
    WIFI = "wifi"
    BLE = "ble"
    SERIAL = "serial"  # USB or Bluetooth RFCOMM
    DEMO = "demo"


@dataclass
class ConnectionConfig:
    """Connection configuration."""
    connection_type: ConnectionType = ConnectionType.WIFI
    address: str = DEFAULT_WIFI_HOST  # IP, BLE address/name, or serial device
    timeout: float = 10.0

    # WiFi-specific
    port: int = DEFAULT_WIFI_PORT

    # Serial-specific
    baudrate: int = 38400

    # BLE-specific
    service_uuid: str = BLE_SERVICE_UUID
    notify_uuid: str = BLE_NOTIFY_UUID
    write_uuid: str = BLE_WRITE_UUID

    def __post_init__(self):
        if isinstance(self.connection_type, str):
            self.connection_type = ConnectionType(self.connection_type.lower())
        # Accept "host:port" for WiFi addresses
        if self.connection_type == ConnectionType.WIFI and ":" in self.address:
            host, _, port = self.address.rpartition(":")
            if port.isdigit():
                self.address = host
                self.port = int(port)


@dataclass
class EngineTimings:
    """
    Delays used by the session engine, in seconds.

    These were tuned against real adapters. They are policy, not protocol:
    tests shrink them, slow clones may need them stretched.
    """
    # Initialization handshake
    init_start_delay: float = 0.5     # connected -> ATZ
    reset_delay: float = 1.5          # ATZ -> ATE0 (adapter reboots)
    init_step_delay: float = 1.0      # between the remaining AT commands
    init_finish_delay: float = 2.0    # last AT command -> first poll

    # Polling
    settle_delay: float = 0.3         # response -> next request
    stopped_settle_delay: float = 2.0  # after an aborted protocol search
    timeout_cooldown: float = 1.0     # timeout -> next request
    command_timeout: float = 8.0

    # Diagnostic operations
    resume_delay: float = 0.5         # op finished -> polling resumes
    diagnostic_idle_delay: float = 0.3
    diagnostic_busy_delay: float = 1.5  # a poll is still outstanding
    diagnostic_timeout: float = 10.0  # added to the defer delay

    @property
    def init_total(self) -> float:
        """Delay from Connected to the first parameter request."""
        return (
            self.init_start_delay
            + self.reset_delay
            + self.init_step_delay * 4
            + self.init_finish_delay
        )


DEFAULT_CONFIG = {
    "connection_type": "wifi",
    "address": None,  # None = default for the connection type
    "port": DEFAULT_WIFI_PORT,
    "baudrate": 38400,
    "server_host": "127.0.0.1",
    "server_port": 8327,
    "fetch_freeze_frame": True,
    "timings": {},
}


def load_config(path: Optional[Path] = None) -> dict:
    """Load config from disk, or return defaults."""
    path = Path(path) if path else CONFIG_FILE
    if path.exists():
        try:
            with open(path) as f:
                saved = json.load(f)
            # Merge with defaults (in case new fields were added)
            config = copy.deepcopy(DEFAULT_CONFIG)
            config.update(saved)
            return config
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Error loading config {path}: {e}")
    return copy.deepcopy(DEFAULT_CONFIG)


def save_config(config: dict, path: Optional[Path] = None) -> None:
    """Save config to disk."""
    path = Path(path) if path else CONFIG_FILE
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(config, f, indent=2)
    except OSError as e:
        logger.error(f"Error saving config {path}: {e}")


def timings_from_config(config: Dict[str, Any]) -> EngineTimings:
    """Build EngineTimings from the "timings" section, ignoring unknown keys."""
    known = {f.name for f in fields(EngineTimings)}
    overrides = config.get("timings") or {}
    unknown = set(overrides) - known
    if unknown:
        logger.warning(f"Ignoring unknown timing keys: {sorted(unknown)}")
    return EngineTimings(**{k: float(v) for k, v in overrides.items() if k in known})


def connection_from_config(config: Dict[str, Any]) -> ConnectionConfig:
    """
    Build a ConnectionConfig from a loaded config dict.

    Only WiFi has a default address; BLE and serial get "" when none is
    configured.

    Raises:
        ValueError: unknown connection_type
    """
    defaults = ConnectionConfig()
    connection_type = ConnectionType(str(config.get("connection_type") or "wifi").lower())
    address = config.get("address")
    if not address:
        address = defaults.address if connection_type == ConnectionType.WIFI else ""
    return ConnectionConfig(
        connection_type=connection_type,
        address=address,
        port=int(config.get("port", defaults.port)),
        baudrate=int(config.get("baudrate", defaults.baudrate)),
    )


def timings_to_dict(timings: EngineTimings) -> Dict[str, float]:
    return asdict(timings)
