# Config - device configuration, connection timing and configuration persistence

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIGURATION_NAME = 'CLOVER_DEFAULT'
CONFIG_STORE_PATH = Path.home() / '.clover_connector' / 'configurations.json'


def _known_fields(cls, values: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = set(values) - names
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in values.items() if k in names}


@dataclass
class CloverConfig:
    """
    How to reach the terminal, plus per-connection transaction flags.

    Usable combinations:
      - device_url (direct LAN connection)
      - oauth_token, domain, merchant_id, device_id
      - oauth_token, domain, merchant_id, device_serial_id
    """
    device_url: Optional[str] = None
    oauth_token: Optional[str] = None
    domain: Optional[str] = None
    merchant_id: Optional[str] = None
    device_id: Optional[str] = None
    device_serial_id: Optional[str] = None
    friendly_id: Optional[str] = None
    force_connect: bool = False
    auto_verify_signature: bool = True
    remote_print: bool = False
    disable_restart_transaction_when_failed: bool = False

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'CloverConfig':
        return cls(**_known_fields(cls, values))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionSettings:
    """Timing of the connection manager; heartbeat thresholds scale with the interval"""
    heartbeat_interval: float = 2.5
    warn_multiplier: float = 2
    error_multiplier: float = 4
    shutdown_multiplier: float = 8

    reconnect_enabled: bool = True
    reconnect_delay: float = 3.0
    max_reconnect_attempts: int = 20

    discovery_interval: float = 3.0
    max_discovery_probes: int = 10

    preflight: bool = True
    preflight_timeout: float = 5.0
    open_timeout: float = 10.0
    verify: Any = True

    echo_all_messages: bool = False

    def __post_init__(self):
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if not (0 < self.warn_multiplier < self.error_multiplier < self.shutdown_multiplier):
            raise ValueError("heartbeat thresholds must satisfy warn < error < shutdown")

    @property
    def warn_threshold(self) -> float:
        return self.heartbeat_interval * self.warn_multiplier

    @property
    def error_threshold(self) -> float:
        return self.heartbeat_interval * self.error_multiplier

    @property
    def shutdown_threshold(self) -> float:
        return self.heartbeat_interval * self.shutdown_multiplier

    @property
    def discovery_timeout(self) -> float:
        return self.discovery_interval * self.max_discovery_probes

    @property
    def reconnect_timeout(self) -> float:
        return self.reconnect_delay * self.max_reconnect_attempts

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'ConnectionSettings':
        return cls(**_known_fields(cls, values))


class ConfigStore:
    """Named configurations kept in one JSON file"""

    def __init__(self, path=None):
        self.path = Path(path or CONFIG_STORE_PATH)
        self.lock = threading.Lock()

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read configuration store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, name: str = DEFAULT_CONFIGURATION_NAME) -> Optional[CloverConfig]:
        with self.lock:
            values = self._read_all().get(name)
        if not values:
            return None
        return CloverConfig.from_dict(values)

    def save(self, config: CloverConfig, name: str = DEFAULT_CONFIGURATION_NAME):
        """Persist config; the device URL changes per connection and is not stored"""
        values = config.to_dict()
        values.pop('device_url', None)
        with self.lock:
            data = self._read_all()
            data[name] = values
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix('.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        logger.debug(f"Saved configuration {name} to {self.path}")
