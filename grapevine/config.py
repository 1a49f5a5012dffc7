from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from grapevine.errors import ConfigurationError
from grapevine.log import get_logger
from grapevine.utils import backoff_delay, is_ws_url

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "wss://grapevine.haus/socket"
PROTOCOL_VERSION = "2.3.0"
USER_AGENT = "grapevine-client 0.1.0"
DEFAULT_SUPPORTS = ("channels", "players", "tells", "games")

# Environment variables consulted by load_config()
ENV_CLIENT_ID = "GRAPEVINE_CLIENT_ID"
ENV_CLIENT_SECRET = "GRAPEVINE_CLIENT_SECRET"
ENV_ENDPOINT = "GRAPEVINE_ENDPOINT"


@dataclass
class ClientConfig:
    client_id: str
    client_secret: str
    endpoint: str = DEFAULT_ENDPOINT
    supports: List[str] = field(default_factory=lambda: list(DEFAULT_SUPPORTS))
    channels: List[str] = field(default_factory=list)
    version: str = PROTOCOL_VERSION
    user_agent: str = USER_AGENT

    # seconds; heartbeat_interval * heartbeat_max_missed must exceed the hub's ~60s heartbeat period
    request_timeout: float = 10.0
    connect_timeout: float = 10.0
    heartbeat_interval: float = 30.0
    heartbeat_max_missed: int = 3

    reconnect: bool = True
    reconnect_base_delay: float = 1.0
    reconnect_factor: float = 2.0
    reconnect_max_delay: float = 60.0

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'ClientConfig':
        """Build a config from a plain mapping, rejecting unknown keys"""
        if data is None:
            raise ConfigurationError("configuration is required")
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"configuration must be a mapping, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        missing = {"client_id", "client_secret"} - set(data)
        if missing:
            raise ConfigurationError(f"Missing required configuration: {sorted(missing)}")

        return cls(**dict(data))

    def validate(self) -> None:
        for name in ("client_id", "client_secret"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"'{name}' must be a non-empty string")

        if not is_ws_url(self.endpoint):
            raise ConfigurationError(f"'endpoint' must be a ws:// or wss:// URL, got {self.endpoint!r}")

        for name in ("supports", "channels"):
            value = getattr(self, name)
            if isinstance(value, str) or not all(isinstance(v, str) and v for v in value):
                raise ConfigurationError(f"'{name}' must be a list of non-empty strings")
            setattr(self, name, list(value))

        for name in ("request_timeout", "connect_timeout", "heartbeat_interval",
                     "reconnect_base_delay", "reconnect_max_delay"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"'{name}' must be a positive number of seconds")

        if isinstance(self.heartbeat_max_missed, bool) or not isinstance(self.heartbeat_max_missed, int) \
                or self.heartbeat_max_missed < 1:
            raise ConfigurationError("'heartbeat_max_missed' must be a positive integer")

        if isinstance(self.reconnect_factor, bool) or not isinstance(self.reconnect_factor, (int, float)) \
                or self.reconnect_factor < 1:
            raise ConfigurationError("'reconnect_factor' must be a number >= 1")

        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ConfigurationError("'reconnect_max_delay' must not be below 'reconnect_base_delay'")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the given zero-based reconnect attempt"""
        return backoff_delay(attempt, self.reconnect_base_delay, self.reconnect_factor, self.reconnect_max_delay)

    def auth_payload(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "supports": list(self.supports),
            "channels": list(self.channels),
            "version": self.version,
            "user_agent": self.user_agent,
        }


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> ClientConfig:
    """
    Load client configuration.

    Sources are merged in order, later ones winning:
    a YAML file (when path is given), the GRAPEVINE_* environment
    variables, then explicit keyword overrides. None overrides are ignored
    so CLI options can be passed straight through.
    """
    data: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping")
        # allow the settings to live under a top-level "grapevine" key
        if isinstance(loaded.get("grapevine"), dict):
            loaded = loaded["grapevine"]
        data.update(loaded)
        logger.debug("Loaded configuration from %s", config_path)

    for env_name, key in ((ENV_CLIENT_ID, "client_id"), (ENV_CLIENT_SECRET, "client_secret"),
                          (ENV_ENDPOINT, "endpoint")):
        value = os.getenv(env_name)
        if value:
            data[key] = value

    data.update({k: v for k, v in overrides.items() if v is not None})
    return ClientConfig.from_mapping(data)
