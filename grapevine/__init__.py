"""Grapevine intermud network client"""

__version__ = "0.1.0"

from .client import GrapevineClient, init
from .config import ClientConfig, load_config
from .connection import ConnectionState
from .errors import (
    AuthenticationError,
    ClientClosedError,
    ConfigurationError,
    FrameDecodeError,
    GrapevineError,
    HubConnectionError,
    NotConnectedError,
    PlayerNotFoundError,
    RequestFailedError,
    RequestTimeoutError,
)
from .events import Event
from .state import PlayerRef, RemoteGame

__all__ = [
    "init", "GrapevineClient", "ClientConfig", "load_config", "ConnectionState",
    "Event", "PlayerRef", "RemoteGame",
    "GrapevineError", "ConfigurationError", "HubConnectionError", "AuthenticationError",
    "RequestTimeoutError", "NotConnectedError", "PlayerNotFoundError", "ClientClosedError",
    "RequestFailedError", "FrameDecodeError",
]
