"""
Grapevine client

Public entry point. A client authenticates a game with the hub, keeps
the connection alive, answers requests through the hub and re-emits
what the hub pushes.

Usage:
    import grapevine

    client = grapevine.init({"client_id": "...", "client_secret": "..."})
    client.on("error", lambda err: print(err))
    client.on("tells/receive", lambda payload: print(payload))

    await client.connect()
    await client.add_player("SomePlayer")
    await client.send("channels/subscribe", {"channel": "secrets"})
    client.find_player("someotherplayer@somegame")
    client.close()
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from grapevine.config import ClientConfig
from grapevine.connection import Connection, ConnectionState, TransportFactory
from grapevine.correlator import RequestCorrelator
from grapevine.dispatcher import EventDispatcher, Listener
from grapevine.errors import ConfigurationError
from grapevine.events import Event, EventName, event_name
from grapevine.log import get_logger
from grapevine.state import NetworkState, PlayerRef, RemoteGame

logger = get_logger(__name__)


class GrapevineClient:
    """
    One game's membership in the grapevine network.

    All state (connection, pending requests, network cache, local roster,
    subscriptions) belongs to this instance; create one client per game.
    """

    def __init__(self, config: ClientConfig, *, transport_factory: Optional[TransportFactory] = None) -> None:
        if not isinstance(config, ClientConfig):
            raise ConfigurationError(f"expected ClientConfig, got {type(config).__name__}")
        self.config = config
        self.correlator = RequestCorrelator(default_timeout=config.request_timeout)
        self.dispatcher = EventDispatcher(self.correlator)
        self.network = NetworkState()
        self.connection = Connection(
            config,
            self.correlator,
            self.dispatcher,
            self.network,
            transport_factory=transport_factory,
        )

    def __repr__(self) -> str:
        return f"<GrapevineClient {self.config.client_id[:8]} {self.state.value}>"

    # ==================== subscriptions ====================

    def on(self, event: EventName, listener: Listener) -> "GrapevineClient":
        """Call listener with the payload of every event of this name"""
        self.dispatcher.on(event, listener)
        return self

    def once(self, event: EventName, listener: Listener) -> "GrapevineClient":
        self.dispatcher.once(event, listener)
        return self

    def off(self, event: EventName, listener: Optional[Listener] = None) -> "GrapevineClient":
        self.dispatcher.off(event, listener)
        return self

    # ==================== lifecycle ====================

    async def connect(self) -> None:
        """
        Connect, authenticate and load the network snapshot.

        Raises:
            HubConnectionError: the hub could not be reached
            AuthenticationError: the hub rejected the credentials
            ClientClosedError: the client was closed
        """
        await self.connection.connect()

    def is_alive(self) -> bool:
        return self.connection.is_alive()

    def close(self) -> None:
        """Close the client; teardown finishes in the background"""
        self.connection.close()

    async def wait_closed(self) -> None:
        await self.connection.wait_closed()
        await self.dispatcher.drain()

    async def __aenter__(self) -> "GrapevineClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
        await self.wait_closed()

    # ==================== requests ====================

    async def send(self, event: EventName, payload: Optional[Dict[str, Any]] = None,
                   *, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send a request to the hub and return the payload of its reply.

        Raises:
            NotConnectedError: the client is not ready
            RequestTimeoutError: no reply within timeout (default request_timeout)
            RequestFailedError: the hub answered with a failure
            HubConnectionError: the connection dropped before the reply
            ClientClosedError: the client was closed before the reply
        """
        return await self.connection.request(event_name(event), payload, timeout=timeout)

    async def add_player(self, name: str) -> Dict[str, Any]:
        """Announce a local player sign-in; the player is re-announced after reconnects"""
        name = _player_name(name)
        self.connection.remember_player(name)
        return await self.send(Event.PLAYERS_SIGN_IN, {"name": name})

    async def remove_player(self, name: str) -> Dict[str, Any]:
        """Announce a local player sign-out"""
        name = _player_name(name)
        self.connection.forget_player(name)
        return await self.send(Event.PLAYERS_SIGN_OUT, {"name": name})

    # ==================== network state ====================

    def find_player(self, identifier: str) -> PlayerRef:
        """
        Look up a remote player given as 'player@game' (case-insensitive).

        Raises:
            PlayerNotFoundError: the player is not signed in to a known game
        """
        return self.network.find_player(identifier)

    def find_game(self, name: str) -> Optional[RemoteGame]:
        return self.network.get_game(name)

    @property
    def games(self) -> Dict[str, List[str]]:
        """Other games on the network and their signed-in players"""
        return self.network.snapshot()

    @property
    def players(self) -> List[str]:
        """Local players announced through add_player"""
        return self.connection.players

    @property
    def state(self) -> ConnectionState:
        return self.connection.state


def _player_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("player name must be a non-empty string")
    return name.strip()


def init(config: Union[ClientConfig, Mapping[str, Any], None] = None, *,
         transport_factory: Optional[TransportFactory] = None, **overrides: Any) -> GrapevineClient:
    """
    Create a client without connecting it.

    Args:
        config: ClientConfig or mapping with at least client_id and client_secret
        transport_factory: Callable returning a fresh transport per connection attempt
        **overrides: Individual config keys, applied over config

    Raises:
        ConfigurationError: credentials missing or settings invalid
    """
    if isinstance(config, ClientConfig):
        if overrides:
            data = dict(config.__dict__)
            data.update(overrides)
            config = ClientConfig.from_mapping(data)
    else:
        if config is not None and not isinstance(config, Mapping):
            raise ConfigurationError(f"configuration must be a mapping, got {type(config).__name__}")
        data = dict(config or {})
        data.update(overrides)
        config = ClientConfig.from_mapping(data)
    return GrapevineClient(config, transport_factory=transport_factory)
