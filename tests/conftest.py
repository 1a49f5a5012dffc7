import asyncio
import json
from typing import Any, Callable, Dict, List

import pytest

from grapevine.client import GrapevineClient
from grapevine.config import ClientConfig
from grapevine.errors import HubConnectionError, NotConnectedError


class ScriptedHub:
    """Answers requests the way the hub would, with knobs for failure cases."""

    def __init__(self) -> None:
        self.games: Dict[str, List[str]] = {"OtherGame": ["Bob", "Alice"]}
        self.reject_auth = False
        self.refuse = False
        self.silent: set = set()          # events that never get a reply
        self.failures: Dict[str, str] = {}  # event -> error string
        self.replies: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {}

    def answer(self, frame: Dict[str, Any]) -> List[Dict[str, Any]]:
        event = frame["event"]
        ref = frame.get("ref")
        if ref is None or event in self.silent:
            return []
        if event == "authenticate" and self.reject_auth:
            return [{"event": event, "ref": ref, "status": "failure", "error": "invalid credentials"}]
        if event in self.failures:
            return [{"event": event, "ref": ref, "status": "failure", "error": self.failures[event]}]
        if event == "authenticate":
            return [{"event": event, "ref": ref, "status": "success", "payload": {"unicode": "UTF-8"}}]
        if event == "players/status":
            return [{
                "event": event,
                "ref": ref,
                "status": "success",
                "payload": {"games": [{"game": g, "players": p} for g, p in self.games.items()]},
            }]
        if event in self.replies:
            return [{"event": event, "ref": ref, "status": "success", "payload": self.replies[event](frame)}]
        return [{"event": event, "ref": ref, "status": "success", "payload": dict(frame.get("payload", {}))}]


class FakeTransport:
    """In-memory stand-in for WebSocketTransport."""

    def __init__(self, hub: ScriptedHub) -> None:
        self.hub = hub
        self.sent: List[Dict[str, Any]] = []
        self.on_frame = None
        self.on_close = None
        self.on_error = None
        self.connected = False
        self.close_calls = 0

    @property
    def is_open(self) -> bool:
        return self.connected

    async def connect(self, endpoint: str) -> None:
        if self.hub.refuse:
            raise HubConnectionError("connection refused")
        self.connected = True

    async def send(self, raw: str) -> None:
        if not self.connected:
            raise NotConnectedError("fake transport is not connected")
        frame = json.loads(raw)
        self.sent.append(frame)
        for reply in self.hub.answer(frame):
            asyncio.get_running_loop().call_soon(lambda r=reply: asyncio.ensure_future(self.feed(r)))

    async def feed(self, frame: Any) -> None:
        if not self.connected:
            return
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        await self.on_frame(raw)

    async def drop(self, reason: str = "hub went away") -> None:
        self.connected = False
        await self.on_close(reason)

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    def sent_events(self) -> List[str]:
        return [f["event"] for f in self.sent]


@pytest.fixture
def hub() -> ScriptedHub:
    return ScriptedHub()


@pytest.fixture
def transports() -> List[FakeTransport]:
    return []


@pytest.fixture
def make_client(hub, transports):
    def factory(**overrides: Any) -> GrapevineClient:
        settings = {
            "client_id": "a",
            "client_secret": "b",
            "request_timeout": 0.5,
            "connect_timeout": 0.5,
            "heartbeat_interval": 60.0,
            "reconnect_base_delay": 0.01,
            "reconnect_max_delay": 0.05,
        }
        settings.update(overrides)

        def transport_factory() -> FakeTransport:
            transport = FakeTransport(hub)
            transports.append(transport)
            return transport

        return GrapevineClient(ClientConfig.from_mapping(settings), transport_factory=transport_factory)

    return factory


async def wait_for(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()
