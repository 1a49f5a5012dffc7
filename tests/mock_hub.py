"""
A small in-process grapevine hub for tests.

Serves the hub protocol over a real websocket on 127.0.0.1 with an
ephemeral port: authentication against a credentials table, channel
relays, tells, presence pushes and status snapshots.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import websockets


@dataclass
class HubSession:
    websocket: websockets.ServerConnection
    game: str
    channels: Set[str] = field(default_factory=set)
    players: Set[str] = field(default_factory=set)
    heartbeats: List[Dict[str, Any]] = field(default_factory=list)


class MockHub:
    def __init__(self, credentials: Dict[str, Tuple[str, str]]) -> None:
        """
        Args:
            credentials: client_id -> (client_secret, game name)
        """
        self.credentials = credentials
        self.sessions: Dict[websockets.ServerConnection, HubSession] = {}
        self.server: Optional[websockets.Server] = None

    async def start(self) -> "MockHub":
        self.server = await websockets.serve(self.handle_connection, "127.0.0.1", 0)
        return self

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    async def __aenter__(self) -> "MockHub":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    @property
    def url(self) -> str:
        port = list(self.server.sockets)[0].getsockname()[1]
        return f"ws://127.0.0.1:{port}/socket"

    def session(self, game: str) -> Optional[HubSession]:
        for session in self.sessions.values():
            if session.game.lower() == game.lower():
                return session
        return None

    async def kick_all(self) -> None:
        for websocket in list(self.sessions):
            await websocket.close(code=1012, reason="restarting")

    async def push_all(self, frame: Dict[str, Any]) -> None:
        for session in list(self.sessions.values()):
            await self._push(session, frame)

    # ==================== connection handling ====================

    async def handle_connection(self, websocket: websockets.ServerConnection) -> None:
        session: Optional[HubSession] = None
        try:
            async for raw in websocket:
                frame = json.loads(raw)
                event = frame.get("event")
                ref = frame.get("ref")
                payload = frame.get("payload") or {}

                if session is None:
                    if event == "authenticate":
                        session = await self._authenticate(websocket, ref, payload)
                    else:
                        await self._reply(websocket, event, ref, error="not authenticated")
                    continue
                await self._route(session, event, ref, payload)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            if session is not None:
                self.sessions.pop(websocket, None)
                await self._push_others(session, {"event": "games/disconnect", "payload": {"game": session.game}})

    async def _authenticate(self, websocket, ref, payload) -> Optional[HubSession]:
        known = self.credentials.get(payload.get("client_id"))
        if known is None or known[0] != payload.get("client_secret"):
            await self._reply(websocket, "authenticate", ref, error="invalid credentials")
            return None

        session = HubSession(websocket=websocket, game=known[1], channels=set(payload.get("channels") or []))
        self.sessions[websocket] = session
        await self._reply(websocket, "authenticate", ref, {"unicode": "UTF-8", "version": "2.3.0"})
        await self._push_others(session, {"event": "games/connect", "payload": {"game": session.game}})
        return session

    async def _route(self, session: HubSession, event: str, ref: Optional[str], payload: Dict[str, Any]) -> None:
        websocket = session.websocket

        if event == "heartbeat":
            session.heartbeats.append(payload)
            session.players = set(payload.get("players") or [])
        elif event == "channels/subscribe":
            session.channels.add(payload["channel"])
            await self._reply(websocket, event, ref, {"channel": payload["channel"]})
        elif event == "channels/unsubscribe":
            session.channels.discard(payload["channel"])
            await self._reply(websocket, event, ref, {"channel": payload["channel"]})
        elif event == "channels/send":
            broadcast = {
                "event": "channels/broadcast",
                "payload": {
                    "channel": payload["channel"],
                    "game": session.game,
                    "name": payload["name"],
                    "message": payload["message"],
                },
            }
            for other in self._others(session):
                if payload["channel"] in other.channels:
                    await self._push(other, broadcast)
            await self._reply(websocket, event, ref, {})
        elif event in ("players/sign-in", "players/sign-out"):
            if event == "players/sign-in":
                session.players.add(payload["name"])
            else:
                session.players.discard(payload["name"])
            await self._push_others(session, {"event": event, "payload": {"game": session.game, "name": payload["name"]}})
            await self._reply(websocket, event, ref, {"name": payload["name"]})
        elif event == "players/status":
            games = [{"game": s.game, "players": sorted(s.players)} for s in self._others(session)]
            await self._reply(websocket, event, ref, {"games": games})
        elif event == "games/status":
            games = [{"game": s.game, "display_name": s.game} for s in self._others(session)]
            await self._reply(websocket, event, ref, {"games": games})
        elif event == "tells/send":
            await self._tell(session, ref, payload)
        else:
            await self._reply(websocket, event, ref, error="unknown event")

    async def _tell(self, session: HubSession, ref: Optional[str], payload: Dict[str, Any]) -> None:
        target = self.session(payload.get("to_game", ""))
        if target is None or target is session:
            await self._reply(session.websocket, "tells/send", ref, error="game offline")
            return
        if payload.get("to_name", "").lower() not in {p.lower() for p in target.players}:
            await self._reply(session.websocket, "tells/send", ref, error="player offline")
            return
        await self._push(target, {
            "event": "tells/receive",
            "payload": {
                "from_game": session.game,
                "from_name": payload["from_name"],
                "to_name": payload["to_name"],
                "sent_at": payload.get("sent_at"),
                "message": payload["message"],
            },
        })
        await self._reply(session.websocket, "tells/send", ref, {})

    # ==================== sending ====================

    def _others(self, session: HubSession) -> List[HubSession]:
        return [s for s in self.sessions.values() if s is not session]

    async def _push_others(self, session: HubSession, frame: Dict[str, Any]) -> None:
        for other in self._others(session):
            await self._push(other, frame)

    async def _push(self, session: HubSession, frame: Dict[str, Any]) -> None:
        try:
            await session.websocket.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed:
            pass

    async def _reply(self, websocket, event: str, ref: Optional[str], payload: Optional[Dict[str, Any]] = None,
                     error: Optional[str] = None) -> None:
        if ref is None:
            return
        frame: Dict[str, Any] = {"event": event, "ref": ref}
        if error is None:
            frame.update(status="success", payload=payload or {})
        else:
            frame.update(status="failure", error=error)
        try:
            await websocket.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed:
            pass
