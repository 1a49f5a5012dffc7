from __future__ import annotations

import asyncio
import functools
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from grapevine.config import ClientConfig
from grapevine.correlator import RequestCorrelator
from grapevine.dispatcher import EventDispatcher
from grapevine.errors import (
    AuthenticationError,
    ClientClosedError,
    GrapevineError,
    HubConnectionError,
    NotConnectedError,
    RequestFailedError,
    RequestTimeoutError,
)
from grapevine.events import DISCONNECT_EVENT, READY_EVENT, SNAPSHOT_EVENTS, Event
from grapevine.frame import Frame, create_frame
from grapevine.log import get_logger
from grapevine.state import NetworkState
from grapevine.transport import WebSocketTransport

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"


TransportFactory = Callable[[], WebSocketTransport]


class Connection:
    """
    Drives one client's link to the hub through its lifecycle:

        DISCONNECTED -> CONNECTING -> AUTHENTICATING -> READY
        READY --(unexpected drop / missed heartbeats)--> RECONNECTING -> CONNECTING ...

    Entering READY re-announces the local roster and reloads the network
    snapshot. close() is terminal: pending requests fail with
    ClientClosedError and nothing reconnects afterwards.
    """

    def __init__(
        self,
        config: ClientConfig,
        correlator: RequestCorrelator,
        dispatcher: EventDispatcher,
        network: NetworkState,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.config = config
        self.correlator = correlator
        self.dispatcher = dispatcher
        self.network = network
        self._transport_factory = transport_factory or self._default_transport
        self._transport: Optional[WebSocketTransport] = None
        self._state = ConnectionState.DISCONNECTED

        # lower-cased name -> name, in the order players were added
        self._players: Dict[str, str] = {}

        self._closed = False
        self._auto_reconnect = False
        self._has_been_ready = False
        self._attempts = 0
        self._restart_downtime: Optional[float] = None
        self._last_seen = time.monotonic()

        self._establishing: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

        self.dispatcher.add_tap(self._observe)
        self.dispatcher.set_handler(Event.HEARTBEAT, self._on_heartbeat)
        self.dispatcher.set_handler(Event.RESTART, self._on_restart)
        self.dispatcher.set_handler(Event.PLAYERS_SIGN_IN, lambda f: self.network.player_signed_in(f.payload))
        self.dispatcher.set_handler(Event.PLAYERS_SIGN_OUT, lambda f: self.network.player_signed_out(f.payload))
        self.dispatcher.set_handler(Event.GAMES_CONNECT, lambda f: self.network.game_connected(f.payload))
        self.dispatcher.set_handler(Event.GAMES_DISCONNECT, lambda f: self.network.game_disconnected(f.payload))

    def _default_transport(self) -> WebSocketTransport:
        return WebSocketTransport(open_timeout=self.config.connect_timeout)

    # ==================== state ====================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def players(self) -> List[str]:
        return list(self._players.values())

    def is_alive(self) -> bool:
        return self._state is ConnectionState.READY

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("%s -> %s", self._state.value, state.value, extra={"state": state.value})
        self._state = state

    # ==================== local roster ====================

    def remember_player(self, name: str) -> None:
        self._players[name.lower()] = name

    def forget_player(self, name: str) -> None:
        self._players.pop(name.lower(), None)

    # ==================== connecting ====================

    async def connect(self) -> None:
        """Bring the connection to READY or raise why it could not get there"""
        if self._closed:
            raise ClientClosedError("cannot connect a closed client")
        if self._state is ConnectionState.READY:
            return

        if self._establishing is None or self._establishing.done():
            # connecting by hand supersedes a pending backoff sleep
            self._cancel_task(self._reconnect_task)
            self._reconnect_task = None
            self._establishing = self._spawn(self._establish())
        try:
            await asyncio.shield(self._establishing)
        except GrapevineError:
            self._resume_reconnect()
            raise

    async def _establish(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        transport = self._transport_factory()
        transport.on_frame = self._on_frame
        transport.on_close = functools.partial(self._on_transport_close, transport)
        transport.on_error = functools.partial(self._on_transport_error, transport)

        try:
            await transport.connect(self.config.endpoint)
        except HubConnectionError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise

        if self._closed:
            await transport.close()
            raise ClientClosedError()

        self._transport = transport
        self._last_seen = time.monotonic()
        self._set_state(ConnectionState.AUTHENTICATING)

        try:
            await self._request(
                Event.AUTHENTICATE,
                self.config.auth_payload(),
                timeout=self.config.connect_timeout,
                require_ready=False,
            )
        except RequestFailedError as e:
            await self._teardown(transport)
            self._auto_reconnect = False
            raise AuthenticationError(f"hub rejected credentials: {e.error or 'unknown error'}") from e
        except RequestTimeoutError as e:
            await self._teardown(transport)
            self._auto_reconnect = False
            raise AuthenticationError("hub did not answer authentication in time") from e
        except (ClientClosedError, HubConnectionError):
            await self._teardown(transport)
            raise
        except GrapevineError as e:
            await self._teardown(transport)
            raise HubConnectionError(f"connection failed during authentication: {e}") from e

        logger.info("Authenticated with hub as %s", self.config.client_id[:8])

        try:
            await self._synchronize()
        except (ClientClosedError, HubConnectionError):
            await self._teardown(transport)
            raise
        except GrapevineError as e:
            await self._teardown(transport)
            raise HubConnectionError(f"connection failed during synchronization: {e}") from e

        if self._closed:
            raise ClientClosedError()
        if self._transport is not transport:
            await self._teardown(transport)
            raise HubConnectionError("connection lost while synchronizing")

        reconnected = self._has_been_ready
        self._has_been_ready = True
        self._auto_reconnect = self.config.reconnect
        self._attempts = 0
        self._restart_downtime = None
        self._start_heartbeat()
        self._set_state(ConnectionState.READY)
        logger.info("Connection ready (%d game(s) known)", len(self.network))
        self.dispatcher.emit(READY_EVENT, {"reconnected": reconnected})

    async def _synchronize(self) -> None:
        """Re-announce local players and reload the network snapshot"""
        self.network.clear()

        for name in self.players:
            try:
                await self._request(Event.PLAYERS_SIGN_IN, {"name": name}, require_ready=False)
            except (RequestFailedError, RequestTimeoutError) as e:
                logger.warning("Could not re-announce %s: %s", name, e)
                self.dispatcher.emit_error(e)

        requests: List[Awaitable[Any]] = [self._request(Event.PLAYERS_STATUS, {}, require_ready=False)]
        if "games" in self.config.supports:
            requests.append(self._request(Event.GAMES_STATUS, {}, require_ready=False))

        for result in await asyncio.gather(*requests, return_exceptions=True):
            if isinstance(result, (RequestFailedError, RequestTimeoutError)):
                logger.warning("Snapshot request failed: %s", result)
                self.dispatcher.emit_error(result)
            elif isinstance(result, BaseException):
                raise result

    async def _teardown(self, transport: WebSocketTransport) -> None:
        if self._transport is transport:
            self._transport = None
        await transport.close()
        if not self._closed:
            self._set_state(ConnectionState.DISCONNECTED)

    # ==================== requests ====================

    async def request(self, event: Union[Event, str], payload: Optional[Dict[str, Any]] = None,
                      *, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a request while READY and wait for its correlated reply"""
        return await self._request(event, payload, timeout=timeout, require_ready=True)

    async def _request(self, event: Union[Event, str], payload: Optional[Dict[str, Any]] = None,
                       *, timeout: Optional[float] = None, require_ready: bool = True) -> Dict[str, Any]:
        if self._closed:
            raise ClientClosedError()
        if require_ready and self._state is not ConnectionState.READY:
            raise NotConnectedError(f"cannot send while {self._state.value}")
        transport = self._transport
        if transport is None:
            raise NotConnectedError("no live connection to the hub")

        ref = self.correlator.next_ref()
        frame = create_frame(event, payload, ref=ref)
        raw = frame.to_json()
        future = self.correlator.register(ref, frame.event, timeout)
        try:
            await transport.send(raw)
        except BaseException:
            self.correlator.discard(ref)
            raise
        return await future

    async def send_frame(self, frame: Frame) -> None:
        """Send a frame that expects no reply"""
        transport = self._transport
        if transport is None:
            raise NotConnectedError("no live connection to the hub")
        await transport.send(frame.to_json())

    # ==================== inbound ====================

    async def _on_frame(self, raw: Union[str, bytes]) -> None:
        self._last_seen = time.monotonic()
        await self.dispatcher.dispatch_raw(raw)

    def _observe(self, frame: Frame) -> None:
        if frame.event not in SNAPSHOT_EVENTS or frame.failed:
            return
        if frame.event == Event.PLAYERS_STATUS.value:
            self.network.apply_players_status(frame.payload)
        else:
            self.network.apply_games_status(frame.payload)

    def _on_heartbeat(self, frame: Frame) -> None:
        reply = create_frame(Event.HEARTBEAT, {"players": self.players})
        self._spawn(self._send_heartbeat(reply))

    async def _send_heartbeat(self, frame: Frame) -> None:
        try:
            await self.send_frame(frame)
        except NotConnectedError as e:
            logger.debug("Heartbeat reply not sent: %s", e)

    def _on_restart(self, frame: Frame) -> None:
        downtime = frame.payload.get("downtime")
        if isinstance(downtime, (int, float)) and not isinstance(downtime, bool) and downtime > 0:
            self._restart_downtime = float(downtime)
        logger.info("Hub announced a restart (downtime %ss)", downtime)

    async def _on_transport_close(self, transport: WebSocketTransport, reason: str) -> None:
        if transport is not self._transport:
            return
        error = HubConnectionError(f"connection to hub lost: {reason}")
        if self._state is ConnectionState.READY:
            self._drop(error)
        else:
            # an in-flight _establish sees this through its failed requests
            self._transport = None
            self.correlator.fail_all(error)

    async def _on_transport_error(self, transport: WebSocketTransport, error: Exception) -> None:
        if transport is self._transport:
            self.dispatcher.emit_error(HubConnectionError(f"transport error: {error}"))

    # ==================== heartbeat & reconnect ====================

    def _start_heartbeat(self) -> None:
        self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = self._spawn(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        """Treat the link as dropped after too many silent heartbeat windows."""
        interval = self.config.heartbeat_interval
        limit = self.config.heartbeat_max_missed
        while self._state is ConnectionState.READY:
            await asyncio.sleep(interval)
            if self._state is not ConnectionState.READY:
                return
            missed = int((time.monotonic() - self._last_seen) // interval)
            if missed >= limit:
                logger.warning("Missed %d heartbeat(s); dropping connection", missed)
                self._drop(HubConnectionError(f"no frames from hub for {missed} heartbeat interval(s)"))
                return

    def _drop(self, error: HubConnectionError) -> None:
        """Handle an unexpected loss of a READY connection"""
        transport, self._transport = self._transport, None
        self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        self.correlator.fail_all(error)
        self.network.clear()
        if transport is not None:
            self._spawn(transport.close())

        if self._auto_reconnect and not self._closed:
            self._set_state(ConnectionState.RECONNECTING)
            self._reconnect_task = self._spawn(self._reconnect_loop())
        else:
            self._set_state(ConnectionState.DISCONNECTED)

        self.dispatcher.emit_error(error)
        self.dispatcher.emit(DISCONNECT_EVENT, {"reason": str(error)})

    def _resume_reconnect(self) -> None:
        """Go back to retrying after a failed manual connect on a client that was ready before"""
        if self._closed or not (self._has_been_ready and self._auto_reconnect):
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = self._spawn(self._reconnect_loop())

    def next_delay(self) -> float:
        delay = self.config.backoff_delay(self._attempts)
        if self._restart_downtime is not None:
            delay = max(delay, self._restart_downtime)
        return delay

    async def _reconnect_loop(self) -> None:
        """Retry with exponential backoff until READY, close() or a rejected login."""
        while self._auto_reconnect and not self._closed:
            delay = self.next_delay()
            self._attempts += 1
            logger.info("Reconnecting in %.2fs (attempt %d)", delay, self._attempts)
            await asyncio.sleep(delay)
            if self._closed or not self._auto_reconnect:
                return

            self._establishing = self._spawn(self._establish())
            try:
                await asyncio.shield(self._establishing)
                return
            except AuthenticationError as e:
                logger.error("Reconnect stopped: %s", e)
                self._auto_reconnect = False
                self._set_state(ConnectionState.DISCONNECTED)
                self.dispatcher.emit_error(e)
                return
            except ClientClosedError:
                return
            except GrapevineError as e:
                logger.warning("Reconnect attempt %d failed: %s", self._attempts, e)
                self.dispatcher.emit_error(e)
                if not self._closed:
                    self._set_state(ConnectionState.RECONNECTING)

    # ==================== closing ====================

    def close(self) -> None:
        """Stop everything; safe to call more than once"""
        if self._closed:
            return
        self._closed = True
        self._auto_reconnect = False
        logger.info("Closing connection")

        for task in (self._heartbeat_task, self._reconnect_task):
            self._cancel_task(task)
        self._heartbeat_task = None
        self._reconnect_task = None

        self.correlator.fail_all(ClientClosedError())

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; transport is left to the garbage collector")
            else:
                self._spawn(transport.close())

        self.network.clear()
        self._players.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait for background work, including transport teardown, to finish"""
        current = asyncio.current_task()
        while True:
            tasks = [t for t in self._background_tasks if t is not current and not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ==================== task helpers ====================

    def _spawn(self, coroutine: Awaitable[Any]) -> asyncio.Task:
        """Start a task and keep a strong reference to it until completion."""
        task = asyncio.ensure_future(coroutine)
        self._background_tasks.add(task)

        def _discard(_task: asyncio.Task) -> None:
            self._background_tasks.discard(_task)
            if not _task.cancelled() and _task.exception() is not None \
                    and _task is not self._establishing:
                logger.error("Background task failed: %s", _task.exception())

        task.add_done_callback(_discard)
        return task

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


