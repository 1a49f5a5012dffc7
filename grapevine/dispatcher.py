from __future__ import annotations
import asyncio
import inspect
from typing import Any, Callable, Dict, List, Set, Union

from grapevine.correlator import RequestCorrelator
from grapevine.errors import FrameDecodeError, RequestFailedError
from grapevine.events import ERROR_EVENT, EventName, event_name
from grapevine.frame import Frame
from grapevine.log import get_logger, log_frame

logger = get_logger(__name__)


Listener = Callable[[Any], Any]
FrameHook = Callable[[Frame], None]


class EventDispatcher:
    """
    Routes decoded frames.

    A frame whose ref is outstanding in the correlator goes there and
    nowhere else; a reply nobody waits for any more is dropped. Every
    other frame runs its internal handler (cache updates, heartbeat
    replies) and is then re-emitted to the listeners registered for its
    event name. Events nobody listens to are dropped.
    Decode failures and listener errors are emitted on "error".
    """

    def __init__(self, correlator: RequestCorrelator) -> None:
        self.correlator = correlator
        self._listeners: Dict[str, List[Listener]] = {}
        self._handlers: Dict[str, FrameHook] = {}
        self._taps: List[FrameHook] = []
        self._background_tasks: Set[asyncio.Task] = set()

    # ==================== subscriptions ====================

    def on(self, event: EventName, listener: Listener) -> None:
        """Register listener for event; a listener is added at most once per event"""
        if not callable(listener):
            raise TypeError("listener must be callable")
        listeners = self._listeners.setdefault(event_name(event), [])
        if listener not in listeners:
            listeners.append(listener)

    def once(self, event: EventName, listener: Listener) -> None:
        name = event_name(event)

        def _once(payload: Any) -> Any:
            self.off(name, _once)
            return listener(payload)

        _once.__wrapped__ = listener  # type: ignore[attr-defined]
        self.on(name, _once)

    def off(self, event: EventName, listener: Union[Listener, None] = None) -> None:
        """Remove one listener, or every listener for event when listener is None"""
        name = event_name(event)
        if listener is None:
            self._listeners.pop(name, None)
            return
        listeners = self._listeners.get(name, [])
        for registered in list(listeners):
            if registered is listener or getattr(registered, "__wrapped__", None) is listener:
                listeners.remove(registered)
        if not listeners:
            self._listeners.pop(name, None)

    def listeners(self, event: EventName) -> List[Listener]:
        return list(self._listeners.get(event_name(event), []))

    # ==================== internal routing ====================

    def set_handler(self, event: EventName, handler: FrameHook) -> None:
        """Internal handler run for pushed frames of event before listeners"""
        self._handlers[event_name(event)] = handler

    def add_tap(self, tap: FrameHook) -> None:
        """Hook run for every decoded frame, replies included"""
        self._taps.append(tap)

    # ==================== dispatch ====================

    async def dispatch_raw(self, raw: Union[str, bytes]) -> None:
        """Decode one inbound frame and dispatch it; never raises"""
        try:
            frame = Frame.from_json(raw)
        except FrameDecodeError as e:
            logger.warning("Dropping undecodable frame: %s", e)
            self.emit_error(e)
            return
        await self.dispatch(frame)

    async def dispatch(self, frame: Frame) -> None:
        for tap in self._taps:
            try:
                tap(frame)
            except Exception as e:
                logger.exception("Frame tap failed for %s", frame.event)
                self.emit_error(e)

        if frame.ref is not None:
            if frame.ref in self.correlator:
                self._route_reply(frame)
                return
            if frame.status is not None:
                log_frame(logger, "debug", "Dropping late or duplicate reply", frame=frame)
                return

        handler = self._handlers.get(frame.event)
        if handler is not None:
            try:
                handler(frame)
            except Exception as e:
                logger.exception("Handler failed for %s", frame.event)
                self.emit_error(e)

        self.emit(frame.event, frame.payload)

    def _route_reply(self, frame: Frame) -> None:
        if frame.failed:
            log_frame(logger, "debug", f"Hub rejected request: {frame.error}", frame=frame)
            self.correlator.reject(frame.ref, RequestFailedError(frame.event, frame.error, frame.ref))
        else:
            log_frame(logger, "debug", "Reply received", frame=frame)
            self.correlator.resolve(frame.ref, frame.payload)

    # ==================== emitting ====================

    def emit(self, event: EventName, payload: Any = None) -> bool:
        """
        Invoke every listener for event with payload, in registration order.

        Coroutine listeners are scheduled as tasks so they may await client
        calls without blocking frame processing.

        Returns:
            True if at least one listener was invoked
        """
        name = event_name(event)
        listeners = list(self._listeners.get(name, []))
        if not listeners:
            logger.debug("No listeners for %s", name)
            return False

        for listener in listeners:
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result), name)
            except Exception as e:
                self._listener_failed(name, e)
        return True

    def emit_error(self, error: BaseException) -> None:
        """Emit an error that has no caller to receive it"""
        if not self._listeners.get(ERROR_EVENT):
            logger.error("Unhandled grapevine error: %s", error)
            return
        self.emit(ERROR_EVENT, error)

    def _listener_failed(self, name: str, error: BaseException) -> None:
        if name == ERROR_EVENT:
            logger.error("Error listener failed: %s", error)
            return
        logger.error("Listener for %s failed: %s", name, error)
        self.emit_error(error)

    def _track(self, task: asyncio.Future, name: str) -> None:
        """Keep a strong reference to listener tasks until completion."""
        self._background_tasks.add(task)

        def _done(_task: asyncio.Future) -> None:
            self._background_tasks.discard(_task)
            if _task.cancelled():
                return
            exc = _task.exception()
            if exc is not None:
                self._listener_failed(name, exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for listener tasks scheduled so far"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
