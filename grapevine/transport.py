from __future__ import annotations
import asyncio
from contextlib import suppress
from typing import Awaitable, Callable, Optional, Union

import websockets

from grapevine.errors import HubConnectionError, NotConnectedError
from grapevine.log import get_logger
from grapevine.utils import is_ws_url

logger = get_logger(__name__)


FrameCallback = Callable[[Union[str, bytes]], Awaitable[None]]
CloseCallback = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class WebSocketTransport:
    """
    One websocket connection to the hub.

    Owns the socket and a reader task. Inbound text frames are handed to
    on_frame in arrival order; when the hub side goes away on_close is
    awaited with a reason. A close() issued locally does not call on_close,
    the owner already knows.
    """

    def __init__(
        self,
        *,
        ping_interval: Optional[float] = 15.0,
        ping_timeout: Optional[float] = 45.0,
        open_timeout: Optional[float] = 10.0,
    ) -> None:
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self.endpoint: Optional[str] = None
        self.websocket: Optional[websockets.ClientConnection] = None
        self.on_frame: Optional[FrameCallback] = None
        self.on_close: Optional[CloseCallback] = None
        self.on_error: Optional[ErrorCallback] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and not self._closing

    async def connect(self, endpoint: str) -> None:
        """Open the websocket and start reading frames"""
        if self.websocket is not None:
            raise HubConnectionError("transport is already connected")
        if not is_ws_url(endpoint):
            raise HubConnectionError(f"Malformed hub endpoint: {endpoint!r}")

        self.endpoint = endpoint
        self._closing = False
        try:
            self.websocket = await websockets.connect(
                endpoint,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise HubConnectionError(f"Could not connect to {endpoint}: {e}") from e

        logger.info("Connected to hub at %s", endpoint)
        self._reader_task = asyncio.create_task(self._read_loop(self.websocket))

    async def send(self, frame: str) -> None:
        """Write one serialized frame"""
        websocket = self.websocket
        if websocket is None or self._closing:
            raise NotConnectedError("no live connection to the hub")
        try:
            await websocket.send(frame)
        except websockets.exceptions.ConnectionClosed as e:
            raise NotConnectedError(f"connection to the hub closed: {e}") from e

    async def close(self) -> None:
        """Close the websocket; calling it again does nothing"""
        if self._closing or self.websocket is None:
            return
        self._closing = True
        websocket, self.websocket = self.websocket, None
        try:
            await websocket.close(code=1000)
        except Exception as e:
            logger.error(f"Error closing connection: {e}")

        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader
        logger.info("Closed connection to %s", self.endpoint)

    async def _read_loop(self, websocket: websockets.ClientConnection) -> None:
        reason = "connection closed"
        try:
            async for raw in websocket:
                if self.on_frame is not None:
                    await self.on_frame(raw)
            reason = _describe_close(websocket)
        except websockets.exceptions.ConnectionClosed as e:
            reason = str(e) or _describe_close(websocket)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reader for %s failed: %s", self.endpoint, e)
            reason = f"reader failed: {e}"
            if self.on_error is not None and not self._closing:
                await self.on_error(e)

        if self._closing:
            return
        # the hub went away on its own
        self._closing = True
        self.websocket = None
        self._reader_task = None
        logger.warning("Connection to %s lost: %s", self.endpoint, reason)
        if self.on_close is not None:
            await self.on_close(reason)


def _describe_close(websocket: websockets.ClientConnection) -> str:
    code = getattr(websocket, "close_code", None)
    reason = getattr(websocket, "close_reason", None)
    if code is None:
        return "connection closed"
    return f"closed with code {code}" + (f" ({reason})" if reason else "")
