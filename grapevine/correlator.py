from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from grapevine.errors import RequestTimeoutError
from grapevine.log import get_logger

logger = get_logger(__name__)


@dataclass
class PendingRequest:
    ref: str
    event: str
    future: asyncio.Future
    created_at: float
    timeout: float
    timer: Optional[asyncio.TimerHandle] = None

    def age(self) -> float:
        return time.monotonic() - self.created_at


class RequestCorrelator:
    """
    Table of requests waiting for a reply from the hub.

    Each outbound request gets a fresh ref; the reply carrying that ref
    completes the caller's future. Entries leave the table when they are
    resolved, rejected, time out, or when the whole table is failed on
    disconnect, so a ref is never reused while it is outstanding.
    """

    def __init__(self, default_timeout: float = 10.0):
        """
        Args:
            default_timeout: Seconds a request may stay unanswered (default 10s)
        """
        self.default_timeout = default_timeout
        self._pending: Dict[str, PendingRequest] = {}

    def __contains__(self, ref: object) -> bool:
        return ref in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def next_ref(self) -> str:
        """Allocate a ref that no outstanding request uses"""
        ref = str(uuid.uuid4())
        while ref in self._pending:
            ref = str(uuid.uuid4())
        return ref

    def register(self, ref: str, event: str, timeout: Optional[float] = None) -> asyncio.Future:
        """
        Create a pending entry and return the future the caller awaits.

        Raises:
            ValueError: if ref is already outstanding
        """
        if ref in self._pending:
            raise ValueError(f"ref {ref} is already outstanding")

        loop = asyncio.get_running_loop()
        timeout = self.default_timeout if timeout is None else timeout
        future = loop.create_future()
        pending = PendingRequest(
            ref=ref,
            event=event,
            future=future,
            created_at=time.monotonic(),
            timeout=timeout,
        )
        pending.timer = loop.call_later(timeout, self._expire, ref)
        self._pending[ref] = pending
        future.add_done_callback(lambda f, ref=ref: self._on_future_done(ref, f))
        logger.debug("Registered %s request", event, extra={"ref": ref})
        return future

    def resolve(self, ref: str, payload: Any) -> bool:
        """
        Complete the request for ref with payload.

        Returns False when nothing is waiting for ref; late and duplicate
        replies are expected and only logged.
        """
        pending = self._pop(ref)
        if pending is None:
            logger.debug("Dropping reply for unknown or expired request", extra={"ref": ref})
            return False
        if not pending.future.done():
            pending.future.set_result(payload)
        logger.debug("Resolved %s request after %.3fs", pending.event, pending.age(), extra={"ref": ref})
        return True

    def reject(self, ref: str, error: BaseException) -> bool:
        """Fail the request for ref with error; False if nothing is waiting"""
        pending = self._pop(ref)
        if pending is None:
            logger.debug("Dropping failure for unknown or expired request", extra={"ref": ref})
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def discard(self, ref: str) -> None:
        """Forget a request whose frame never made it onto the wire"""
        pending = self._pop(ref)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def fail_all(self, error: BaseException) -> int:
        """
        Fail every outstanding request with error and clear the table.

        Returns:
            Number of requests failed
        """
        pending_requests = list(self._pending.values())
        self._pending.clear()
        for pending in pending_requests:
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(error)
        if pending_requests:
            logger.info("Failed %d pending request(s): %s", len(pending_requests), error)
        return len(pending_requests)

    def stats(self) -> Dict[str, Any]:
        """Return table statistics."""
        oldest = max((p.age() for p in self._pending.values()), default=0.0)
        return {
            "pending": len(self._pending),
            "oldest_age": oldest,
        }

    def _pop(self, ref: str) -> Optional[PendingRequest]:
        pending = self._pending.pop(ref, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, ref: str) -> None:
        pending = self._pending.pop(ref, None)
        if pending is None:
            return
        logger.warning("%s request timed out after %.1fs", pending.event, pending.timeout, extra={"ref": ref})
        if not pending.future.done():
            pending.future.set_exception(RequestTimeoutError(pending.event, ref, pending.timeout))

    def _on_future_done(self, ref: str, future: asyncio.Future) -> None:
        # a caller that gave up (cancelled) no longer holds its ref
        if future.cancelled():
            pending = self._pending.get(ref)
            if pending is not None and pending.future is future:
                self._pop(ref)
