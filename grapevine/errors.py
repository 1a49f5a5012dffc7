from __future__ import annotations

from typing import Optional


class GrapevineError(Exception):
    """Base class for every error raised by the grapevine client."""
    pass


class ConfigurationError(GrapevineError):
    """Raised when the client configuration is missing or invalid."""
    pass


class HubConnectionError(GrapevineError, ConnectionError):
    """Raised when the connection to the hub cannot be opened or is lost."""
    pass


class AuthenticationError(GrapevineError):
    """Raised when the hub rejects the client credentials."""
    pass


class RequestTimeoutError(GrapevineError, TimeoutError):
    """Raised when a request is not answered before its deadline."""

    def __init__(self, event: str, ref: str, timeout: float):
        super().__init__(f"{event} request {ref} timed out after {timeout:.1f}s")
        self.event = event
        self.ref = ref
        self.timeout = timeout


class NotConnectedError(GrapevineError):
    """Raised when a frame is sent while the client is not ready."""
    pass


class PlayerNotFoundError(GrapevineError, LookupError):
    """Raised when a remote player is not signed in anywhere we know of."""
    pass


class ClientClosedError(GrapevineError):
    """Raised for operations pending during, or started after, close()."""

    def __init__(self, message: str = "client closed"):
        super().__init__(message)


class RequestFailedError(GrapevineError):
    """Raised when the hub answers a request with ``status: failure``."""

    def __init__(self, event: str, error: Optional[str] = None, ref: Optional[str] = None):
        super().__init__(f"{event} failed: {error or 'unknown error'}")
        self.event = event
        self.error = error
        self.ref = ref


class FrameDecodeError(GrapevineError, ValueError):
    """Raised when an inbound frame is not a valid grapevine frame."""
    pass
