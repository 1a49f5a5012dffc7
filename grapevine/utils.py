from __future__ import annotations

from datetime import datetime, timezone
from typing import Tuple
from urllib.parse import urlparse

from grapevine.errors import PlayerNotFoundError

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================

_WS_SCHEMES = {"ws", "wss"}


def is_ws_url(s: str) -> bool:
    """
    Accepts 'ws://host[:port]/path' or 'wss://host[:port]/path'.

    - Scheme must be ws or wss.
    - Host must be non-empty.
    - Port, if present, must be between 1 and 65535.
    """
    if not isinstance(s, str):
        return False
    try:
        parsed = urlparse(s)
        if parsed.scheme not in _WS_SCHEMES or not parsed.hostname:
            return False
        port = parsed.port
    except ValueError:
        return False
    return port is None or 0 < port <= 65535


def parse_player_identifier(identifier: str) -> Tuple[str, str]:
    """
    Split a remote player identifier of the form 'player@game'.

    The split happens on the last '@' so game names stay intact. Both halves
    must be non-empty, otherwise the player cannot exist anywhere and
    PlayerNotFoundError is raised.
    """
    if not isinstance(identifier, str) or "@" not in identifier:
        raise PlayerNotFoundError(f"Malformed player identifier: {identifier!r}")
    name, game = identifier.rsplit("@", 1)
    name, game = name.strip(), game.strip()
    if not name or not game:
        raise PlayerNotFoundError(f"Malformed player identifier: {identifier!r}")
    return name, game


# ========================================
#           ENCODING HELPERS
# ========================================

def format_timestamp(value: datetime) -> str:
    """Format a datetime as the ISO-8601 UTC form the hub expects."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def backoff_delay(attempt: int, base: float, factor: float, maximum: float) -> float:
    """Exponential backoff for the given zero-based attempt, capped at maximum."""
    if attempt < 0:
        attempt = 0
    try:
        delay = base * (factor ** attempt)
    except OverflowError:
        return maximum
    return min(maximum, delay)
