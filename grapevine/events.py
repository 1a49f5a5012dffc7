from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Union


class Event(str, Enum):
    """Grapevine socket event names."""

    # Session
    AUTHENTICATE = "authenticate"
    HEARTBEAT = "heartbeat"
    RESTART = "restart"                          # hub is going down, payload has downtime

    # Channels
    CHANNELS_SUBSCRIBE = "channels/subscribe"
    CHANNELS_UNSUBSCRIBE = "channels/unsubscribe"
    CHANNELS_SEND = "channels/send"
    CHANNELS_BROADCAST = "channels/broadcast"    # push

    # Players
    PLAYERS_SIGN_IN = "players/sign-in"
    PLAYERS_SIGN_OUT = "players/sign-out"
    PLAYERS_STATUS = "players/status"

    # Tells
    TELLS_SEND = "tells/send"
    TELLS_RECEIVE = "tells/receive"              # push

    # Games
    GAMES_CONNECT = "games/connect"              # push
    GAMES_DISCONNECT = "games/disconnect"        # push
    GAMES_STATUS = "games/status"

    @classmethod
    def from_string(cls, value: str) -> Event:
        """Convert string to Event, raise ValueError if unknown."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown event: {value}")

    @classmethod
    def is_valid(cls, value: str) -> bool:
        try:
            cls(value)
            return True
        except ValueError:
            return False


EventName = Union[Event, str]

# Locally emitted events; hub events are always namespaced with "/" so these never collide
ERROR_EVENT = "error"
READY_EVENT = "ready"
DISCONNECT_EVENT = "disconnect"

LOCAL_EVENTS: FrozenSet[str] = frozenset({ERROR_EVENT, READY_EVENT, DISCONNECT_EVENT})

# Events the hub sends without being asked
PUSH_EVENTS: FrozenSet[str] = frozenset({
    Event.HEARTBEAT.value,
    Event.RESTART.value,
    Event.CHANNELS_BROADCAST.value,
    Event.TELLS_RECEIVE.value,
    Event.PLAYERS_SIGN_IN.value,
    Event.PLAYERS_SIGN_OUT.value,
    Event.GAMES_CONNECT.value,
    Event.GAMES_DISCONNECT.value,
})

# Events whose frames carry roster data, whether pushed or sent as a reply
SNAPSHOT_EVENTS: FrozenSet[str] = frozenset({
    Event.PLAYERS_STATUS.value,
    Event.GAMES_STATUS.value,
})


def event_name(event: EventName) -> str:
    """Return the wire name of an event given as an Event or a plain string."""
    if isinstance(event, Event):
        return event.value
    if not isinstance(event, str) or not event:
        raise ValueError(f"event name must be a non-empty string, got {event!r}")
    return event
