from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union
import json

from grapevine.errors import FrameDecodeError
from grapevine.events import EventName, event_name
from grapevine.utils import format_timestamp

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


@dataclass
class Frame:
    """
    Every frame on the hub socket uses the shape:
    {
    "event":   "STRING",
    "ref":     "STRING (optional, requests and their replies only)",
    "payload": { ... } (optional, defaults to {}),
    "status":  "success | failure (replies only)",
    "error":   "STRING (failure replies only)"
    }

    Requests carry a ref, the matching reply echoes it, pushes carry none.
    """
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ref: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILURE

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'Frame':
        """Parse a raw text frame into a Frame, validating structure"""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise FrameDecodeError(f"Frame is not UTF-8: {e}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FrameDecodeError(f"Invalid JSON: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'Frame':
        """Create Frame from dictionary, validating required fields"""
        if not isinstance(data, dict):
            raise FrameDecodeError("Frame must be a JSON object")
        if 'event' not in data:
            raise FrameDecodeError("Missing required field: 'event'")

        if not isinstance(data['event'], str) or not data['event']:
            raise FrameDecodeError("'event' must be a non-empty string")

        payload = data.get('payload')
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise FrameDecodeError("'payload' must be an object")

        ref = data.get('ref')
        if ref is not None and not isinstance(ref, str):
            raise FrameDecodeError("'ref' must be a string")

        status = data.get('status')
        if status is not None and not isinstance(status, str):
            raise FrameDecodeError("'status' must be a string")

        error = data.get('error')
        if error is not None and not isinstance(error, str):
            error = str(error)

        return cls(
            event=data['event'],
            payload=payload,
            ref=ref,
            status=status,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert Frame back to dictionary, omitting unset optional fields"""
        result: Dict[str, Any] = {'event': self.event}
        if self.ref is not None:
            result['ref'] = self.ref
        if self.payload:
            result['payload'] = self.payload
        if self.status is not None:
            result['status'] = self.status
        if self.error is not None:
            result['error'] = self.error
        return result

    def to_json(self) -> str:
        """Convert Frame to a JSON text frame"""
        return json.dumps(self.to_dict(), separators=(',', ':'), sort_keys=True, default=_encode_value)


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def create_frame(event: EventName, payload: Optional[Dict[str, Any]] = None,
                 ref: Optional[str] = None) -> Frame:
    """Helper to build an outbound frame"""
    if payload is not None and not isinstance(payload, dict):
        raise TypeError(f"payload must be a dict, got {type(payload).__name__}")
    return Frame(event=event_name(event), payload=dict(payload or {}), ref=ref)
