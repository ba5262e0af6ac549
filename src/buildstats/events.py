"""Build event model and decoding for the Export API.

Each Server-Sent Event streamed by the Export API carries a JSON document of
the form::

    {"timestamp": 1700000000000, "type": {"eventType": "TaskStarted"}, "data": {...}}

``decode_event`` turns that document into an Event. It keeps no state and is
safe to call from any thread.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class DecodeError(ValueError):
    """Raised when an event payload is not a well-formed build event."""


class ProtocolError(RuntimeError):
    """Raised when a stream violates the expected event protocol."""


class EventType(StrEnum):
    """Build event types consumed by the analyzer."""

    # Build metadata
    PROJECT_STRUCTURE = "ProjectStructure"
    USER_TAG = "UserTag"
    BUILD_MODES = "BuildModes"
    BUILD_REQUESTED_TASKS = "BuildRequestedTasks"

    # Task lifecycle
    TASK_STARTED = "TaskStarted"
    TASK_FINISHED = "TaskFinished"


BUILD_INFO_EVENT_TYPES = (
    EventType.PROJECT_STRUCTURE,
    EventType.USER_TAG,
    EventType.BUILD_MODES,
    EventType.BUILD_REQUESTED_TASKS,
)

TASK_EVENT_TYPES = (
    EventType.TASK_STARTED,
    EventType.TASK_FINISHED,
)


@dataclass(frozen=True)
class Event:
    """A decoded build event.

    Attributes:
        event_type: The event type name as sent by the server.
        timestamp: Milliseconds since the epoch.
        data: Type-specific payload.
    """

    event_type: str
    timestamp: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        """Get a required payload field.

        Raises:
            ProtocolError: If the field is missing.
        """
        try:
            return self.data[key]
        except KeyError:
            raise ProtocolError(
                f"{self.event_type} event is missing field '{key}'"
            ) from None


def decode_event(payload: str) -> Event:
    """Decode the data of one Server-Sent Event into an Event.

    Args:
        payload: The raw JSON text of the event.

    Returns:
        The decoded Event.

    Raises:
        DecodeError: If the payload is not valid JSON or lacks the event
            envelope fields.
    """
    document = decode_json(payload)

    try:
        event_type = document["type"]["eventType"]
    except (KeyError, TypeError):
        raise DecodeError(f"Event has no type: {payload[:200]}") from None

    if not isinstance(event_type, str):
        raise DecodeError(f"Event type is not a string: {event_type!r}")

    if "timestamp" not in document:
        raise DecodeError(f"{event_type} event has no timestamp")
    timestamp = document["timestamp"]
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise DecodeError(f"Invalid event timestamp: {timestamp!r}")

    data = document.get("data") or {}
    if not isinstance(data, dict):
        raise DecodeError(f"Event data is not an object: {data!r}")

    return Event(event_type=event_type, timestamp=timestamp, data=data)


def decode_json(payload: str) -> dict[str, Any]:
    """Parse a JSON object.

    Raises:
        DecodeError: If the payload is not a JSON object.
    """
    try:
        document = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid event JSON: {e}") from e

    if not isinstance(document, dict):
        raise DecodeError(f"Expected a JSON object, got {type(document).__name__}")

    return document
