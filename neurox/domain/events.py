from __future__ import annotations

from enum import Enum
from typing import Any, TypedDict


class EventKind(str, Enum):
    NEW_MESSAGE = "new_message"
    APPEAL_UPDATE = "appeal_update"
    TYPING = "typing"
    ERROR = "error"
    NEW_APPEAL = "new_appeal"


# The backend has used both spellings for the same events.
_TYPE_ALIASES: dict[str, EventKind] = {
    "new_message": EventKind.NEW_MESSAGE,
    "update_appeal": EventKind.APPEAL_UPDATE,
    "appeal_update": EventKind.APPEAL_UPDATE,
    "typing": EventKind.TYPING,
    "error": EventKind.ERROR,
    "new_appeal": EventKind.NEW_APPEAL,
}


class SubscribeData(TypedDict):
    company_id: int
    event_types: list[str]


def resolve_event_kind(raw_type: Any) -> EventKind | None:
    if not isinstance(raw_type, str):
        return None
    return _TYPE_ALIASES.get(raw_type.strip().lower())


def frame_payload(frame: dict[str, Any]) -> dict[str, Any]:
    # Frames carry the affected record under "data"; a few legacy ones use "payload".
    for key in ("data", "payload"):
        value = frame.get(key)
        if isinstance(value, dict):
            return value
    return {key: value for key, value in frame.items() if key != "type"}
