"""
Change events delivered to the sync engine by a relay.

Relays translate their own wire format into exactly one of these variants.
Broadcast payloads come from other clients, possibly older ones, so optional
fields are decoded with defaults instead of being required.
"""
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Union

from .constants import ROOM_CLEARED_EVENT, TYPING_EVENT


@dataclass(frozen=True)
class Message:
    id: str
    room: str
    author: str
    content: str
    created_at: str


@dataclass(frozen=True)
class InsertEvent:
    record: Message


@dataclass(frozen=True)
class DeleteAllEvent:
    pass


@dataclass(frozen=True)
class TypingEvent:
    name: str
    typing: bool


@dataclass(frozen=True)
class RoomClearedEvent:
    by: Optional[str] = None


@dataclass(frozen=True)
class PresenceSyncEvent:
    identities: FrozenSet[str]


Event = Union[InsertEvent, DeleteAllEvent, TypingEvent, RoomClearedEvent, PresenceSyncEvent]


def message_from_row(row: Dict[str, Any]) -> Message:
    return Message(
        id=str(row["id"]),
        room=row.get("room") or "",
        author=row.get("author") or "",
        content=row.get("content") or "",
        created_at=row.get("created_at") or "",
    )


def from_broadcast(event: str, payload: Optional[Dict[str, Any]]) -> Optional[Event]:
    """Decodes a broadcast; returns None for kinds this client does not know."""
    payload = payload if isinstance(payload, dict) else {}
    if event == TYPING_EVENT:
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            return None
        return TypingEvent(name=name, typing=bool(payload.get("typing", False)))
    if event == ROOM_CLEARED_EVENT:
        by = payload.get("by")
        return RoomClearedEvent(by=by if isinstance(by, str) and by else None)
    return None
