"""
The remote store as seen by the client.

A relay stores opaque rows and fans out change events; it never sees a
password or a plaintext. `SupabaseRelay` talks to a hosted project,
`MemoryRelay` keeps everything in this process.
"""
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .events import DeleteAllEvent, Event, InsertEvent, PresenceSyncEvent, from_broadcast, message_from_row

log = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]
StatusHandler = Callable[[str], None]

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


class Subscription(ABC):
    @abstractmethod
    def unsubscribe(self):
        """Stops delivery. Safe to call more than once."""


class PresenceChannel(Subscription):
    @abstractmethod
    def track(self, meta: Dict[str, Any]):
        """Announces this client's presence under the channel's key."""

    @abstractmethod
    def broadcast(self, event: str, payload: Dict[str, Any]):
        """Sends an ephemeral payload to the other members of the channel."""


class Relay(ABC):
    @abstractmethod
    def select_messages(self, room: str, limit: int) -> List[Dict[str, Any]]:
        """Oldest-first rows of a room, at most `limit` of them."""

    @abstractmethod
    def insert_message(self, room: str, author: str, content: str) -> Dict[str, Any]:
        """Inserts one row; the store assigns id and created_at."""

    @abstractmethod
    def delete_messages(self, room: str):
        """Deletes every row of a room."""

    @abstractmethod
    def subscribe_messages(self, room: str, on_event: EventHandler,
                           on_status: Optional[StatusHandler] = None) -> Subscription:
        """Delivers InsertEvent and DeleteAllEvent for one room; `on_status` gets channel statuses."""

    @abstractmethod
    def open_presence(self, room: str, key: str, on_event: EventHandler,
                      on_status: Optional[StatusHandler] = None) -> PresenceChannel:
        """Joins the room's presence channel, keyed by `key`."""

    def close(self):
        pass


class _MemorySubscription(Subscription):
    def __init__(self, relay: "MemoryRelay", room: str, on_event: EventHandler):
        self.relay, self.room, self.on_event = relay, room, on_event
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.relay._drop_subscription(self)


class _MemoryPresence(PresenceChannel):
    def __init__(self, relay: "MemoryRelay", room: str, key: str, on_event: EventHandler):
        self.relay, self.room, self.key, self.on_event = relay, room, key, on_event
        self.meta: Optional[Dict[str, Any]] = None
        self.active = True

    def track(self, meta: Dict[str, Any]):
        if self.active:
            self.meta = dict(meta)
            self.relay._sync_presence(self.room)

    def broadcast(self, event: str, payload: Dict[str, Any]):
        if self.active:
            self.relay._broadcast(self, event, payload)

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.relay._drop_presence(self)


class MemoryRelay(Relay):
    """In-process relay: rows in a list, synchronous fan-out to subscribers."""

    def __init__(self):
        self._lock = threading.RLock()
        self.rows: List[Dict[str, Any]] = []
        self._subs: Dict[str, List[_MemorySubscription]] = defaultdict(list)
        self._presence: Dict[str, List[_MemoryPresence]] = defaultdict(list)

    def select_messages(self, room: str, limit: int) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [dict(r) for r in self.rows if r["room"] == room]
        rows.sort(key=lambda r: r["created_at"])
        return rows[:limit]

    def insert_message(self, room: str, author: str, content: str) -> Dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "room": room,
            "author": author,
            "content": content,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self.rows.append(row)
            subs = list(self._subs[room])
        # Deliver outside the lock, handlers take their own locks
        for sub in subs:
            sub.on_event(InsertEvent(message_from_row(dict(row))))
        return dict(row)

    def delete_messages(self, room: str):
        with self._lock:
            before = len(self.rows)
            self.rows = [r for r in self.rows if r["room"] != room]
            deleted = before - len(self.rows)
            subs = list(self._subs[room])
        log.debug("deleted %d rows", deleted)
        if deleted:
            for sub in subs:
                sub.on_event(DeleteAllEvent())

    def subscribe_messages(self, room: str, on_event: EventHandler,
                           on_status: Optional[StatusHandler] = None) -> Subscription:
        sub = _MemorySubscription(self, room, on_event)
        with self._lock:
            self._subs[room].append(sub)
        if on_status:
            on_status(SUBSCRIBED)
        return sub

    def open_presence(self, room: str, key: str, on_event: EventHandler,
                      on_status: Optional[StatusHandler] = None) -> PresenceChannel:
        ch = _MemoryPresence(self, room, key, on_event)
        with self._lock:
            self._presence[room].append(ch)
        if on_status:
            on_status(SUBSCRIBED)
        return ch

    def members(self, room: str) -> List[str]:
        with self._lock:
            return sorted({c.key for c in self._presence[room] if c.meta is not None})

    def _drop_subscription(self, sub: _MemorySubscription):
        with self._lock:
            if sub in self._subs[sub.room]:
                self._subs[sub.room].remove(sub)

    def _drop_presence(self, ch: _MemoryPresence):
        with self._lock:
            if ch in self._presence[ch.room]:
                self._presence[ch.room].remove(ch)
        self._sync_presence(ch.room)

    def _sync_presence(self, room: str):
        with self._lock:
            channels = list(self._presence[room])
            identities = frozenset(c.key for c in channels if c.meta is not None)
        for ch in channels:
            ch.on_event(PresenceSyncEvent(identities))

    def _broadcast(self, sender: _MemoryPresence, event: str, payload: Dict[str, Any]):
        # Round-trip through JSON like a real socket would
        wire = json.loads(json.dumps(payload))
        with self._lock:
            others = [c for c in self._presence[sender.room] if c is not sender]
        for ch in others:
            evt = from_broadcast(event, wire)
            if evt is not None:
                ch.on_event(evt)
