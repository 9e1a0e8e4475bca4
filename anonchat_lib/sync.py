"""
Keeps a SessionState in step with one room on a relay.

Joining backfills a capped, oldest-first page of history, decrypts it on a
thread pool and only then opens the message and presence channels. Events
arrive on relay threads; each is applied under one lock so it lands fully
before the next. Every join and leave bumps an epoch, and anything tagged
with an older epoch (a slow backfill, a late event from a closed channel) is
dropped instead of overwriting newer state.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from . import crypto
from .constants import BACKFILL_LIMIT, DECRYPT_WORKERS, TYPING_IDLE
from .errors import RelayError, ValidationError
from .events import (
    DeleteAllEvent, Event, InsertEvent, Message, PresenceSyncEvent, RoomClearedEvent, TypingEvent,
    message_from_row,
)
from .presence import PresenceSignals
from .relay import CHANNEL_ERROR, SUBSCRIBED, Relay, Subscription
from .rooms import canonical_name, canonical_room
from .state import Phase, SessionState

log = logging.getLogger(__name__)

LIVE_UPDATES_LOST = "Live updates are unavailable for this room."

Detached = Tuple[Optional[PresenceSignals], List[Subscription]]


class SyncEngine:
    def __init__(self, relay: Relay, state: Optional[SessionState] = None,
                 timer_factory=threading.Timer, typing_idle: float = TYPING_IDLE,
                 workers: int = DECRYPT_WORKERS):
        self.relay = relay
        self.state = state or SessionState()
        self.lock = threading.RLock()
        self.timer_factory = timer_factory
        self.typing_idle = typing_idle
        self.workers = workers
        self.signals: Optional[PresenceSignals] = None
        self._subs: List[Subscription] = []
        self._epoch = 0

    @property
    def phase(self) -> Phase:
        return self.state.phase

    def join(self, room: str, name: str, password: str) -> bool:
        """
        Enters a room, replacing whatever room was joined before.

        Returns False when the join was overtaken by a leave or another join
        while the backfill was in flight; the stale result is discarded.
        Raises ValidationError for missing fields and RelayError when the
        backfill or a subscription fails, in which case the engine is idle.
        """
        room, name = canonical_room(room), canonical_name(name)
        if not room or not name or not password:
            raise ValidationError("Enter a name, a room id and a password.")

        st = self.state
        with self.lock:
            detached = self._detach()
            self._epoch += 1
            epoch = self._epoch
            st.room, st.name, st.password = room, name, password
            st.messages = []
            st.error = ""
            st.phase = Phase.JOINING
            st.touch()
        self._release(detached)

        log.debug("joining room %s as %s", room, name)
        try:
            rows = self.relay.select_messages(room, BACKFILL_LIMIT)
            messages = self._decrypt_rows(rows, password)
        except Exception:
            with self.lock:
                if epoch != self._epoch:
                    log.debug("ignoring failed backfill of %s, session moved on", room, exc_info=True)
                    return False
                st.phase = Phase.IDLE
                st.touch()
            raise

        try:
            with self.lock:
                if epoch != self._epoch:
                    log.debug("discarding backfill of %s, session moved on", room)
                    return False
                st.messages = messages
                self._open_channels(epoch, room, name)
                st.phase = Phase.JOINED
                st.touch()
        except Exception:
            with self.lock:
                current = epoch == self._epoch
                if current:
                    self._epoch += 1
                    detached = self._detach()
                    st.messages = []
                    st.phase = Phase.IDLE
                    st.touch()
            if current:
                self._release(detached)
            raise
        log.debug("joined %s with %d messages", room, len(messages))
        return True

    def _decrypt_rows(self, rows: List[Dict[str, Any]], password: str) -> List[Message]:
        records = [message_from_row(r) for r in rows]
        if not records:
            return []

        def _open(m: Message) -> Message:
            return replace(m, content=crypto.decrypt(m.content, password))

        # map() yields in submission order, not completion order
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="decrypt") as pool:
            return list(pool.map(_open, records))

    def _open_channels(self, epoch: int, room: str, name: str):
        def deliver(event: Event):
            self._on_event(epoch, event)

        def status(value: str):
            self._on_status(epoch, value)

        self._subs.append(self.relay.subscribe_messages(room, deliver, status))
        signals = PresenceSignals(name, self.typing_idle, self.timer_factory)
        self.signals = signals

        def presence_status(value: str):
            signals.on_status(value)
            self._on_status(epoch, value)

        channel = self.relay.open_presence(room, name, deliver, presence_status)
        self._subs.append(channel)
        signals.attach(channel)

    def _detach(self) -> Detached:
        """Takes the current channels away from the engine. Call with the lock held."""
        st = self.state
        detached = (self.signals, self._subs)
        self.signals = None
        self._subs = []
        st.online = 0
        st.members = set()
        st.typing = set()
        return detached

    def _release(self, detached: Detached):
        """Closes detached channels; these are network calls, so never under the lock."""
        signals, subs = detached
        if signals is not None:
            signals.close()
        for sub in subs:
            try:
                sub.unsubscribe()
            except RelayError as e:
                log.warning("unsubscribe failed: %s", e)

    def _on_status(self, epoch: int, status: str):
        with self.lock:
            if epoch != self._epoch:
                return
            st = self.state
            if status == CHANNEL_ERROR:
                st.error = LIVE_UPDATES_LOST
                st.touch()
            elif status == SUBSCRIBED and st.error == LIVE_UPDATES_LOST:
                # Rejoined after a dropped socket
                st.error = ""
                st.touch()

    def _on_event(self, epoch: int, event: Event):
        if isinstance(event, InsertEvent):
            with self.lock:
                if epoch != self._epoch:
                    return
                password = self.state.password
            # Decrypt off the lock; the relay delivers one channel's events in order
            event = InsertEvent(replace(event.record, content=crypto.decrypt(event.record.content, password)))
        with self.lock:
            if epoch != self._epoch:
                log.debug("dropping stale %s", type(event).__name__)
                return
            self._apply(event)

    def _apply(self, event: Event):
        st = self.state
        if isinstance(event, InsertEvent):
            st.messages.append(event.record)
        elif isinstance(event, DeleteAllEvent):
            # Carries no row ids: the whole local history is gone
            st.messages = []
        elif isinstance(event, TypingEvent):
            if event.name == st.name:
                return
            if event.typing:
                st.typing.add(event.name)
            else:
                st.typing.discard(event.name)
        elif isinstance(event, RoomClearedEvent):
            st.messages = []
            st.typing = set()
            st.info = f"History cleared by {event.by}." if event.by else "History cleared."
        elif isinstance(event, PresenceSyncEvent):
            st.members = set(event.identities)
            st.online = len(st.members)
        else:
            raise TypeError(f"unknown event {event!r}")
        st.touch()

    def send(self, text: str) -> Dict[str, Any]:
        """Encrypts and inserts a message. The message shows up when its insert event arrives."""
        body = (text or "").strip()
        with self.lock:
            room, name, password = self.state.room, self.state.name, self.state.password
        if not body:
            raise ValidationError("Message is empty.")
        if not room or not name or not password:
            raise ValidationError("Join a room first.")
        return self.relay.insert_message(room, name, crypto.encrypt_to_wire(body, password))

    def clear_history(self):
        """Deletes every message of the room and tells the other members."""
        st = self.state
        with self.lock:
            if st.phase is not Phase.JOINED:
                raise ValidationError("Join a room first.")
            room, name, signals = st.room, st.name, self.signals
        self.relay.delete_messages(room)
        with self.lock:
            st.messages = []
            st.typing = set()
            st.info = f"History cleared by {name}."
            st.touch()
        if signals is not None:
            signals.announce_cleared()

    def send_typing(self, typing: bool):
        signals = self.signals
        if signals is not None:
            signals.send_typing(typing)

    def handle_typing_activity(self):
        signals = self.signals
        if signals is not None:
            signals.handle_typing_activity()

    def leave(self):
        """Closes both channels and forgets the password. Idempotent."""
        st = self.state
        with self.lock:
            self._epoch += 1
            detached = self._detach()
            st.phase = Phase.IDLE
            st.password = ""
            st.messages = []
            st.touch()
        self._release(detached)
