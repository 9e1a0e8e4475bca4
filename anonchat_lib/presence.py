import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from .constants import ROOM_CLEARED_EVENT, TYPING_EVENT, TYPING_IDLE
from .errors import RelayError
from .relay import SUBSCRIBED, PresenceChannel

log = logging.getLogger(__name__)


class PresenceSignals:
    """
    Outbound ephemeral signals of one client on one presence channel.

    Typing is edge-triggered: a broadcast goes out only when the self-reported
    flag changes. Activity re-arms a single-shot timer (a debounce), so a
    burst of keystrokes yields one "typing" and, once the burst is over, one
    "stopped typing".
    """

    def __init__(self, name: str, idle: float = TYPING_IDLE,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.name = name
        self.idle = idle
        self.timer_factory = timer_factory
        self.channel: Optional[PresenceChannel] = None
        self.typing = False
        self._subscribed = False
        self._timer = None
        self._armed = 0
        self._closed = False
        self._lock = threading.Lock()

    def attach(self, channel: PresenceChannel):
        with self._lock:
            self.channel = channel
            subscribed = self._subscribed
        if subscribed:
            self._track(channel)

    def on_status(self, status: str):
        """Channel status callback; presence is announced once the join is acknowledged."""
        log.debug("presence channel status %s", status)
        with self._lock:
            if self._closed:
                return
            self._subscribed = status == SUBSCRIBED
            channel = self.channel if self._subscribed else None
        if channel is not None:
            self._track(channel)

    def _track(self, channel: PresenceChannel):
        try:
            channel.track({"online_at": datetime.now(timezone.utc).isoformat()})
        except RelayError as e:
            log.warning("could not announce presence: %s", e)

    def _send(self, event: str, payload: dict):
        with self._lock:
            channel = self.channel
        if channel is None:
            return
        try:
            channel.broadcast(event, payload)
        except RelayError as e:
            log.warning("could not broadcast %s: %s", event, e)

    def send_typing(self, typing: bool):
        with self._lock:
            if self._closed or self.typing == typing:
                return
            self.typing = typing
        self._send(TYPING_EVENT, {"name": self.name, "typing": typing})

    def handle_typing_activity(self):
        self.send_typing(True)
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._armed += 1
            armed = self._armed
            timer = self.timer_factory(self.idle, lambda: self._expire(armed))
            timer.daemon = True
            self._timer = timer
        timer.start()

    def _expire(self, armed: int):
        with self._lock:
            # Re-armed or closed since this timer was started
            if self._closed or armed != self._armed:
                return
            self._timer = None
        self.send_typing(False)

    def announce_cleared(self):
        self._send(ROOM_CLEARED_EVENT, {"by": self.name})

    def close(self):
        """Cancels the typing timer; a peer still seeing us typing gets a final 'stopped'."""
        self.send_typing(False)
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.channel = None
