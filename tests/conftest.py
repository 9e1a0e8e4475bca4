import pytest

from anonchat_lib.relay import MemoryRelay, PresenceChannel
from anonchat_lib.session import ChatSession


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    def __init__(self, interval, fn):
        self.interval = interval
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.fn()


class Timers:
    def __init__(self):
        self.created = []

    def __call__(self, interval, fn):
        t = FakeTimer(interval, fn)
        self.created.append(t)
        return t

    @property
    def last(self) -> FakeTimer:
        return self.created[-1]


class RecordingChannel(PresenceChannel):
    def __init__(self):
        self.tracked = []
        self.sent = []
        self.closed = False

    def track(self, meta):
        self.tracked.append(meta)

    def broadcast(self, event, payload):
        self.sent.append((event, payload))

    def unsubscribe(self):
        self.closed = True


@pytest.fixture
def timers():
    return Timers()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def relay():
    return MemoryRelay()


@pytest.fixture
def make_session(relay, timers):
    sessions = []

    def _make():
        chat = ChatSession(relay, invite_base="https://chat.example/", timer_factory=timers, workers=4)
        sessions.append(chat)
        return chat

    yield _make
    for chat in sessions:
        chat.leave()
