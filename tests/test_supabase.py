"""Supabase relay: PostgREST calls and Realtime frame handling, no network."""
import json
import threading
from unittest import mock

import pytest
import requests

from anonchat_lib.errors import RelayError
from anonchat_lib.events import DeleteAllEvent, InsertEvent, PresenceSyncEvent, RoomClearedEvent, TypingEvent
from anonchat_lib.relay import CHANNEL_ERROR, SUBSCRIBED
from anonchat_lib.session import ChatSession
from anonchat_lib.state import Phase
from anonchat_lib.supabase import RealtimeChannel, RealtimeSocket, SupabaseRelay, realtime_url


def response(status=200, body=None, headers=None):
    resp = mock.Mock(spec=requests.Response)
    resp.status_code = status
    resp.headers = headers or {}
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status}", response=resp)
    return resp


@pytest.fixture
def http():
    session = requests.Session()
    session.request = mock.Mock()
    return session


@pytest.fixture
def supa(http):
    return SupabaseRelay("https://proj.supabase.co/", "anon-key", session=http, realtime=mock.Mock())


class FakeSocket:
    access_token = "anon-key"

    def __init__(self):
        self.pushed = []
        self.dropped = []

    def push(self, topic, event, payload):
        self.pushed.append((topic, event, payload))
        return str(len(self.pushed))

    def drop(self, ch):
        self.dropped.append(ch)


class TestRest:
    def test_headers(self, supa, http):
        assert http.headers["apikey"] == "anon-key"
        assert http.headers["Authorization"] == "Bearer anon-key"

    def test_select(self, supa, http):
        rows = [{"id": "1", "room": "r", "author": "a", "content": "c", "created_at": "t"}]
        http.request.return_value = response(body=rows)
        assert supa.select_messages("r", 200) == rows

        method, url = http.request.call_args.args
        params = http.request.call_args.kwargs["params"]
        assert (method, url) == ("GET", "https://proj.supabase.co/rest/v1/messages")
        assert params == {
            "select": "id,room,author,content,created_at",
            "room": "eq.r",
            "order": "created_at.asc",
            "limit": 200,
        }

    def test_insert(self, supa, http):
        row = {"id": "9", "room": "r", "author": "a", "content": "{}", "created_at": "t"}
        http.request.return_value = response(201, [row])
        assert supa.insert_message("r", "a", "{}") == row
        kwargs = http.request.call_args.kwargs
        assert kwargs["json"] == {"room": "r", "author": "a", "content": "{}"}
        assert kwargs["headers"] == {"Prefer": "return=representation"}

    def test_delete(self, supa, http):
        http.request.return_value = response(204)
        supa.delete_messages("r")
        assert http.request.call_args.args[0] == "DELETE"
        assert http.request.call_args.kwargs["params"] == {"room": "eq.r"}

    def test_http_error_becomes_relay_error(self, supa, http):
        http.request.return_value = response(401, {"message": "permission denied for table messages"})
        with pytest.raises(RelayError) as exc:
            supa.select_messages("r", 200)
        assert exc.value.op == "select"
        assert str(exc.value) == "select failed: permission denied for table messages"

    def test_transport_error_becomes_relay_error(self, supa, http):
        http.request.side_effect = requests.exceptions.ConnectionError("no route to host")
        with pytest.raises(RelayError) as exc:
            supa.insert_message("r", "a", "x")
        assert "no route to host" in str(exc.value)

    def test_rate_limit_is_retried(self, supa, http, monkeypatch):
        sleeps = []
        monkeypatch.setattr("anonchat_lib.supabase.time.sleep", sleeps.append)
        http.request.side_effect = [response(429, headers={"Retry-After": "2"}), response(200, [])]
        assert supa.select_messages("r", 10) == []
        assert sleeps == [2]

    def test_non_json_body_becomes_relay_error(self, supa, http):
        resp = response(200)
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        http.request.return_value = resp
        with pytest.raises(RelayError) as exc:
            supa.select_messages("r", 200)
        assert str(exc.value) == "select failed: invalid response"
        with pytest.raises(RelayError):
            supa.insert_message("r", "a", "x")

    def test_non_json_backfill_leaves_session_restartable(self, supa, http):
        resp = response(200)
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        http.request.return_value = resp
        chat = ChatSession(supa)
        assert chat.join("room", "alice", "pw") is False
        assert chat.state.phase is Phase.IDLE
        assert chat.state.error == "select failed: invalid response"

    def test_retry_after_date_falls_back_to_backoff(self, supa, http, monkeypatch):
        sleeps = []
        monkeypatch.setattr("anonchat_lib.supabase.time.sleep", sleeps.append)
        http.request.side_effect = [
            response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}),
            response(200, []),
        ]
        assert supa.select_messages("r", 10) == []
        assert sleeps == [2]

    def test_subscriptions_are_keyed_by_room(self, supa):
        status = mock.Mock()
        supa.subscribe_messages("r", lambda e: None, status)
        subtopic, config, _, on_status = supa.realtime.channel.call_args.args
        assert on_status is status
        assert subtopic == "room:r"
        assert [c["event"] for c in config["postgres_changes"]] == ["INSERT", "DELETE"]
        assert all(c["filter"] == "room=eq.r" for c in config["postgres_changes"])

        supa.open_presence("r", "Alice", lambda e: None)
        subtopic, config, _, _ = supa.realtime.channel.call_args.args
        assert subtopic == "presence:r"
        assert config["presence"] == {"key": "Alice"}

    def test_realtime_url(self):
        assert realtime_url("https://proj.supabase.co", "k") == \
            "wss://proj.supabase.co/realtime/v1/websocket?apikey=k&vsn=1.0.0"
        assert realtime_url("http://localhost:54321", "k").startswith("ws://localhost:54321/")


class TestRealtimeChannel:
    def make(self, config=None):
        events, statuses = [], []
        socket = FakeSocket()
        ch = RealtimeChannel(socket, "realtime:presence:r", config or {}, events.append, statuses.append)
        return ch, socket, events, statuses

    def test_join_and_reply(self):
        ch, socket, _, statuses = self.make({"presence": {"key": "Alice"}})
        ch.join()
        topic, event, payload = socket.pushed[0]
        assert (topic, event) == ("realtime:presence:r", "phx_join")
        assert payload == {"config": {"presence": {"key": "Alice"}}, "access_token": "anon-key"}

        ch.handle("phx_reply", {"status": "ok", "response": {}}, "999")
        assert statuses == []
        ch.handle("phx_reply", {"status": "ok", "response": {}}, ch.join_ref)
        assert statuses == [SUBSCRIBED]

    def test_rejected_join(self):
        ch, _, _, statuses = self.make()
        ch.join()
        ch.handle("phx_reply", {"status": "error", "response": {"reason": "unauthorized"}}, ch.join_ref)
        assert statuses == [CHANNEL_ERROR]

    def test_postgres_changes(self):
        ch, _, events, _ = self.make()
        record = {"id": 7, "room": "r", "author": "a", "content": "c", "created_at": "t"}
        ch.handle("postgres_changes", {"data": {"type": "INSERT", "record": record}}, None)
        ch.handle("postgres_changes", {"data": {"type": "INSERT", "record": {"room": "r"}}}, None)
        ch.handle("postgres_changes", {"data": {"type": "DELETE", "old_record": {"id": 7}}}, None)
        assert isinstance(events[0], InsertEvent)
        assert events[0].record.id == "7"
        assert events[1] == DeleteAllEvent()
        assert len(events) == 2

    def test_presence_state_and_diff(self):
        ch, _, events, _ = self.make()
        ch.handle("presence_state", {
            "Alice": {"metas": [{"phx_ref": "a1"}]},
            "Bob": {"metas": [{"phx_ref": "b1"}]},
        }, None)
        assert events[-1] == PresenceSyncEvent(frozenset({"Alice", "Bob"}))

        ch.handle("presence_diff", {
            "joins": {"Carol": {"metas": [{"phx_ref": "c1"}]}, "Alice": {"metas": [{"phx_ref": "a2"}]}},
            "leaves": {"Bob": {"metas": [{"phx_ref": "b1"}]}},
        }, None)
        assert events[-1] == PresenceSyncEvent(frozenset({"Alice", "Carol"}))

        # Alice had two tabs; closing one keeps her online
        ch.handle("presence_diff", {"joins": {}, "leaves": {"Alice": {"metas": [{"phx_ref": "a1"}]}}}, None)
        assert events[-1] == PresenceSyncEvent(frozenset({"Alice", "Carol"}))

    def test_broadcasts(self):
        ch, _, events, _ = self.make()
        ch.handle("broadcast", {"type": "broadcast", "event": "typing",
                                "payload": {"name": "Bob", "typing": True}}, None)
        ch.handle("broadcast", {"type": "broadcast", "event": "room_cleared", "payload": {"by": "Bob"}}, None)
        ch.handle("broadcast", {"type": "broadcast", "event": "room_cleared"}, None)
        ch.handle("broadcast", {"type": "broadcast", "event": "confetti", "payload": {}}, None)
        assert events == [TypingEvent("Bob", True), RoomClearedEvent("Bob"), RoomClearedEvent(None)]

    def test_track_broadcast_and_leave(self):
        ch, socket, events, _ = self.make()
        ch.track({"online_at": "now"})
        ch.broadcast("typing", {"name": "Alice", "typing": False})
        ch.unsubscribe()
        ch.unsubscribe()
        assert [e for _, e, _ in socket.pushed] == ["presence", "broadcast", "phx_leave"]
        assert socket.pushed[0][2] == {"type": "presence", "event": "track", "payload": {"online_at": "now"}}
        assert socket.pushed[1][2]["event"] == "typing"
        assert socket.dropped == [ch]

        ch.handle("broadcast", {"event": "typing", "payload": {"name": "Bob", "typing": True}}, None)
        assert events == []


class FakeWebSocket:
    """Yields no frames and stays open until closed."""

    def __init__(self):
        self.sent = []
        self._closed = threading.Event()

    @property
    def closed(self):
        return self._closed.is_set()

    def send(self, frame):
        self.sent.append(json.loads(frame))

    def __iter__(self):
        self._closed.wait(5)
        yield from ()

    def close(self):
        self._closed.set()


class TestRealtimeSocket:
    def test_push_without_connection(self):
        socket = RealtimeSocket("wss://x", "k", connect_fn=mock.Mock())
        with pytest.raises(RelayError):
            socket.push("realtime:room:r", "phx_join", {})

    def test_connect_failure(self):
        socket = RealtimeSocket("wss://x", "k", connect_fn=mock.Mock(side_effect=OSError("refused")))
        with pytest.raises(RelayError) as exc:
            socket.channel("room:r", {}, lambda e: None)
        assert exc.value.op == "subscribe"

    def test_dispatch_routes_by_topic(self):
        socket = RealtimeSocket("wss://x", "k", connect_fn=mock.Mock())
        events = []
        socket._channels["realtime:room:r"] = RealtimeChannel(socket, "realtime:room:r", {}, events.append)
        socket.dispatch({"topic": "realtime:room:other", "event": "postgres_changes",
                         "payload": {"data": {"type": "DELETE"}}})
        socket.dispatch({"topic": "realtime:room:r", "event": "postgres_changes",
                         "payload": {"data": {"type": "DELETE"}}})
        assert events == [DeleteAllEvent()]

    def test_channel_join_frame(self):
        ws = FakeWebSocket()
        socket = RealtimeSocket("wss://x", "k", connect_fn=mock.Mock(return_value=ws))
        ch = socket.channel("room:r", {"postgres_changes": []}, lambda e: None)

        frame = ws.sent[0]
        assert frame["topic"] == "realtime:room:r"
        assert frame["event"] == "phx_join"
        assert frame["ref"] == ch.join_ref
        assert frame["payload"]["access_token"] == "k"

        ch.unsubscribe()
        assert ws.sent[-1]["event"] == "phx_leave"
        # Last channel gone: the socket is closed
        assert ws.closed
