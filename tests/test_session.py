"""End-to-end scenarios: two clients sharing one in-process relay."""
from anonchat_lib.errors import RelayError
from anonchat_lib.state import Phase


class TestTwoClients:
    def test_message_reaches_second_client(self, make_session):
        a, b = make_session(), make_session()
        assert a.join("Test", "Alice", "pw")
        assert a.send("hello")
        assert b.join("test", "Bob", "pw")

        assert [(m.author, m.content) for m in b.messages] == [("Alice", "hello")]
        assert b.state.room == a.state.room == "test"

    def test_live_message_reaches_both(self, make_session):
        a, b = make_session(), make_session()
        a.join("Test", "Alice", "pw")
        b.join(" TEST ", "Bob", "pw")
        b.send("hi there")
        assert [m.content for m in a.messages] == ["hi there"]
        assert [m.content for m in b.messages] == ["hi there"]
        assert b.is_mine(b.messages[0])
        assert not a.is_mine(a.messages[0])

    def test_wrong_password_shows_undecryptable_text(self, make_session):
        a, b = make_session(), make_session()
        a.join("Test", "Alice", "pw")
        a.send("hello")
        b.join("test", "Bob", "nope")

        assert len(b.messages) == 1
        assert b.messages[0].author == "Alice"
        assert b.messages[0].content != "hello"
        assert b.state.error == ""

    def test_clear_history_reaches_everyone(self, make_session):
        a, b = make_session(), make_session()
        a.join("Test", "Alice", "pw")
        b.join("test", "Bob", "pw")
        a.send("one")
        b.send("two")
        b.typing_activity()
        assert a.typing_names == ["Bob"]

        assert a.clear_history()
        assert a.messages == ()
        assert b.messages == ()
        assert a.typing_names == []
        assert "Alice" in a.state.info
        assert b.state.info == "History cleared by Alice."

    def test_typing_indicator(self, make_session, timers):
        a, b = make_session(), make_session()
        a.join("room", "Alice", "pw")
        b.join("room", "Bob", "pw")
        for _ in range(3):
            a.typing_activity()
        assert b.typing_names == ["Alice"]
        assert b.typing_label == "Alice is typing…"
        assert a.typing_names == []

        timers.last.fire()
        assert b.typing_names == []

    def test_sending_stops_typing(self, make_session):
        a, b = make_session(), make_session()
        a.join("room", "Alice", "pw")
        b.join("room", "Bob", "pw")
        a.typing_activity()
        a.send("done")
        assert b.typing_names == []

    def test_online_count(self, make_session):
        a, b = make_session(), make_session()
        a.join("room", "Alice", "pw")
        b.join("room", "Bob", "pw")
        assert a.online == b.online == 2
        assert a.members == ["Alice", "Bob"]
        b.leave()
        assert a.online == 1
        assert b.online == 0


class TestErrorSurfacing:
    def test_missing_fields_become_a_notice(self, make_session, relay):
        chat = make_session()
        assert chat.join("room", "   ", "pw") is False
        assert chat.state.error
        assert chat.state.phase is Phase.IDLE

    def test_backfill_failure_becomes_a_notice(self, make_session, relay, monkeypatch):
        def broken(room, limit):
            raise RelayError("select", "permission denied")

        monkeypatch.setattr(relay, "select_messages", broken)
        chat = make_session()
        assert chat.join("room", "Alice", "pw") is False
        assert chat.state.error == "select failed: permission denied"
        assert not chat.joined

    def test_failed_send_restores_compose(self, make_session, relay, monkeypatch):
        chat = make_session()
        chat.join("room", "Alice", "pw")

        def broken(room, author, content):
            raise RelayError("insert", "timeout")

        monkeypatch.setattr(relay, "insert_message", broken)
        chat.set_compose("important words")
        assert chat.send() is False
        assert chat.state.compose == "important words"
        assert chat.state.error == "insert failed: timeout"
        assert chat.messages == ()

    def test_successful_send_empties_compose(self, make_session):
        chat = make_session()
        chat.join("room", "Alice", "pw")
        chat.set_compose("hello")
        assert chat.send()
        assert chat.state.compose == ""

    def test_blank_message_is_rejected_locally(self, make_session, relay):
        chat = make_session()
        chat.join("room", "Alice", "pw")
        assert chat.send("   ") is False
        assert chat.state.error == "Message is empty."
        assert relay.rows == []

    def test_too_long_message(self, make_session, relay, monkeypatch):
        monkeypatch.setattr("anonchat_lib.session.MAX_MSG_LEN", 5)
        chat = make_session()
        chat.join("room", "Alice", "pw")
        assert chat.send("far too long") is False
        assert chat.state.compose == "far too long"
        assert relay.rows == []

    def test_clear_history_failure(self, make_session, relay, monkeypatch):
        chat = make_session()
        chat.join("room", "Alice", "pw")
        chat.send("keep me")

        def broken(room):
            raise RelayError("delete", "forbidden")

        monkeypatch.setattr(relay, "delete_messages", broken)
        assert chat.clear_history() is False
        assert chat.state.error == "delete failed: forbidden"
        assert [m.content for m in chat.messages] == ["keep me"]

    def test_dismiss_and_rejoin(self, make_session):
        chat = make_session()
        chat.join("", "Alice", "pw")
        assert chat.state.error
        chat.dismiss()
        assert chat.state.error == ""
        assert chat.join("room", "Alice", "pw")


class TestProjections:
    def test_invite_link_and_time_label(self, make_session):
        chat = make_session()
        chat.join(" Secret ", "Alice", "pw")
        chat.send("hi")
        link = chat.invite_link()
        assert link.startswith("https://chat.example/")
        assert "room=secret" in link
        assert "pw" not in link
        label = chat.time_label(chat.messages[0])
        assert len(label) == 5 and label[2] == ":"

    def test_projections_do_not_mutate(self, make_session):
        chat = make_session()
        chat.join("room", "Alice", "pw")
        before = chat.state.revision
        _ = (chat.messages, chat.online, chat.typing_names, chat.typing_label, chat.invite_link(), chat.members)
        assert chat.state.revision == before
