import logging
from typing import List, Tuple

from .constants import INVITE_BASE_URL, MAX_MSG_LEN
from .errors import AnonchatError, ValidationError
from .events import Message
from .relay import Relay
from .rooms import invite_link
from .state import SessionState
from .sync import SyncEngine
from .utils import format_time, typing_label

log = logging.getLogger(__name__)


class ChatSession:
    """
    What the presentation layer talks to.

    Every verb reports failure through `state.error` instead of raising, so a
    UI only has to render the state. Read-only projections never mutate it.
    """

    def __init__(self, relay: Relay, invite_base: str = INVITE_BASE_URL, **engine_opts):
        self.engine = SyncEngine(relay, **engine_opts)
        self.state: SessionState = self.engine.state
        self.invite_base = invite_base

    def _fail(self, err: AnonchatError):
        log.info("surfacing error: %s", err)
        with self.engine.lock:
            self.state.error = str(err)
            self.state.info = ""
            self.state.touch()

    def join(self, room: str, name: str, password: str) -> bool:
        self.dismiss()
        try:
            return self.engine.join(room, name, password)
        except AnonchatError as e:
            self._fail(e)
            return False

    def set_compose(self, text: str):
        with self.engine.lock:
            self.state.compose = text
            self.state.touch()

    def typing_activity(self):
        self.engine.handle_typing_activity()

    def send(self, text: str = None) -> bool:
        """Sends `text`, or the compose buffer. On failure the text goes back into the buffer."""
        with self.engine.lock:
            if text is None:
                text = self.state.compose
            self.state.compose = ""
            self.state.touch()
        try:
            if len(text.strip()) > MAX_MSG_LEN:
                raise ValidationError(f"Message too long (max {MAX_MSG_LEN} characters).")
            self.engine.send_typing(False)
            self.engine.send(text)
        except AnonchatError as e:
            with self.engine.lock:
                self.state.compose = text
            self._fail(e)
            return False
        return True

    def clear_history(self) -> bool:
        try:
            self.engine.clear_history()
        except AnonchatError as e:
            self._fail(e)
            return False
        return True

    def leave(self):
        self.engine.leave()

    def dismiss(self):
        with self.engine.lock:
            self.state.error = ""
            self.state.info = ""
            self.state.touch()

    # Projections

    @property
    def joined(self) -> bool:
        return self.state.joined

    @property
    def messages(self) -> Tuple[Message, ...]:
        with self.engine.lock:
            return tuple(self.state.messages)

    @property
    def online(self) -> int:
        return self.state.online

    @property
    def members(self) -> List[str]:
        with self.engine.lock:
            return sorted(self.state.members)

    @property
    def typing_names(self) -> List[str]:
        with self.engine.lock:
            return sorted(self.state.typing)

    @property
    def typing_label(self) -> str:
        return typing_label(self.typing_names)

    def time_label(self, message: Message) -> str:
        return format_time(message.created_at)

    def is_mine(self, message: Message) -> bool:
        return message.author == self.state.name

    def invite_link(self) -> str:
        return invite_link(self.invite_base, self.state.room)
