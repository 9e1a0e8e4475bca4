import enum
from dataclasses import dataclass, field
from typing import List, Set

from .events import Message


class Phase(enum.Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"


@dataclass
class SessionState:
    """Client-local state of one room session. Never persisted."""
    room: str = ""
    name: str = ""
    password: str = ""
    phase: Phase = Phase.IDLE

    # Decrypted messages, backfill order then arrival order
    messages: List[Message] = field(default_factory=list)
    online: int = 0
    members: Set[str] = field(default_factory=set)
    typing: Set[str] = field(default_factory=set)

    # Text waiting to be sent
    compose: str = ""

    # Dismissible notices
    error: str = ""
    info: str = ""

    # Bumped on every mutation; the UI redraws when it changes
    revision: int = 0

    @property
    def joined(self) -> bool:
        return self.phase is Phase.JOINED

    def touch(self):
        self.revision += 1
