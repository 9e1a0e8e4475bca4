import queue
import threading
import time

from rich.align import Align
from rich.console import Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from . import commands, constants
from .input import KeyReader
from .session import ChatSession
from .utils import initials

NOTES_LIMIT = 50


class ChatUI:
    """Terminal front end: renders a ChatSession and feeds it keystrokes."""

    def __init__(self, chat: ChatSession, shutdown_event=None):
        self.chat = chat
        self.notes = []
        self.keys = KeyReader(on_key=self._on_key)
        self.shutdown_event = shutdown_event or threading.Event()
        self.layout = Layout()
        self.layout.split(
            Layout(name="header", size=3),
            Layout(name="body", ratio=1),
            Layout(name="status", size=1),
            Layout(name="input", size=3),
        )
        self.last_revision = -1
        self.last_input = ""
        self.last_notes = 0

    def _on_key(self):
        self.chat.set_compose(self.keys.text)
        self.chat.typing_activity()

    def _head(self):
        st = self.chat.state
        parts = [
            (" ANONCHAT ", "bold cyan"),
            (" E2EE ", "bold green"),
            (f" {st.room} ", "white"),
            (f" {st.name} ", "magenta"),
            (f" | online {st.online}", "dim"),
        ]
        return Panel(Text.assemble(*parts), style="blue")

    def _body(self, height: int = 40):
        lines = []
        for m in self.chat.messages[-height:]:
            mine = self.chat.is_mine(m)
            label, style = ("You", "green") if mine else (m.author, "cyan")
            line = Text(f"{self.chat.time_label(m)} ", style="dim")
            line.append(f"[{initials(m.author)}] {label}: ", style=style)
            line.append(m.content)
            lines.append(line)
        for note in self.notes[-5:]:
            lines.append(Text("[SYSTEM] ", style="yellow") + Text.from_markup(note))
        st = self.chat.state
        if st.error:
            lines.append(Text(f"✗ {st.error}", style="bold red"))
        if st.info:
            lines.append(Text(f"ℹ {st.info}", style="green"))
        return Panel(Group(*lines), title=f"Messages ({len(self.chat.messages)})", padding=(0, 1))

    def _status(self):
        return Text(self.chat.typing_label, style="italic dim")

    def _inp(self):
        entered = self.keys.text
        txt = Text(f"{self.chat.state.name}: ", style="bold green")
        txt.append(entered or "…", style="white")
        txt.append(f"  {len(entered)}/{constants.MAX_MSG_LEN}", style="dim")
        return Panel(Align.left(txt), title="Type message", padding=(0, 1))

    def _changed(self) -> bool:
        changed = (
            self.chat.state.revision != self.last_revision
            or self.keys.text != self.last_input
            or len(self.notes) != self.last_notes
        )
        self.last_revision = self.chat.state.revision
        self.last_input = self.keys.text
        self.last_notes = len(self.notes)
        return changed

    def run(self):
        self.keys.start()
        self.notes.append("Type [bold cyan]/help[/] for commands.")
        with Live(self.layout, refresh_per_second=8, screen=False) as live:
            while not self.shutdown_event.is_set():
                if self._changed():
                    self.layout["header"].update(self._head())
                    self.layout["body"].update(self._body())
                    self.layout["status"].update(self._status())
                    self.layout["input"].update(self._inp())
                    live.refresh()

                try:
                    line = self.keys.lines.get_nowait()
                except queue.Empty:
                    time.sleep(0.05)
                    continue

                if not line:
                    continue
                if line.startswith("/"):
                    if commands.handle_command(line, self.chat, self.notes) == "exit":
                        self.shutdown_event.set()
                        break
                elif not self.chat.send(line):
                    # Put the unsent text back where the user can edit it
                    self.keys.current[:] = list(self.chat.state.compose)
                del self.notes[:-NOTES_LIMIT]
