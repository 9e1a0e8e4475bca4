import os
import queue
import sys
import threading
import time
from typing import Callable, List, Optional


class KeyReader:
    """Non-blocking line editor; finished lines land in `lines`."""

    def __init__(self, on_key: Optional[Callable[[], None]] = None):
        self.lines: queue.Queue = queue.Queue()
        self.current: List[str] = []
        self.on_key = on_key

    @property
    def text(self) -> str:
        return "".join(self.current)

    def feed(self, ch: str):
        """Applies one character; every keystroke counts as composer activity."""
        if ch in ("\n", "\r"):
            self.lines.put(self.text)
            self.current.clear()
            return
        if ch == "\x03":  # Ctrl+C
            self.lines.put("/exit")
            return
        if ch in ("\x7f", "\b"):  # Backspace
            if self.current:
                self.current.pop()
        else:
            self.current.append(ch)
        if self.on_key:
            self.on_key()

    def _posix(self):
        """POSIX implementation for non-blocking character input."""
        import select
        import termios
        import tty
        fd = sys.stdin.fileno()
        old = termios.tcgetattr(fd)
        try:
            tty.setcbreak(fd)
            while True:
                if select.select([sys.stdin], [], [], 0.05)[0]:
                    self.feed(sys.stdin.read(1))
                else:
                    time.sleep(0.05)
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old)

    def _win(self):
        """Windows implementation for non-blocking character input."""
        import msvcrt
        while True:
            if msvcrt.kbhit():
                ch = msvcrt.getwch()
                self.feed("\b" if ch == "\x08" else ch)
            time.sleep(0.05)

    def start(self):
        """Starts the reader thread appropriate for the OS."""
        thread = threading.Thread(target=self._win if os.name == "nt" else self._posix, daemon=True)
        thread.start()
