from datetime import datetime
from typing import Iterable


def format_time(iso: str) -> str:
    """HH:MM in local time for a store timestamp, or '' if it does not parse."""
    if not iso:
        return ""
    try:
        ts = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return ""
    if ts.tzinfo is not None:
        ts = ts.astimezone()
    return ts.strftime("%H:%M")


def typing_label(names: Iterable[str]) -> str:
    others = sorted(names)
    if not others:
        return ""
    if len(others) == 1:
        return f"{others[0]} is typing…"
    if len(others) == 2:
        return f"{others[0]} and {others[1]} are typing…"
    return "Several people are typing…"


def initials(name: str) -> str:
    return "".join(s[0] for s in (name or "?").split())[:2].upper() or "?"
