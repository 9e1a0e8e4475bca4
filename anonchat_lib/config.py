import os
from typing import Optional, Tuple

from .constants import CONF_FILE

Conf = Tuple[Optional[str], Optional[str], Optional[str], Optional[str]]


def save_conf(room: str, nick: str, server: str, api_key: str, path: str = CONF_FILE):
    """Saves room, nickname and server settings. The room password is never saved."""
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{room}\n{nick}\n{server}\n{api_key}\n")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


def load_conf(path: str = CONF_FILE) -> Conf:
    """
    Loads (room, nick, server, api_key) from the settings file.

    Server and key fall back to SUPABASE_URL / SUPABASE_ANON_KEY, so a user
    without a settings file can still point the client at a project.
    """
    room = nick = server = api_key = None
    if os.path.exists(path):
        try:
            with open(path, encoding="utf-8") as f:
                lines = [l.strip() for l in f.readlines()]
            room, nick, *rest = lines
            server = rest[0] if len(rest) > 0 else None
            api_key = rest[1] if len(rest) > 1 else None
        except (OSError, ValueError):
            room = nick = server = api_key = None
    server = server or os.environ.get("SUPABASE_URL") or None
    api_key = api_key or os.environ.get("SUPABASE_ANON_KEY") or None
    return room or None, nick or None, server, api_key


def reset_conf(path: str = CONF_FILE) -> bool:
    if not os.path.exists(path):
        return False
    os.remove(path)
    return True
