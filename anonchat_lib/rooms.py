from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit


def canonical_room(raw: str) -> str:
    """The storage and channel key for a room: trimmed and lowercased."""
    return (raw or "").strip().lower()


def canonical_name(raw: str) -> str:
    return (raw or "").strip()


def invite_link(base_url: str, room: str) -> str:
    """
    Builds a link that pre-fills the room for an invitee.

    The name parameter is left blank for the invitee to fill in. The password
    is never part of the link and has to be shared some other way.
    """
    parts = urlsplit(base_url)
    query = parse_qs(parts.query, keep_blank_values=True)
    query["room"] = [canonical_room(room)]
    query["name"] = [""]
    return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


def room_from_link(url: str) -> str:
    values = parse_qs(urlsplit(url).query).get("room")
    return canonical_room(values[0]) if values else ""
