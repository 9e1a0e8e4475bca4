"""
Relay backed by a Supabase project.

Rows go through PostgREST on a shared requests session. Change events,
presence and broadcasts come over one Realtime websocket speaking Phoenix v1
JSON frames, read by a background thread that also reconnects and rejoins
channels when the socket drops.
"""
import itertools
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from .constants import (
    HEARTBEAT_INTERVAL, HTTP_TIMEOUT, MAX_RETRIES, MESSAGES_TABLE, RECONNECT_DELAY, RETRY_BASE
)
from .errors import RelayError
from .events import DeleteAllEvent, InsertEvent, PresenceSyncEvent, from_broadcast, message_from_row
from .relay import (
    CHANNEL_ERROR, CLOSED, SUBSCRIBED, EventHandler, PresenceChannel, Relay, StatusHandler, Subscription
)

log = logging.getLogger(__name__)

COLUMNS = "id,room,author,content,created_at"


def realtime_url(url: str, api_key: str) -> str:
    parts = urlsplit(url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = urlencode({"apikey": api_key, "vsn": "1.0.0"})
    return urlunsplit((scheme, parts.netloc, "/realtime/v1/websocket", query, ""))


def _describe(err: requests.exceptions.RequestException) -> str:
    resp = getattr(err, "response", None)
    if resp is None:
        return str(err)
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return body["message"]
    return f"HTTP {resp.status_code}"


class SupabaseRelay(Relay):
    def __init__(self, url: str, api_key: str, table: str = MESSAGES_TABLE,
                 session: Optional[requests.Session] = None, realtime: Optional["RealtimeSocket"] = None):
        self.url = url.rstrip("/")
        self.table = table
        self.rest_url = f"{self.url}/rest/v1/{table}"
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": api_key, "Authorization": f"Bearer {api_key}"})
        self.realtime = realtime or RealtimeSocket(realtime_url(self.url, api_key), api_key)

    def _request(self, op: str, method: str, **kwargs) -> requests.Response:
        delay = RETRY_BASE
        for attempt in range(MAX_RETRIES):
            try:
                r = self.session.request(method, self.rest_url, timeout=HTTP_TIMEOUT, **kwargs)
                if r.status_code == 429 and attempt < MAX_RETRIES - 1:
                    try:
                        delay = int(r.headers.get("Retry-After", delay))
                    except ValueError:
                        # HTTP-date form; keep backing off
                        delay = min(delay * 2, 30)
                    log.debug("%s rate limited, retrying in %ss", op, delay)
                    time.sleep(delay)
                    delay *= 2
                    continue
                r.raise_for_status()
                return r
            except requests.exceptions.RequestException as e:
                log.warning("%s on %s failed: %s", op, self.table, e)
                raise RelayError(op, _describe(e)) from e
        raise RelayError(op, "rate limited")

    def _json(self, op: str, r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError as e:
            log.warning("%s on %s returned a non-json body", op, self.table)
            raise RelayError(op, "invalid response") from e

    def select_messages(self, room: str, limit: int) -> List[Dict[str, Any]]:
        r = self._request("select", "GET", params={
            "select": COLUMNS,
            "room": f"eq.{room}",
            "order": "created_at.asc",
            "limit": limit,
        })
        rows = self._json("select", r)
        if not isinstance(rows, list):
            raise RelayError("select", "unexpected response")
        return rows

    def insert_message(self, room: str, author: str, content: str) -> Dict[str, Any]:
        r = self._request(
            "insert", "POST",
            json={"room": room, "author": author, "content": content},
            headers={"Prefer": "return=representation"},
        )
        rows = self._json("insert", r)
        return rows[0] if isinstance(rows, list) and rows else {}

    def delete_messages(self, room: str):
        self._request("delete", "DELETE", params={"room": f"eq.{room}"})

    def subscribe_messages(self, room: str, on_event: EventHandler,
                           on_status: Optional[StatusHandler] = None) -> Subscription:
        changes = [
            {"event": kind, "schema": "public", "table": self.table, "filter": f"room=eq.{room}"}
            for kind in ("INSERT", "DELETE")
        ]
        config = {"broadcast": {"self": False}, "presence": {"key": ""}, "postgres_changes": changes}
        return self.realtime.channel(f"room:{room}", config, on_event, on_status)

    def open_presence(self, room: str, key: str, on_event: EventHandler,
                      on_status: Optional[StatusHandler] = None) -> PresenceChannel:
        config = {"broadcast": {"self": False}, "presence": {"key": key}, "postgres_changes": []}
        return self.realtime.channel(f"presence:{room}", config, on_event, on_status)

    def close(self):
        self.realtime.close()
        self.session.close()


class RealtimeChannel(PresenceChannel):
    """One joined topic on the Realtime socket."""

    def __init__(self, socket: "RealtimeSocket", topic: str, config: Dict[str, Any],
                 on_event: EventHandler, on_status: Optional[StatusHandler] = None):
        self.socket = socket
        self.topic = topic
        self.config = config
        self.on_event = on_event
        self.on_status = on_status
        self.join_ref: Optional[str] = None
        # presence key -> metas, as last reported by the server
        self.presence: Dict[str, List[Dict[str, Any]]] = {}
        self.active = True

    def join(self):
        payload = {"config": self.config, "access_token": self.socket.access_token}
        self.join_ref = self.socket.push(self.topic, "phx_join", payload)

    def report_status(self, status: str):
        log.debug("%s %s", self.topic, status)
        if self.on_status:
            self.on_status(status)

    def handle(self, event: str, payload: Dict[str, Any], ref: Optional[str]):
        if not self.active:
            return
        if event == "phx_reply":
            if ref != self.join_ref:
                return
            if payload.get("status") == "ok":
                self.report_status(SUBSCRIBED)
            else:
                log.warning("join of %s rejected: %s", self.topic, payload.get("response"))
                self.report_status(CHANNEL_ERROR)
        elif event == "phx_error":
            self.report_status(CHANNEL_ERROR)
        elif event == "phx_close":
            self.report_status(CLOSED)
        elif event == "system":
            if payload.get("status") == "error":
                log.warning("%s: %s", self.topic, payload.get("message"))
        elif event == "postgres_changes":
            data = payload.get("data") or {}
            kind = data.get("type")
            if kind == "INSERT":
                try:
                    record = message_from_row(data.get("record") or {})
                except KeyError:
                    log.debug("insert without id on %s", self.topic)
                    return
                self.on_event(InsertEvent(record))
            elif kind == "DELETE":
                self.on_event(DeleteAllEvent())
        elif event == "presence_state":
            self.presence = {k: list(v.get("metas", [])) for k, v in payload.items() if isinstance(v, dict)}
            self._sync()
        elif event == "presence_diff":
            self._merge_diff(payload.get("joins") or {}, payload.get("leaves") or {})
            self._sync()
        elif event == "broadcast":
            evt = from_broadcast(payload.get("event"), payload.get("payload"))
            if evt is not None:
                self.on_event(evt)

    def _merge_diff(self, joins: Dict[str, Any], leaves: Dict[str, Any]):
        for key, entry in joins.items():
            metas = self.presence.setdefault(key, [])
            known = {m.get("phx_ref") for m in metas}
            metas.extend(m for m in entry.get("metas", []) if m.get("phx_ref") not in known)
        for key, entry in leaves.items():
            gone = {m.get("phx_ref") for m in entry.get("metas", [])}
            metas = [m for m in self.presence.get(key, []) if m.get("phx_ref") not in gone]
            if metas:
                self.presence[key] = metas
            else:
                self.presence.pop(key, None)

    def _sync(self):
        self.on_event(PresenceSyncEvent(frozenset(self.presence)))

    def track(self, meta: Dict[str, Any]):
        self.socket.push(self.topic, "presence", {"type": "presence", "event": "track", "payload": meta})

    def broadcast(self, event: str, payload: Dict[str, Any]):
        self.socket.push(self.topic, "broadcast", {"type": "broadcast", "event": event, "payload": payload})

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        try:
            self.socket.push(self.topic, "phx_leave", {})
        except RelayError as e:
            log.debug("leave of %s not sent: %s", self.topic, e)
        self.socket.drop(self)


class RealtimeSocket:
    """A Realtime connection shared by every channel of one relay."""

    def __init__(self, url: str, access_token: str, connect_fn: Callable[..., Any] = connect):
        self.url = url
        self.access_token = access_token
        self._connect = connect_fn
        self._ws = None
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._channels: Dict[str, RealtimeChannel] = {}
        self._refs = itertools.count(1)
        self._stop = threading.Event()

    def channel(self, subtopic: str, config: Dict[str, Any], on_event: EventHandler,
                on_status: Optional[StatusHandler] = None) -> RealtimeChannel:
        ch = RealtimeChannel(self, f"realtime:{subtopic}", config, on_event, on_status)
        with self._lock:
            self._ensure_connected()
            self._channels[ch.topic] = ch
        try:
            ch.join()
        except RelayError:
            ch.active = False
            self.drop(ch)
            raise
        return ch

    def _ensure_connected(self):
        if self._ws is not None:
            return
        try:
            ws = self._connect(self.url, open_timeout=HTTP_TIMEOUT)
        except (OSError, WebSocketException) as e:
            log.warning("realtime connect failed: %s", e)
            raise RelayError("subscribe", str(e)) from e
        self._ws = ws
        self._stop.clear()
        threading.Thread(target=self._reader, args=(ws,), daemon=True).start()
        threading.Thread(target=self._heartbeat, args=(ws,), daemon=True).start()

    def push(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        ref = str(next(self._refs))
        frame = json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref})
        with self._lock:
            ws = self._ws
        if ws is None:
            raise RelayError(event, "realtime socket is closed")
        try:
            with self._send_lock:
                ws.send(frame)
        except (ConnectionClosed, OSError) as e:
            raise RelayError(event, str(e)) from e
        return ref

    def dispatch(self, frame: Dict[str, Any]):
        with self._lock:
            ch = self._channels.get(frame.get("topic"))
        if ch is not None:
            ch.handle(frame.get("event"), frame.get("payload") or {}, frame.get("ref"))

    def _reader(self, ws):
        try:
            for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    log.debug("ignoring non-json frame")
                    continue
                if isinstance(frame, dict):
                    self.dispatch(frame)
        except ConnectionClosed as e:
            if not self._stop.is_set():
                log.warning("realtime connection lost: %s", e)
        finally:
            self._lost(ws)

    def _heartbeat(self, ws):
        while not self._stop.wait(HEARTBEAT_INTERVAL):
            with self._lock:
                if self._ws is not ws:
                    return
            try:
                self.push("phoenix", "heartbeat", {})
            except RelayError:
                return

    def _lost(self, ws):
        with self._lock:
            if self._ws is not ws:
                return
            self._ws = None
            channels = list(self._channels.values())
        for ch in channels:
            ch.report_status(CHANNEL_ERROR)
        while not self._stop.is_set() and channels:
            time.sleep(RECONNECT_DELAY)
            with self._lock:
                if self._stop.is_set() or self._ws is not None:
                    return
                try:
                    self._ensure_connected()
                except RelayError:
                    continue
                channels = list(self._channels.values())
            for ch in channels:
                try:
                    ch.join()
                except RelayError as e:
                    log.warning("rejoin of %s failed: %s", ch.topic, e)
            return

    def drop(self, ch: RealtimeChannel):
        with self._lock:
            if self._channels.get(ch.topic) is ch:
                del self._channels[ch.topic]
            empty = not self._channels
        if empty:
            self.close()

    def close(self):
        self._stop.set()
        with self._lock:
            ws, self._ws = self._ws, None
            self._channels.clear()
        if ws is not None:
            ws.close()
