"""
ghostchat_transport.py
────────────────────────────────────────────────────────────────────────────────
Realtime room transport over Socket.IO.

Protocol
────────
  Named Socket.IO events on the default namespace of the backend URL:

  Client→Server:  join-room, send-message, send-image
  Server→Client:  room-joined, participant-joined, participant-left,
                  new-message, message-expired, error

  Every inbound event is mapped onto the event types in ghostchat_models and
  handed to a single on_event callback.  Unknown events and malformed
  payloads are dropped.  Socket.IO's own connect / disconnect /
  connect_error become Connected / Disconnected / RoomError(source="connect").

Reconnect
─────────
  Retry belongs to the transport.  Once connected, the Socket.IO client
  reconnects by itself (delay doubling up to max_retry_delay).  A connect
  that fails before the first handshake is retried by the run() loop with
  the same backoff.  Each successful connect is announced with Connected so
  the session can redo the join handshake.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

try:
    import socketio                          # type: ignore
    import socketio.exceptions               # type: ignore
    _SIO_AVAILABLE = True
except ImportError:
    _SIO_AVAILABLE = False

from ghostchat.ghostchat_models import (
    Connected, Disconnected, InboundEvent, Joined, MessageExpired, NewMessage,
    ParticipantJoined, ParticipantLeft, RoomError,
)

_log = logging.getLogger("ghostchat.transport")

# ── Protocol constants ────────────────────────────────────────────────────────
_OPEN_TIMEOUT_S  = 20.0
_TRANSPORTS      = ["websocket", "polling"]
_SERVER_CLOSED   = "server disconnect"      # socketio reason for a server-side close

EV_JOIN_ROOM    = "join-room"
EV_SEND_MESSAGE = "send-message"
EV_SEND_IMAGE   = "send-image"


class TransportError(ConnectionError):
    """Raised by emit() when an event cannot be handed to the socket."""


# ─────────────────────────────────────────────────────────────────────────────
# Event decoding
# ─────────────────────────────────────────────────────────────────────────────

def _on_room_joined(d: dict):
    participants = d.get("participants") or []
    if not isinstance(participants, list):
        return None
    return Joined([str(p) for p in participants])


def _on_participant(cls):
    def _build(d: dict):
        agent = d.get("agentId")
        return cls(str(agent)) if agent else None
    return _build


def _on_new_message(d: dict):
    return NewMessage(dict(d))


def _on_expired(d: dict):
    mid = d.get("messageId")
    return MessageExpired(str(mid)) if mid not in (None, "") else None


def _on_error(d: dict):
    return RoomError(str(d.get("message") or d or "unknown error"), source="server")


_DECODERS = {
    "room-joined"       : _on_room_joined,
    "participant-joined": _on_participant(ParticipantJoined),
    "participant-left"  : _on_participant(ParticipantLeft),
    "new-message"       : _on_new_message,
    "message-expired"   : _on_expired,
    "error"             : _on_error,
}

INBOUND_EVENTS = tuple(_DECODERS)


def decode_event(event: str, data) -> Optional[InboundEvent]:
    """Map one named server event and its payload onto an InboundEvent."""
    decoder = _DECODERS.get(event)
    if decoder is None:
        return None
    if data is None:
        data = {}
    if not isinstance(data, dict):
        # error events may carry a bare string
        return RoomError(str(data)) if event == "error" else None
    return decoder(data)


def _describe_disconnect(reason) -> str:
    if reason == _SERVER_CLOSED:
        return "server closed the connection"
    return str(reason or "connection lost")


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────

class RoomTransport:
    """
    One Socket.IO connection to the room server, reconnecting until stop().

    Parameters
    ----------
    url             : Backend base URL (http:// or https://).
    on_event        : Callable[[InboundEvent], None] — called on the loop for
                      every decoded event.
    reconnect       : Retry after drops / failed connects.
    retry_delay     : First retry delay in seconds (doubles per attempt).
    max_retry_delay : Cap for the retry delay.
    """

    def __init__(
        self,
        url            : str,
        on_event       : Callable[[InboundEvent], None],
        *,
        reconnect      : bool = True,
        retry_delay    : float = 1.0,
        max_retry_delay: float = 30.0,
        open_timeout   : float = _OPEN_TIMEOUT_S,
    ):
        if not _SIO_AVAILABLE:
            raise ImportError("pip install python-socketio[asyncio_client]")
        self._url             = url
        self._on_event        = on_event
        self._reconnect       = reconnect
        self._retry_delay     = retry_delay
        self._max_retry_delay = max_retry_delay
        self._open_timeout    = open_timeout
        self._stopping        = False
        self._connect_failed  = False

        self._sio = socketio.AsyncClient(
            reconnection=reconnect,
            reconnection_attempts=0,
            reconnection_delay=retry_delay,
            reconnection_delay_max=max_retry_delay,
            logger=False,
            engineio_logger=False,
        )
        self._sio.on("connect",       self._handle_connect)
        self._sio.on("disconnect",    self._handle_disconnect)
        self._sio.on("connect_error", self._handle_connect_error)
        for name in INBOUND_EVENTS:
            self._sio.on(name, self._make_handler(name))

    @property
    def url(self) -> str:
        return self._url

    def is_connected(self) -> bool:
        return self._sio.connected

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def run(self):
        delay = self._retry_delay
        while not self._stopping:
            self._connect_failed = False
            try:
                await self._sio.connect(
                    self._url,
                    transports=_TRANSPORTS,
                    wait_timeout=self._open_timeout,
                )
            except socketio.exceptions.ConnectionError as exc:
                if self._stopping:
                    break
                _log.warning("connect to %s failed: %s", self._url, exc)
                if not self._connect_failed:
                    self._deliver(RoomError(str(exc) or type(exc).__name__, source="connect"))
            else:
                delay = self._retry_delay
                # returns once the client gives up or stop() disconnects
                await self._sio.wait()

            if self._stopping or not self._reconnect:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_retry_delay)

    async def stop(self):
        self._stopping = True
        try:
            await self._sio.disconnect()
        except Exception as exc:
            _log.debug("disconnect error: %s", exc)

    # ── Socket.IO callbacks ────────────────────────────────────────────────────

    async def _handle_connect(self):
        _log.info("connected to %s", self._url)
        self._deliver(Connected(self._url))

    async def _handle_disconnect(self, reason=None):
        if self._stopping:
            return
        _log.info("disconnected: %s", reason)
        self._deliver(Disconnected(_describe_disconnect(reason), reason == _SERVER_CLOSED))

    async def _handle_connect_error(self, data=None):
        self._connect_failed = True
        message = data.get("message") if isinstance(data, dict) else data
        _log.warning("connection refused by %s: %s", self._url, message)
        self._deliver(RoomError(str(message or "connection refused"), source="connect"))

    def _make_handler(self, name: str):
        async def _handle(data=None):
            ev = decode_event(name, data)
            if ev is None:
                _log.debug("dropping malformed %s event", name)
                return
            self._deliver(ev)
        return _handle

    def _deliver(self, ev: InboundEvent):
        try:
            self._on_event(ev)
        except Exception:
            _log.exception("on_event failed for %s", type(ev).__name__)

    # ── Outbound ───────────────────────────────────────────────────────────────

    async def emit(self, event: str, data: dict):
        if not self._sio.connected:
            raise TransportError("not connected")
        try:
            await self._sio.emit(event, data)
        except (socketio.exceptions.SocketIOError, OSError) as exc:
            raise TransportError(str(exc) or "send failed") from exc
