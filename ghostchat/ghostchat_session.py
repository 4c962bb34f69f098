"""
ghostchat_session.py
────────────────────────────────────────────────────────────────────────────────
GhostChat session engine  —  one participant in one token-keyed room.

State machine
─────────────
  IDLE → DERIVING_KEY → AWAITING → JOINED → ACTIVE ⇄ RECONNECTING → LEFT

  AWAITING   history fetch and socket run concurrently; neither waits on
             the other.
  JOINED     room-joined received, history still in flight.
  ACTIVE     joined and history settled (loaded or failed).

  Error conditions are flags, not states: a session can be ACTIVE with
  encryption disabled, a history error and a stale connection error all at
  once.  The only fatal condition is a missing room token.

Message log
───────────
  Insertion order = arrival order.  History is applied once when it lands,
  live events strictly in arrival order.  The message id is the only dedup
  key; a second copy from either source is a no-op.  Removal (server expiry
  event or local TTL sweep) always goes through remove_message().

Own messages
────────────
  send() does not append to the log.  A message appears only when the server
  echoes it back as new-message, so the log never holds an id the server did
  not assign.  SendResult.SENT means "handed to the socket", nothing more.

Threading
─────────
  Runs on one asyncio loop.  Log / participant mutation is guarded by a lock
  so callers on other threads can read snapshots safely.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import re
import threading
from typing import Awaitable, Callable, Dict, List, Optional

from ghostchat.ghostchat_config import GhostChatConfig, load_config
from ghostchat.ghostchat_crypto import (
    CipherResult, Plain, RoomKey, canonical_token, derive_room_key, encrypt,
    generate_agent_id,
)
from ghostchat.ghostchat_filter import ContentFilter, FilterConfig, FilterVerdict
from ghostchat.ghostchat_history import (
    BAD_PAYLOAD, HistoryError, fetch_history, normalize_record,
)
from ghostchat.ghostchat_image import ImagePayload, ImageValidationError, validate_image
from ghostchat.ghostchat_models import (
    Connected, Disconnected, InboundEvent, Joined, Message, MessageExpired,
    NewMessage, ParticipantJoined, ParticipantLeft, RoomError, now_ms,
)
from ghostchat.ghostchat_transport import (
    EV_JOIN_ROOM, EV_SEND_IMAGE, EV_SEND_MESSAGE, RoomTransport, TransportError,
)

_log = logging.getLogger("ghostchat.session")

# ── Constants ─────────────────────────────────────────────────────────────────
MAX_MESSAGE_LEN  = 1000
TTL_OPTIONS      = (0, 300, 3600, 86400)     # burn, 5 min, 1 h, 24 h
_SWEEP_INTERVAL_S = 1.0
_CTRL_RE         = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def _sanitise(raw: str) -> str:
    return _CTRL_RE.sub("", raw or "").strip()


# ═══════════════════════════════════════════════════════════════════════════════
# Types
# ═══════════════════════════════════════════════════════════════════════════════

class Phase(str, enum.Enum):
    IDLE         = "idle"
    DERIVING_KEY = "deriving_key"
    AWAITING     = "awaiting"
    JOINED       = "joined"
    ACTIVE       = "active"
    RECONNECTING = "reconnecting"
    LEFT         = "left"


class SendStatus(str, enum.Enum):
    SENT            = "sent"
    EMPTY           = "empty"
    TOO_LONG        = "too_long"
    INVALID_TTL     = "invalid_ttl"
    NOT_CONNECTED   = "not_connected"
    BLOCKED         = "blocked"
    INVALID_IMAGE   = "invalid_image"
    TRANSPORT_ERROR = "transport_error"


@dataclasses.dataclass(frozen=True)
class SendResult:
    status   : SendStatus
    verdict  : Optional[FilterVerdict] = None
    encrypted: bool = False
    reason   : Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SendStatus.SENT


@dataclasses.dataclass(frozen=True)
class DisconnectInfo:
    reason          : str
    server_initiated: bool
    at_ms           : int


# ═══════════════════════════════════════════════════════════════════════════════
# TTL helpers
# ═══════════════════════════════════════════════════════════════════════════════

def remaining_ms(message: Message, now: Optional[int] = None) -> int:
    now = now_ms() if now is None else now
    return max(0, message.expires_at_ms - now)


def is_expired(message: Message, now: Optional[int] = None) -> bool:
    return remaining_ms(message, now) == 0


def format_time_left(message: Message, now: Optional[int] = None) -> str:
    left = remaining_ms(message, now)
    if left == 0:
        return "Expired"
    hours   = left // 3_600_000
    minutes = (left % 3_600_000) // 60_000
    if hours > 0:
        return f"{hours}h {minutes}m left"
    return f"{minutes}m left"


def _valid_ttl(ttl) -> bool:
    return isinstance(ttl, int) and not isinstance(ttl, bool) and ttl >= 0


# ═══════════════════════════════════════════════════════════════════════════════
# Session engine
# ═══════════════════════════════════════════════════════════════════════════════

TransportFactory = Callable[[str, Callable[[InboundEvent], None]], RoomTransport]
HistoryLoader    = Callable[..., Awaitable[List[Message]]]


class SessionEngine:
    """
    Parameters
    ----------
    token             : Room token; canonicalised (trimmed, uppercased).
    config            : Process configuration; load_config() when omitted.
    content_filter    : Outgoing filter; built from config when omitted.
    transport_factory : (url, on_event) → transport with run/stop/emit.
    history_loader    : Coroutine function with fetch_history's signature.
    on_event          : Callable[[dict], None] — UI notifications, see _notify.
    """

    def __init__(
        self,
        token            : str,
        *,
        config           : Optional[GhostChatConfig] = None,
        content_filter   : Optional[ContentFilter] = None,
        transport_factory: Optional[TransportFactory] = None,
        history_loader   : Optional[HistoryLoader] = None,
        on_event         : Callable[[dict], None] = lambda ev: None,
        clock            : Callable[[], int] = now_ms,
        sweep_interval   : float = _SWEEP_INTERVAL_S,
    ):
        token = canonical_token(token)
        if not token:
            raise ValueError("a room token is required")

        self._config   = config or load_config()
        self._filter   = content_filter or ContentFilter(FilterConfig.from_config(self._config))
        self._transport_factory = transport_factory or self._default_transport
        self._history_loader    = history_loader or fetch_history
        self._on_event = on_event
        self._clock    = clock
        self._sweep_interval = sweep_interval

        self.token    = token
        self.agent_id = generate_agent_id()

        self._phase              = Phase.IDLE
        self._key: Optional[RoomKey] = None
        self._encryption_enabled = False
        self._connected          = False
        self._history_settled    = False
        self._messages: Dict[str, Message] = {}
        self._participants: List[str] = []

        self.history_error   : Optional[HistoryError]   = None
        self.connection_error: Optional[str]            = None
        self.server_error    : Optional[str]            = None
        self.last_disconnect : Optional[DisconnectInfo] = None

        self._lock      = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transport = None
        self._tasks: List[asyncio.Task] = []

    def _default_transport(self, url: str, on_event) -> RoomTransport:
        return RoomTransport(url, on_event,
                             retry_delay=self._config.reconnect_delay,
                             max_retry_delay=self._config.reconnect_max_delay)

    # ── Read-only views ────────────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def encryption_enabled(self) -> bool:
        return self._encryption_enabled

    @property
    def crypto_unavailable(self) -> bool:
        return self._phase not in (Phase.IDLE, Phase.DERIVING_KEY) and not self._encryption_enabled

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def messages(self) -> List[Message]:
        with self._lock:
            return list(self._messages.values())

    @property
    def participants(self) -> List[str]:
        with self._lock:
            return list(self._participants)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    def state(self) -> dict:
        with self._lock:
            return {
                "phase"             : self._phase.value,
                "token"             : self.token,
                "agent_id"          : self.agent_id,
                "encryption_enabled": self._encryption_enabled,
                "connected"         : self._connected,
                "messages"          : len(self._messages),
                "participants"      : list(self._participants),
                "history_error"     : str(self.history_error) if self.history_error else None,
                "connection_error"  : self.connection_error,
            }

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def start(self):
        if self._phase is not Phase.IDLE:
            return
        self._loop = asyncio.get_running_loop()
        _log.info("session start as %s", self.agent_id)

        self._set_phase(Phase.DERIVING_KEY)
        self._key = derive_room_key(self.token)
        self._encryption_enabled = self._key is not None
        if not self._encryption_enabled:
            _log.warning("encryption unavailable, messages will be sent in plaintext")
        self._notify("session.crypto", {"encryption_enabled": self._encryption_enabled})

        self._set_phase(Phase.AWAITING)
        self._transport = self._transport_factory(self._config.socket_url, self.dispatch)
        self._tasks = [
            self._loop.create_task(self._load_history(), name="ghostchat-history"),
            self._loop.create_task(self._transport.run(), name="ghostchat-transport"),
            self._loop.create_task(self._expiry_loop(), name="ghostchat-expiry"),
        ]

    async def leave(self):
        """Release socket, pending fetch and timers together."""
        if self._phase is Phase.LEFT:
            return
        self._set_phase(Phase.LEFT)
        self._connected = False
        if self._transport is not None:
            try:
                await self._transport.stop()
            except Exception as exc:
                _log.debug("transport stop: %s", exc)
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        _log.info("session left")

    async def __aenter__(self) -> "SessionEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.leave()

    # ── History ────────────────────────────────────────────────────────────────

    async def _load_history(self):
        try:
            messages = await self._history_loader(
                self._config.backend_url, self.token, self._key,
                self._encryption_enabled,
                timeout=self._config.history_timeout,
                agent_id=self.agent_id,
            )
        except HistoryError as exc:
            self._history_failed(exc)
        except Exception as exc:
            _log.exception("history loader raised")
            self._history_failed(HistoryError(
                BAD_PAYLOAD, f"Unusable history: {type(exc).__name__}: {exc}"))
        else:
            added = self.apply_history(messages)
            self._notify("history.loaded", {"count": added})
        finally:
            self._history_settled = True
            if self._phase is Phase.JOINED:
                self._set_phase(Phase.ACTIVE)

    def _history_failed(self, exc: HistoryError):
        _log.warning("history unavailable (%s): %s", exc.kind, exc)
        self.history_error = exc
        self._notify("history.error", {"kind": exc.kind, "error": str(exc),
                                       "status": exc.status})

    def apply_history(self, messages: List[Message]) -> int:
        added = 0
        for msg in messages:
            if self._add_message(msg):
                added += 1
        return added

    # ── Log mutation (the only two paths) ─────────────────────────────────────

    def _add_message(self, msg: Message) -> bool:
        with self._lock:
            if msg.id in self._messages:
                return False
            self._messages[msg.id] = msg
        self._notify("message.added", msg.display())
        return True

    def remove_message(self, message_id: str) -> bool:
        with self._lock:
            removed = self._messages.pop(message_id, None)
        if removed is None:
            return False
        self._notify("message.removed", {"id": message_id})
        return True

    # ── Expiry ─────────────────────────────────────────────────────────────────

    def sweep_expired(self, now: Optional[int] = None) -> List[str]:
        """
        Drop every ttl>0 message whose life has reached zero.  ttl=0 messages
        show as Expired immediately but are left for the server to burn.
        """
        now = self._clock() if now is None else now
        with self._lock:
            due = [m.id for m in self._messages.values()
                   if m.ttl > 0 and remaining_ms(m, now) == 0]
        return [mid for mid in due if self.remove_message(mid)]

    async def _expiry_loop(self):
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep_expired()

    # ── Inbound dispatcher ─────────────────────────────────────────────────────

    def dispatch(self, ev: InboundEvent):
        if self._phase is Phase.LEFT:
            return
        fn = {
            Connected        : self._on_connected,
            Joined           : self._on_joined,
            ParticipantJoined: self._on_participant_joined,
            ParticipantLeft  : self._on_participant_left,
            NewMessage       : self._on_new_message,
            MessageExpired   : self._on_message_expired,
            RoomError        : self._on_error,
            Disconnected     : self._on_disconnected,
        }.get(type(ev))
        if fn is None:
            _log.debug("ignoring event %r", ev)
            return
        try:
            fn(ev)
        except Exception as exc:
            _log.exception("dispatch error %s: %s", type(ev).__name__, exc)

    def _on_connected(self, ev: Connected):
        self._connected       = True
        self.connection_error = None
        self._notify("connection", {"connected": True})
        self._spawn(self._join())

    async def _join(self):
        try:
            await self._transport.emit(EV_JOIN_ROOM, {
                "roomToken": self.token,
                "agentId"  : self.agent_id,
            })
        except TransportError as exc:
            self.connection_error = str(exc)
            self._notify("connection", {"connected": self._connected, "error": str(exc)})

    def _on_joined(self, ev: Joined):
        with self._lock:
            seen = []
            for p in ev.participants:
                if p not in seen:
                    seen.append(p)
            self._participants = seen
        self._set_phase(Phase.ACTIVE if self._history_settled else Phase.JOINED)
        self._notify("participants", {"participants": self.participants})

    def _on_participant_joined(self, ev: ParticipantJoined):
        with self._lock:
            if ev.agent_id in self._participants:
                return
            self._participants.append(ev.agent_id)
        self._notify("participants", {"participants": self.participants,
                                      "joined": ev.agent_id})

    def _on_participant_left(self, ev: ParticipantLeft):
        with self._lock:
            if ev.agent_id not in self._participants:
                return
            self._participants.remove(ev.agent_id)
        self._notify("participants", {"participants": self.participants,
                                      "left": ev.agent_id})

    def _on_new_message(self, ev: NewMessage):
        record = ev.record
        if record.get("id") in (None, ""):
            _log.warning("new-message without id dropped")
            return
        if self.get_message(str(record["id"])) is not None:
            return
        try:
            msg = normalize_record(record, self._key, self._encryption_enabled, self.agent_id)
        except Exception as exc:
            _log.warning("live message %s dropped (%s)", record.get("id"), type(exc).__name__)
            return
        self._add_message(msg)

    def _on_message_expired(self, ev: MessageExpired):
        self.remove_message(ev.message_id)

    def _on_error(self, ev: RoomError):
        if ev.source == "connect":
            self._connected       = False
            self.connection_error = ev.message
            if self._phase in (Phase.JOINED, Phase.ACTIVE):
                self._set_phase(Phase.RECONNECTING)
            self._notify("connection", {"connected": False, "error": ev.message})
        else:
            self.server_error = ev.message
            self._notify("error", {"message": ev.message})

    def _on_disconnected(self, ev: Disconnected):
        self._connected = False
        self.last_disconnect = DisconnectInfo(ev.reason, ev.server_initiated, self._clock())
        self._set_phase(Phase.RECONNECTING)
        self._notify("connection", {
            "connected"       : False,
            "reason"          : ev.reason,
            "server_initiated": ev.server_initiated,
        })

    # ── Outbound ───────────────────────────────────────────────────────────────

    def _seal(self, text: str) -> CipherResult:
        if not self._encryption_enabled:
            return Plain(text)
        sealed = encrypt(text, self._key)
        if not sealed.encrypted:
            _log.warning("encryption failed, message goes out as plaintext")
        return sealed

    def _check_sendable(self, ttl) -> Optional[SendResult]:
        if not _valid_ttl(ttl):
            return SendResult(SendStatus.INVALID_TTL, reason=f"invalid ttl: {ttl!r}")
        if not self._connected or self._phase is Phase.LEFT:
            return SendResult(SendStatus.NOT_CONNECTED, reason="not connected")
        return None

    async def send(self, text: str, ttl: Optional[int] = None) -> SendResult:
        ttl  = self._config.default_ttl if ttl is None else ttl
        body = _sanitise(text)
        if not body:
            return SendResult(SendStatus.EMPTY, reason="message is empty")
        if len(body) > MAX_MESSAGE_LEN:
            return SendResult(SendStatus.TOO_LONG,
                              reason=f"message exceeds {MAX_MESSAGE_LEN} characters")
        rejected = self._check_sendable(ttl)
        if rejected:
            return rejected

        verdict = self._filter.apply(body)
        if verdict.blocked:
            return SendResult(SendStatus.BLOCKED, verdict=verdict, reason=verdict.reason)

        sealed = self._seal(verdict.filtered)
        return await self._emit(EV_SEND_MESSAGE, {
            "roomToken": self.token,
            "message"  : sealed.text,
            "sender"   : self.agent_id,
            "ttl"      : ttl,
        }, verdict, sealed.encrypted)

    async def send_image(self, image: ImagePayload, ttl: Optional[int] = None,
                         caption: Optional[str] = None) -> SendResult:
        ttl = self._config.default_ttl if ttl is None else ttl
        if not isinstance(image, ImagePayload) or not image.data_url:
            return SendResult(SendStatus.INVALID_IMAGE, reason="no image data")
        try:
            validate_image(image.mime_type, image.byte_size)
        except ImageValidationError as exc:
            return SendResult(SendStatus.INVALID_IMAGE, reason=str(exc))
        caption = _sanitise(caption or "")
        if len(caption) > MAX_MESSAGE_LEN:
            return SendResult(SendStatus.TOO_LONG,
                              reason=f"caption exceeds {MAX_MESSAGE_LEN} characters")
        rejected = self._check_sendable(ttl)
        if rejected:
            return rejected

        verdict = None
        sealed_caption = None
        encrypted = False
        if caption:
            verdict = self._filter.apply(caption)
            if verdict.blocked:
                return SendResult(SendStatus.BLOCKED, verdict=verdict, reason=verdict.reason)
            sealed = self._seal(verdict.filtered)
            sealed_caption, encrypted = sealed.text, sealed.encrypted

        return await self._emit(EV_SEND_IMAGE, {
            "roomToken": self.token,
            "imageData": image.data_url,
            "caption"  : sealed_caption,
            "sender"   : self.agent_id,
            "ttl"      : ttl,
        }, verdict, encrypted)

    async def _emit(self, event: str, payload: dict,
                    verdict: Optional[FilterVerdict], encrypted: bool) -> SendResult:
        try:
            await self._transport.emit(event, payload)
        except TransportError as exc:
            _log.warning("%s failed: %s", event, exc)
            return SendResult(SendStatus.TRANSPORT_ERROR, verdict=verdict,
                              encrypted=encrypted, reason=str(exc))
        return SendResult(SendStatus.SENT, verdict=verdict, encrypted=encrypted)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _set_phase(self, phase: Phase):
        if self._phase is phase:
            return
        if self._phase is Phase.LEFT:
            return
        _log.debug("phase %s → %s", self._phase.value, phase.value)
        self._phase = phase
        self._notify("session.phase", {"phase": phase.value})

    def _spawn(self, coro):
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None or running is self._loop:
            task = asyncio.ensure_future(coro)
            self._tasks.append(task)
            task.add_done_callback(self._forget_task)
        else:
            asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _forget_task(self, task: asyncio.Task):
        try:
            self._tasks.remove(task)
        except ValueError:
            pass

    def _notify(self, kind: str, content: dict):
        try:
            self._on_event({"type": kind, "content": content})
        except Exception as exc:
            _log.warning("on_event error: %s", exc)
