"""
ghostchat_models.py
───────────────────
Shared value types: the Message record held in a session log and the
inbound transport event sum type consumed by the session dispatcher.

Inbound events
──────────────
  Connected          socket open (join handshake must be (re)sent)
  Joined             room-joined       {participants}
  ParticipantJoined  participant-joined {agentId}
  ParticipantLeft    participant-left   {agentId}
  NewMessage         new-message        {id, message|imageData, ...}
  MessageExpired     message-expired    {messageId}
  RoomError          error {message}  or a failed connect attempt
  Disconnected       socket closed; server_initiated tells a clean server
                     close apart from a transport drop
"""

from __future__ import annotations

import dataclasses
import enum
import time
from datetime import datetime, timezone
from typing import List, Optional, Union


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp(value) -> int:
    """Server timestamps arrive as epoch millis or ISO-8601 strings."""
    if isinstance(value, bool):
        raise ValueError(f"bad timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value:
        text = value.strip()
        if text.isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    raise ValueError(f"bad timestamp: {value!r}")


class MessageKind(str, enum.Enum):
    TEXT  = "text"
    IMAGE = "image"


@dataclasses.dataclass
class Message:
    id          : str
    kind        : MessageKind
    sender      : str
    timestamp_ms: int
    ttl         : int
    content     : str                  # text body, or image data URL
    caption     : Optional[str] = None
    is_own      : bool = False

    @property
    def expires_at_ms(self) -> int:
        return self.timestamp_ms + self.ttl * 1000

    def display(self) -> dict:
        return {
            "id"       : self.id,
            "type"     : self.kind.value,
            "sender"   : self.sender,
            "timestamp": self.timestamp_ms,
            "ttl"      : self.ttl,
            "content"  : self.content if self.kind is MessageKind.TEXT else "[image]",
            "caption"  : self.caption,
            "is_own"   : self.is_own,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Inbound transport events
# ─────────────────────────────────────────────────────────────────────────────

@dataclasses.dataclass(frozen=True)
class Connected:
    url: str = ""


@dataclasses.dataclass(frozen=True)
class Joined:
    participants: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class ParticipantJoined:
    agent_id: str


@dataclasses.dataclass(frozen=True)
class ParticipantLeft:
    agent_id: str


@dataclasses.dataclass(frozen=True)
class NewMessage:
    record: dict


@dataclasses.dataclass(frozen=True)
class MessageExpired:
    message_id: str


@dataclasses.dataclass(frozen=True)
class RoomError:
    message: str
    source : str = "server"            # "server" | "connect"


@dataclasses.dataclass(frozen=True)
class Disconnected:
    reason          : str
    server_initiated: bool = False


InboundEvent = Union[
    Connected, Joined, ParticipantJoined, ParticipantLeft,
    NewMessage, MessageExpired, RoomError, Disconnected,
]
