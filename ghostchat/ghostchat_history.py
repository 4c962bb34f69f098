"""
ghostchat_history.py
────────────────────
Fetch and normalise the persisted message batch of a room.

  GET {backend}/api/room/{token}/messages
      → {"messages": [{id, sender, timestamp, ttl, message|caption,
                       type?, imageData?}, ...]}

Failures are classified (HistoryError.kind) and never fatal to a session:
the caller carries on with an empty log and full live messaging.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional
from urllib.parse import quote

import aiohttp

from ghostchat.ghostchat_crypto import RoomKey, decrypt
from ghostchat.ghostchat_models import Message, MessageKind, now_ms, parse_timestamp

_log = logging.getLogger("ghostchat.history")

DEFAULT_TIMEOUT_S = 10.0

NOT_FOUND    = "not_found"
SERVER_ERROR = "server_error"
TIMEOUT      = "timeout"
NETWORK      = "network"
BAD_PAYLOAD  = "bad_payload"


class HistoryError(Exception):
    def __init__(self, kind: str, message: str,
                 status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.kind   = kind
        self.status = status
        self.body   = body

    def __str__(self) -> str:
        return self.args[0] if self.args else self.kind


def history_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/api/room/{quote(token, safe='')}/messages"


def _coerce_ttl(value) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _coerce_timestamp(value) -> int:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError):
        _log.debug("record has unusable timestamp %r, using receive time", value)
        return now_ms()


def normalize_record(raw: dict, key: Optional[RoomKey], encryption_enabled: bool,
                     agent_id: str = "") -> Message:
    """
    Turn one server record (history batch or live new-message event) into a
    Message.  Image records decrypt only their caption; text records decrypt
    the body.  Decryption is skipped entirely when the room runs unencrypted.
    """
    use_key = key if encryption_enabled else None
    sender  = str(raw.get("sender", ""))
    is_image = raw.get("type") == MessageKind.IMAGE.value

    if is_image:
        caption = raw.get("caption") or None
        if caption is not None and use_key is not None:
            caption = decrypt(str(caption), use_key)
        kind, content = MessageKind.IMAGE, str(raw.get("imageData") or "")
    else:
        body = raw.get("message")
        body = "" if body is None else str(body)
        if use_key is not None:
            body = decrypt(body, use_key)
        kind, content, caption = MessageKind.TEXT, body, None

    return Message(
        id           =str(raw["id"]),
        kind         =kind,
        sender       =sender,
        timestamp_ms =_coerce_timestamp(raw.get("timestamp")),
        ttl          =_coerce_ttl(raw.get("ttl", 0)),
        content      =content,
        caption      =caption,
        is_own       =bool(agent_id) and sender == agent_id,
    )


def normalize_batch(records, key: Optional[RoomKey], encryption_enabled: bool,
                    agent_id: str = "") -> List[Message]:
    """Server order is kept; one bad record never drops the rest."""
    messages: List[Message] = []
    for raw in records:
        if not isinstance(raw, dict) or raw.get("id") in (None, ""):
            _log.warning("skipping history record without an id")
            continue
        try:
            messages.append(normalize_record(raw, key, encryption_enabled, agent_id))
        except Exception as exc:
            _log.warning("skipping history record %s (%s)", raw.get("id"), type(exc).__name__)
    return messages


async def fetch_history(base_url: str, token: str, key: Optional[RoomKey],
                        encryption_enabled: bool, *,
                        timeout: float = DEFAULT_TIMEOUT_S,
                        agent_id: str = "",
                        session: Optional[aiohttp.ClientSession] = None) -> List[Message]:
    url  = history_url(base_url, token)
    owns = session is None
    if owns:
        session = aiohttp.ClientSession()
    try:
        _log.info("loading history for room")
        async with session.get(
            url,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            if not 200 <= resp.status < 300:
                body = await resp.text()
                kind = NOT_FOUND if resp.status == 404 else SERVER_ERROR
                raise HistoryError(kind, f"HTTP {resp.status}: {body}",
                                   status=resp.status, body=body)
            try:
                data = await resp.json(content_type=None)
            except (json.JSONDecodeError, ValueError) as exc:
                raise HistoryError(BAD_PAYLOAD, f"Invalid history payload: {exc}",
                                   status=resp.status) from exc
    except HistoryError:
        raise
    except asyncio.TimeoutError as exc:
        raise HistoryError(TIMEOUT, "Request timeout") from exc
    except aiohttp.ClientError as exc:
        raise HistoryError(NETWORK, str(exc) or type(exc).__name__) from exc
    except OSError as exc:
        raise HistoryError(NETWORK, str(exc) or type(exc).__name__) from exc
    finally:
        if owns:
            await session.close()

    records = data.get("messages") if isinstance(data, dict) else None
    if not isinstance(records, list):
        _log.info("history response carried no message list")
        return []

    messages = normalize_batch(records, key, encryption_enabled, agent_id)
    _log.info("history loaded: %d of %d records", len(messages), len(records))
    return messages
