import asyncio
import re

import pytest

from conftest import TOKEN, settle
from ghostchat import ghostchat_crypto
from ghostchat.ghostchat_crypto import decrypt, derive_room_key, encrypt
from ghostchat.ghostchat_filter import ContentFilter, FilterConfig
from ghostchat.ghostchat_history import HistoryError, normalize_record
from ghostchat.ghostchat_image import ImagePayload
from ghostchat.ghostchat_models import (
    Joined, Message, MessageExpired, MessageKind, NewMessage, ParticipantJoined,
    ParticipantLeft, RoomError,
)
from ghostchat.ghostchat_session import (
    Phase, SendStatus, SessionEngine, format_time_left, is_expired, remaining_ms,
)
from ghostchat.ghostchat_transport import EV_JOIN_ROOM, EV_SEND_IMAGE, EV_SEND_MESSAGE

NOW = 1_700_000_000_000


def _record(mid, text, sender="Ghost-777", ts=NOW, ttl=300, key=None):
    body = encrypt(text, key).text if key is not None else text
    return {"id": mid, "message": body, "sender": sender, "timestamp": ts, "ttl": ttl}


def _msg(mid, ts=NOW, ttl=300, content="x"):
    return Message(id=mid, kind=MessageKind.TEXT, sender="s", timestamp_ms=ts,
                   ttl=ttl, content=content)


async def _joined(engine, participants=None):
    await engine.start()
    await settle()
    transport = engine.transports[0]
    transport.connect()
    await settle()
    transport.push(Joined(participants or [engine.agent_id]))
    return transport


# ── Construction ──────────────────────────────────────────────────────────────

def test_missing_token_is_fatal(cfg):
    with pytest.raises(ValueError):
        SessionEngine("   ", config=cfg)


def test_token_canonical_and_agent_generated(make_engine):
    engine = make_engine(token=" abc-123-xyz ")
    assert engine.token == TOKEN
    assert re.fullmatch(r"[A-Za-z]+-\d{3}", engine.agent_id)
    assert engine.phase is Phase.IDLE


# ── Start-up sequencing ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_derives_key_then_runs_history_and_socket(make_engine):
    phases = []

    def on_event(ev):
        if ev["type"] == "session.phase":
            phases.append(ev["content"]["phase"])

    engine = make_engine(on_event=on_event)
    await engine.start()
    assert engine.encryption_enabled is True
    assert engine.transports and engine.transports[0].url == "http://chat.test"
    assert phases == ["deriving_key", "awaiting"]
    await engine.leave()


@pytest.mark.asyncio
async def test_join_handshake_and_participants_replace(make_engine):
    engine = make_engine()
    transport = await _joined(engine, ["A", "B", "A"])

    assert transport.frames(EV_JOIN_ROOM) == [{"roomToken": TOKEN, "agentId": engine.agent_id}]
    assert engine.connected is True
    assert engine.participants == ["A", "B"]
    assert engine.phase is Phase.ACTIVE

    transport.push(Joined(["C"]))
    assert engine.participants == ["C"]
    await engine.leave()


@pytest.mark.asyncio
async def test_socket_join_not_blocked_by_slow_history(make_engine):
    gate = asyncio.Event()
    key = derive_room_key(TOKEN)
    engine = make_engine(gate=gate, history=[_msg("h1")])
    transport = await _joined(engine)

    assert engine.phase is Phase.JOINED
    transport.push(NewMessage(_record("live-1", "first live", key=key)))
    assert [m.id for m in engine.messages] == ["live-1"]

    gate.set()
    await settle()
    assert [m.id for m in engine.messages] == ["live-1", "h1"]
    assert engine.phase is Phase.ACTIVE
    await engine.leave()


@pytest.mark.asyncio
async def test_history_error_is_non_fatal(make_engine):
    engine = make_engine(history=HistoryError("timeout", "Request timeout"))
    transport = await _joined(engine)

    assert engine.history_error.kind == "timeout"
    assert engine.phase is Phase.ACTIVE
    result = await engine.send("still works")
    assert result.ok
    assert len(transport.frames(EV_SEND_MESSAGE)) == 1
    await engine.leave()


@pytest.mark.asyncio
async def test_unexpected_history_failure_is_classified(make_engine):
    engine = make_engine(history=OverflowError("cannot convert float infinity to integer"))
    transport = await _joined(engine)

    assert engine.history_error.kind == "bad_payload"
    assert "OverflowError" in str(engine.history_error)
    assert engine.phase is Phase.ACTIVE
    transport.push(NewMessage(_record("live-1", "still here")))
    assert [m.id for m in engine.messages] == ["live-1"]
    await engine.leave()


@pytest.mark.asyncio
async def test_live_message_with_infinite_ttl_is_kept(make_engine):
    engine = make_engine()
    transport = await _joined(engine)
    record = _record("m1", "hi")
    record["ttl"] = float("inf")
    transport.push(NewMessage(record))
    assert [(m.id, m.ttl) for m in engine.messages] == [("m1", 0)]
    await engine.leave()


# ── Sending ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_send_rejected_when_not_connected(make_engine):
    engine = make_engine()
    await engine.start()
    result = await engine.send("hello")
    assert result.status is SendStatus.NOT_CONNECTED
    assert engine.transports[0].sent == []
    await engine.leave()


@pytest.mark.asyncio
@pytest.mark.parametrize("text,ttl,status", [
    ("   ", 300, SendStatus.EMPTY),
    ("x" * 1001, 300, SendStatus.TOO_LONG),
    ("hi", -1, SendStatus.INVALID_TTL),
    ("hi", "300", SendStatus.INVALID_TTL),
])
async def test_send_validation(make_engine, text, ttl, status):
    engine = make_engine()
    transport = await _joined(engine)
    result = await engine.send(text, ttl)
    assert result.status is status
    assert transport.frames(EV_SEND_MESSAGE) == []
    await engine.leave()


@pytest.mark.asyncio
async def test_send_encrypts_and_waits_for_echo(make_engine):
    engine = make_engine()
    transport = await _joined(engine)

    result = await engine.send("hello", 300)
    assert result.ok and result.encrypted
    [frame] = transport.frames(EV_SEND_MESSAGE)
    assert frame["roomToken"] == TOKEN
    assert frame["sender"] == engine.agent_id
    assert frame["ttl"] == 300
    assert frame["message"] != "hello"
    assert decrypt(frame["message"], derive_room_key(TOKEN)) == "hello"
    assert engine.messages == []

    transport.push(NewMessage({"id": "srv-1", "timestamp": NOW, **frame}))
    [msg] = engine.messages
    assert msg.id == "srv-1"
    assert msg.content == "hello"
    assert msg.is_own is True
    await engine.leave()


@pytest.mark.asyncio
async def test_send_uses_default_ttl(make_engine):
    engine = make_engine()
    transport = await _joined(engine)
    await engine.send("hi")
    assert transport.frames(EV_SEND_MESSAGE)[0]["ttl"] == 86400
    await engine.leave()


@pytest.mark.asyncio
async def test_filter_block_and_replace(make_engine):
    blocker = ContentFilter(FilterConfig.from_words("foo", "block"))
    engine = make_engine(content_filter=blocker)
    transport = await _joined(engine)
    result = await engine.send("this is foo")
    assert result.status is SendStatus.BLOCKED
    assert result.verdict.matched_words == ["foo"]
    assert transport.frames(EV_SEND_MESSAGE) == []
    await engine.leave()

    replacer = ContentFilter(FilterConfig.from_words("foo", "replace"))
    engine = make_engine(content_filter=replacer)
    transport = await _joined(engine)
    result = await engine.send("this is foo")
    assert result.ok
    [frame] = transport.frames(EV_SEND_MESSAGE)
    assert decrypt(frame["message"], derive_room_key(TOKEN)) == "this is f*o"
    await engine.leave()


@pytest.mark.asyncio
async def test_transport_failure_is_classified(make_engine):
    engine = make_engine()
    transport = await _joined(engine)
    transport.fail_emit = True
    result = await engine.send("hello")
    assert result.status is SendStatus.TRANSPORT_ERROR
    await engine.leave()


@pytest.mark.asyncio
async def test_crypto_unavailable_sends_plaintext(make_engine, monkeypatch):
    monkeypatch.setattr(ghostchat_crypto, "_CRYPTO_OK", False)
    engine = make_engine()
    transport = await _joined(engine)

    assert engine.encryption_enabled is False
    assert engine.crypto_unavailable is True
    result = await engine.send("in the clear")
    assert result.ok and not result.encrypted
    assert transport.frames(EV_SEND_MESSAGE)[0]["message"] == "in the clear"
    await engine.leave()


@pytest.mark.asyncio
async def test_send_image_encrypts_caption_only(make_engine):
    engine = make_engine()
    transport = await _joined(engine)
    image = ImagePayload(data_url="data:image/jpeg;base64,AAAA", mime_type="image/jpeg",
                         byte_size=3, width=1, height=1)

    result = await engine.send_image(image, 300, caption="look at this")
    assert result.ok and result.encrypted
    [frame] = transport.frames(EV_SEND_IMAGE)
    assert frame["imageData"] == image.data_url
    assert decrypt(frame["caption"], derive_room_key(TOKEN)) == "look at this"

    await engine.send_image(image, 300)
    assert transport.frames(EV_SEND_IMAGE)[1]["caption"] is None

    transport.push(NewMessage({"id": "img-1", "type": "image", "timestamp": NOW, **frame}))
    [msg] = engine.messages
    assert msg.kind is MessageKind.IMAGE
    assert msg.caption == "look at this"
    assert msg.content == image.data_url
    await engine.leave()


@pytest.mark.asyncio
async def test_send_image_validation(make_engine):
    engine = make_engine(content_filter=ContentFilter(FilterConfig.from_words("foo", "block")))
    transport = await _joined(engine)
    bmp = ImagePayload(data_url="data:image/bmp;base64,AAAA", mime_type="image/bmp",
                       byte_size=3, width=1, height=1)
    assert (await engine.send_image(bmp, 300)).status is SendStatus.INVALID_IMAGE
    huge = ImagePayload(data_url="data:image/png;base64,AAAA", mime_type="image/png",
                        byte_size=11 * 1024 * 1024, width=1, height=1)
    assert (await engine.send_image(huge, 300)).status is SendStatus.INVALID_IMAGE
    ok = ImagePayload(data_url="data:image/png;base64,AAAA", mime_type="image/png",
                      byte_size=3, width=1, height=1)
    assert (await engine.send_image(ok, 300, caption="foo")).status is SendStatus.BLOCKED
    long_caption = await engine.send_image(ok, 300, caption="y" * 1001)
    assert long_caption.status is SendStatus.TOO_LONG
    assert transport.frames(EV_SEND_IMAGE) == []
    await engine.leave()


# ── Log merge, dedup and expiry ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_duplicate_ids_collapse_across_sources(make_engine):
    key = derive_room_key(TOKEN)
    engine = make_engine(history=lambda k, enabled: [
        normalize_record(_record("m1", "hello", key=key), k, enabled)])
    transport = await _joined(engine)

    transport.push(NewMessage(_record("m1", "hello", key=key)))
    transport.push(NewMessage(_record("m1", "hello", key=key)))
    engine.apply_history([_msg("m1")])
    assert [m.id for m in engine.messages] == ["m1"]
    assert engine.messages[0].content == "hello"
    await engine.leave()


@pytest.mark.asyncio
async def test_live_events_applied_idempotently(make_engine):
    engine = make_engine()
    transport = await _joined(engine, ["A"])

    transport.push(ParticipantJoined("B"))
    transport.push(ParticipantJoined("B"))
    assert engine.participants == ["A", "B"]
    transport.push(ParticipantLeft("A"))
    transport.push(ParticipantLeft("Z"))
    assert engine.participants == ["B"]

    transport.push(NewMessage(_record("m1", "plain")))
    transport.push(MessageExpired("m1"))
    transport.push(MessageExpired("m1"))
    transport.push(MessageExpired("never-seen"))
    assert engine.messages == []

    transport.push(NewMessage({"message": "no id"}))
    assert engine.messages == []
    await engine.leave()


@pytest.mark.asyncio
async def test_wrong_key_live_message_shows_sentinel(make_engine):
    engine = make_engine()
    transport = await _joined(engine)
    transport.push(NewMessage(_record("m1", "secret", key=derive_room_key("OTHER"))))
    assert engine.messages[0].content == ghostchat_crypto.DECRYPT_FAILED
    await engine.leave()


@pytest.mark.asyncio
async def test_local_sweep_and_server_expiry_share_removal(make_engine):
    clock = {"now": NOW}
    removed = []

    def on_event(ev):
        if ev["type"] == "message.removed":
            removed.append(ev["content"]["id"])

    engine = make_engine(clock=lambda: clock["now"], on_event=on_event)
    engine.apply_history([_msg("short", ttl=10), _msg("long", ttl=3600), _msg("burn", ttl=0)])

    clock["now"] = NOW + 9_999
    assert engine.sweep_expired() == []
    clock["now"] = NOW + 10_000
    assert engine.sweep_expired() == ["short"]
    assert engine.sweep_expired() == []
    assert [m.id for m in engine.messages] == ["long", "burn"]

    engine.dispatch(MessageExpired("burn"))
    assert removed == ["short", "burn"]


@pytest.mark.asyncio
async def test_expiry_ticker_runs_while_session_is_live(make_engine):
    removed = []

    def on_event(ev):
        if ev["type"] == "message.removed":
            removed.append(ev["content"]["id"])

    engine = make_engine(sweep_interval=0.01, on_event=on_event,
                         history=[_msg("old", ts=NOW, ttl=1)])
    await engine.start()
    for _ in range(50):
        await asyncio.sleep(0.01)
        if removed:
            break
    assert removed == ["old"]
    assert engine.messages == []
    await engine.leave()


def test_ttl_helpers():
    msg = _msg("m", ts=NOW, ttl=120)
    assert remaining_ms(msg, NOW) == 120_000
    assert remaining_ms(msg, NOW + 60_000) == 60_000
    assert remaining_ms(msg, NOW + 120_000) == 0
    assert remaining_ms(msg, NOW + 500_000) == 0
    assert format_time_left(msg, NOW) == "2m left"
    assert format_time_left(_msg("h", ttl=86400), NOW) == "24h 0m left"
    assert format_time_left(msg, NOW + 120_000) == "Expired"

    burn = _msg("b", ts=NOW, ttl=0)
    assert is_expired(burn, NOW) is True
    assert format_time_left(burn, NOW) == "Expired"


# ── Disconnect / reconnect / teardown ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_drop_keeps_log_and_rejoin_does_not_duplicate(make_engine):
    engine = make_engine()
    transport = await _joined(engine, ["A", engine.agent_id])
    transport.push(NewMessage(_record("m1", "before the drop")))

    transport.drop()
    assert engine.connected is False
    assert engine.phase is Phase.RECONNECTING
    assert engine.last_disconnect.server_initiated is False
    assert [m.id for m in engine.messages] == ["m1"]
    assert engine.participants == ["A", engine.agent_id]
    assert (await engine.send("during gap")).status is SendStatus.NOT_CONNECTED

    transport.connect()
    await settle()
    assert len(transport.frames(EV_JOIN_ROOM)) == 2
    transport.push(Joined(["A", engine.agent_id]))
    transport.push(NewMessage(_record("m1", "before the drop")))
    transport.push(NewMessage(_record("m2", "after")))
    assert [m.id for m in engine.messages] == ["m1", "m2"]
    assert engine.phase is Phase.ACTIVE
    await engine.leave()


@pytest.mark.asyncio
async def test_server_initiated_disconnect_and_errors(make_engine):
    engine = make_engine()
    transport = await _joined(engine)
    transport.push(RoomError("Room is full"))
    assert engine.server_error == "Room is full"
    assert engine.connected is True

    transport.drop(server_initiated=True)
    assert engine.last_disconnect.server_initiated is True

    transport.push(RoomError("connection refused", source="connect"))
    assert engine.connection_error == "connection refused"
    await engine.leave()


@pytest.mark.asyncio
async def test_leave_releases_everything(make_engine):
    gate = asyncio.Event()
    engine = make_engine(gate=gate)
    transport = await _joined(engine)

    await engine.leave()
    assert engine.phase is Phase.LEFT
    assert transport.stopped is True
    assert engine._tasks == []
    assert engine.connected is False

    transport.push(NewMessage(_record("late", "ignored")))
    assert engine.messages == []
    assert (await engine.send("nope")).status is SendStatus.NOT_CONNECTED
    await engine.leave()


@pytest.mark.asyncio
async def test_context_manager_scopes_session(make_engine):
    engine = make_engine()
    async with engine as live:
        assert live.phase is Phase.AWAITING
    assert engine.phase is Phase.LEFT


# ── End to end: two clients, one token ───────────────────────────────────────

@pytest.mark.asyncio
async def test_two_clients_same_token_message_appears_once(make_engine):
    alice = make_engine()
    alice_tx = await _joined(alice)
    await alice.send("hello", 300)
    [frame] = alice_tx.frames(EV_SEND_MESSAGE)
    echoed = {"id": "srv-42", "timestamp": NOW, "message": frame["message"],
              "sender": frame["sender"], "ttl": frame["ttl"]}

    bob = make_engine(history=lambda key, enabled: [normalize_record(echoed, key, enabled)])
    bob_tx = await _joined(bob)
    bob_tx.push(NewMessage(echoed))

    assert bob.token == alice.token
    [msg] = bob.messages
    assert msg.content == "hello"
    assert msg.ttl == 300
    assert msg.is_own is False
    await alice.leave()
    await bob.leave()
