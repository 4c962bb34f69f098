import asyncio

import pytest

from ghostchat.ghostchat_config import GhostChatConfig
from ghostchat.ghostchat_models import Connected, Disconnected
from ghostchat.ghostchat_session import SessionEngine
from ghostchat.ghostchat_transport import TransportError

TOKEN = "ABC-123-XYZ"


async def settle(rounds: int = 5):
    """Let spawned tasks (join handshake, history) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTransport:
    """In-memory stand-in for RoomTransport: records frames, injects events."""

    def __init__(self, url, on_event):
        self.url       = url
        self.on_event  = on_event
        self.sent      = []
        self.connected = False
        self.stopped   = False
        self.fail_emit = False
        self._done     = asyncio.Event()

    async def run(self):
        await self._done.wait()

    async def stop(self):
        self.stopped = True
        self._done.set()

    async def emit(self, event, data):
        if self.fail_emit or not self.connected:
            raise TransportError("not connected")
        self.sent.append((event, data))

    def frames(self, event):
        return [data for name, data in self.sent if name == event]

    def connect(self):
        self.connected = True
        self.on_event(Connected(self.url))

    def drop(self, server_initiated=False):
        self.connected = False
        self.on_event(Disconnected("transport closed without a close frame", server_initiated))

    def push(self, ev):
        self.on_event(ev)


@pytest.fixture
def cfg():
    return GhostChatConfig(
        backend_url="http://chat.test",
        socket_url="http://chat.test",
        history_timeout=1.0,
        reconnect_delay=0.01,
        reconnect_max_delay=0.05,
        blocked_words=(),
        filter_mode="replace",
        default_ttl=86400,
        log_level="DEBUG",
    )


@pytest.fixture
def make_engine(cfg):
    """
    Build a SessionEngine wired to a FakeTransport and a canned history.

    history may be a list of Message, a callable (key, enabled) → list, or an
    exception instance to raise.  gate, when given, is awaited before the
    history result is returned.
    """
    created = []

    def _make(token=TOKEN, history=None, gate=None, **kwargs):
        transports = []

        def _factory(url, on_event):
            t = FakeTransport(url, on_event)
            transports.append(t)
            return t

        async def _loader(base_url, tok, key, enabled, *, timeout, agent_id):
            if gate is not None:
                await gate.wait()
            if isinstance(history, Exception):
                raise history
            if callable(history):
                return history(key, enabled)
            return list(history or [])

        kwargs.setdefault("config", cfg)
        engine = SessionEngine(token, transport_factory=_factory,
                               history_loader=_loader, **kwargs)
        engine.transports = transports
        created.append(engine)
        return engine

    return _make
