#!/usr/bin/env python3
"""
ghostchat_main.py
─────────────────
Terminal front end for the GhostChat session engine.

    ghostchat ABC-123-XYZ            join a room
    ghostchat --new                  create a fresh token and join it

Threading architecture
──────────────────────
  Main thread  : asyncio loop running the SessionEngine.
  Input thread : blocking stdin reads, handed to the loop through
                 call_soon_threadsafe so every send happens on the loop.

In-room commands
────────────────
  /image PATH [caption]   send an image
  /who                    list participants
  /state                  print session flags
  /quit                   leave the room
"""

import argparse
import asyncio
import logging
import os
import sys
import threading
from datetime import datetime

if sys.version_info < (3, 9):
    print(
        f"[GhostChat]: Python 3.9+ required "
        f"(current: {sys.version_info.major}.{sys.version_info.minor})",
        file=sys.stderr,
    )
    sys.exit(1)

from ghostchat.ghostchat_config import GhostChatConfig, load_config
from ghostchat.ghostchat_crypto import generate_room_token
from ghostchat.ghostchat_image import ImageValidationError, prepare_image_file
from ghostchat.ghostchat_session import TTL_OPTIONS, SessionEngine, SendResult
from ghostchat.paths import ensure_log_dir

_log = logging.getLogger("ghostchat.main")


def _configure_logging(level: str):
    handlers = [logging.FileHandler(ensure_log_dir() / "ghostchat.log", encoding="utf-8")]
    console  = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    handlers.append(console)
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=handlers,
    )


def _clock(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%H:%M")


class _Printer:
    """on_event sink: renders engine notifications as terminal lines."""

    def __call__(self, ev: dict):
        t = ev.get("type", "")
        c = ev.get("content", {})
        if t == "message.added":
            who  = "you" if c.get("is_own") else c.get("sender", "?")
            body = c.get("content", "")
            if c.get("type") == "image":
                body = "[image]" + (f" {c['caption']}" if c.get("caption") else "")
            print(f"{_clock(c.get('timestamp', 0))} <{who}> {body}")
        elif t == "message.removed":
            print(f"[GhostChat]: message {c.get('id')} expired")
        elif t == "participants":
            if c.get("joined"):
                print(f"[GhostChat]: {c['joined']} joined")
            elif c.get("left"):
                print(f"[GhostChat]: {c['left']} left")
            else:
                print(f"[GhostChat]: in room — {', '.join(c.get('participants', []))}")
        elif t == "connection":
            if c.get("connected"):
                print("[GhostChat]: connected")
            else:
                detail = c.get("reason") or c.get("error") or ""
                print(f"[GhostChat]: connection lost {detail}".rstrip())
        elif t == "history.error":
            print(f"[GhostChat]: history unavailable ({c.get('kind')}) — live chat still works")
        elif t == "session.crypto" and not c.get("encryption_enabled"):
            print("[GhostChat]: ⚠ encryption unavailable — messages are sent in plaintext")
        elif t == "error":
            print(f"[GhostChat Error]: {c.get('message')}")


def _report(result: SendResult, engine: SessionEngine):
    if not result.ok:
        print(f"[GhostChat]: not sent — {result.reason or result.status.value}")
        return
    if result.verdict and result.verdict.warning:
        print(f"[GhostChat]: ⚠ {result.verdict.warning}")
    if engine.encryption_enabled and not result.encrypted and result.verdict is not None:
        print("[GhostChat]: ⚠ sent as plaintext (encryption failed)")


def _start_input_thread(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
    def _read():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.rstrip("\n"))
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=_read, daemon=True, name="ghostchat-input").start()


async def _run(token: str, ttl: int, cfg: GhostChatConfig):
    loop  = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()

    async with SessionEngine(token, config=cfg, on_event=_Printer()) as engine:
        print(f"[GhostChat]: room {engine.token} as {engine.agent_id}  (/quit to leave)")
        _start_input_thread(loop, lines)

        while True:
            line = await lines.get()
            if line is None or line.strip() == "/quit":
                break
            if line.strip() == "/who":
                print(", ".join(engine.participants) or "(nobody)")
                continue
            if line.strip() == "/state":
                print(engine.state())
                continue
            if line.startswith("/image "):
                parts = line.split(maxsplit=2)
                try:
                    payload = prepare_image_file(parts[1])
                except ImageValidationError as exc:
                    print(f"[GhostChat]: {exc}")
                    continue
                print(f"[GhostChat]: image {payload.width}x{payload.height}, "
                      f"{payload.byte_size // 1024} KB ({payload.compression_ratio}% smaller)")
                caption = parts[2] if len(parts) > 2 else None
                _report(await engine.send_image(payload, ttl, caption), engine)
                continue
            _report(await engine.send(line, ttl), engine)


def main():
    parser = argparse.ArgumentParser(
        description="GhostChat — ephemeral token-secured group chat",
    )
    parser.add_argument("token", nargs="?", default="",
                        help="Room token, e.g. ABC-123-XYZ")
    parser.add_argument("--new", action="store_true",
                        help="Generate a fresh room token and join it")
    parser.add_argument("--ttl", type=int, default=None,
                        help=f"Message lifetime in seconds (common: {', '.join(map(str, TTL_OPTIONS))})")
    parser.add_argument("--backend", default="",
                        help="Backend base URL (overrides GHOSTCHAT_BACKEND_URL)")
    args = parser.parse_args()

    env = None
    if args.backend:
        env = dict(os.environ, GHOSTCHAT_BACKEND_URL=args.backend)
    cfg = load_config(env)
    _configure_logging(cfg.log_level)

    token = generate_room_token() if args.new else args.token
    if not token.strip():
        parser.error("a room token is required (or use --new)")
    ttl = cfg.default_ttl if args.ttl is None else args.ttl

    try:
        asyncio.run(_run(token, ttl, cfg))
    except KeyboardInterrupt:
        print("\n[GhostChat]: interrupted by user")
        sys.exit(0)
    except Exception as exc:
        _log.exception("fatal")
        print(f"[GhostChat Fatal]: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
