"""
ghostchat_crypto.py
────────────────────────────────────────────────────────────────────────────────
Room-key derivation and AEAD message framing.

Key model
─────────
  room_key = AES-256-GCM( SHA-256( TOKEN || "ghostchat-salt-2024" ) )

  Every holder of the same token derives the same key.  The key is never
  transmitted or persisted; the token itself is the shared secret, so this
  protects against passive observers and the relay, not against anyone the
  token leaks to.

Wire format
───────────
  base64( nonce[12] || ciphertext || tag[16] )

  A fresh random 96-bit nonce is drawn for every encrypt() call.

Failure policy
──────────────
  encrypt()  never raises; on any failure the caller gets Plain(text) and can
             tell it apart from Encrypted(token).
  decrypt()  never raises; non-base64 input is passed through unchanged
             (mixed encrypted / plaintext rooms), authentication failure
             yields DECRYPT_FAILED.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import hashlib
import logging
import re
import secrets
from typing import Optional, Union

try:
    from cryptography.exceptions import InvalidTag
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM
    _CRYPTO_OK = True
except ImportError:
    _CRYPTO_OK = False

_log = logging.getLogger("ghostchat.crypto")

# ── Constants ─────────────────────────────────────────────────────────────────
APP_SALT       = "ghostchat-salt-2024"
DECRYPT_FAILED = "[Encrypted message - failed to decrypt]"
_NONCE_BYTES   = 12
_TAG_BYTES     = 16
_B64_RE        = re.compile(r"^[A-Za-z0-9+/=]+$")

_TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_AGENT_ADJECTIVES = (
    "Silent", "Shadow", "Ghost", "Phantom",
    "Stealth", "Covert", "Hidden", "Secret",
)


# ── Tokens & agent handles ────────────────────────────────────────────────────

def canonical_token(token: str) -> str:
    return (token or "").strip().upper()


def generate_room_token() -> str:
    """Return a fresh token shaped like ``ABC-DEF-GHJ``."""
    groups = ("".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(3))
              for _ in range(3))
    return "-".join(groups)


def generate_agent_id() -> str:
    """Ephemeral display handle, e.g. ``Ghost-042``.  Carries no trust."""
    adjective = secrets.choice(_AGENT_ADJECTIVES)
    number    = secrets.randbelow(999) + 1
    return f"{adjective}-{number:03d}"


# ─────────────────────────────────────────────────────────────────────────────
# Key derivation
# ─────────────────────────────────────────────────────────────────────────────

class RoomKey:
    """AES-GCM key object.  The raw bytes are not kept on the instance."""

    __slots__ = ("_aead",)

    def __init__(self, digest: bytes):
        self._aead = AESGCM(digest)

    def __repr__(self) -> str:
        return "<RoomKey AES-256-GCM>"

    def seal(self, nonce: bytes, data: bytes) -> bytes:
        return self._aead.encrypt(nonce, data, None)

    def open(self, nonce: bytes, data: bytes) -> bytes:
        return self._aead.decrypt(nonce, data, None)


def available() -> bool:
    """True when the AEAD primitives can actually be used on this platform."""
    if not _CRYPTO_OK:
        return False
    try:
        AESGCM(bytes(32))
    except Exception:
        return False
    return True


def derive_room_key(token: str) -> Optional[RoomKey]:
    """Derive the shared room key, or None when crypto is unavailable."""
    if not available():
        _log.warning("AEAD primitives unavailable — room will run unencrypted")
        return None
    try:
        digest = hashlib.sha256((token + APP_SALT).encode("utf-8")).digest()
        return RoomKey(digest)
    except Exception as exc:
        _log.error("room key derivation failed: %s", type(exc).__name__)
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Message cipher
# ─────────────────────────────────────────────────────────────────────────────

@dataclasses.dataclass(frozen=True)
class Encrypted:
    text: str
    encrypted = True


@dataclasses.dataclass(frozen=True)
class Plain:
    text: str
    encrypted = False


CipherResult = Union[Encrypted, Plain]


def encrypt(plaintext: str, key: Optional[RoomKey]) -> CipherResult:
    if key is None or not available():
        return Plain(plaintext)
    try:
        nonce  = secrets.token_bytes(_NONCE_BYTES)
        sealed = key.seal(nonce, plaintext.encode("utf-8"))
        return Encrypted(base64.b64encode(nonce + sealed).decode("ascii"))
    except Exception as exc:
        _log.error("encryption failed, sending as plaintext: %s", type(exc).__name__)
        return Plain(plaintext)


def decrypt(token: str, key: Optional[RoomKey]) -> str:
    if key is None or not available() or not isinstance(token, str):
        return token
    if not _B64_RE.match(token):
        return token
    try:
        combined = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError):
        return token
    # Too short to hold nonce + tag: a plaintext word that happens to be base64.
    if len(combined) < _NONCE_BYTES + _TAG_BYTES:
        return token

    try:
        plain = key.open(combined[:_NONCE_BYTES], combined[_NONCE_BYTES:])
        return plain.decode("utf-8")
    except InvalidTag:
        _log.debug("decryption failed: authentication tag mismatch")
        return DECRYPT_FAILED
    except Exception as exc:
        _log.debug("decryption failed: %s", type(exc).__name__)
        return DECRYPT_FAILED
