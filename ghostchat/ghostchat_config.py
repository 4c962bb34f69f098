# ══════════════════════════════════════════════════════════════════════════════
#  ghostchat_config.py
#  Loaded once at startup: built-in defaults, then ghostchat_config.json,
#  then GHOSTCHAT_* environment variables (highest precedence).
# ══════════════════════════════════════════════════════════════════════════════

import dataclasses
import os
import sys
from typing import Mapping, Optional, Tuple

from ghostchat.paths import FILE_CONFIG, read_config_file

FILTER_MODES = ("replace", "block", "warn")

# ── Built-in defaults (used when no config file is found) ─────────────────────
_DEFAULTS: dict = {
    # ── Backend ───────────────────────────────────────────────────────────────
    "backend_url":            "http://localhost:3001",
    "socket_url":             "",       # empty = same host as backend_url
    "history_timeout":        10.0,     # seconds, client-side
    "reconnect_delay":        1.0,
    "reconnect_max_delay":    30.0,

    # ── Content filter ────────────────────────────────────────────────────────
    "blocked_words":          "",       # comma-separated
    "filter_mode":            "replace",

    # ── Messages ──────────────────────────────────────────────────────────────
    "default_ttl":            86400,

    # ── Logging ───────────────────────────────────────────────────────────────
    "log_level":              "INFO",
}

# env var → config key
_ENV_KEYS = {
    "GHOSTCHAT_BACKEND_URL":     "backend_url",
    "GHOSTCHAT_SOCKET_URL":      "socket_url",
    "GHOSTCHAT_HISTORY_TIMEOUT": "history_timeout",
    "GHOSTCHAT_BLOCKED_WORDS":   "blocked_words",
    "GHOSTCHAT_FILTER_MODE":     "filter_mode",
    "GHOSTCHAT_DEFAULT_TTL":     "default_ttl",
    "GHOSTCHAT_LOG_LEVEL":       "log_level",
}


@dataclasses.dataclass(frozen=True)
class GhostChatConfig:
    backend_url        : str
    socket_url         : str
    history_timeout    : float
    reconnect_delay    : float
    reconnect_max_delay: float
    blocked_words      : Tuple[str, ...]
    filter_mode        : str
    default_ttl        : int
    log_level          : str


def parse_blocked_words(raw) -> Tuple[str, ...]:
    """Split a comma-separated word list; lowercase, trim, drop empties, keep order."""
    if isinstance(raw, (list, tuple)):
        items = raw
    else:
        items = str(raw or "").split(",")
    words = []
    for item in items:
        word = str(item).strip().lower()
        if word and word not in words:
            words.append(word)
    return tuple(words)


def _number(config_data: dict, key: str, cast):
    """Non-negative number from config_data[key]; warns and uses the default otherwise."""
    raw = config_data[key]
    try:
        value = cast(raw)
        if value < 0 or value != value or value == float("inf"):
            raise ValueError(raw)
    except (TypeError, ValueError, OverflowError):
        print(
            f"[Config Warning]: {key} '{raw}' is not a valid non-negative number "
            f"— using {_DEFAULTS[key]}.",
            file=sys.stderr,
        )
        return cast(_DEFAULTS[key])
    return value


def load_config(env: Optional[Mapping[str, str]] = None,
                candidates=None) -> GhostChatConfig:
    """Build the immutable configuration value for this process."""
    env = os.environ if env is None else env
    config_data = dict(_DEFAULTS)
    config_data.update(FILE_CONFIG if candidates is None else read_config_file(candidates))

    for env_name, key in _ENV_KEYS.items():
        if env_name in env:
            config_data[key] = env[env_name]

    mode = str(config_data["filter_mode"]).strip().lower()
    if mode not in FILTER_MODES:
        print(
            f"[Config Warning]: filter_mode '{mode}' is not one of "
            f"{', '.join(FILTER_MODES)} — using 'replace'.",
            file=sys.stderr,
        )
        mode = "replace"

    backend_url = str(config_data["backend_url"]).rstrip("/")
    socket_url  = str(config_data["socket_url"] or "").rstrip("/") or backend_url

    return GhostChatConfig(
        backend_url        =backend_url,
        socket_url         =socket_url,
        history_timeout    =_number(config_data, "history_timeout", float),
        reconnect_delay    =_number(config_data, "reconnect_delay", float),
        reconnect_max_delay=_number(config_data, "reconnect_max_delay", float),
        blocked_words      =parse_blocked_words(config_data["blocked_words"]),
        filter_mode        =mode,
        default_ttl        =_number(config_data, "default_ttl", int),
        log_level          =str(config_data["log_level"]).upper(),
    )
