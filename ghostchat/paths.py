"""
paths.py
────────
Central directory resolver for GhostChat.
Reads ghostchat_config.json (if present) once at import.  The parsed dict is
shared as FILE_CONFIG: ghostchat_config builds on it, and LOG_DIR honours its
log_dir override.

Layout:
    <project_root>/
        ghostchat_config.json     ← optional, see ghostchat_config.py
        Logs/                     ← LOG_DIR
        ghostchat/                ← GHOSTCHAT_DIR  (this file lives here)
"""

import json
import sys
from pathlib import Path

GHOSTCHAT_DIR = Path(__file__).parent   # …/ghostchat/
ROOT_DIR      = GHOSTCHAT_DIR.parent    # project root

CONFIG_CANDIDATES = [
    ROOT_DIR    / "ghostchat_config.json",      # beside the ghostchat/ package
    Path.home() / ".ghostchat" / "config.json", # user-home fallback
]


def read_config_file(candidates=CONFIG_CANDIDATES) -> dict:
    """First parseable JSON object among candidates, else {}."""
    for config_path in candidates:
        if Path(config_path).exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    data = json.load(f)
            except Exception as parse_error:
                print(f"[Config Warning]: could not parse {config_path}: {parse_error}",
                      file=sys.stderr)
                continue
            if isinstance(data, dict):
                return data
            print(f"[Config Warning]: {config_path} is not a JSON object, ignored",
                  file=sys.stderr)
    return {}


FILE_CONFIG: dict = read_config_file()

LOG_DIR = Path(FILE_CONFIG.get("log_dir", ROOT_DIR / "Logs"))


def ensure_log_dir() -> Path:
    """Create LOG_DIR on demand; only the terminal client writes log files."""
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        print(
            f"[Paths Warning]: cannot create {LOG_DIR} — "
            "check permissions or set log_dir in ghostchat_config.json",
            file=sys.stderr,
        )
    return LOG_DIR
