"""
ghostchat_filter.py
───────────────────
Outgoing-text content filter.  Pure function of (text, FilterConfig).

  replace  every whole-word match → first char + stars + last char
  block    any match rejects the message locally
  warn     message goes out unchanged, caller shows a warning
"""

from __future__ import annotations

import dataclasses
import re
from typing import List, Optional, Tuple

from ghostchat.ghostchat_config import FILTER_MODES, GhostChatConfig, parse_blocked_words

BLOCK_REASON = "Message contains inappropriate language and cannot be sent."
WARN_TEXT    = "Your message contains words that might be considered inappropriate."


@dataclasses.dataclass(frozen=True)
class FilterConfig:
    blocked_words: Tuple[str, ...] = ()
    mode         : str = "replace"

    @classmethod
    def from_words(cls, words, mode: str = "replace") -> "FilterConfig":
        return cls(blocked_words=parse_blocked_words(words), mode=mode)

    @classmethod
    def from_config(cls, cfg: GhostChatConfig) -> "FilterConfig":
        return cls(blocked_words=cfg.blocked_words, mode=cfg.filter_mode)


@dataclasses.dataclass(frozen=True)
class FilterVerdict:
    filtered     : str
    blocked      : bool = False
    matched_words: List[str] = dataclasses.field(default_factory=list)
    warning      : Optional[str] = None
    reason       : Optional[str] = None


def _mask(word: str) -> str:
    if len(word) <= 1:
        return "*"
    return word[0] + "*" * (len(word) - 2) + word[-1]


class ContentFilter:

    def __init__(self, config: FilterConfig):
        self._config   = config
        self._patterns = [
            (word, re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE))
            for word in config.blocked_words
        ]

    @property
    def config(self) -> FilterConfig:
        return self._config

    def matches(self, text: str) -> List[str]:
        return [word for word, rx in self._patterns if rx.search(text)]

    def apply(self, text: str) -> FilterVerdict:
        if not self._patterns:
            return FilterVerdict(filtered=text)

        found = self.matches(text)
        if not found:
            return FilterVerdict(filtered=text)

        if self._config.mode == "block":
            return FilterVerdict(filtered=text, blocked=True,
                                 matched_words=found, reason=BLOCK_REASON)
        if self._config.mode == "warn":
            return FilterVerdict(filtered=text, matched_words=found,
                                 warning=WARN_TEXT)

        filtered = text
        for _, rx in self._patterns:
            filtered = rx.sub(lambda m: _mask(m.group(0)), filtered)
        return FilterVerdict(filtered=filtered, matched_words=found)


def contains_blocked_words(text: str, config: FilterConfig) -> bool:
    return bool(ContentFilter(config).matches(text))


def validate_filter_config(config: FilterConfig) -> dict:
    return {
        "is_valid"           : config.mode in FILTER_MODES,
        "blocked_words_count": len(config.blocked_words),
        "filter_mode"        : config.mode,
        "blocked_words"      : list(config.blocked_words[:5]),
    }
