"""GhostChat — ephemeral, token-secured group chat client engine."""

__version__ = "1.0.0"
