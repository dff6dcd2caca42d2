"""Slash commands answered by the proxy itself."""

from cachekeep.commands.metrics import maybe_handle_command

__all__ = ["maybe_handle_command"]
