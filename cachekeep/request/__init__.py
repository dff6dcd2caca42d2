"""Request transformation."""

from cachekeep.request.filters import filter_input

__all__ = ["filter_input"]
