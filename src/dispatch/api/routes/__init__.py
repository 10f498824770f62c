"""Route group exports."""

from . import dispatch, health

__all__ = ["dispatch", "health"]
