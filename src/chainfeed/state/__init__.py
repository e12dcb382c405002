"""Status reporting."""

from .heartbeat import StatusWriter

__all__ = ["StatusWriter"]
