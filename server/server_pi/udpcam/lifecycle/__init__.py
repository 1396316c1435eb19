"""Startup, shutdown and failure unwinding."""
from .controller import StreamerApp, StreamState

__all__ = ["StreamerApp", "StreamState"]
