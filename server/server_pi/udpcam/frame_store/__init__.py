"""Single-slot frame store shared by capture and pump."""
from .store import FrameStore, Snapshot

__all__ = ["FrameStore", "Snapshot"]
