"""Raspberry Pi camera to H.264 RTP/UDP streamer."""
from .constants import VERSION

__version__ = VERSION
