"""H.264 RTP sender: launch description, pump, and GStreamer adapter."""
from .pipeline import RtpPipeline
from .pump import MediaBuffer, PipelinePump, PresentationClock, PushResult

__all__ = ["MediaBuffer", "PipelinePump", "PresentationClock", "PushResult", "RtpPipeline"]
