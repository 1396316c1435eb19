"""Camera capture on top of the libcamera bindings."""
from .configuration import CameraConfiguration, PIXEL_LAYOUTS
from .driver import CaptureDriver, FramePlane

__all__ = ["CameraConfiguration", "CaptureDriver", "FramePlane", "PIXEL_LAYOUTS"]
