"""Negotiated camera stream descriptor."""

from dataclasses import dataclass

from udpcam.errors import ConfigInvalid

# Single-plane packed 32bpp camera formats and the matching raw video caps
# format (same byte order in memory on little-endian hosts).
PIXEL_LAYOUTS = {
    "XRGB8888": "BGRx",
    "XBGR8888": "RGBx",
}
BYTES_PER_PIXEL = 4


@dataclass(frozen=True)
class CameraConfiguration:
    """Immutable result of configuration negotiation."""

    pixel_format: str
    width: int
    height: int
    stride: int
    fps: int

    @property
    def caps_format(self) -> str:
        return PIXEL_LAYOUTS[self.pixel_format]

    @property
    def frame_size(self) -> int:
        return self.stride * self.height

    @classmethod
    def from_stream_config(cls, stream_config, fps: int) -> "CameraConfiguration":
        """
        Build the descriptor from a validated libcamera stream configuration.

        Raises:
            ConfigInvalid: If the negotiated layout is not a single-plane
                packed 32bpp format or carries row padding.
        """
        pixel_format = str(stream_config.pixel_format)
        width = stream_config.size.width
        height = stream_config.size.height
        stride = stream_config.stride

        if pixel_format not in PIXEL_LAYOUTS:
            raise ConfigInvalid(
                f"Camera negotiated unsupported pixel format {pixel_format}; "
                f"expected one of {', '.join(sorted(PIXEL_LAYOUTS))}"
            )

        if stride != width * BYTES_PER_PIXEL:
            raise ConfigInvalid(
                f"Camera negotiated stride {stride} for width {width}; "
                f"padded rows are not supported"
            )

        return cls(pixel_format=pixel_format, width=width, height=height, stride=stride, fps=fps)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}-{self.pixel_format} stride={self.stride} @{self.fps}fps"
