"""
Media pipeline description builder.

This module turns the negotiated camera configuration and the encoder and
destination settings into a GStreamer launch description:

    appsrc -> videoconvert -> I420 -> x264enc -> rtph264pay -> udpsink
"""

from typing import Any, Dict

from udpcam.camera_capture.configuration import CameraConfiguration
from udpcam.constants import SOURCE_NAME


class RtpPipeline:
    """
    Builds the launch description for the H.264 RTP sender.

    The source caps always come from the camera's negotiated configuration,
    so the description must be built after the camera is configured.
    """

    def __init__(self, config: Dict[str, Any], camera_config: CameraConfiguration, logger) -> None:
        """
        Initialize the pipeline builder.

        Args:
            config: Configuration dictionary with encoder and RTP settings.
            camera_config: Negotiated camera configuration.
            logger: JSON logger instance for structured logging.
        """
        self.config = config
        self.camera_config = camera_config
        self.logger = logger

        encoder = config["encoder"]
        self.tune = encoder["tune"]
        self.speed_preset = encoder["speed_preset"]
        self.bitrate_kbps = encoder["bitrate_kbps"]
        self.gop = encoder["gop"]
        self.config_interval = encoder["config_interval"]
        self.payload_type = encoder["payload_type"]

        self.destination_ip = config["rtp"]["destination_ip"]
        self.destination_port = config["rtp"]["destination_port"]

    def build_caps(self) -> str:
        """Raw video caps matching the camera's negotiated layout."""
        return (
            f"video/x-raw,format={self.camera_config.caps_format},"
            f"width={self.camera_config.width},height={self.camera_config.height},"
            f"framerate={self.camera_config.fps}/1"
        )

    def build_source(self) -> str:
        # Live, blocking, TIME-format source: push-buffer waits until accepted
        return (
            f"appsrc name={SOURCE_NAME} is-live=true block=true format=time "
            f"caps=\"{self.build_caps()}\""
        )

    def build_encoder(self) -> str:
        return (
            f"x264enc tune={self.tune} speed-preset={self.speed_preset} "
            f"bitrate={self.bitrate_kbps} key-int-max={self.gop}"
        )

    def build_payloader(self) -> str:
        # config-interval re-sends SPS/PPS so late joiners can decode
        return f"rtph264pay config-interval={self.config_interval} pt={self.payload_type}"

    def build_sink(self) -> str:
        # Quoted so IPv6 literals survive the launch parser
        return (
            f"udpsink host=\"{self.destination_ip}\" port={self.destination_port} "
            f"auto-multicast=false"
        )

    def build_description(self) -> str:
        """
        Build the complete launch description.

        Returns:
            The description string for ``Gst.parse_launch``.
        """
        description = " ! ".join([
            self.build_source(),
            "videoconvert",
            "video/x-raw,format=I420",
            self.build_encoder(),
            self.build_payloader(),
            self.build_sink(),
        ])

        self.logger.log("info", "pipeline", "pipeline_built", {
            "caps": self.build_caps(),
            "destination": f"{self.destination_ip}:{self.destination_port}",
            "description": description
        }, f"GStreamer pipeline: {description}")

        return description
