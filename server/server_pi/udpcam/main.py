#!/usr/bin/env python3
"""
Main entry point for the Raspberry Pi camera RTP streamer.

Parses the command line, loads configuration, then hands the real
libcamera bindings and the GStreamer adapter to the lifecycle controller.
"""

import sys
from typing import List, Optional

from udpcam.cli import parse_args
from udpcam.config.load import load_config
from udpcam.constants import EXIT_FAILURE
from udpcam.errors import CameraUnavailable, StreamerError
from udpcam.logging.json_logger import JsonLogger


def _load_bindings():
    """Import the camera and media bindings; raises CameraUnavailable if either is missing."""
    try:
        import libcamera

        from udpcam.rtp_pusher.gst_pipeline import GLibLoop, GstRtpStreamer
    except (ImportError, ValueError) as e:
        # gi.require_version raises ValueError for a missing typelib
        raise CameraUnavailable(f"Camera subsystem unavailable: {e}") from e
    return libcamera, GstRtpStreamer, GLibLoop


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config, args.destination_ip, args.port)
    except (FileNotFoundError, ValueError) as e:
        print(f"udpcam: {e}", file=sys.stderr)
        return EXIT_FAILURE

    logger = JsonLogger(config)
    logger.log("info", "main", "destination", {
        "ip": args.destination_ip,
        "port": args.port,
        "config": args.config
    }, f"Streaming to {args.destination_ip}:{args.port}")

    try:
        # Imported here so argument and config errors never need the bindings
        try:
            libcamera, streamer_factory, loop_factory = _load_bindings()
        except StreamerError as e:
            logger.log("error", "main", "startup_failed", {
                "error": str(e),
                "type": type(e).__name__
            }, f"Startup failed: {e}")
            return e.exit_code

        from udpcam.lifecycle.controller import StreamerApp

        app = StreamerApp(config, logger, libcamera, streamer_factory, loop_factory())
        return app.run()
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())
