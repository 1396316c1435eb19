"""Command-line surface: ``udpcam <destination-ip> <port> [--config PATH]``."""

import argparse
import sys
from typing import List, NoReturn, Optional

from udpcam.config.load import validate_ip, validate_port
from udpcam.constants import EXIT_FAILURE, VERSION


class StreamerArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with the startup-failure code on bad usage."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def _destination_ip(value: str) -> str:
    if not validate_ip(value):
        raise argparse.ArgumentTypeError(f"invalid IP address: {value!r}")
    return value


def _port(value: str) -> int:
    if not (value.isascii() and value.isdigit()) or not validate_port(value):
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {value!r}")
    return int(value)


def build_parser() -> StreamerArgumentParser:
    parser = StreamerArgumentParser(
        prog="udpcam",
        description="Stream the Raspberry Pi camera as H.264 over RTP/UDP"
    )
    parser.add_argument(
        "destination_ip",
        type=_destination_ip,
        help="Receiver address (IPv4 or IPv6 literal)"
    )
    parser.add_argument(
        "port",
        type=_port,
        help="Receiver UDP port (1-65535)"
    )
    parser.add_argument(
        "--config",
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=VERSION
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)
