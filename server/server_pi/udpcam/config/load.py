"""
Configuration loader with YAML parsing and validation.

Loads the optional YAML configuration file, merges it over the built-in
defaults and validates the result. Command-line destination arguments are
applied on top by the caller before validation.
"""

import copy
import ipaddress
import os
from typing import Any, Dict, Optional

import yaml

from udpcam.camera_capture.configuration import PIXEL_LAYOUTS
from udpcam.constants import (
    DEFAULT_BUFFER_COUNT,
    DEFAULT_DESTINATION_PORT,
    DEFAULT_HEIGHT,
    DEFAULT_PIXEL_FORMAT,
    DEFAULT_WIDTH,
    FPS,
)
from udpcam.logging.json_logger import JsonLogger

CAMERA_ROLES = ("viewfinder", "video")

DEFAULT_CONFIG: Dict[str, Any] = {
    "camera": {
        "role": "viewfinder",
        "width": DEFAULT_WIDTH,
        "height": DEFAULT_HEIGHT,
        "pixel_format": DEFAULT_PIXEL_FORMAT,
        "buffer_count": DEFAULT_BUFFER_COUNT,
        "fps": FPS,
    },
    "rtp": {
        "destination_ip": None,
        "destination_port": DEFAULT_DESTINATION_PORT,
    },
    "encoder": {
        "tune": "zerolatency",
        "speed_preset": "ultrafast",
        "bitrate_kbps": 2048,
        "gop": 30,
        "config_interval": 1,
        "payload_type": 96,
    },
    "logging": {
        "level": "info",
        "file": None,
        "rotate_max_mb": 10,
        "rotate_backups": 3,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
        return True
    except ValueError:
        return False


def validate_port(port: Any) -> bool:
    try:
        return 1 <= int(port) <= 65535
    except (TypeError, ValueError):
        return False


def _require_positive_int(section: Dict[str, Any], name: str, key: str) -> None:
    value = section.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{name}.{key} must be a positive integer")


def load_config(
    config_path: Optional[str] = None,
    destination_ip: Optional[str] = None,
    destination_port: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Load and validate configuration.

    Args:
        config_path: Optional path to the YAML configuration file. When
            omitted, the built-in defaults are used.
        destination_ip: Destination address from the command line.
        destination_port: Destination port from the command line.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If config is invalid.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is not None:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "r") as f:
            loaded = yaml.safe_load(f) or {}

        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping")

        unknown = set(loaded) - set(DEFAULT_CONFIG)
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")

        config = _merge(config, loaded)

    if destination_ip is not None:
        config["rtp"]["destination_ip"] = destination_ip
    if destination_port is not None:
        config["rtp"]["destination_port"] = destination_port

    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Raise ValueError naming the first offending key."""
    camera = config["camera"]
    if camera.get("role") not in CAMERA_ROLES:
        raise ValueError(f"camera.role must be one of {', '.join(CAMERA_ROLES)}")

    for key in ("width", "height", "fps", "buffer_count"):
        _require_positive_int(camera, "camera", key)

    if camera["buffer_count"] > 32:
        raise ValueError("camera.buffer_count must be between 1 and 32")

    if camera.get("pixel_format") not in PIXEL_LAYOUTS:
        raise ValueError(
            f"camera.pixel_format must be one of {', '.join(sorted(PIXEL_LAYOUTS))}"
        )

    rtp = config["rtp"]
    if not rtp.get("destination_ip") or not validate_ip(str(rtp["destination_ip"])):
        raise ValueError("rtp.destination_ip must be an IPv4 or IPv6 literal")

    if not validate_port(rtp.get("destination_port")):
        raise ValueError("rtp.destination_port must be between 1 and 65535")

    encoder = config["encoder"]
    for key in ("bitrate_kbps", "gop", "config_interval"):
        _require_positive_int(encoder, "encoder", key)

    payload_type = encoder.get("payload_type")
    if not isinstance(payload_type, int) or not 96 <= payload_type <= 127:
        raise ValueError("encoder.payload_type must be a dynamic payload type (96-127)")

    logging_cfg = config["logging"]
    if logging_cfg.get("level") not in JsonLogger.LEVELS:
        raise ValueError(f"logging.level must be one of {', '.join(JsonLogger.LEVELS)}")

    _require_positive_int(logging_cfg, "logging", "rotate_max_mb")
    _require_positive_int(logging_cfg, "logging", "rotate_backups")
