"""Fixed values for the streamer: frame rate, defaults, element names, poll intervals and exit codes."""

from typing import Final

VERSION: Final = "1.0.0"

FPS: Final = 30
NANOSECONDS_PER_SECOND: Final = 1_000_000_000

DEFAULT_WIDTH: Final = 800
DEFAULT_HEIGHT: Final = 600
DEFAULT_PIXEL_FORMAT: Final = "XRGB8888"
DEFAULT_BUFFER_COUNT: Final = 4
DEFAULT_DESTINATION_PORT: Final = 5000

# Name of the app source element inside the launch description
SOURCE_NAME: Final = "camsrc"

# How often the event loop checks for a pending shutdown (ms)
STOP_POLL_MS: Final = 50
# Bounded wait for end-of-stream to reach the sink on teardown (s)
EOS_DRAIN_TIMEOUT_S: Final = 2.0
# Poll timeout of the capture completion thread (s)
COMPLETION_POLL_S: Final = 0.1

EXIT_OK: Final = 0
EXIT_FAILURE: Final = 1
EXIT_SIGNAL_BASE: Final = 128
