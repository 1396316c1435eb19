"""
Exception taxonomy for the streamer.

Every startup-fatal condition has its own exception so the lifecycle
controller can log which step failed; all of them map to exit code 1.
"""

from udpcam.constants import EXIT_FAILURE


class StreamerError(Exception):
    """Base class for all streamer failures."""

    exit_code = EXIT_FAILURE


class CameraUnavailable(StreamerError):
    """Camera manager could not start, no camera present, or acquire refused."""


class ConfigInvalid(StreamerError):
    """The camera cannot be brought into a usable configuration."""


class AllocationFailed(StreamerError):
    """Frame buffers could not be allocated or mapped."""


class RequestBuildFailed(StreamerError):
    """A capture request could not be created or bound to its buffer."""


class StartFailed(StreamerError):
    """The camera refused to start or to accept the initial requests."""


class PipelineError(StreamerError):
    """The media pipeline could not be built, started, or reported an error."""


class CameraLost(StreamerError):
    """The camera stopped accepting requests while it should be running."""
