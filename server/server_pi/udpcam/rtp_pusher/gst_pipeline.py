"""
GStreamer side of the RTP sender.

Parses the launch description, resolves the app source, drives the
pipeline through its states and watches the bus for errors. Also wraps the
GLib main loop the pump timer and the shutdown poll run on.
"""

from typing import Callable, Optional

import gi

gi.require_version("Gst", "1.0")
from gi.repository import GLib, Gst  # noqa: E402

from udpcam.constants import EOS_DRAIN_TIMEOUT_S, SOURCE_NAME  # noqa: E402
from udpcam.errors import PipelineError  # noqa: E402
from udpcam.rtp_pusher.pump import MediaBuffer, PushResult  # noqa: E402

_FLOW_RESULTS = {
    Gst.FlowReturn.OK: PushResult.OK,
    Gst.FlowReturn.FLUSHING: PushResult.FLUSHING,
    Gst.FlowReturn.EOS: PushResult.EOS,
}


class AppSource:
    """The pipeline's appsrc element as seen by the pump."""

    def __init__(self, element) -> None:
        self.element = element
        self.eos_sent = False

    def caps(self) -> str:
        return self.element.get_property("caps").to_string()

    def push(self, media_buffer: MediaBuffer) -> PushResult:
        buf = Gst.Buffer.new_wrapped(media_buffer.data)
        buf.pts = media_buffer.pts
        buf.duration = media_buffer.duration
        ret = self.element.emit("push-buffer", buf)
        return _FLOW_RESULTS.get(ret, PushResult.ERROR)

    def end_of_stream(self) -> PushResult:
        self.eos_sent = True
        ret = self.element.emit("end-of-stream")
        return _FLOW_RESULTS.get(ret, PushResult.ERROR)


class GstRtpStreamer:
    """
    Owns the GStreamer pipeline.

    Mirrors the lifecycle of the camera side: ``build`` -> ``source`` ->
    ``play`` -> ``drain`` -> ``close``.
    """

    def __init__(
        self,
        description: str,
        logger,
        on_error: Optional[Callable[[PipelineError], None]] = None,
    ) -> None:
        """
        Initialize the streamer.

        Args:
            description: Launch description from RtpPipeline.
            logger: JSON logger instance for structured logging.
            on_error: Called on the loop thread when the bus reports an error.
        """
        self.description = description
        self.logger = logger
        self.on_error = on_error
        self.pipeline = None
        self.app_source: Optional[AppSource] = None
        self._bus = None
        self._bus_handler = None

    def build(self) -> None:
        """
        Parse the launch description and attach the bus watch.

        Raises:
            PipelineError: If the description cannot be parsed.
        """
        Gst.init(None)
        try:
            self.pipeline = Gst.parse_launch(self.description)
        except GLib.Error as e:
            raise PipelineError(f"Failed to create pipeline: {e.message}") from e

        if self.pipeline is None:
            raise PipelineError("Failed to create pipeline: (unknown)")

        self._bus = self.pipeline.get_bus()
        self._bus.add_signal_watch()
        self._bus_handler = self._bus.connect("message", self._on_bus_message)

    def source(self, name: str = SOURCE_NAME) -> AppSource:
        """
        Resolve the app source element.

        Raises:
            PipelineError: If the pipeline has no element called ``name``.
        """
        element = self.pipeline.get_by_name(name)
        if element is None:
            raise PipelineError(f"Failed to get appsrc element '{name}' from pipeline")
        self.app_source = AppSource(element)
        return self.app_source

    def play(self) -> None:
        """
        Move the pipeline to PLAYING.

        Raises:
            PipelineError: If the state change fails.
        """
        ret = self.pipeline.set_state(Gst.State.PLAYING)
        if ret == Gst.StateChangeReturn.FAILURE:
            raise PipelineError("Pipeline failed to reach PLAYING")

        self.logger.log("service", "pipeline", "pipeline_playing", {
            "state_change": ret.value_nick
        }, "Pipeline set to PLAYING")

    def drain(self, timeout_s: float = EOS_DRAIN_TIMEOUT_S) -> bool:
        """
        Wait for end-of-stream to reach the sink.

        Only waits when end-of-stream was actually sent.

        Returns:
            True if EOS arrived within the timeout.
        """
        if self.pipeline is None or self.app_source is None or not self.app_source.eos_sent:
            return False

        self._remove_bus_watch()
        bus = self.pipeline.get_bus()
        message = bus.timed_pop_filtered(
            int(timeout_s * Gst.SECOND),
            Gst.MessageType.EOS | Gst.MessageType.ERROR
        )
        if message is None:
            self.logger.log("warning", "pipeline", "drain_timeout", {
                "timeout_s": timeout_s
            }, "End-of-stream did not reach the sink in time")
            return False

        if message.type == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            self.logger.log("error", "pipeline", "drain_error", {
                "error": err.message,
                "debug": debug
            }, f"Pipeline error while draining: {err.message}")
            return False

        self.logger.log("info", "pipeline", "drained", {}, "End-of-stream reached the sink")
        return True

    def close(self) -> None:
        """Set the pipeline to NULL and drop it. Idempotent."""
        if self.pipeline is None:
            return
        self._remove_bus_watch()
        self.pipeline.set_state(Gst.State.NULL)
        self.pipeline = None
        self.app_source = None
        self.logger.log("info", "pipeline", "pipeline_stopped", {}, "Pipeline stopped")

    def _remove_bus_watch(self) -> None:
        if self._bus is None:
            return
        if self._bus_handler is not None:
            self._bus.disconnect(self._bus_handler)
            self._bus_handler = None
        self._bus.remove_signal_watch()
        self._bus = None

    def _on_bus_message(self, bus, message) -> bool:
        msg_type = message.type

        if msg_type == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            self.logger.log("error", "pipeline", "bus_error", {
                "source": message.src.get_name(),
                "error": err.message,
                "debug": debug
            }, f"Pipeline error from {message.src.get_name()}: {err.message}")
            if self.on_error is not None:
                self.on_error(PipelineError(err.message))

        elif msg_type == Gst.MessageType.WARNING:
            warn, debug = message.parse_warning()
            self.logger.log("warning", "pipeline", "bus_warning", {
                "source": message.src.get_name(),
                "warning": warn.message,
                "debug": debug
            }, f"Pipeline warning from {message.src.get_name()}: {warn.message}")

        elif msg_type == Gst.MessageType.EOS:
            self.logger.log("info", "pipeline", "bus_eos", {}, "End-of-stream on bus")

        elif msg_type == Gst.MessageType.STATE_CHANGED and message.src == self.pipeline:
            old, new, pending = message.parse_state_changed()
            self.logger.log("debug", "pipeline", "state_changed", {
                "old": old.value_nick,
                "new": new.value_nick
            }, f"Pipeline state {old.value_nick} -> {new.value_nick}")

        return True


class GLibLoop:
    """GLib main loop with the timer interface the pump and controller use."""

    def __init__(self) -> None:
        self._loop = GLib.MainLoop()

    def add_timer(self, interval_ms: int, callback: Callable[[], bool]) -> int:
        return GLib.timeout_add(interval_ms, callback)

    def remove_timer(self, timer_id: int) -> None:
        GLib.source_remove(timer_id)

    def monotonic_ns(self) -> int:
        return GLib.get_monotonic_time() * 1000

    def run(self) -> None:
        self._loop.run()

    def quit(self) -> None:
        self._loop.quit()
