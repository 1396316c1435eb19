"""
Lifecycle controller for the camera-to-RTP streamer.

Sequences startup across the capture and media subsystems, runs the event
loop, and unwinds everything in reverse on shutdown or on a startup
failure. It is the only component that decides to stop streaming.
"""

import signal
import threading
from contextlib import ExitStack
from enum import Enum
from typing import Any, Callable, Dict, Optional

from udpcam.camera_capture.configuration import CameraConfiguration
from udpcam.camera_capture.driver import CaptureDriver
from udpcam.constants import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_SIGNAL_BASE,
    STOP_POLL_MS,
)
from udpcam.errors import PipelineError, StreamerError
from udpcam.frame_store.store import FrameStore
from udpcam.rtp_pusher.pipeline import RtpPipeline
from udpcam.rtp_pusher.pump import PipelinePump


class StreamState(Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    RUNNING = "running"
    STOPPING = "stopping"


_TRANSITIONS = {
    StreamState.UNCONFIGURED: {StreamState.CONFIGURED},
    StreamState.CONFIGURED: {StreamState.RUNNING, StreamState.UNCONFIGURED},
    StreamState.RUNNING: {StreamState.STOPPING},
    StreamState.STOPPING: {StreamState.UNCONFIGURED},
}


class StreamerApp:
    """Main application coordinator."""

    def __init__(
        self,
        config: Dict[str, Any],
        logger,
        camera_bindings,
        streamer_factory: Callable[..., Any],
        loop,
    ) -> None:
        """
        Initialize the streamer application.

        Args:
            config: Validated configuration dictionary.
            logger: JSON logger instance.
            camera_bindings: The libcamera bindings module.
            streamer_factory: Called as ``factory(description, logger,
                on_error)`` to create the media pipeline owner.
            loop: Event loop adapter (``add_timer``, ``remove_timer``,
                ``run``, ``quit``).
        """
        self.config = config
        self.logger = logger
        self.streamer_factory = streamer_factory
        self.loop = loop

        self.state = StreamState.UNCONFIGURED
        self.frame_store = FrameStore()
        self.driver = CaptureDriver(camera_bindings, self.frame_store, logger, on_fatal=self.request_fatal_stop)
        self.camera_config: Optional[CameraConfiguration] = None
        self.streamer = None
        self.source = None
        self.pump: Optional[PipelinePump] = None

        self.exit_code = EXIT_OK
        self._stop_requested = threading.Event()
        self._signum: Optional[int] = None
        self._fatal_error: Optional[StreamerError] = None
        self._previous_handlers: Dict[int, Any] = {}

    def _transition(self, new_state: StreamState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal state transition {self.state.value} -> {new_state.value}")
        self.logger.log("debug", "lifecycle", "state_changed", {
            "old": self.state.value,
            "new": new_state.value
        }, f"State {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _reset_state(self) -> None:
        if self.state == StreamState.RUNNING:
            self._transition(StreamState.STOPPING)
        if self.state != StreamState.UNCONFIGURED:
            self._transition(StreamState.UNCONFIGURED)

    def _signal_handler(self, signum, frame) -> None:
        """Only flags the shutdown; the event loop does the rest."""
        self.request_stop(signum)

    def request_stop(self, signum: Optional[int] = None) -> None:
        if self._signum is None:
            self._signum = signum
        self._stop_requested.set()

    def request_fatal_stop(self, error: StreamerError) -> None:
        """Called from either domain when streaming cannot continue."""
        if self._fatal_error is None:
            self._fatal_error = error
        self._stop_requested.set()

    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _step(self, name: str) -> None:
        self.logger.log("debug", "lifecycle", "startup_step", {"step": name}, f"Startup step ok: {name}")

    def _undo(self, name: str, fn: Callable[[], Any]) -> None:
        """Run one teardown step; a failure is logged and the rest still run."""
        try:
            fn()
        except Exception as e:
            self.exit_code = EXIT_FAILURE
            self.logger.log("error", "lifecycle", "teardown_failed", {
                "step": name,
                "error": str(e)
            }, f"Teardown step {name} failed: {e}")
            return
        self.logger.log("debug", "lifecycle", "teardown_step", {"step": name}, f"Teardown step done: {name}")

    def _startup(self, teardown: ExitStack) -> None:
        camera = self.config["camera"]
        rtp = self.config["rtp"]

        self.driver.open()
        teardown.callback(self._undo, "camera_release", self.driver.close)
        self._step("camera_acquire")

        self.camera_config = self.driver.configure(
            width=camera["width"],
            height=camera["height"],
            pixel_format=camera["pixel_format"],
            buffer_count=camera["buffer_count"],
            fps=camera["fps"],
            role=camera["role"],
        )
        self._transition(StreamState.CONFIGURED)
        teardown.callback(self._undo, "state_reset", self._reset_state)
        self._step("camera_configure")

        self.driver.allocate()
        teardown.callback(self._undo, "buffers_free", self.driver.free)
        self._step("buffers_allocate")

        # Built from the negotiated configuration so adjusted sizes reach the caps
        description = RtpPipeline(self.config, self.camera_config, self.logger).build_description()
        self.streamer = self.streamer_factory(description, self.logger, self.request_fatal_stop)
        self.streamer.build()
        teardown.callback(self._undo, "pipeline_close", self.streamer.close)
        self._step("pipeline_build")

        self.source = self.streamer.source()
        self._step("source_resolve")

        self.streamer.play()
        teardown.callback(self._undo, "pipeline_drain", self.streamer.drain)
        self._step("pipeline_play")

        self.driver.start()
        teardown.callback(self._undo, "camera_stop", self.driver.stop_camera)
        self._transition(StreamState.RUNNING)
        self._step("camera_start")

        self.pump = PipelinePump(
            self.frame_store,
            self.source,
            self.loop,
            camera["fps"],
            self.logger,
            cancel=self._stop_requested,
        )
        self.pump.arm()
        teardown.callback(self._undo, "pump_finish", self.pump.finish)
        self.loop.add_timer(STOP_POLL_MS, self._poll_stop)
        self._step("pump_arm")

        self.logger.log("service", "lifecycle", "streaming", {
            "destination": f"{rtp['destination_ip']}:{rtp['destination_port']}",
            "camera": str(self.camera_config)
        }, f"Streaming to {rtp['destination_ip']}:{rtp['destination_port']}, press Ctrl+C to stop")

    def _poll_stop(self) -> bool:
        """Event loop timer: turn a pending stop request into a shutdown."""
        if self.pump is not None and self.pump.terminated and not self._stop_requested.is_set():
            self.request_fatal_stop(PipelineError("Encoder source stopped accepting buffers"))

        if not self._stop_requested.is_set():
            return True

        self._begin_stopping()
        return False

    def _begin_stopping(self) -> None:
        if self._signum is not None:
            self.logger.log("info", "lifecycle", "shutdown_signal", {
                "signal": self._signum
            }, f"Received shutdown signal {self._signum}")
        elif self._fatal_error is not None:
            self.logger.log("error", "lifecycle", "fatal_error", {
                "error": str(self._fatal_error),
                "type": type(self._fatal_error).__name__
            }, f"Stopping after fatal error: {self._fatal_error}")

        if self.state == StreamState.RUNNING:
            self._transition(StreamState.STOPPING)
        if self.pump is not None:
            self.pump.finish()
        self.loop.quit()

    def run(self) -> int:
        """
        Run the streamer until a signal or a fatal error.

        Returns:
            Process exit code.
        """
        self.logger.log("service", "main", "app_start", {
            "destination": f"{self.config['rtp']['destination_ip']}:{self.config['rtp']['destination_port']}"
        }, "Camera RTP streamer starting")

        self.install_signal_handlers()
        try:
            with ExitStack() as teardown:
                try:
                    self._startup(teardown)
                except StreamerError as e:
                    self.logger.log("error", "lifecycle", "startup_failed", {
                        "error": str(e),
                        "type": type(e).__name__
                    }, f"Startup failed: {e}")
                    self.exit_code = e.exit_code
                    return self.exit_code

                self.loop.run()
        finally:
            self.restore_signal_handlers()
            self._log_summary()

        if self.exit_code == EXIT_OK:
            self.exit_code = self._shutdown_exit_code()
        return self.exit_code

    def _shutdown_exit_code(self) -> int:
        if self._fatal_error is not None:
            return self._fatal_error.exit_code
        if self._signum is not None:
            return EXIT_SIGNAL_BASE + self._signum
        return EXIT_OK

    def _log_summary(self) -> None:
        pump = self.pump
        self.logger.log("service", "main", "stream_summary", {
            "frames_captured": self.frame_store.generation,
            "buffers_pushed": pump.buffers_pushed if pump else 0,
            "pushes_dropped": pump.pushes_dropped if pump else 0,
            "final_pts": pump.clock.now if pump else 0,
            "eos_sent": pump.eos_sent if pump else False
        }, "Streamer stopped")
