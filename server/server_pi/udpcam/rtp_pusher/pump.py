"""
Fixed-cadence pump from the frame store into the encoder source.

On every tick of the event loop timer the pump copies the latest frame out
of the frame store, stamps it with the presentation clock and pushes it to
the app source. When capture underruns, the latest frame is pushed again;
when capture overruns, intermediate frames are never seen.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from udpcam.constants import NANOSECONDS_PER_SECOND
from udpcam.frame_store.store import FrameStore


class PushResult(Enum):
    """Outcome of handing a buffer to the encoder source."""

    OK = "ok"
    FLUSHING = "flushing"
    EOS = "eos"
    ERROR = "error"


@dataclass
class MediaBuffer:
    data: bytes
    pts: int
    duration: int
    generation: int


class PresentationClock:
    """Monotonic nanosecond clock that only moves on successful pushes."""

    def __init__(self, duration: int) -> None:
        self.duration = duration
        self.now = 0

    def advance(self) -> int:
        self.now += self.duration
        return self.now


class PipelinePump:
    """
    Drives the encoder source at a fixed frame rate.

    The source must provide ``push(MediaBuffer) -> PushResult`` and
    ``end_of_stream()``. The loop must provide ``add_timer(interval_ms,
    callback)``, ``remove_timer(timer_id)`` and ``monotonic_ns()``; a
    callback returning False is not called again.

    Tick ``n`` is due ``n * duration`` ns after ``arm``. Each tick schedules
    a one-shot timer for the time left until the next deadline.
    """

    def __init__(
        self,
        frame_store: FrameStore,
        source,
        loop,
        fps: int,
        logger,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the pump.

        Args:
            frame_store: Store sampled on every tick.
            source: Encoder source adapter.
            loop: Event loop adapter owning the periodic timer.
            fps: Target frame rate.
            logger: JSON logger instance for structured logging.
            cancel: Shared shutdown flag checked between ticks.
        """
        self.frame_store = frame_store
        self.source = source
        self.loop = loop
        self.fps = fps
        self.logger = logger
        self.cancel = cancel

        self.clock = PresentationClock(NANOSECONDS_PER_SECOND // fps)
        self._scratch = bytearray()
        self._timer_id = None
        self._started_ns = 0
        self._ticks = 0
        self._finished = False
        self._eos_sent = False

        self.terminated = False
        self.buffers_pushed = 0
        self.pushes_dropped = 0
        self.last_generation = 0

    @property
    def armed(self) -> bool:
        return self._timer_id is not None

    @property
    def eos_sent(self) -> bool:
        return self._eos_sent

    def arm(self) -> None:
        """Start the periodic tick."""
        if self._finished or self._timer_id is not None:
            return
        self._started_ns = self.loop.monotonic_ns()
        self._ticks = 0
        self._schedule_next()
        self.logger.log("info", "pump", "pump_armed", {
            "fps": self.fps,
            "duration_ns": self.clock.duration
        }, f"Pushing one frame every {self.clock.duration} ns")

    def disarm(self) -> None:
        if self._timer_id is not None:
            self.loop.remove_timer(self._timer_id)
            self._timer_id = None

    def _schedule_next(self) -> None:
        deadline = self._started_ns + (self._ticks + 1) * self.clock.duration
        remaining_ns = deadline - self.loop.monotonic_ns()
        # Round up so a tick never fires before its deadline; a late loop catches up
        delay_ms = max(0, -(-remaining_ns // 1_000_000))
        self._timer_id = self.loop.add_timer(delay_ms, self._on_timer)

    def _on_timer(self) -> bool:
        self._timer_id = None
        self._ticks += 1
        if self.tick():
            self._schedule_next()
        return False

    def tick(self) -> bool:
        """
        Push the latest frame once.

        Returns:
            True to keep ticking, False once the pump is finished.
        """
        if self._finished or (self.cancel is not None and self.cancel.is_set()):
            self._timer_id = None
            return False

        length, generation = self.frame_store.snapshot(self._scratch)
        if length == 0:
            # Nothing captured yet
            return True

        buffer = MediaBuffer(
            data=bytes(self._scratch[:length]),
            pts=self.clock.now,
            duration=self.clock.duration,
            generation=generation,
        )
        result = self.source.push(buffer)

        if result is PushResult.OK:
            self.clock.advance()
            self.buffers_pushed += 1
            self.last_generation = generation
            return True

        if result in (PushResult.FLUSHING, PushResult.EOS):
            self.logger.log("warning", "pump", "pump_terminated", {
                "result": result.value,
                "pts": buffer.pts
            }, f"Source refused buffers ({result.value}); pump stopped")
            self._finished = True
            self.terminated = True
            self._timer_id = None
            return False

        # Transient refusal: drop this frame, keep the clock where it is
        self.pushes_dropped += 1
        self.logger.log("warning", "pump", "push_failed", {
            "result": result.value,
            "pts": buffer.pts,
            "generation": generation
        }, f"Failed to push buffer: {result.value}")
        return True

    def finish(self) -> None:
        """Disarm the tick and send end-of-stream exactly once. Idempotent."""
        self.disarm()
        self._finished = True
        if self._eos_sent:
            return
        self._eos_sent = True
        self.source.end_of_stream()
        self.logger.log("info", "pump", "eos_sent", {
            "pts": self.clock.now,
            "buffers": self.buffers_pushed
        }, "End-of-stream sent to source")
