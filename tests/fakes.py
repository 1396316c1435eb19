"""
Test doubles for the camera bindings and the media pipeline.

The fake libcamera hands out frame buffers backed by real temporary files,
so the driver maps them with mmap exactly as it maps DMA buffers, and it
signals completions through a real pipe so the driver's capture thread
runs unchanged.
"""

import heapq
import itertools
import os
import tempfile
import threading
import time
from enum import Enum
from types import SimpleNamespace
from typing import Callable, List, Optional

from udpcam.constants import FPS, NANOSECONDS_PER_SECOND
from udpcam.errors import PipelineError
from udpcam.rtp_pusher.pump import PushResult

ENODEV = -19
ENOMEM = -12


def tick_ms(n: int, fps: int = FPS) -> int:
    """Simulated millisecond at which the pump's n-th tick fires."""
    return -(-n * (NANOSECONDS_PER_SECOND // fps) // 1_000_000)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class FakeSize:
    def __init__(self, width: int, height: int) -> None:
        self.width = width
        self.height = height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


class FakePixelFormat:
    def __init__(self, name: str) -> None:
        self.name = name

    def __str__(self) -> str:
        return self.name

    def __eq__(self, other) -> bool:
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


class StreamRole(Enum):
    Raw = 0
    StillCapture = 1
    VideoRecording = 2
    Viewfinder = 3


class FakeStream:
    pass


class FakeStreamConfiguration:
    def __init__(self) -> None:
        self.size = FakeSize(1920, 1080)
        self.pixel_format = FakePixelFormat("YUV420")
        self.buffer_count = 6
        self.stride = 1920
        self.stream = FakeStream()

    def __str__(self) -> str:
        return f"{self.size}-{self.pixel_format}"


class FakeCameraConfiguration:
    class Status(Enum):
        Valid = 0
        Adjusted = 1
        Invalid = 2

    def __init__(self, camera: "FakeCamera") -> None:
        self.camera = camera
        self._streams = [FakeStreamConfiguration()]

    def at(self, index: int) -> FakeStreamConfiguration:
        return self._streams[index]

    def validate(self):
        camera = self.camera
        stream_config = self._streams[0]
        if camera.invalid:
            return self.Status.Invalid

        status = self.Status.Valid
        if camera.adjust_to is not None:
            width, height, pixel_format = camera.adjust_to
            stream_config.size = FakeSize(width, height)
            stream_config.pixel_format = FakePixelFormat(pixel_format)
            status = self.Status.Adjusted

        bytes_per_pixel = 4 if str(stream_config.pixel_format).endswith("8888") else 1
        stream_config.stride = stream_config.size.width * bytes_per_pixel + camera.stride_padding
        return status


class FakeFrameMetadata:
    class Status(Enum):
        Success = 0
        Error = 1
        Cancelled = 2


class FakeRequest:
    class Status(Enum):
        Pending = 0
        Complete = 1
        Cancelled = 2

    class ReuseFlag(Enum):
        Default = 0
        ReuseBuffers = 1

    def __init__(self, cookie: int) -> None:
        self.cookie = cookie
        self.buffers = {}
        self.status = self.Status.Pending
        self.reuse_flags: List["FakeRequest.ReuseFlag"] = []

    def add_buffer(self, stream, buffer) -> int:
        self.buffers[stream] = buffer
        return 0

    def reuse(self, flag) -> None:
        self.reuse_flags.append(flag)
        self.status = self.Status.Pending


class FakeFrameBuffer:
    """A single-plane frame buffer backed by an unlinked temporary file."""

    def __init__(self, length: int, planes: int = 1) -> None:
        self.file = tempfile.TemporaryFile()
        os.ftruncate(self.file.fileno(), length * planes)
        self.planes = [
            SimpleNamespace(fd=self.file.fileno(), offset=i * length, length=length)
            for i in range(planes)
        ]
        self.metadata = SimpleNamespace(
            status=FakeFrameMetadata.Status.Success,
            planes=[SimpleNamespace(bytes_used=0) for _ in range(planes)],
        )

    def write(self, data: bytes) -> None:
        os.pwrite(self.file.fileno(), data[:self.planes[0].length], self.planes[0].offset)

    def close(self) -> None:
        self.file.close()


class FakeFrameBufferAllocator:
    def __init__(self, camera: "FakeCamera") -> None:
        self.camera = camera
        self._buffers = {}

    def allocate(self, stream) -> int:
        camera = self.camera
        if camera.allocation_fails:
            return ENOMEM
        stream_config = camera.configured.at(0)
        length = stream_config.stride * stream_config.size.height
        self._buffers[stream] = [
            FakeFrameBuffer(length, camera.planes_per_buffer) for _ in range(stream_config.buffer_count)
        ]
        camera.events.append("allocator.allocate")
        return len(self._buffers[stream])

    def buffers(self, stream):
        return self._buffers.get(stream, [])

    def free(self, stream) -> int:
        for buffer in self._buffers.pop(stream, []):
            buffer.close()
        self.camera.events.append("allocator.free")
        return 0


class FakeCamera:
    def __init__(self, manager: "FakeCameraManager", events: List[str]) -> None:
        self.manager = manager
        self.events = events
        self.id = "/base/soc/i2c0mux/i2c@1/imx219@10"

        # Behaviour switches for tests
        self.acquire_refused = False
        self.invalid = False
        self.adjust_to = None
        self.stride_padding = 0
        self.allocation_fails = False
        self.planes_per_buffer = 1
        self.start_fails = False
        self.lost = False

        self.acquired = False
        self.started = False
        self.configured: Optional[FakeCameraConfiguration] = None
        self.created_requests: List[FakeRequest] = []
        self.queued: List[FakeRequest] = []
        self._lock = threading.Lock()

    def acquire(self) -> int:
        if self.acquire_refused:
            return -16
        self.acquired = True
        self.events.append("camera.acquire")
        return 0

    def release(self) -> int:
        self.acquired = False
        self.events.append("camera.release")
        return 0

    def generate_configuration(self, roles):
        self.requested_roles = list(roles)
        return FakeCameraConfiguration(self)

    def configure(self, camera_config) -> int:
        self.configured = camera_config
        self.events.append("camera.configure")
        return 0

    def create_request(self, cookie: int) -> FakeRequest:
        request = FakeRequest(cookie)
        self.created_requests.append(request)
        return request

    def start(self) -> int:
        if self.start_fails:
            return -5
        self.started = True
        self.events.append("camera.start")
        return 0

    def stop(self) -> int:
        with self._lock:
            self.started = False
            cancelled, self.queued = self.queued, []
        for request in cancelled:
            request.status = FakeRequest.Status.Cancelled
            self.manager.signal(request)
        self.events.append("camera.stop")
        return 0

    def queue_request(self, request: FakeRequest) -> int:
        with self._lock:
            if not self.started or self.lost:
                return ENODEV
            self.queued.append(request)
        return 0

    def complete_next(
        self,
        data: bytes = b"",
        bytes_used: Optional[int] = None,
        status=FakeRequest.Status.Complete,
        frame_status=FakeFrameMetadata.Status.Success,
    ) -> FakeRequest:
        """Complete the oldest queued request with ``data`` in its buffer."""
        with self._lock:
            request = self.queued.pop(0)
        buffer = next(iter(request.buffers.values()))
        buffer.write(data)
        buffer.metadata.planes[0].bytes_used = len(data) if bytes_used is None else bytes_used
        buffer.metadata.status = frame_status
        request.status = status
        self.manager.signal(request)
        return request


class FakeCameraManager:
    """Completion queue signalled through a real pipe, like the bindings' event fd."""

    def __init__(self, events: List[str], cameras: int = 1) -> None:
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        self._ready: List[FakeRequest] = []
        self._lock = threading.Lock()
        self.cameras = [FakeCamera(self, events) for _ in range(cameras)]

    @property
    def event_fd(self) -> int:
        return self._read_fd

    def signal(self, request: FakeRequest) -> None:
        with self._lock:
            self._ready.append(request)
        os.write(self._write_fd, b"\x01")

    def get_ready_requests(self) -> List[FakeRequest]:
        try:
            while os.read(self._read_fd, 64):
                pass
        except BlockingIOError:
            pass
        with self._lock:
            ready, self._ready = self._ready, []
        return ready

    def close(self) -> None:
        os.close(self._read_fd)
        os.close(self._write_fd)


class FakeLibcamera:
    """Stand-in for the ``libcamera`` bindings module."""

    Size = FakeSize
    PixelFormat = FakePixelFormat
    StreamRole = StreamRole
    CameraConfiguration = FakeCameraConfiguration
    Request = FakeRequest
    FrameMetadata = FakeFrameMetadata
    FrameBufferAllocator = FakeFrameBufferAllocator

    def __init__(self, cameras: int = 1) -> None:
        self.events: List[str] = []
        self.manager = FakeCameraManager(self.events, cameras)
        self.CameraManager = SimpleNamespace(singleton=lambda: self.manager)

    @property
    def camera(self) -> FakeCamera:
        return self.manager.cameras[0]

    def close(self) -> None:
        self.manager.close()


class FakeSource:
    """App source double recording everything pushed into it."""

    def __init__(self, events: Optional[List[str]] = None, caps: str = "") -> None:
        self.events = events if events is not None else []
        self.caps_string = caps
        self.pushed = []
        self.results: List[PushResult] = []
        self.eos_count = 0

    def caps(self) -> str:
        return self.caps_string

    def push(self, media_buffer) -> PushResult:
        self.pushed.append(media_buffer)
        if self.results:
            return self.results.pop(0)
        return PushResult.OK

    def end_of_stream(self) -> PushResult:
        self.eos_count += 1
        self.events.append("source.eos")
        return PushResult.OK


class FakeStreamer:
    """Media pipeline double with the same lifecycle as GstRtpStreamer."""

    def __init__(self, description: str, logger, on_error, events: List[str], fail_on: Optional[str] = None) -> None:
        self.description = description
        self.logger = logger
        self.on_error = on_error
        self.events = events
        self.fail_on = fail_on
        self.app_source: Optional[FakeSource] = None

    def _record(self, step: str) -> None:
        if step == self.fail_on:
            raise PipelineError(f"{step} failed")
        self.events.append(f"pipeline.{step}")

    def build(self) -> None:
        self._record("build")

    def source(self) -> FakeSource:
        self._record("source")
        caps = self.description.split('caps="', 1)[1].split('"', 1)[0]
        self.app_source = FakeSource(self.events, caps)
        return self.app_source

    def play(self) -> None:
        self._record("play")

    def drain(self) -> bool:
        self._record("drain")
        return self.app_source is not None and self.app_source.eos_count > 0

    def close(self) -> None:
        self._record("close")


class StreamerFactory:
    """Callable used in place of GstRtpStreamer; keeps the created instance."""

    def __init__(self, events: List[str], fail_on: Optional[str] = None) -> None:
        self.events = events
        self.fail_on = fail_on
        self.streamer: Optional[FakeStreamer] = None

    def __call__(self, description: str, logger, on_error) -> FakeStreamer:
        self.streamer = FakeStreamer(description, logger, on_error, self.events, self.fail_on)
        return self.streamer


class ManualLoop:
    """
    Deterministic event loop on simulated milliseconds.

    Timers fire in due-time order; ties fire in the order they were added.
    ``run`` returns on ``quit`` or when the simulated time passes ``limit_ms``.
    """

    def __init__(self, limit_ms: int = 60_000) -> None:
        self.now = 0
        self.limit_ms = limit_ms
        self._queue = []
        self._intervals = {}
        self._ids = itertools.count(1)
        self._running = False

    def add_timer(self, interval_ms: int, callback: Callable[[], bool]) -> int:
        timer_id = next(self._ids)
        self._intervals[timer_id] = interval_ms
        heapq.heappush(self._queue, (self.now + interval_ms, timer_id, callback))
        return timer_id

    def remove_timer(self, timer_id: int) -> None:
        self._intervals.pop(timer_id, None)

    def call_at(self, at_ms: int, action: Callable[[], None]) -> None:
        """Run ``action`` once at simulated time ``at_ms``."""
        def once() -> bool:
            action()
            return False
        self.add_timer(at_ms - self.now, once)

    def monotonic_ns(self) -> int:
        return self.now * 1_000_000

    @property
    def active_timers(self) -> int:
        return len(self._intervals)

    def run_until(self, until_ms: int) -> None:
        self._running = True
        while self._running and self._queue and self._queue[0][0] <= until_ms:
            due, timer_id, callback = heapq.heappop(self._queue)
            if timer_id not in self._intervals:
                continue
            self.now = due
            if callback():
                if timer_id in self._intervals:
                    heapq.heappush(self._queue, (due + self._intervals[timer_id], timer_id, callback))
            else:
                self._intervals.pop(timer_id, None)
        if self._running:
            self.now = max(self.now, until_ms)
        self._running = False

    def run(self) -> None:
        self.run_until(self.limit_ms)

    def quit(self) -> None:
        self._running = False
