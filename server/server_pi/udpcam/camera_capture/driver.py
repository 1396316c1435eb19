"""
Capture driver on top of the libcamera Python bindings.

The driver owns the camera handle, the frame buffer pool and one capture
request per buffer. Completed requests are collected on a dedicated
capture thread; each completed frame is copied into the frame store and
the request is queued again with its buffer still bound.
"""

import mmap
import selectors
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from udpcam.camera_capture.configuration import CameraConfiguration
from udpcam.constants import (
    COMPLETION_POLL_S,
    DEFAULT_BUFFER_COUNT,
    DEFAULT_PIXEL_FORMAT,
    FPS,
)
from udpcam.errors import (
    AllocationFailed,
    CameraLost,
    CameraUnavailable,
    ConfigInvalid,
    RequestBuildFailed,
    StartFailed,
    StreamerError,
)
from udpcam.frame_store.store import FrameStore


@dataclass
class FramePlane:
    """CPU mapping of one DMA buffer plane."""

    mapping: mmap.mmap
    offset: int
    length: int

    @classmethod
    def map(cls, plane) -> "FramePlane":
        # Map from the start of the fd so the offset need not be page aligned
        mapping = mmap.mmap(
            plane.fd, plane.offset + plane.length, mmap.MAP_SHARED, mmap.PROT_READ
        )
        return cls(mapping, plane.offset, plane.length)

    def view(self, length: int) -> memoryview:
        return memoryview(self.mapping)[self.offset:self.offset + length]

    def close(self) -> None:
        self.mapping.close()


def _call(error_cls, message: str, fn: Callable, *args) -> Any:
    """
    Call into the bindings and raise ``error_cls`` on failure.

    Depending on the bindings version, failures surface either as a
    RuntimeError or as a negative errno return value.
    """
    try:
        result = fn(*args)
    except RuntimeError as e:
        raise error_cls(f"{message}: {e}") from e
    if isinstance(result, int) and not isinstance(result, bool) and result < 0:
        raise error_cls(f"{message} ({result})")
    return result


class CaptureDriver:
    """
    Brings up the camera and keeps it fed with capture requests.

    Lifecycle: ``open`` -> ``configure`` -> ``allocate`` -> ``start`` ->
    ``stop`` -> ``close``. Every step raises a ``StreamerError`` subclass on
    failure and leaves nothing half-owned behind.
    """

    def __init__(
        self,
        lc,
        frame_store: FrameStore,
        logger,
        on_fatal: Optional[Callable[[StreamerError], None]] = None,
    ) -> None:
        """
        Initialize the capture driver.

        Args:
            lc: The libcamera bindings module.
            frame_store: Destination for completed frames.
            logger: JSON logger instance for structured logging.
            on_fatal: Called from the capture thread when the camera is lost.
        """
        self.lc = lc
        self.frame_store = frame_store
        self.logger = logger
        self.on_fatal = on_fatal

        self.manager = None
        self.camera = None
        self.camera_config = None
        self.stream_config = None
        self.stream = None
        self.configuration: Optional[CameraConfiguration] = None

        self.allocator = None
        self.requests: List[Any] = []
        self.planes: Dict[int, FramePlane] = {}

        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._running = False

        self.frames_completed = 0
        self.frames_skipped = 0
        self.requests_cancelled = 0

    @property
    def running(self) -> bool:
        return self._running

    def open(self) -> None:
        """
        Start the camera manager and acquire the first camera.

        Raises:
            CameraUnavailable: If no camera can be acquired.
        """
        manager = _call(CameraUnavailable, "Failed to start CameraManager", self.lc.CameraManager.singleton)

        cameras = list(manager.cameras)
        if not cameras:
            raise CameraUnavailable("No cameras available")

        # The CSI camera on a Pi is the first one listed
        camera = cameras[0]
        _call(CameraUnavailable, "Failed to acquire camera", camera.acquire)

        self.manager = manager
        self.camera = camera
        self.logger.log("info", "capture", "camera_acquired", {
            "id": camera.id,
            "count": len(cameras)
        }, f"Acquired camera {camera.id}")

    def close(self) -> None:
        """Release the camera and drop the manager. Idempotent."""
        if self.camera is not None:
            self.camera.release()
            self.logger.log("info", "capture", "camera_released", {}, "Camera released")
        self.camera = None
        self.camera_config = None
        self.stream_config = None
        self.stream = None
        self.manager = None

    def configure(
        self,
        width: int,
        height: int,
        pixel_format: str = DEFAULT_PIXEL_FORMAT,
        buffer_count: int = DEFAULT_BUFFER_COUNT,
        fps: int = FPS,
        role: str = "viewfinder",
    ) -> CameraConfiguration:
        """
        Negotiate a single-stream configuration with the camera.

        When the camera adjusts the request, the adjusted values are
        accepted as long as they still describe a supported layout.

        Returns:
            The negotiated CameraConfiguration.

        Raises:
            ConfigInvalid: If the camera cannot reach a usable configuration.
        """
        roles = {
            "viewfinder": self.lc.StreamRole.Viewfinder,
            "video": self.lc.StreamRole.VideoRecording,
        }
        camera_config = self.camera.generate_configuration([roles[role]])
        if camera_config is None:
            raise ConfigInvalid("Failed to generate camera configuration")

        stream_config = camera_config.at(0)
        self.logger.log("info", "capture", "config_default", {
            "role": role,
            "config": str(stream_config)
        }, f"Default {role} configuration is: {stream_config}")

        stream_config.size = self.lc.Size(width, height)
        stream_config.pixel_format = self.lc.PixelFormat(pixel_format)
        stream_config.buffer_count = buffer_count

        status = camera_config.validate()
        if status == self.lc.CameraConfiguration.Status.Invalid:
            raise ConfigInvalid("Camera configuration invalid")

        if status == self.lc.CameraConfiguration.Status.Adjusted:
            self.logger.log("warning", "capture", "config_adjusted", {
                "requested": f"{width}x{height}-{pixel_format}",
                "adjusted": str(stream_config)
            }, f"Camera adjusted configuration to {stream_config}")

        configuration = CameraConfiguration.from_stream_config(stream_config, fps)

        _call(ConfigInvalid, "Failed to configure camera", self.camera.configure, camera_config)

        self.camera_config = camera_config
        self.stream_config = stream_config
        self.stream = stream_config.stream
        self.configuration = configuration

        self.logger.log("info", "capture", "config_negotiated", {
            "width": configuration.width,
            "height": configuration.height,
            "pixel_format": configuration.pixel_format,
            "stride": configuration.stride,
            "buffer_count": stream_config.buffer_count
        }, f"Using camera configuration {configuration}")

        return configuration

    def allocate(self) -> None:
        """
        Allocate the buffer pool, map every buffer and build one request per buffer.

        Raises:
            AllocationFailed: If buffers cannot be allocated or mapped.
            RequestBuildFailed: If a request cannot be created or bound.
        """
        self.allocator = self.lc.FrameBufferAllocator(self.camera)
        try:
            self._allocate()
        except Exception:
            self.free()
            raise

        self.logger.log("info", "capture", "buffers_allocated", {
            "buffers": len(self.requests),
            "plane_length": self.planes[0].length
        }, f"Allocated {len(self.requests)} frame buffers")

    def _allocate(self) -> None:
        _call(AllocationFailed, "Failed to allocate buffers", self.allocator.allocate, self.stream)

        buffers = list(self.allocator.buffers(self.stream))
        if not buffers:
            raise AllocationFailed("Allocator returned no buffers")

        for index, buffer in enumerate(buffers):
            if len(buffer.planes) != 1:
                raise AllocationFailed(
                    f"Buffer {index} has {len(buffer.planes)} planes; only single-plane layouts are supported"
                )
            try:
                self.planes[index] = FramePlane.map(buffer.planes[0])
            except (OSError, ValueError) as e:
                raise AllocationFailed(f"Failed to map buffer {index}: {e}") from e

            request = _call(RequestBuildFailed, "Failed to create request", self.camera.create_request, index)
            if request is None:
                raise RequestBuildFailed("Failed to create request")

            _call(RequestBuildFailed, "Failed to add buffer", request.add_buffer, self.stream, buffer)
            self.requests.append(request)

    def free(self) -> None:
        """Unmap and free the buffer pool. Idempotent; the camera must be stopped."""
        if self._running:
            raise RuntimeError("Buffers cannot be freed while the camera is running")

        for plane in self.planes.values():
            plane.close()
        self.planes.clear()
        self.requests.clear()

        if self.allocator is not None:
            self.allocator.free(self.stream)
            self.allocator = None
            self.logger.log("info", "capture", "buffers_freed", {}, "Frame buffers freed")

    def start(self) -> None:
        """
        Start the completion thread and the camera, then queue every request.

        Raises:
            StartFailed: If the camera refuses to start or to queue a request.
        """
        if not self.requests:
            self.allocate()

        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._completion_loop,
            daemon=True,
            name="capture-completions"
        )
        self._thread.start()

        try:
            _call(StartFailed, "Failed to start camera", self.camera.start)
        except StartFailed:
            self._join_thread()
            raise

        self._running = True
        try:
            for request in self.requests:
                _call(StartFailed, "Failed to queue request", self.camera.queue_request, request)
        except StartFailed:
            self.stop_camera()
            raise

        self.logger.log("service", "capture", "camera_started", {
            "requests": len(self.requests)
        }, "Camera started")

    def stop_camera(self) -> None:
        """Stop the camera and drain in-flight requests. Idempotent."""
        if not self._running:
            return

        self._stopping.set()
        try:
            self.camera.stop()
        finally:
            self._join_thread()
            # Requests cancelled by stop() are collected here and not requeued
            if self.manager is not None:
                self.requests_cancelled += len(self.manager.get_ready_requests())
            self._running = False

        self.logger.log("info", "capture", "camera_stopped", {
            "frames": self.frames_completed,
            "skipped": self.frames_skipped,
            "cancelled": self.requests_cancelled
        }, "Camera stopped")

    def stop(self) -> None:
        """Stop the camera, wait for in-flight requests, then free the pool. Idempotent."""
        self.stop_camera()
        self.free()

    def _join_thread(self) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _completion_loop(self) -> None:
        """Capture thread: wait on the manager's event fd and dispatch completions."""
        selector = selectors.DefaultSelector()
        selector.register(self.manager.event_fd, selectors.EVENT_READ)
        try:
            while not self._stopping.is_set():
                if not selector.select(timeout=COMPLETION_POLL_S):
                    continue
                if self._stopping.is_set():
                    break
                for request in self.manager.get_ready_requests():
                    self.handle_completion(request)
        finally:
            selector.close()

    def handle_completion(self, request) -> None:
        """
        Publish a completed request's first plane and queue the request again.

        Only memory copies and the requeue happen here; this runs on the
        capture thread at sensor rate.
        """
        if self._stopping.is_set():
            return

        if request.status != self.lc.Request.Status.Complete:
            self.requests_cancelled += 1
            self._requeue(request)
            return

        plane = self.planes[request.cookie]
        # One stream per configuration, so one buffer per request
        buffer = next(iter(request.buffers.values()))
        bytes_used = buffer.metadata.planes[0].bytes_used
        length = bytes_used

        if buffer.metadata.status != self.lc.FrameMetadata.Status.Success or bytes_used == 0:
            # Failed or empty frames leave the previous frame in the store
            self.frames_skipped += 1
            self.logger.log("debug", "capture", "frame_skipped", {
                "cookie": request.cookie,
                "status": str(buffer.metadata.status),
                "bytes_used": bytes_used
            }, "Skipping frame with no payload")
            self._requeue(request)
            return

        if bytes_used > plane.length:
            self.logger.log("warning", "capture", "payload_clamped", {
                "bytes_used": bytes_used,
                "plane_length": plane.length
            }, f"payload size {bytes_used} larger than plane size {plane.length}")
            length = plane.length

        with plane.view(length) as view:
            self.frame_store.publish(view, length)
        self.frames_completed += 1

        self._requeue(request)

    def _requeue(self, request) -> None:
        if self._stopping.is_set():
            return

        request.reuse(self.lc.Request.ReuseFlag.ReuseBuffers)
        try:
            _call(CameraLost, "Failed to queue request", self.camera.queue_request, request)
        except CameraLost as error:
            # A request completing while the camera stops is simply dropped
            if self._stopping.is_set():
                return
            self.logger.log("error", "capture", "camera_lost", {
                "error": str(error)
            }, f"Camera stopped accepting requests: {error}")
            self._stopping.set()
            if self.on_fatal is not None:
                self.on_fatal(error)
