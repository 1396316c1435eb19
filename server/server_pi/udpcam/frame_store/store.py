"""
Single-slot frame rendezvous between the capture thread and the event loop.

The capture side overwrites the slot with every completed frame; the pump
copies the latest frame out on its own cadence. Nothing is queued, so
frames that are overwritten before the pump samples them are dropped.
"""

import threading
from typing import NamedTuple


class Snapshot(NamedTuple):
    length: int
    generation: int


class FrameStore:
    """
    Mutex-protected holder of the most recent frame.

    The store owns its byte region. The region is reallocated when the
    published length changes, which in steady state happens only once.
    The generation counter increments on every publication.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._region = bytearray()
        self._length = 0
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def publish(self, data, length: int) -> int:
        """
        Replace the stored frame with the first ``length`` bytes of ``data``.

        Args:
            data: Any object supporting the buffer protocol (bytes,
                bytearray, memoryview over a mapped plane).
            length: Number of bytes to publish.

        Returns:
            The generation assigned to this publication.

        Raises:
            ValueError: If ``data`` holds fewer than ``length`` bytes.
        """
        if length < 0 or len(data) < length:
            raise ValueError(f"cannot publish {length} bytes from a {len(data)} byte buffer")

        with self._lock:
            if len(self._region) != length:
                self._region = bytearray(length)
            self._region[:] = data[:length]
            self._length = length
            self._generation += 1
            return self._generation

    def snapshot(self, out: bytearray) -> Snapshot:
        """
        Copy the current frame into ``out``, growing it if needed.

        Returns:
            Snapshot with the copied length and the generation it belongs
            to. ``length`` is 0 when nothing has been published yet.
        """
        with self._lock:
            length = self._length
            if len(out) < length:
                out.extend(bytes(length - len(out)))
            out[:length] = self._region
            return Snapshot(length, self._generation)
