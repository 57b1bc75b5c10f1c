"""
Bounded audio frame queue with depth measured in seconds.

- Depth measured in seconds of audio (not frame count)
- When full, drop the OLDEST frame: stale audio is worse than a short gap
- Deterministic, synchronous behavior (no awaits)
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from audio.frames import AudioFrame


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    overflow: int = 0


class AudioFrameQueue:
    """
    Bounded FIFO queue for mono AudioFrame objects.

    Each frame's duration is derived from its byte length, so frames of
    different sizes are accounted correctly.
    """

    def __init__(self, *, max_depth_s: float, bytes_per_second: int) -> None:
        if max_depth_s <= 0:
            raise ValueError("max_depth_s must be > 0")
        if bytes_per_second <= 0:
            raise ValueError("bytes_per_second must be > 0")

        self._max_depth_s: float = max_depth_s
        self._bytes_per_second: int = bytes_per_second
        self._frames: Deque[AudioFrame] = deque()
        self._depth_bytes: int = 0
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core queue operations
    # -------------------------

    def enqueue(self, frame: AudioFrame) -> int:
        """
        Enqueue an AudioFrame, evicting the oldest frames if the bound
        would be exceeded.

        A single frame longer than the whole bound is still accepted on an
        empty queue so audio never stalls entirely.

        Returns:
            Number of frames evicted to make room.
        """
        evicted = 0
        incoming_s = len(frame.pcm_bytes) / self._bytes_per_second
        while self._frames and self.depth_seconds() + incoming_s > self._max_depth_s:
            self._pop_left()
            evicted += 1

        self.drops.overflow += evicted
        self._frames.append(frame)
        self._depth_bytes += len(frame.pcm_bytes)
        return evicted

    def push_front(self, frame: AudioFrame) -> None:
        """
        Return a frame to the head of the queue.

        Used when a send fails and the frame must be replayed first.
        Does not evict: the frame was already accounted for once.
        """
        self._frames.appendleft(frame)
        self._depth_bytes += len(frame.pcm_bytes)

    def dequeue(self) -> Optional[AudioFrame]:
        """
        Dequeue the oldest AudioFrame.

        Returns None if queue is empty.
        """
        if not self._frames:
            return None
        return self._pop_left()

    def peek(self) -> Optional[AudioFrame]:
        """View the oldest frame without removing it."""
        return self._frames[0] if self._frames else None

    def clear(self) -> int:
        """
        Drop all queued frames without counting them as overflow.

        Returns the number of frames discarded.
        """
        n = len(self._frames)
        self._frames.clear()
        self._depth_bytes = 0
        return n

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._frames)

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._frames

    def depth_seconds(self) -> float:
        """Seconds of audio currently queued."""
        return self._depth_bytes / self._bytes_per_second

    def snapshot(self) -> dict[str, float | int]:
        """
        Lightweight snapshot for logging / metrics.
        """
        return {
            "frames": len(self._frames),
            "depth_s": self.depth_seconds(),
            "dropped_overflow": self.drops.overflow,
        }

    def _pop_left(self) -> AudioFrame:
        frame = self._frames.popleft()
        self._depth_bytes -= len(frame.pcm_bytes)
        return frame
