"""Consumer-side buffer of published frames, indexed by simulated time."""

from __future__ import annotations

import bisect
from collections import deque
from typing import Deque, List, Optional, Tuple

import structlog

from scheduler import FrameChannel
from simulation import SimulationFrame

logger = structlog.get_logger(__name__)


class FramesTimeline:
    """Keeps the most recent frames pulled from a ``FrameChannel``.

    Frames of one reset epoch are stored in order of simulated time.  A
    frame from a newer epoch discards everything buffered so far, since
    its clock restarts at zero.
    """

    def __init__(self, channel: FrameChannel, max_frames: int = 1000):
        if max_frames < 1:
            raise ValueError("max_frames must be at least 1")
        self.channel = channel
        self.max_frames = max_frames
        self._frames: Deque[SimulationFrame] = deque(maxlen=max_frames)
        self._times: Deque[float] = deque(maxlen=max_frames)

    def poll_frames(self) -> int:
        """Move all pending frames from the channel into the timeline.

        Returns the number of frames received.
        """
        received = self.channel.drain()
        for frame in received:
            self.push(frame)
        return len(received)

    def push(self, frame: SimulationFrame) -> None:
        if self._frames and frame.epoch != self._frames[-1].epoch:
            logger.debug("Timeline cleared on reset", epoch=frame.epoch)
            self.clear()
        self._frames.append(frame)
        self._times.append(frame.time)

    def clear(self) -> None:
        self._frames.clear()
        self._times.clear()

    def num_frames(self) -> int:
        return len(self._frames)

    def frames(self) -> List[SimulationFrame]:
        return list(self._frames)

    def last_frame(self) -> Optional[SimulationFrame]:
        return self._frames[-1] if self._frames else None

    def last_frame_for(self, time: float) -> Optional[SimulationFrame]:
        """Latest frame whose simulated time is at or before ``time``."""
        idx = bisect.bisect_right(self._times, time)
        if idx == 0:
            return None
        return self._frames[idx - 1]

    def time_span(self) -> Optional[Tuple[float, float]]:
        if not self._frames:
            return None
        return self._times[0], self._times[-1]
