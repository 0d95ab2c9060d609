"""
Synthetic video source for the media test mode.
"""

import numpy as np
from aiortc import VideoStreamTrack
from av import VideoFrame


class NoiseVideoTrack(VideoStreamTrack):
    """Random RGB noise at the 30 fps pace of VideoStreamTrack."""

    def __init__(self, width: int = 640, height: int = 480):
        super().__init__()
        self.width = width
        self.height = height
        self.frames_sent = 0
        self._rng = np.random.default_rng()

    def next_image(self) -> np.ndarray:
        return self._rng.integers(0, 256, size=(self.height, self.width, 3), dtype=np.uint8)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()

        frame = VideoFrame.from_ndarray(self.next_image(), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        self.frames_sent += 1
        return frame
