# service/video_service.py
import logging
import time
from typing import List

import numpy as np
from av import VideoFrame
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaRelay

logger = logging.getLogger("video_service")


class PatternVideoTrack(VideoStreamTrack):
    """
    Synthetic video source used when no capture device is configured.
    Draws a sliding bar so the remote side can see frames are live.
    """

    def __init__(self, width: int = 640, height: int = 480):
        super().__init__()
        self.width = width
        self.height = height
        self._started = time.monotonic()
        logger.info(f"PatternVideoTrack initialized {width}x{height}")

    def render(self, elapsed: float) -> np.ndarray:
        bgr = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        bar = max(1, self.width // 16)
        x = int(elapsed * self.width / 4) % self.width
        bgr[:, x:x + bar] = (0, 200, 255)
        return bgr

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        try:
            bgr = self.render(time.monotonic() - self._started)
        except Exception as e:
            logger.error(f"PatternVideoTrack render error: {e}")
            bgr = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        frame = VideoFrame.from_ndarray(bgr, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class LocalMedia:
    """
    Local capture handle shared by consecutive sessions.

    Each session attaches its own relayed copies from ``session_tracks()`` and
    stops only those, so the sources survive a session teardown. ``stop()``
    releases the sources themselves.
    """

    def __init__(self, tracks: List[MediaStreamTrack], player=None):
        self.tracks = list(tracks)
        self.player = player
        self._relay = MediaRelay()
        self.stopped = False

    def session_tracks(self) -> List[MediaStreamTrack]:
        if self.stopped:
            raise RuntimeError("Local media already stopped")
        return [self._relay.subscribe(track) for track in self.tracks]

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()
        if self.player is not None:
            # MediaPlayer stops its worker once all of its tracks have ended
            self.player = None
        logger.info("Local media stopped")

    @property
    def kinds(self) -> List[str]:
        return [track.kind for track in self.tracks]


def pattern_media(width: int = 640, height: int = 480) -> LocalMedia:
    return LocalMedia([PatternVideoTrack(width=width, height=height)])
