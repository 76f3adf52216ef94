import asyncio
import logging
import threading
from typing import Optional, Set

import cv2
import numpy as np

from labor_live.main_utils import config
from labor_live.models import MediaChunk

logger = logging.getLogger(__name__)


class FrameSampler:
    """
    Samples the camera's current frame at a fixed rate and streams it as JPEG.

    Each tick spawns its own cycle task, so a slow send never delays the next
    tick; frames are independent and may arrive out of order.
    """

    def __init__(self, transport, video_source, frame_rate: float = config.FRAME_RATE,
                 jpeg_quality: int = config.JPEG_QUALITY):
        self.transport = transport
        self.video_source = video_source
        self.interval = 1.0 / frame_rate
        self.jpeg_quality = jpeg_quality
        self.frame_stats = {
            "captured": 0,
            "sent": 0,
            "skipped": 0,
            "failed": 0,
        }
        self._scratch: Optional[np.ndarray] = None
        self._scratch_lock = threading.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()
        self._stopped = False

    def start(self):
        if self._timer is None and not self._stopped:
            self._timer = asyncio.get_running_loop().create_task(self._tick())
            logger.info(f"Frame sampler started ({1.0 / self.interval:g} fps, quality {self.jpeg_quality})")

    async def _tick(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while not self._stopped:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            next_tick += self.interval
            task = loop.create_task(self.sample_once())
            self._cycles.add(task)
            task.add_done_callback(self._cycles.discard)

    def _rasterize(self, frame: np.ndarray) -> bytes:
        # One scratch buffer for every cycle; reallocated only when the frame size changes
        with self._scratch_lock:
            if self._scratch is None or self._scratch.shape != frame.shape or self._scratch.dtype != frame.dtype:
                self._scratch = np.empty_like(frame)
            np.copyto(self._scratch, frame)
            ok, buffer = cv2.imencode(".jpg", self._scratch, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise ValueError("JPEG encoding failed")
        return buffer.tobytes()

    async def sample_once(self) -> bool:
        """Run one capture/encode/send cycle. Returns True when a frame was sent."""
        if self._stopped:
            return False
        frame = self.video_source.read_frame()
        if frame is None:
            self.frame_stats["skipped"] += 1
            return False

        try:
            jpeg = await asyncio.to_thread(self._rasterize, frame)
        except Exception as e:
            self.frame_stats["failed"] += 1
            logger.warning(f"Frame encode failed: {e}")
            return False
        self.frame_stats["captured"] += 1

        if self._stopped:
            return False
        if await self.transport.send_media(MediaChunk.image(jpeg)):
            self.frame_stats["sent"] += 1
            logger.debug(f"Frame sent ({len(jpeg)} bytes)")
            return True
        self.frame_stats["failed"] += 1
        return False

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._cycles):
            task.cancel()
        self._cycles.clear()
        logger.info(f"Frame sampler stopped. Captured: {self.frame_stats['captured']}, "
                    f"Sent: {self.frame_stats['sent']}, Skipped: {self.frame_stats['skipped']}, "
                    f"Failed: {self.frame_stats['failed']}")
