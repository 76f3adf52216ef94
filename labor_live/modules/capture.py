"""
Microphone and camera capture.

These sources belong to the caller (the CLI), not to a session: a session
only subscribes to the microphone and peeks at the camera's latest frame,
and never closes either of them.
"""
import logging
import threading
import time
from typing import Callable, List, Optional

import cv2
import numpy as np

from labor_live.errors import CaptureError

logger = logging.getLogger(__name__)

SampleListener = Callable[[np.ndarray], None]

# Consecutive failed reads before the buffered frame counts as stale
STALE_FRAME_FAILURES = 5


class MicrophoneSource:
    """Float32 mono microphone blocks at the device's native sample rate."""

    def __init__(self, device=None, block_size: int = 1024):
        self.device = device
        self.block_size = block_size
        self.sample_rate: Optional[int] = None
        self._listeners: List[SampleListener] = []
        self._lock = threading.Lock()
        self._stream = None

    def open(self):
        if self._stream is not None:
            return
        try:
            import sounddevice as sd

            device_info = sd.query_devices(device=self.device, kind="input")
            self.sample_rate = int(device_info["default_samplerate"])
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.block_size,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            raise CaptureError(f"Microphone unavailable or permission denied: {e}") from e
        self._stream = stream
        logger.info(f"Microphone opened: {device_info['name']} @ {self.sample_rate}Hz")

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug(f"Microphone status: {status}")
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        block = indata[:, 0].copy()
        for listener in listeners:
            listener(block)

    def add_listener(self, listener: SampleListener):
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SampleListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def close(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
            logger.info("Microphone closed")


class CameraSource:
    """
    Reads an OpenCV camera on a background thread and keeps only the newest
    frame, the way a video element always shows the current picture.
    """

    def __init__(self, index: int = 0):
        self.index = index
        self._capture = None
        self._frame: Optional[np.ndarray] = None
        self._lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def open(self):
        if self._capture is not None:
            return
        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise CaptureError(f"Cannot open camera {self.index} (missing device or permission denied)")
        self._capture = capture
        self._running = True
        self._thread = threading.Thread(target=self._read_loop, daemon=True)
        self._thread.start()
        logger.info(f"Camera {self.index} opened")

    def _read_loop(self):
        failures = 0
        while self._running:
            ret, frame = self._capture.read()
            if not ret:
                failures += 1
                if failures == 1:
                    logger.warning("Camera stopped delivering frames")
                if failures == STALE_FRAME_FAILURES:
                    with self._lock:
                        self._frame = None
                time.sleep(0.1)
                continue
            if failures:
                logger.info(f"Camera delivering frames again after {failures} failed read(s)")
                failures = 0
            with self._lock:
                self._frame = frame

    def read_frame(self) -> Optional[np.ndarray]:
        """Latest BGR frame, or None while nothing has been buffered yet."""
        with self._lock:
            return self._frame

    def close(self):
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()
            logger.info(f"Camera {self.index} closed")
        with self._lock:
            self._frame = None


class CaptureStream:
    """Microphone plus optional camera, opened and closed together."""

    def __init__(self, audio: MicrophoneSource, video: Optional[CameraSource] = None):
        self.audio = audio
        self.video = video

    def open(self):
        try:
            self.audio.open()
            if self.video is not None:
                self.video.open()
        except CaptureError:
            self.close()
            raise
        return self

    def close(self):
        if self.video is not None:
            self.video.close()
        self.audio.close()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
