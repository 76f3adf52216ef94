import asyncio
import base64
import binascii
import logging
import threading
from typing import Callable, List, Optional, Set, Union

import numpy as np

from labor_live.main_utils import config

logger = logging.getLogger(__name__)

CHANNELS = 1


class PlaybackUnit:
    """One decoded audio fragment pinned to a start time on the output clock."""

    def __init__(self, samples: np.ndarray, start_time: float, sample_rate: int):
        self.samples = samples
        self.start_time = start_time
        self.sample_rate = sample_rate
        self.start_frame = int(round(start_time * sample_rate))
        self.stopped = False
        self.ended = False
        self._device = None
        self._callbacks: List[Callable[["PlaybackUnit"], None]] = []

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def add_done_callback(self, fn: Callable[["PlaybackUnit"], None]):
        self._callbacks.append(fn)

    def stop(self):
        """Force-stop. Safe to call more than once or after natural completion."""
        if self.stopped or self.ended:
            return
        self.stopped = True
        if self._device is not None:
            self._device.stop_unit(self)
            self._device = None

    def _finish(self):
        if self.ended or self.stopped:
            return
        self.ended = True
        self._device = None
        for fn in self._callbacks:
            fn(self)


class SoundDeviceOutput:
    """
    Speaker output with its own clock, driven by a sounddevice callback stream.

    The clock is the number of frames rendered so far, so it only advances
    while the stream runs. The device starts suspended; resume() opens it.
    """

    def __init__(self, sample_rate: int = config.RECEIVE_SAMPLE_RATE, device=None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.sample_rate = sample_rate
        self.device = device
        self.state = "suspended"
        self._loop = loop or asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._units: List[PlaybackUnit] = []
        self._frames_rendered = 0
        self._stream = None
        self._starting: Optional[asyncio.Future] = None

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    async def resume(self):
        if self.state != "suspended":
            return
        import sounddevice as sd

        stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=CHANNELS,
            dtype="float32",
            device=self.device,
            callback=self._callback,
        )
        # Owned from here on: close() releases a stream that is still starting
        self._stream = stream
        self.state = "starting"
        self._starting = asyncio.ensure_future(asyncio.to_thread(stream.start))
        try:
            await asyncio.shield(self._starting)
        except Exception:
            if self.state == "starting":
                self.state = "suspended"
                self._stream = None
                self._starting = None
                await asyncio.to_thread(stream.close)
            raise
        if self.state != "starting":
            return
        self._starting = None
        self.state = "running"
        logger.info(f"Audio output opened at {self.sample_rate}Hz")

    def start_unit(self, unit: PlaybackUnit):
        unit._device = self
        with self._lock:
            self._units.append(unit)

    def stop_unit(self, unit: PlaybackUnit):
        with self._lock:
            if unit in self._units:
                self._units.remove(unit)

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.debug(f"Audio output status: {status}")
        outdata.fill(0)
        finished = []
        with self._lock:
            t0 = self._frames_rendered
            t1 = t0 + frames
            for unit in self._units:
                start = unit.start_frame
                end = start + len(unit.samples)
                lo, hi = max(start, t0), min(end, t1)
                if lo < hi:
                    outdata[lo - t0:hi - t0, 0] += unit.samples[lo - start:hi - start]
                if end <= t1:
                    finished.append(unit)
            for unit in finished:
                self._units.remove(unit)
            self._frames_rendered = t1
        np.clip(outdata, -1.0, 1.0, out=outdata)
        for unit in finished:
            try:
                self._loop.call_soon_threadsafe(unit._finish)
            except RuntimeError:
                # Loop already closed during shutdown
                pass

    async def close(self):
        if self.state == "closed":
            return
        self.state = "closed"
        with self._lock:
            self._units.clear()
        starting, self._starting = self._starting, None
        if starting is not None:
            # The worker thread may still be inside stream.start()
            await asyncio.gather(starting, return_exceptions=True)
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                await asyncio.to_thread(stream.stop)
            finally:
                await asyncio.to_thread(stream.close)
            logger.info("Audio output closed")


class PlaybackScheduler:
    """
    Plays model audio fragments back-to-back on the output clock.

    next_start_time never moves backwards while the scheduler is open: each
    fragment starts at max(next_start_time, device clock) and pushes the
    cursor forward by its own duration.
    """

    def __init__(self, device_factory: Optional[Callable[[], object]] = None,
                 sample_rate: int = config.RECEIVE_SAMPLE_RATE):
        self.sample_rate = sample_rate
        self.device_factory = device_factory or (lambda: SoundDeviceOutput(sample_rate=sample_rate))
        self.device = None
        self.next_start_time = 0.0
        self.active_units: Set[PlaybackUnit] = set()
        self.closed = False

    def decode(self, fragment: Union[str, bytes]) -> np.ndarray:
        """16-bit little-endian mono PCM (base64 text or raw bytes) -> float32 in [-1, 1)."""
        raw = base64.b64decode(fragment, validate=True) if isinstance(fragment, str) else bytes(fragment)
        if len(raw) % 2:
            raise ValueError(f"PCM fragment has odd length ({len(raw)} bytes)")
        return np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0

    async def schedule(self, fragment: Union[str, bytes]) -> Optional[PlaybackUnit]:
        if self.closed:
            return None
        try:
            samples = self.decode(fragment)
        except (binascii.Error, ValueError, TypeError) as e:
            logger.warning(f"Skipping undecodable audio fragment: {e}")
            return None
        if samples.size == 0:
            return None

        try:
            if self.device is None:
                self.device = self.device_factory()
            if self.device.state == "suspended":
                await self.device.resume()
        except Exception as e:
            logger.error(f"Audio output unavailable, dropping fragment: {e}")
            return None
        if self.closed:
            return None

        self.next_start_time = max(self.next_start_time, self.device.current_time)
        unit = PlaybackUnit(samples, self.next_start_time, self.sample_rate)
        unit.add_done_callback(self.active_units.discard)
        self.device.start_unit(unit)
        self.active_units.add(unit)
        self.next_start_time += unit.duration
        logger.debug(f"Scheduled {unit.duration:.3f}s of audio at t={unit.start_time:.3f}")
        return unit

    def stop_all(self):
        for unit in list(self.active_units):
            unit.stop()
        self.active_units.clear()

    async def close_device(self):
        """Release the output device. Nothing is scheduled after this."""
        self.closed = True
        device, self.device = self.device, None
        if device is not None:
            try:
                await device.close()
            except Exception as e:
                logger.error(f"Error closing audio output: {e}")

    async def close(self):
        """Idempotent: release the device, force-stop pending units, reset the clock."""
        await self.close_device()
        self.stop_all()
        self.next_start_time = 0.0
