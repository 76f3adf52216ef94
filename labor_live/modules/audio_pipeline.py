import asyncio
import logging
import queue
import threading
import time
from typing import Optional

import numpy as np

from labor_live.main_utils import config
from labor_live.models import MediaChunk

logger = logging.getLogger(__name__)

INBOX_SIZE = 256  # capture blocks waiting for the encoder thread
OUT_QUEUE_SIZE = 60  # encoded frames waiting to be sent


class AudioEncoder:
    """
    Converts float microphone samples into fixed-size 16-bit PCM frames.

    Runs on its own thread so quantizing never competes with the event loop.
    Its only contact with the loop is call_soon_threadsafe onto out_queue;
    it never touches the network.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, out_queue: asyncio.Queue, source_rate: int,
                 target_rate: int = config.SEND_SAMPLE_RATE, frame_samples: int = config.AUDIO_FRAME_SAMPLES):
        self.loop = loop
        self.out_queue = out_queue
        self.source_rate = int(source_rate)
        self.target_rate = int(target_rate)
        self.frame_samples = frame_samples
        self.drops = 0
        self.frames_encoded = 0
        self._inbox: "queue.Queue[Optional[np.ndarray]]" = queue.Queue(maxsize=INBOX_SIZE)
        self._pending = np.zeros(0, dtype=np.int16)
        self._phase = 0.0
        self._tail: Optional[np.ndarray] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="audio-encoder", daemon=True)
            self._thread.start()

    def feed(self, samples: np.ndarray):
        """Called from the capture thread. Never blocks."""
        if self._closed:
            return
        try:
            self._inbox.put_nowait(np.asarray(samples, dtype=np.float32))
        except queue.Full:
            self.drops += 1

    @staticmethod
    def quantize(samples: np.ndarray) -> np.ndarray:
        clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
        return (clipped * 32767).astype("<i2")

    def resample(self, samples: np.ndarray) -> np.ndarray:
        """
        Linear interpolation that streams across blocks: the last input sample
        and the fractional read position carry over, so block boundaries
        neither drop samples nor reset the phase.
        """
        if self.source_rate == self.target_rate or samples.size == 0:
            return samples
        step = self.source_rate / self.target_rate
        x = samples if self._tail is None else np.concatenate([self._tail, samples])
        last = x.size - 1
        n_out = int(np.floor((last - self._phase) / step)) + 1 if self._phase <= last else 0
        positions = self._phase + np.arange(n_out) * step
        out = np.interp(positions, np.arange(x.size), x).astype(np.float32)
        # Next read position, measured from the sample kept as the new tail
        self._phase = self._phase + n_out * step - last
        self._tail = x[-1:]
        return out

    def encode(self, samples: np.ndarray):
        """Quantize a block and return every complete frame it finishes."""
        if samples.ndim > 1:
            samples = samples.mean(axis=1)
        pcm = self.quantize(self.resample(samples))
        self._pending = np.concatenate([self._pending, pcm])
        frames = []
        while self._pending.size >= self.frame_samples:
            frame, self._pending = self._pending[:self.frame_samples], self._pending[self.frame_samples:]
            frames.append(MediaChunk.audio(frame.tobytes(), self.target_rate))
        return frames

    def _run(self):
        while True:
            samples = self._inbox.get()
            if samples is None:
                break
            try:
                frames = self.encode(samples)
            except Exception as e:
                logger.error(f"Audio encode error: {e}")
                continue
            for chunk in frames:
                self.frames_encoded += 1
                try:
                    self.loop.call_soon_threadsafe(self._offer, chunk)
                except RuntimeError:
                    # Loop closed underneath us
                    return

    def _offer(self, chunk: MediaChunk):
        if self._closed:
            return
        try:
            self.out_queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.drops += 1

    def close(self):
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._inbox.put_nowait(None)
                break
            except queue.Full:
                try:
                    self._inbox.get_nowait()
                except queue.Empty:
                    pass
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None


class AudioPipeline:
    """Microphone -> AudioEncoder thread -> transport, in capture order."""

    def __init__(self, transport, microphone, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.transport = transport
        self.microphone = microphone
        self.loop = loop
        self.audio_out_queue: asyncio.Queue = asyncio.Queue(maxsize=OUT_QUEUE_SIZE)
        self.encoder: Optional[AudioEncoder] = None
        self._sender: Optional[asyncio.Task] = None

        # Stats
        self.audio_count = 0
        self.audio_failures = 0
        self.last_stats_time = time.time()

    def start(self):
        loop = self.loop or asyncio.get_running_loop()
        self.encoder = AudioEncoder(loop, self.audio_out_queue, source_rate=self.microphone.sample_rate)
        self.encoder.start()
        self.microphone.add_listener(self.encoder.feed)
        self._sender = loop.create_task(self.send_realtime_audio())
        logger.info(f"Audio pipeline started ({self.microphone.sample_rate}Hz -> {self.encoder.target_rate}Hz)")

    async def send_realtime_audio(self):
        while True:
            chunk = await self.audio_out_queue.get()
            if await self.transport.send_media(chunk):
                self.audio_count += 1
            else:
                self.audio_failures += 1

            current_time = time.time()
            if current_time - self.last_stats_time >= 30.0:
                rate = self.audio_count / (current_time - self.last_stats_time)
                logger.debug(f"Audio: {rate:.1f} frames/s sent, {self.audio_failures} failed, "
                             f"{self.encoder.drops if self.encoder else 0} dropped")
                self.audio_count = 0
                self.last_stats_time = current_time

    async def close(self):
        encoder, self.encoder = self.encoder, None
        if encoder is not None:
            self.microphone.remove_listener(encoder.feed)
            await asyncio.to_thread(encoder.close)
        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
