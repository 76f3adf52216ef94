"""In-memory stand-ins for the transport, speakers and capture devices."""
import asyncio
import base64
from typing import List

import numpy as np

from labor_live.models import MediaChunk, ToolResponse, TransportClosed, TransportError, TransportOpened
from labor_live.modules.connection_manager import SessionTransport


def pcm_fragment(seconds: float, sample_rate: int = 24000, value: int = 1000) -> str:
    """Base64 16-bit PCM of the given length, as the model sends it."""
    samples = np.full(int(seconds * sample_rate), value, dtype="<i2")
    return base64.b64encode(samples.tobytes()).decode("ascii")


class FakeOutputDevice:
    """Output device whose clock is set by the test."""

    def __init__(self):
        self.state = "suspended"
        self.current_time = 0.0
        self.started = []
        self.stopped = []
        self.resume_calls = 0
        self.close_calls = 0

    async def resume(self):
        self.resume_calls += 1
        self.state = "running"

    def start_unit(self, unit):
        unit._device = self
        self.started.append(unit)

    def stop_unit(self, unit):
        self.stopped.append(unit)

    async def close(self):
        self.close_calls += 1
        self.state = "closed"


class FakeTransport(SessionTransport):
    """SessionTransport whose server side is driven by the test."""

    instances: List["FakeTransport"] = []

    def __init__(self, auto_open: bool = False):
        super().__init__()
        self.auto_open = auto_open
        self.connect_calls = 0
        self.close_calls = 0
        self.sent_media: List[MediaChunk] = []
        self.sent_text: List[str] = []
        self.sent_tool_responses: List[ToolResponse] = []
        self.fail_sends = False
        FakeTransport.instances.append(self)

    async def connect(self):
        self.connect_calls += 1
        if self.auto_open:
            self.server_open()

    def server_open(self):
        self.opened = True
        self.connection_manager.mark_alive()
        self._emit(TransportOpened())

    def server_push(self, event):
        self._emit(event)

    def server_error(self, message="boom"):
        self.connection_manager.mark_dead(message)
        self._emit(TransportError(message))

    def server_close(self, reason=""):
        self.connection_manager.mark_dead(reason)
        self._emit(TransportClosed(reason))

    async def _close(self):
        self.close_calls += 1

    async def _send_media(self, chunk):
        if self.fail_sends:
            raise RuntimeError("send failed")
        self.sent_media.append(chunk)

    async def _send_text(self, text):
        if self.fail_sends:
            raise RuntimeError("send failed")
        self.sent_text.append(text)

    async def _send_tool_response(self, responses):
        if self.fail_sends:
            raise RuntimeError("send failed")
        self.sent_tool_responses.extend(responses)


class FakeMicrophone:
    def __init__(self, sample_rate=16000):
        self.sample_rate = sample_rate
        self.listeners = []

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def push(self, samples):
        for listener in list(self.listeners):
            listener(samples)


class FakeCamera:
    def __init__(self, frame=None):
        self.frame = frame

    def read_frame(self):
        return self.frame


class FakeCapture:
    def __init__(self, audio=None, video=None):
        self.audio = audio
        self.video = video


class StaticDispatcher:
    """Answers every call with a fixed result after an optional delay."""

    def __init__(self, result="ok", delay=0.0):
        self.result = result
        self.delay = delay
        self.calls = []

    async def dispatch(self, call):
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        return ToolResponse(id=call.id, name=call.name, result=self.result)


async def settle(rounds: int = 5):
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
