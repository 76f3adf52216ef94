import asyncio
import logging
import time
from typing import Callable, List, Optional, Set

from labor_live.errors import SessionStateError
from labor_live.main_utils import config
from labor_live.models import (
    STARTABLE_STATES,
    USER,
    AudioFragment,
    PendingToolCall,
    SessionState,
    ToolCallRequest,
    TranscriptionFragment,
    TranscriptionItem,
    TransportClosed,
    TransportError,
    TransportEvent,
    TransportOpened,
    TurnComplete,
)
from labor_live.modules.audio_pipeline import AudioPipeline
from labor_live.modules.playback_pipeline import PlaybackScheduler
from labor_live.modules.transcript_pipeline import TranscriptAggregator
from labor_live.modules.video_pipeline import FrameSampler

logger = logging.getLogger(__name__)

CONNECTION_ERROR_MESSAGE = "A connection error occurred. The session has ended."
TIMEOUT_MESSAGE = "Connection timed out. Please try again."
INIT_FAILED_MESSAGE = "Failed to initialize AI session. Please check your connection and try again."
SEND_FAILED_MESSAGE = "Your message could not be sent. Please try again."


def format_duration(total_seconds: float) -> str:
    """Format a duration as a human-readable string (e.g. '5m 23s')."""
    hours = int(total_seconds // 3600)
    minutes = int((total_seconds % 3600) // 60)
    seconds = int(total_seconds % 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class LiveSession:
    """
    Everything a single connection owns. Built fresh for every start() and
    discarded after teardown; never reused for another connection.
    """

    def __init__(self, transport, playback: PlaybackScheduler, capture):
        self.transport = transport
        self.playback = playback
        self.capture = capture
        self.aggregator = TranscriptAggregator()
        self.audio_pipeline: Optional[AudioPipeline] = None
        self.frame_sampler: Optional[FrameSampler] = None
        self.timeout_handle: Optional[asyncio.TimerHandle] = None
        self.pump_task: Optional[asyncio.Task] = None
        self.tool_tasks: Set[asyncio.Task] = set()
        self.pending_tool_ids: Set[str] = set()
        self.started_at = time.time()
        self.active_since: Optional[float] = None
        self.teardown_started = False
        self._teardown_done = asyncio.Event()

    def spawn_tool_task(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self.tool_tasks.add(task)
        task.add_done_callback(self.tool_tasks.discard)
        return task

    async def teardown(self):
        """
        Release every owned resource exactly once. Safe to call from any exit
        path; later callers wait for the first teardown to finish.
        """
        if self.teardown_started:
            await self._teardown_done.wait()
            return
        self.teardown_started = True
        try:
            # Timers first so nothing new gets scheduled
            if self.timeout_handle is not None:
                self.timeout_handle.cancel()
                self.timeout_handle = None
            if self.frame_sampler is not None:
                self.frame_sampler.stop()
                self.frame_sampler = None

            if self.audio_pipeline is not None:
                await self.audio_pipeline.close()
                self.audio_pipeline = None

            if self.playback is not None:
                await self.playback.close_device()

            for task in list(self.tool_tasks):
                task.cancel()
            self.tool_tasks.clear()
            self.pending_tool_ids.clear()

            if self.transport is not None:
                await self.transport.close()
                self.transport = None

            # Force-stop whatever is still queued and reset the clock
            if self.playback is not None:
                await self.playback.close()
                self.playback = None

            self.aggregator.reset()

            pump, self.pump_task = self.pump_task, None
            if pump is not None and pump is not asyncio.current_task() and not pump.done():
                pump.cancel()

            if self.active_since is not None:
                logger.info(f"Session duration: {format_duration(time.time() - self.active_since)}")
        finally:
            self._teardown_done.set()


class SessionLifecycle:
    """
    idle -> connecting -> active -> {ended, error}

    Only transport open/error/close and the connect timeout move the state;
    every finer failure is logged and contained.
    """

    def __init__(
        self,
        transport_factory: Callable[[], object],
        dispatcher,
        playback_factory: Optional[Callable[[], PlaybackScheduler]] = None,
        connect_timeout: float = config.CONNECT_TIMEOUT,
        frame_rate: float = config.FRAME_RATE,
        jpeg_quality: int = config.JPEG_QUALITY,
        on_state_change: Optional[Callable[[SessionState, Optional[str]], None]] = None,
        on_transcript: Optional[Callable[[List[TranscriptionItem]], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.transport_factory = transport_factory
        self.dispatcher = dispatcher
        self.playback_factory = playback_factory or PlaybackScheduler
        self.connect_timeout = connect_timeout
        self.frame_rate = frame_rate
        self.jpeg_quality = jpeg_quality
        self.on_state_change = on_state_change
        self.on_transcript = on_transcript
        self.on_error = on_error

        self.state = SessionState.IDLE
        self.error_message: Optional[str] = None
        self.transcript: List[TranscriptionItem] = []
        self.session: Optional[LiveSession] = None
        self._background: Set[asyncio.Task] = set()

    # --- public API ---

    async def start(self, capture):
        if self.state not in STARTABLE_STATES:
            raise SessionStateError(f"Cannot start a session while {self.state.value}")

        previous = self.session
        self.transcript = []
        self.error_message = None
        session = None
        try:
            session = LiveSession(self.transport_factory(), self.playback_factory(), capture)
            self.session = session
            self._set_state(SessionState.CONNECTING)
            if previous is not None:
                await previous.teardown()

            loop = asyncio.get_running_loop()
            session.timeout_handle = loop.call_later(self.connect_timeout, self._on_connect_timeout, session)
            session.pump_task = loop.create_task(self._pump(session))
            logger.info("Starting live session...")
            await session.transport.connect()
        except Exception as e:
            logger.error(f"Failed to start session: {e}")
            if session is None:
                self.error_message = INIT_FAILED_MESSAGE
                self._set_state(SessionState.ERROR)
                self._report_error(INIT_FAILED_MESSAGE)
            else:
                await self._fail(session, INIT_FAILED_MESSAGE)

    async def stop(self):
        if self.state not in (SessionState.ACTIVE, SessionState.CONNECTING):
            return
        session = self.session
        if session is not None:
            await session.teardown()
        if session is self.session and self.state in (SessionState.ACTIVE, SessionState.CONNECTING):
            self._set_state(SessionState.ENDED)
            logger.info("Session stopped by user")

    async def send_text(self, message: str) -> bool:
        if self.state is not SessionState.ACTIVE or self.session is None:
            logger.warning(f"Cannot send text while session is {self.state.value}")
            return False
        text = (message or "").strip()
        if not text:
            return False

        # The server does not echo typed input back, so record it now
        self._append_transcript([TranscriptionItem(author=USER, text=text)])
        if await self.session.transport.send_text(text):
            return True
        logger.warning("Text message could not be sent")
        self._report_error(SEND_FAILED_MESSAGE)
        return False

    async def shutdown(self):
        """Process exit: release everything regardless of state."""
        session = self.session
        if session is not None:
            await session.teardown()
        if self.state in (SessionState.ACTIVE, SessionState.CONNECTING):
            self._set_state(SessionState.ENDED)
        for task in list(self._background):
            task.cancel()

    # --- internals ---

    def _set_state(self, state: SessionState):
        if state is self.state:
            return
        logger.info(f"Session state: {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state, self.error_message)

    def _report_error(self, message: str):
        if self.on_error:
            self.on_error(message)

    def _append_transcript(self, items: List[TranscriptionItem]):
        self.transcript.extend(items)
        if self.on_transcript:
            self.on_transcript(list(items))

    def _enter_error(self, session: LiveSession, message: str) -> bool:
        if session is not self.session or session.teardown_started:
            return False
        self.error_message = message
        self._set_state(SessionState.ERROR)
        self._report_error(message)
        return True

    async def _fail(self, session: LiveSession, message: str):
        if self._enter_error(session, message):
            await session.teardown()

    def _on_connect_timeout(self, session: LiveSession):
        # The handle may fire after open if the deadline already passed; check, don't race.
        # The open counts once the transport reports it, even if the pump has not seen it yet.
        session.timeout_handle = None
        if session is not self.session or self.state is not SessionState.CONNECTING:
            return
        if session.transport is not None and session.transport.opened:
            logger.debug("Connect deadline passed after the transport opened, ignoring")
            return
        logger.error(f"No connection after {self.connect_timeout:g}s, giving up")
        if self._enter_error(session, TIMEOUT_MESSAGE):
            task = asyncio.get_running_loop().create_task(session.teardown())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _pump(self, session: LiveSession):
        """Consume transport events strictly in arrival order."""
        events = session.transport.events
        while True:
            event = await events.get()
            if session is not self.session or session.teardown_started:
                return
            try:
                keep_going = await self._handle_event(session, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Error handling {type(event).__name__}")
                continue
            if not keep_going:
                return

    async def _handle_event(self, session: LiveSession, event: TransportEvent) -> bool:
        if isinstance(event, TransportOpened):
            self._activate(session)
        elif isinstance(event, TranscriptionFragment):
            session.aggregator.add_fragment(event.source, event.text)
        elif isinstance(event, TurnComplete):
            items = session.aggregator.complete_turn()
            if items:
                self._append_transcript(items)
        elif isinstance(event, AudioFragment):
            await session.playback.schedule(event.data)
        elif isinstance(event, ToolCallRequest):
            for call in event.calls:
                self._start_tool_call(session, call)
        elif isinstance(event, TransportError):
            logger.error(f"Session error: {event.message}")
            await self._fail(session, CONNECTION_ERROR_MESSAGE)
            return False
        elif isinstance(event, TransportClosed):
            logger.info(f"Connection closed by server {event.reason}".rstrip())
            self._set_state(SessionState.ENDED)
            await session.teardown()
            return False
        else:
            logger.warning(f"Ignoring unknown transport event: {event!r}")
        return True

    def _activate(self, session: LiveSession):
        if self.state is not SessionState.CONNECTING:
            logger.warning(f"Ignoring open event while {self.state.value}")
            return
        if session.timeout_handle is not None:
            session.timeout_handle.cancel()
            session.timeout_handle = None
        session.active_since = time.time()
        self._set_state(SessionState.ACTIVE)
        self._wire_capture(session)

    def _wire_capture(self, session: LiveSession):
        """Hook microphone and camera to the transport. Only ever runs once the link is open."""
        capture = session.capture
        audio = getattr(capture, "audio", None)
        video = getattr(capture, "video", None)
        if audio is not None:
            try:
                session.audio_pipeline = AudioPipeline(session.transport, audio)
                session.audio_pipeline.start()
            except Exception as e:
                logger.error(f"Could not start audio capture: {e}")
        if video is not None:
            session.frame_sampler = FrameSampler(session.transport, video,
                                                 frame_rate=self.frame_rate, jpeg_quality=self.jpeg_quality)
            session.frame_sampler.start()

    def _start_tool_call(self, session: LiveSession, call: PendingToolCall):
        if call.id and call.id in session.pending_tool_ids:
            logger.warning(f"Tool call {call.id} is already being answered, ignoring duplicate")
            return
        session.pending_tool_ids.add(call.id)
        session.spawn_tool_task(self._answer_tool_call(session, call))

    async def _answer_tool_call(self, session: LiveSession, call: PendingToolCall):
        try:
            response = await self.dispatcher.dispatch(call)
            transport = session.transport
            if transport is None or not await transport.send_tool_response([response]):
                logger.warning(f"Tool response for {call.id} ({call.name}) could not be sent")
        finally:
            session.pending_tool_ids.discard(call.id)
