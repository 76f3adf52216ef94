import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from google import genai
from google.genai import types
from websockets.exceptions import ConnectionClosedOK

from labor_live.main_utils import config
from labor_live.models import (
    AudioFragment,
    MediaChunk,
    PendingToolCall,
    ToolCallRequest,
    ToolResponse,
    TranscriptionFragment,
    TransportClosed,
    TransportError,
    TransportEvent,
    TransportOpened,
    TurnComplete,
)

logger = logging.getLogger(__name__)

SEARCH_DOCUMENTS_DECLARATION = types.FunctionDeclaration(
    name="search_documents",
    description=(
        "Search the private library of trade manuals, safety standards, code books and company "
        "procedures. Use it whenever the user's question needs specific reference material."
    ),
    parameters=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "query": types.Schema(
                type=types.Type.STRING,
                description="Natural-language description of the information to look up.",
            ),
        },
        required=["query"],
    ),
)


@dataclass
class LiveConnectSettings:
    model: str = config.LIVE_MODEL
    voice: str = config.LIVE_VOICE
    system_instruction: str = config.SYSTEM_INSTRUCTION


def build_live_config(settings: LiveConnectSettings) -> types.LiveConnectConfig:
    """Audio out, transcription both ways, one prebuilt voice, one retrieval tool."""
    return types.LiveConnectConfig(
        response_modalities=[types.Modality.AUDIO],
        system_instruction=types.Content(parts=[types.Part(text=settings.system_instruction)]),
        input_audio_transcription=types.AudioTranscriptionConfig(),
        output_audio_transcription=types.AudioTranscriptionConfig(),
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=settings.voice)
            )
        ),
        tools=[types.Tool(function_declarations=[SEARCH_DOCUMENTS_DECLARATION])],
    )


def parse_time_left(time_left_raw: Any) -> int:
    """GoAway time_left arrives as an int, a float, or a string like '50s'."""
    try:
        if isinstance(time_left_raw, (int, float)):
            return int(time_left_raw)
        if isinstance(time_left_raw, str):
            time_left_str = time_left_raw.strip().rstrip("sS").strip()
            return int(float(time_left_str)) if time_left_str else 0
        return int(time_left_raw) if time_left_raw else 0
    except (ValueError, TypeError):
        logger.warning(f"Could not parse time_left '{time_left_raw}', defaulting to 0")
        return 0


class ConnectionManager:
    """Tracks connection health so senders can tell a dead link from a hiccup."""

    DEAD_CONNECTION_INDICATORS = (
        "deadline expired",
        "connection closed",
        "connection reset",
        "connection aborted",
        "broken pipe",
        "1011",  # WebSocket close code for internal error
        "websocket",
        "session expired",
        "invalid session",
    )

    def __init__(self, max_connection_errors: int = 3):
        self.connection_alive = False
        self.connection_error_count = 0
        self.max_connection_errors = max_connection_errors

    def mark_dead(self, reason: str = "Unknown"):
        if self.connection_alive:  # Only log if it was previously alive
            logger.info(f"Marking connection as dead: {reason}")
        self.connection_alive = False
        self.connection_error_count = 0

    def mark_alive(self):
        if not self.connection_alive:
            logger.info("Connection marked as alive")
        self.connection_alive = True
        self.connection_error_count = 0

    def record_success(self):
        self.connection_error_count = 0

    def handle_error(self, error: Exception) -> bool:
        """
        Count a send error. Returns True when the connection should be treated
        as dead (a dead-connection pattern or too many errors in a row).
        """
        error_str = str(error).lower()
        self.connection_error_count += 1
        is_dead = any(indicator in error_str for indicator in self.DEAD_CONNECTION_INDICATORS)
        if is_dead or self.connection_error_count >= self.max_connection_errors:
            self.mark_dead(f"{type(error).__name__}: {error}")
            return True
        return False


class SessionTransport:
    """
    One duplex connection to the model.

    Inbound traffic and lifecycle changes are pushed onto `events` in arrival
    order. Outbound senders are best effort: they return False instead of
    raising, and once closing has begun they drop silently.
    Subclasses implement _open, _receive_loop, _close and the _send_* hooks.
    """

    def __init__(self):
        self.events: "asyncio.Queue[TransportEvent]" = asyncio.Queue()
        self.connection_manager = ConnectionManager()
        self.closing = False
        self.opened = False
        self._run_task: Optional[asyncio.Task] = None

    # --- lifecycle ---

    async def connect(self):
        if self._run_task is not None:
            raise RuntimeError("Transport already connected")
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        try:
            await self._open()
            if self.closing:
                return
            self.opened = True
            self.connection_manager.mark_alive()
            self._emit(TransportOpened())
            reason = await self._receive_loop()
            self.connection_manager.mark_dead(f"Closed by server: {reason}")
            self._emit(TransportClosed(reason or ""))
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK as e:
            self.connection_manager.mark_dead(f"Closed by server: {e}")
            self._emit(TransportClosed(str(e)))
        except Exception as e:
            self.connection_manager.mark_dead(f"{type(e).__name__}: {e}")
            if not self.closing:
                logger.error(f"Session error: {type(e).__name__}: {e}")
            self._emit(TransportError(f"{type(e).__name__}: {e}"))

    def _emit(self, event: TransportEvent):
        if not self.closing:
            self.events.put_nowait(event)

    async def close(self):
        """Idempotent. A locally requested close emits no TransportClosed event."""
        if self.closing:
            return
        self.closing = True
        self.connection_manager.mark_dead("Closed locally")
        task, self._run_task = self._run_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        try:
            await self._close()
        except Exception as e:
            logger.debug(f"Error while closing transport: {e}")

    # --- outbound ---

    async def send_media(self, chunk: MediaChunk) -> bool:
        return await self._guarded_send("media", self._send_media, chunk)

    async def send_text(self, text: str) -> bool:
        return await self._guarded_send("text", self._send_text, text)

    async def send_tool_response(self, responses: Sequence[ToolResponse]) -> bool:
        return await self._guarded_send("tool response", self._send_tool_response, list(responses))

    async def _guarded_send(self, kind: str, send, payload) -> bool:
        if self.closing or not self.connection_manager.connection_alive:
            return False
        try:
            await send(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Failures while the link is going away are expected; drop quietly
            if self.closing or not self.connection_manager.connection_alive:
                return False
            is_dead = self.connection_manager.handle_error(e)
            if is_dead:
                logger.warning(f"Connection dead, {kind} send failed: {e}")
            else:
                logger.warning(f"Error sending {kind} (will continue): {e}")
            return False
        self.connection_manager.record_success()
        return True

    # --- subclass hooks ---

    async def _open(self):
        raise NotImplementedError

    async def _receive_loop(self) -> str:
        """Pump inbound messages until the server closes cleanly; return the reason."""
        raise NotImplementedError

    async def _close(self):
        raise NotImplementedError

    async def _send_media(self, chunk: MediaChunk):
        raise NotImplementedError

    async def _send_text(self, text: str):
        raise NotImplementedError

    async def _send_tool_response(self, responses: List[ToolResponse]):
        raise NotImplementedError


class GeminiLiveTransport(SessionTransport):
    """SessionTransport over the Gemini Live API (google-genai)."""

    def __init__(self, client: genai.Client, settings: Optional[LiveConnectSettings] = None):
        super().__init__()
        self.client = client
        self.settings = settings or LiveConnectSettings()
        self.session = None
        self._stack: Optional[AsyncExitStack] = None

    async def _open(self):
        logger.info(f"Connecting to {self.settings.model} (voice: {self.settings.voice})")
        self._stack = AsyncExitStack()
        self.session = await self._stack.enter_async_context(
            self.client.aio.live.connect(model=self.settings.model, config=build_live_config(self.settings))
        )

    async def _receive_loop(self) -> str:
        while True:
            received = 0
            # receive() yields one model turn, then returns
            async for message in self.session.receive():
                received += 1
                for event in self.demultiplex(message):
                    self._emit(event)
            if received == 0:
                return "stream ended"

    @staticmethod
    def demultiplex(message) -> List[TransportEvent]:
        """Split one server message into transport events, preserving order."""
        events: List[TransportEvent] = []

        server_content = getattr(message, "server_content", None)
        if server_content is not None:
            input_tx = getattr(server_content, "input_transcription", None)
            if input_tx is not None and input_tx.text:
                events.append(TranscriptionFragment(source="input", text=input_tx.text))
            output_tx = getattr(server_content, "output_transcription", None)
            if output_tx is not None and output_tx.text:
                events.append(TranscriptionFragment(source="output", text=output_tx.text))

            model_turn = getattr(server_content, "model_turn", None)
            for part in _parts(model_turn):
                inline_data = getattr(part, "inline_data", None)
                if inline_data is not None and inline_data.data:
                    events.append(AudioFragment(data=inline_data.data))

            if getattr(server_content, "turn_complete", False):
                events.append(TurnComplete())

        tool_call = getattr(message, "tool_call", None)
        if tool_call is not None and tool_call.function_calls:
            calls = tuple(
                PendingToolCall(id=fc.id or "", name=fc.name or "", args=dict(fc.args or {}))
                for fc in tool_call.function_calls
            )
            events.append(ToolCallRequest(calls=calls))

        go_away = getattr(message, "go_away", None)
        if go_away is not None:
            time_left = parse_time_left(getattr(go_away, "time_left", 0))
            logger.warning(f"GoAway received. Server will close the session in {time_left} seconds")

        return events

    async def _close(self):
        stack, self._stack = self._stack, None
        self.session = None
        if stack is not None:
            await stack.aclose()

    async def _send_media(self, chunk: MediaChunk):
        blob = types.Blob(data=chunk.raw(), mime_type=chunk.mime_type)
        if chunk.is_audio:
            await self.session.send_realtime_input(audio=blob)
        else:
            await self.session.send_realtime_input(video=blob)

    async def _send_text(self, text: str):
        await self.session.send_realtime_input(text=text)

    async def _send_tool_response(self, responses: List[ToolResponse]):
        await self.session.send_tool_response(
            function_responses=[
                types.FunctionResponse(id=r.id or None, name=r.name, response=r.payload())
                for r in responses
            ]
        )


def _parts(model_turn) -> Iterable:
    if model_turn is None:
        return ()
    return getattr(model_turn, "parts", None) or ()
