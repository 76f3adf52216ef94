"""
labor-live: a real-time voice and video assistant for trade professionals.

Streams microphone audio and camera frames to the Gemini Live API, plays the
spoken reply, and answers the model's document-search tool calls from the
search backend.
"""
import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

import dotenv
dotenv.load_dotenv()

from google import genai

from labor_live.errors import CaptureError, SearchBackendError
from labor_live.live_ui import console, conversation, print_separator
from labor_live.main_utils import config
from labor_live.main_utils.embedding_utils import QueryEmbedder
from labor_live.main_utils.live_logger import get_live_logger, level_from_env, setup_logging
from labor_live.main_utils.search_client import SearchClient
from labor_live.models import SessionState
from labor_live.modules.capture import CameraSource, CaptureStream, MicrophoneSource
from labor_live.modules.connection_manager import GeminiLiveTransport, LiveConnectSettings
from labor_live.modules.input_pipeline import InputPipeline
from labor_live.modules.session_manager import SessionLifecycle
from labor_live.modules.tool_pipeline import ToolCallDispatcher

logger = get_live_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="labor-live", description="Live voice and video assistant")
    parser.add_argument("--no-video", action="store_true", help="audio only, do not open the camera")
    parser.add_argument("--camera", type=int, default=0, help="OpenCV camera index")
    parser.add_argument("--mic", default=None, help="input device name or index (sounddevice)")
    parser.add_argument("--voice", default=config.LIVE_VOICE, help="prebuilt voice name")
    parser.add_argument("--model", default=config.LIVE_MODEL, help="Live API model")
    parser.add_argument("--backend-url", default=config.BACKEND_URL, help="document search backend")
    parser.add_argument("--check-backend", action="store_true", help="query /api/health and exit")
    parser.add_argument("--log-file", default=config.LOG_FILE, help="also write logs to this file")
    return parser


def _mic_device(value: Optional[str]):
    if value is None:
        return None
    return int(value) if value.isdigit() else value


async def check_backend(search_client: SearchClient) -> int:
    try:
        status = await search_client.health()
    except SearchBackendError as e:
        conversation.show_error(f"Search backend unavailable: {e}")
        return 1
    console.print_json(json.dumps(status))
    return 0


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_requested: asyncio.Event):
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(stop_requested.set))


async def run(args) -> int:
    search_client = SearchClient(args.backend_url)
    try:
        if args.check_backend:
            return await check_backend(search_client)

        if not config.GEMINI_API_KEY:
            conversation.show_error("GEMINI_API_KEY is not set")
            return 1

        capture = CaptureStream(
            MicrophoneSource(device=_mic_device(args.mic)),
            None if args.no_video else CameraSource(args.camera),
        )
        try:
            capture.open()
        except CaptureError as e:
            logger.error(f"Capture unavailable: {e}")
            conversation.show_error(f"Could not access microphone or camera: {e}")
            return 1

        try:
            return await _run_session(args, capture, search_client)
        finally:
            capture.close()
    finally:
        await search_client.aclose()


async def _run_session(args, capture: CaptureStream, search_client: SearchClient) -> int:
    loop = asyncio.get_running_loop()
    client = genai.Client(api_key=config.GEMINI_API_KEY)
    settings = LiveConnectSettings(model=args.model, voice=args.voice)
    dispatcher = ToolCallDispatcher(search_client, QueryEmbedder(client))

    finished = asyncio.Event()

    def on_state_change(state: SessionState, error_message: Optional[str]):
        conversation.show_state(state, error_message)
        if state in (SessionState.ENDED, SessionState.ERROR):
            finished.set()

    lifecycle = SessionLifecycle(
        transport_factory=lambda: GeminiLiveTransport(client, settings),
        dispatcher=dispatcher,
        on_state_change=on_state_change,
        on_transcript=conversation.show_items,
        on_error=conversation.show_error,
    )
    _install_signal_handlers(loop, finished)

    input_pipeline = InputPipeline(lifecycle.send_text)
    input_pipeline.start(loop)

    print_separator("LABOR AI LIVE")
    waiters = []
    try:
        await lifecycle.start(capture)
        waiters = [loop.create_task(input_pipeline.run()), loop.create_task(finished.wait())]
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        await lifecycle.stop()
    finally:
        for task in waiters:
            task.cancel()
        await lifecycle.shutdown()
    return 1 if lifecycle.state is SessionState.ERROR else 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging("labor_live", log_file_path=args.log_file, level=level_from_env(config.LIVE_DEBUG))
    try:
        exit_code = asyncio.run(run(args))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
