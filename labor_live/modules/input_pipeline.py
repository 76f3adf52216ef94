import asyncio
import threading
import time
from typing import Callable, Optional

from labor_live.main_utils.live_logger import get_live_logger

logger = get_live_logger(__name__)

QUIT_COMMANDS = {"q", "quit", "exit"}


class InputPipeline:
    """
    Reads typed lines on a persistent thread and feeds them to the session.
    The thread outlives individual sessions; 'q' or EOF ends the loop.
    """

    def __init__(self, send: Callable[[str], "asyncio.Future"], read_line: Callable[[], str] = input):
        self.send = send
        self.read_line = read_line
        self.user_input_queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=20)
        self.input_thread: Optional[threading.Thread] = None

    def start(self, loop: asyncio.AbstractEventLoop):
        """Start the persistent input thread."""
        if self.input_thread is None or not self.input_thread.is_alive():
            self.input_thread = threading.Thread(target=self._input_loop, args=(loop,), daemon=True)
            self.input_thread.start()
            logger.debug("Persistent input thread started")

    def _put(self, text: Optional[str]):
        try:
            self.user_input_queue.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("Input queue full, dropping typed line")

    def _input_loop(self, loop: asyncio.AbstractEventLoop):
        while True:
            try:
                # This blocks the thread, not the async loop
                text = self.read_line()
            except EOFError:
                logger.debug("EOF received, exiting input thread")
                text = None
            except Exception as e:
                logger.debug(f"Error in input thread: {e}")
                time.sleep(0.1)
                continue

            if loop.is_closed() or not loop.is_running():
                break
            try:
                loop.call_soon_threadsafe(self._put, text)
            except RuntimeError:
                # Loop closed between the check and the handoff
                break
            if text is None:
                break

    async def run(self):
        """Forward typed lines until the user quits. Returns when input ends."""
        while True:
            text = await self.user_input_queue.get()
            if text is None:
                return
            stripped = text.strip()
            if not stripped:
                continue
            if stripped.lower() in QUIT_COMMANDS:
                logger.info("Exit requested from keyboard")
                return
            try:
                await self.send(stripped)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error sending text: {e}")
