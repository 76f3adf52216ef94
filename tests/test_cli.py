import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from labor_live import live
from labor_live.errors import CaptureError, SearchBackendError
from labor_live.modules.input_pipeline import InputPipeline


def scripted_lines(lines):
    pending = list(lines)

    def read_line():
        if not pending:
            raise EOFError
        return pending.pop(0)

    return read_line


class TestInputPipeline(unittest.IsolatedAsyncioTestCase):
    async def test_lines_forwarded_until_quit(self):
        send = AsyncMock()
        pipeline = InputPipeline(send, read_line=scripted_lines(["hello", "   ", "q", "ignored"]))
        pipeline.start(asyncio.get_running_loop())
        await asyncio.wait_for(pipeline.run(), timeout=2)
        send.assert_awaited_once_with("hello")

    async def test_eof_ends_input(self):
        send = AsyncMock()
        pipeline = InputPipeline(send, read_line=scripted_lines(["torque value?"]))
        pipeline.start(asyncio.get_running_loop())
        await asyncio.wait_for(pipeline.run(), timeout=2)
        send.assert_awaited_once_with("torque value?")

    async def test_send_errors_do_not_stop_input(self):
        send = AsyncMock(side_effect=[RuntimeError("boom"), True])
        pipeline = InputPipeline(send, read_line=scripted_lines(["one", "two"]))
        pipeline.start(asyncio.get_running_loop())
        await asyncio.wait_for(pipeline.run(), timeout=2)
        self.assertEqual(send.await_count, 2)


class TestCli(unittest.IsolatedAsyncioTestCase):
    def test_parser_defaults(self):
        args = live.build_parser().parse_args([])
        self.assertFalse(args.no_video)
        self.assertEqual(args.camera, 0)
        self.assertFalse(args.check_backend)

        args = live.build_parser().parse_args(["--no-video", "--mic", "2", "--voice", "Puck"])
        self.assertTrue(args.no_video)
        self.assertEqual(live._mic_device(args.mic), 2)
        self.assertEqual(args.voice, "Puck")
        self.assertEqual(live._mic_device("USB Audio"), "USB Audio")

    async def test_check_backend(self):
        search_client = MagicMock()
        search_client.health = AsyncMock(return_value={"status": "ok"})
        search_client.aclose = AsyncMock()
        args = live.build_parser().parse_args(["--check-backend"])
        with patch.object(live, "SearchClient", return_value=search_client):
            self.assertEqual(await live.run(args), 0)
        search_client.aclose.assert_awaited_once()

    async def test_check_backend_unreachable(self):
        search_client = MagicMock()
        search_client.health = AsyncMock(side_effect=SearchBackendError("Search backend unreachable"))
        search_client.aclose = AsyncMock()
        args = live.build_parser().parse_args(["--check-backend"])
        with patch.object(live, "SearchClient", return_value=search_client):
            self.assertEqual(await live.run(args), 1)

    async def test_capture_denied_exits_before_session(self):
        search_client = MagicMock()
        search_client.aclose = AsyncMock()
        capture = MagicMock()
        capture.open.side_effect = CaptureError("permission denied")
        args = live.build_parser().parse_args(["--no-video"])
        with patch.object(live, "SearchClient", return_value=search_client), \
                patch.object(live, "CaptureStream", return_value=capture), \
                patch.object(live, "MicrophoneSource"), \
                patch.object(live.config, "GEMINI_API_KEY", "test-key"), \
                patch.object(live, "_run_session", new_callable=AsyncMock) as run_session:
            self.assertEqual(await live.run(args), 1)
        run_session.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
