import asyncio
import base64
import time
import unittest
from unittest.mock import MagicMock, patch

import numpy as np

from labor_live.modules.playback_pipeline import PlaybackScheduler, PlaybackUnit, SoundDeviceOutput
from tests.helpers import FakeOutputDevice, pcm_fragment


class TestPlaybackScheduler(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.device = FakeOutputDevice()
        self.scheduler = PlaybackScheduler(device_factory=lambda: self.device)

    async def test_device_created_lazily_and_resumed(self):
        self.assertIsNone(self.scheduler.device)
        await self.scheduler.schedule(pcm_fragment(0.1))
        self.assertIs(self.scheduler.device, self.device)
        self.assertEqual(self.device.resume_calls, 1)

        await self.scheduler.schedule(pcm_fragment(0.1))
        self.assertEqual(self.device.resume_calls, 1)

    async def test_fragments_play_back_to_back(self):
        first = await self.scheduler.schedule(pcm_fragment(0.5))
        second = await self.scheduler.schedule(pcm_fragment(0.25))
        self.assertAlmostEqual(first.start_time, 0.0)
        self.assertAlmostEqual(second.start_time, 0.5)
        self.assertAlmostEqual(self.scheduler.next_start_time, 0.75)

    async def test_start_clamped_to_device_clock(self):
        await self.scheduler.schedule(pcm_fragment(0.5))
        # Device ran past the scheduled audio (an underrun)
        self.device.current_time = 2.0
        unit = await self.scheduler.schedule(pcm_fragment(0.5))
        self.assertAlmostEqual(unit.start_time, 2.0)
        self.assertAlmostEqual(self.scheduler.next_start_time, 2.5)

    async def test_never_schedules_in_the_past(self):
        self.device.current_time = 1.0
        unit = await self.scheduler.schedule(pcm_fragment(0.2))
        self.assertGreaterEqual(unit.start_time, 1.0)

    async def test_decode_scales_signed_pcm(self):
        raw = np.array([0, 16384, -32768], dtype="<i2").tobytes()
        samples = self.scheduler.decode(base64.b64encode(raw).decode("ascii"))
        np.testing.assert_allclose(samples, [0.0, 0.5, -1.0])
        self.assertEqual(samples.dtype, np.float32)

    async def test_raw_bytes_accepted(self):
        raw = np.zeros(2400, dtype="<i2").tobytes()
        unit = await self.scheduler.schedule(raw)
        self.assertAlmostEqual(unit.duration, 0.1)

    async def test_undecodable_fragment_is_skipped(self):
        self.assertIsNone(await self.scheduler.schedule("not base64!!"))
        self.assertIsNone(await self.scheduler.schedule(base64.b64encode(b"abc").decode("ascii")))
        self.assertEqual(self.device.started, [])
        self.assertEqual(self.scheduler.next_start_time, 0.0)

    async def test_completed_unit_leaves_live_set(self):
        unit = await self.scheduler.schedule(pcm_fragment(0.1))
        self.assertIn(unit, self.scheduler.active_units)
        unit._finish()
        self.assertNotIn(unit, self.scheduler.active_units)

    async def test_close_stops_everything_and_resets_clock(self):
        units = [await self.scheduler.schedule(pcm_fragment(0.5)) for _ in range(3)]
        await self.scheduler.close()

        self.assertTrue(all(u.stopped for u in units))
        self.assertEqual(len(self.device.stopped), 3)
        self.assertEqual(self.scheduler.active_units, set())
        self.assertEqual(self.scheduler.next_start_time, 0.0)
        self.assertEqual(self.device.close_calls, 1)

        await self.scheduler.close()
        self.assertEqual(self.device.close_calls, 1)
        self.assertIsNone(await self.scheduler.schedule(pcm_fragment(0.1)))

    async def test_device_failure_drops_fragment(self):
        def broken():
            raise RuntimeError("no output device")

        scheduler = PlaybackScheduler(device_factory=broken)
        self.assertIsNone(await scheduler.schedule(pcm_fragment(0.1)))
        self.assertEqual(scheduler.next_start_time, 0.0)


class SlowOutputStream:
    """Stands in for sounddevice.OutputStream; start() blocks like a real device open."""

    def __init__(self, start_delay=0.1, fail=False, **kwargs):
        self.start_delay = start_delay
        self.fail = fail
        self.calls = []

    def start(self):
        time.sleep(self.start_delay)
        if self.fail:
            raise RuntimeError("device busy")
        self.calls.append("start")

    def stop(self):
        self.calls.append("stop")

    def close(self):
        self.calls.append("close")


class TestSoundDeviceOutput(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.streams = []
        self.fail_start = False
        sd = MagicMock()
        sd.OutputStream.side_effect = self.open_stream
        patcher = patch.dict("sys.modules", {"sounddevice": sd})
        patcher.start()
        self.addCleanup(patcher.stop)
        self.scheduler = PlaybackScheduler(device_factory=lambda: SoundDeviceOutput(sample_rate=24000))

    def open_stream(self, **kwargs):
        stream = SlowOutputStream(fail=self.fail_start, **kwargs)
        self.streams.append(stream)
        return stream

    async def test_close_while_stream_starting_releases_it(self):
        pending = asyncio.get_running_loop().create_task(self.scheduler.schedule(pcm_fragment(0.5)))
        await asyncio.sleep(0.02)
        await self.scheduler.close()

        self.assertIsNone(await pending)
        self.assertEqual(self.streams[0].calls, ["start", "stop", "close"])

    async def test_cancelled_start_is_released_on_close(self):
        pending = asyncio.get_running_loop().create_task(self.scheduler.schedule(pcm_fragment(0.5)))
        await asyncio.sleep(0.02)
        pending.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await pending
        await self.scheduler.close()

        self.assertEqual(self.streams[0].calls, ["start", "stop", "close"])

    async def test_failed_start_closes_stream_and_allows_retry(self):
        self.fail_start = True
        self.assertIsNone(await self.scheduler.schedule(pcm_fragment(0.1)))
        self.assertEqual(self.streams[0].calls, ["close"])
        self.assertEqual(self.scheduler.device.state, "suspended")

        self.fail_start = False
        unit = await self.scheduler.schedule(pcm_fragment(0.1))
        self.assertIsNotNone(unit)
        self.assertEqual(self.scheduler.device.state, "running")
        await self.scheduler.close()
        self.assertEqual(self.streams[1].calls, ["start", "stop", "close"])


class TestPlaybackUnit(unittest.TestCase):
    def test_stop_is_idempotent(self):
        device = FakeOutputDevice()
        unit = PlaybackUnit(np.zeros(240, dtype=np.float32), 0.0, 24000)
        device.start_unit(unit)
        unit.stop()
        unit.stop()
        self.assertEqual(device.stopped, [unit])

    def test_stop_after_natural_end_is_noop(self):
        device = FakeOutputDevice()
        unit = PlaybackUnit(np.zeros(240, dtype=np.float32), 0.0, 24000)
        device.start_unit(unit)
        finished = []
        unit.add_done_callback(finished.append)
        unit._finish()
        unit.stop()
        self.assertEqual(finished, [unit])
        self.assertEqual(device.stopped, [])


if __name__ == "__main__":
    unittest.main()
