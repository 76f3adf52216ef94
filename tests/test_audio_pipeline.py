import asyncio
import base64
import unittest

import numpy as np

from labor_live.modules.audio_pipeline import AudioEncoder, AudioPipeline
from tests.helpers import FakeMicrophone, FakeTransport, settle


class TestAudioEncoder(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.queue = asyncio.Queue(maxsize=4)
        self.encoder = AudioEncoder(asyncio.get_running_loop(), self.queue, source_rate=16000)

    async def asyncTearDown(self):
        self.encoder.close()

    def test_quantize_clamps_and_truncates(self):
        pcm = AudioEncoder.quantize(np.array([0.0, 0.5, -0.5, 1.5, -2.0], dtype=np.float32))
        self.assertEqual(pcm.dtype, np.dtype("<i2"))
        # 0.5 * 32767 = 16383.5 truncates toward zero
        self.assertEqual(pcm.tolist(), [0, 16383, -16383, 32767, -32767])

    def test_encode_emits_fixed_size_frames(self):
        chunks = self.encoder.encode(np.zeros(1500, dtype=np.float32))
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].mime_type, "audio/pcm;rate=16000")
        self.assertEqual(len(base64.b64decode(chunks[0].data)), 1024 * 2)

        # The 476 leftover samples complete the next frame
        chunks = self.encoder.encode(np.zeros(548, dtype=np.float32))
        self.assertEqual(len(chunks), 1)

    def test_resample_to_target_rate(self):
        encoder = AudioEncoder(None, None, source_rate=48000)
        out = encoder.resample(np.zeros(4800, dtype=np.float32))
        self.assertEqual(out.size, 1600)

    def test_resample_keeps_rate_across_blocks(self):
        encoder = AudioEncoder(None, None, source_rate=44100)
        total = sum(encoder.resample(np.zeros(1024, dtype=np.float32)).size for _ in range(100))
        self.assertLessEqual(abs(total - 102400 * 16000 / 44100), 1)

    def test_blockwise_resample_matches_one_shot(self):
        ramp = np.linspace(-1.0, 1.0, 4410, dtype=np.float32)
        whole = AudioEncoder(None, None, source_rate=44100).resample(ramp)

        streaming = AudioEncoder(None, None, source_rate=44100)
        pieces = [streaming.resample(ramp[i:i + 441]) for i in range(0, ramp.size, 441)]
        np.testing.assert_allclose(np.concatenate(pieces), whole, atol=1e-5)

    def test_stereo_is_downmixed(self):
        chunks = self.encoder.encode(np.full((1024, 2), 0.5, dtype=np.float32))
        pcm = np.frombuffer(base64.b64decode(chunks[0].data), dtype="<i2")
        self.assertTrue(np.all(pcm == 16383))

    async def test_worker_hands_frames_to_loop(self):
        self.encoder.start()
        self.encoder.feed(np.zeros(2048, dtype=np.float32))
        first = await asyncio.wait_for(self.queue.get(), timeout=2)
        second = await asyncio.wait_for(self.queue.get(), timeout=2)
        self.assertEqual(first.mime_type, "audio/pcm;rate=16000")
        self.assertEqual(second.mime_type, "audio/pcm;rate=16000")
        self.assertEqual(self.encoder.frames_encoded, 2)

    async def test_full_queue_drops_frames(self):
        self.encoder.start()
        self.encoder.feed(np.zeros(1024 * 6, dtype=np.float32))
        for _ in range(100):
            if self.encoder.drops == 2:
                break
            await asyncio.sleep(0.01)
        await settle()
        self.assertEqual(self.queue.qsize(), 4)
        self.assertEqual(self.encoder.drops, 2)

    def test_close_is_idempotent(self):
        self.encoder.start()
        self.encoder.close()
        self.encoder.close()
        self.encoder.feed(np.zeros(1024, dtype=np.float32))
        self.assertEqual(self.encoder.drops, 0)


class TestAudioPipeline(unittest.IsolatedAsyncioTestCase):
    async def test_frames_reach_transport_in_order(self):
        transport = FakeTransport()
        transport.server_open()
        microphone = FakeMicrophone(sample_rate=16000)
        pipeline = AudioPipeline(transport, microphone)
        pipeline.start()

        microphone.push(np.linspace(-0.5, 0.5, 3072, dtype=np.float32))
        for _ in range(100):
            if len(transport.sent_media) == 3:
                break
            await asyncio.sleep(0.01)

        self.assertEqual(len(transport.sent_media), 3)
        first = np.frombuffer(transport.sent_media[0].raw(), dtype="<i2")
        last = np.frombuffer(transport.sent_media[2].raw(), dtype="<i2")
        self.assertLess(first[0], last[-1])

        await pipeline.close()
        self.assertEqual(microphone.listeners, [])
        await pipeline.close()

    async def test_send_failures_are_counted_not_raised(self):
        transport = FakeTransport()
        transport.server_open()
        transport.fail_sends = True
        microphone = FakeMicrophone()
        pipeline = AudioPipeline(transport, microphone)
        pipeline.start()
        microphone.push(np.zeros(1024, dtype=np.float32))
        for _ in range(100):
            if pipeline.audio_failures:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(pipeline.audio_failures, 1)
        await pipeline.close()


if __name__ == "__main__":
    unittest.main()
