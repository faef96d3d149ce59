import asyncio
import unittest

from roomchat.api import ChatAPI
from roomchat.errors import ImageResolveFailure
from roomchat.events import ImageStatus
from roomchat.images import ImageResolver, decode_image
from roomchat.normalizer import normalize
from roomchat.timeline import Timeline
from tests.fake_backend import PNG_BYTES, TOKEN, FakeBackend, make_image


def image_event(path, created_at="T1", caption="cap"):
    return normalize(
        {
            "messageType": "image",
            "imagePath": path,
            "content": caption,
            "username": "Al",
            "createdAt": created_at,
        }
    )


class DecodeImageTests(unittest.TestCase):
    def test_detects_real_formats(self):
        for fmt, mime in (("PNG", "image/png"), ("JPEG", "image/jpeg"), ("GIF", "image/gif"), ("BMP", "image/bmp")):
            with self.subTest(fmt=fmt):
                asset = decode_image(make_image(fmt), None)
                self.assertEqual(asset.content_type, mime)

    def test_detected_format_wins_over_declared_type(self):
        asset = decode_image(PNG_BYTES, "application/octet-stream")

        self.assertEqual(asset.content_type, "image/png")
        self.assertEqual(asset.data, PNG_BYTES)
        self.assertTrue(asset.data_uri.startswith("data:image/png;base64,"))

    def test_rejects_empty_and_non_images(self):
        with self.assertRaises(ImageResolveFailure):
            decode_image(b"", "image/png")
        with self.assertRaises(ImageResolveFailure):
            decode_image(b"<html></html>", "text/html")

    def test_declared_image_type_does_not_rescue_garbage(self):
        with self.assertRaises(ImageResolveFailure):
            decode_image(b"<html>oops</html>", "image/png")

    def test_signature_followed_by_garbage_is_rejected(self):
        with self.assertRaises(ImageResolveFailure):
            decode_image(b"\x89PNG\r\n\x1a\ngarbage-not-a-png", None)

    def test_truncated_image_is_rejected(self):
        with self.assertRaises(ImageResolveFailure):
            decode_image(PNG_BYTES[: len(PNG_BYTES) // 2], "image/png")


class ImageResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        await self.backend.start()
        self.api = ChatAPI(self.backend.base_url)
        self.timeline = Timeline()
        self.resolver = ImageResolver(self.api, self.timeline, TOKEN, timeout_s=5.0)

    async def asyncTearDown(self):
        await self.resolver.cancel_all()
        await self.api.close()
        await self.backend.close()

    async def test_resolves_by_sequence_key(self):
        self.backend.images["cat.png"] = PNG_BYTES
        entry = self.timeline.append(image_event("uploads/cat.png"))
        resolved = []
        self.resolver.on_resolved = resolved.append

        task = self.resolver.resolve(entry)
        self.assertEqual(self.resolver.status(entry.sequence_key), ImageStatus.PENDING)
        await task

        stored = self.timeline.get(entry.sequence_key)
        self.assertEqual(stored.resolved_asset.data, PNG_BYTES)
        self.assertEqual(self.resolver.status(entry.sequence_key), ImageStatus.READY)
        self.assertEqual(self.backend.image_requests, ["cat.png"])
        self.assertEqual(self.backend.auth_headers[-1], f"Bearer {TOKEN}")
        self.assertEqual(resolved, [stored])

    async def test_resolution_survives_concurrent_inserts_before_entry(self):
        self.backend.images["late.png"] = PNG_BYTES
        self.backend.image_delay_s = 0.1
        entry = self.timeline.append(image_event("late.png", created_at="2024-01-01T00:00:10Z"))

        task = self.resolver.resolve(entry)
        for i in range(5):
            self.timeline.append(normalize({"username": "Bo", "content": str(i), "createdAt": f"2024-01-01T00:00:0{i}Z"}))
        await task

        snap = self.timeline.snapshot()
        self.assertEqual(snap[-1].image_ref, "late.png")
        self.assertIsNotNone(snap[-1].resolved_asset)
        self.assertTrue(all(e.resolved_asset is None for e in snap[:-1]))

    async def test_failure_leaves_caption_only_entry(self):
        entry = self.timeline.append(image_event("missing.png"))
        failures = []
        self.resolver.on_failed = lambda event, error: failures.append((event, error))

        await self.resolver.resolve(entry)

        stored = self.timeline.get(entry.sequence_key)
        self.assertIsNone(stored.resolved_asset)
        self.assertEqual(stored.content, "cap")
        self.assertEqual(self.resolver.status(entry.sequence_key), ImageStatus.FAILED)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0][1], ImageResolveFailure)

    async def test_single_attempt_per_reference(self):
        entry = self.timeline.append(image_event("missing.png"))

        await self.resolver.resolve(entry)
        self.assertIsNone(self.resolver.resolve(entry))
        self.assertEqual(self.backend.image_requests, ["missing.png"])

    async def test_oversized_image_fails(self):
        self.backend.images["big.png"] = PNG_BYTES + b"\x00" * 2048
        resolver = ImageResolver(self.api, self.timeline, TOKEN, max_bytes=1024)
        entry = self.timeline.append(image_event("big.png"))

        await resolver.resolve(entry)

        self.assertEqual(resolver.status(entry.sequence_key), ImageStatus.FAILED)
        self.assertIsNone(self.timeline.get(entry.sequence_key).resolved_asset)

    async def test_cancel_all_is_quiet_and_stops_new_work(self):
        self.backend.images["slow.png"] = PNG_BYTES
        self.backend.image_delay_s = 5.0
        entry = self.timeline.append(image_event("slow.png"))
        failures = []
        self.resolver.on_failed = lambda event, error: failures.append(error)

        task = self.resolver.resolve(entry)
        await asyncio.wait_for(self.backend.image_started.wait(), timeout=2.0)
        await self.resolver.cancel_all()

        self.assertTrue(task.cancelled())
        self.assertEqual(failures, [])
        self.assertEqual(self.resolver.pending, 0)
        self.assertEqual(self.resolver.status(entry.sequence_key), ImageStatus.NONE)
        self.assertIsNone(self.resolver.resolve(image_event("other.png", created_at="T2")))

    async def test_non_image_events_are_ignored(self):
        entry = self.timeline.append(normalize({"username": "Al", "content": "hi"}))

        self.assertIsNone(self.resolver.resolve(entry))


if __name__ == "__main__":
    unittest.main()
