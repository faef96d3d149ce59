import json
import unittest

from roomchat.api import ChatAPI, decode_history, image_name
from roomchat.errors import APIError, HistoryFetchFailure
from tests.fake_backend import PNG_BYTES, TOKEN, FakeBackend


class HelperTests(unittest.TestCase):
    def test_decode_history_accepts_single_and_double_encoding(self):
        records = [{"username": "Al", "content": "hi", "createdAt": "T1"}]
        once = json.dumps(records)
        twice = json.dumps(once)

        self.assertEqual(decode_history(once), records)
        self.assertEqual(decode_history(twice), records)
        self.assertEqual(decode_history(once.encode("utf-8")), records)

    def test_decode_history_rejects_non_arrays(self):
        for body in ("{}", '"not json inside"', "nope", json.dumps(json.dumps({"a": 1}))):
            with self.subTest(body=body):
                with self.assertRaises(HistoryFetchFailure):
                    decode_history(body)

    def test_image_name_takes_last_segment(self):
        self.assertEqual(image_name("uploads/cat.png"), "cat.png")
        self.assertEqual(image_name("/images/cat.png"), "cat.png")
        self.assertEqual(image_name("uploads\\cat.png"), "cat.png")
        self.assertEqual(image_name("cat.png"), "cat.png")
        with self.assertRaises(ValueError):
            image_name("uploads/..")
        with self.assertRaises(ValueError):
            image_name("  ")

    def test_urls(self):
        api = ChatAPI("https://chat.example.com/")

        self.assertEqual(api.ws_url("abc"), "wss://chat.example.com/rooms/abc")
        self.assertEqual(api.image_url("uploads/a b.png"), "https://chat.example.com/images/a%20b.png")
        self.assertEqual(api.image_url("https://cdn.example.com/x.png"), "https://cdn.example.com/x.png")

    def test_empty_backend_url_is_rejected(self):
        with self.assertRaises(ValueError):
            ChatAPI("  ")


class ChatAPITests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        await self.backend.start()
        self.api = ChatAPI(self.backend.base_url, timeout_s=5.0)

    async def asyncTearDown(self):
        await self.api.close()
        await self.backend.close()

    async def test_login_returns_token(self):
        token = await self.api.login("al", "secret")

        self.assertEqual(token, TOKEN)

    async def test_login_failure_raises_api_error(self):
        with self.assertRaises(APIError) as ctx:
            await self.api.login("al", "wrong")

        self.assertEqual(ctx.exception.status, 401)
        self.assertTrue(ctx.exception.is_auth_error)

    async def test_signup_returns_token(self):
        self.assertEqual(await self.api.signup("al", "secret"), TOKEN)

    async def test_room_crud(self):
        rooms = await self.api.list_rooms(TOKEN)
        self.assertEqual(rooms, {"r1": "General"})

        await self.api.create_room(TOKEN, "Random")
        rooms = await self.api.list_rooms(TOKEN)
        self.assertEqual(rooms["r2"], "Random")

        await self.api.delete_room(TOKEN, "r2")
        self.assertNotIn("r2", await self.api.list_rooms(TOKEN))
        self.assertIn(f"Bearer {TOKEN}", self.backend.auth_headers)

    async def test_delete_missing_room_raises(self):
        with self.assertRaises(APIError) as ctx:
            await self.api.delete_room(TOKEN, "nope")

        self.assertEqual(ctx.exception.status, 404)

    async def test_fetch_history_double_encoded(self):
        self.backend.history = [
            {"username": "Al", "content": "hi", "createdAt": "T1", "messageType": "text"},
        ]

        records = await self.api.fetch_history(TOKEN, "r1")

        self.assertEqual(records, self.backend.history)
        self.assertEqual(self.backend.auth_headers[-1], f"Bearer {TOKEN}")

    async def test_fetch_history_single_encoded(self):
        self.backend.double_encode_history = False
        self.backend.history = [{"username": "Al", "content": "hi"}]

        self.assertEqual(await self.api.fetch_history(TOKEN, "r1"), self.backend.history)

    async def test_fetch_history_with_bad_token(self):
        with self.assertRaises(APIError) as ctx:
            await self.api.fetch_history("stale", "r1")

        self.assertTrue(ctx.exception.is_auth_error)

    async def test_fetch_history_server_error(self):
        self.backend.history_status = 500

        with self.assertRaises(APIError) as ctx:
            await self.api.fetch_history(TOKEN, "r1")

        self.assertEqual(ctx.exception.status, 500)

    async def test_fetch_history_timeout(self):
        self.backend.history_delay_s = 2.0

        with self.assertRaises(APIError):
            await self.api.fetch_history(TOKEN, "r1", timeout_s=0.1)

    async def test_fetch_image(self):
        self.backend.images["cat.png"] = PNG_BYTES

        data, content_type = await self.api.fetch_image(TOKEN, "uploads/cat.png")

        self.assertEqual(data, PNG_BYTES)
        self.assertEqual(content_type, "image/png")
        self.assertEqual(self.backend.image_requests, ["cat.png"])

    async def test_fetch_image_respects_size_limit(self):
        self.backend.images["cat.png"] = PNG_BYTES

        with self.assertRaises(APIError):
            await self.api.fetch_image(TOKEN, "cat.png", max_bytes=8)

    async def test_upload_image(self):
        response = await self.api.upload_image(
            TOKEN, "r1", PNG_BYTES, caption="look", filename="cat.png", content_type="image/png"
        )

        self.assertEqual(response, {"ok": True})
        (upload,) = self.backend.uploads
        self.assertEqual(upload["room_id"], "r1")
        self.assertEqual(upload["filename"], "cat.png")
        self.assertEqual(upload["content_type"], "image/png")
        self.assertEqual(upload["data"], PNG_BYTES)
        self.assertEqual(upload["content"], "look")

    async def test_upload_image_error_status(self):
        self.backend.upload_status = 413

        with self.assertRaises(APIError) as ctx:
            await self.api.upload_image(TOKEN, "r1", PNG_BYTES)

        self.assertEqual(ctx.exception.status, 413)

    async def test_network_failure_is_api_error(self):
        api = ChatAPI("http://127.0.0.1:9", timeout_s=2.0)
        try:
            with self.assertRaises(APIError) as ctx:
                await api.list_rooms(None)
            self.assertIsNone(ctx.exception.status)
        finally:
            await api.close()


if __name__ == "__main__":
    unittest.main()
