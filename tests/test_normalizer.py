import json
import unittest

from roomchat.events import EventKind
from roomchat.normalizer import normalize


class NormalizerTests(unittest.TestCase):
    def test_text_frame(self):
        event = normalize(json.dumps({"username": "Al", "content": "hi"}))

        self.assertEqual(event.kind, EventKind.TEXT)
        self.assertEqual(event.sender, "Al")
        self.assertEqual(event.content, "hi")
        self.assertIsNone(event.image_ref)
        self.assertIsNone(event.created_at)
        self.assertIsNone(event.sequence_key)

    def test_text_with_timestamp_gets_stamped_key(self):
        event = normalize({"username": "Al", "content": "hi", "createdAt": "2024-05-01T10:00:00Z"})

        self.assertEqual(event.kind, EventKind.TEXT)
        self.assertEqual(event.created_at, "2024-05-01T10:00:00Z")
        self.assertIsNotNone(event.sequence_key)
        self.assertEqual(event.sequence_key[0], "ts")

    def test_image_record(self):
        event = normalize(
            {
                "messageType": "image",
                "imagePath": "uploads/cat.png",
                "content": "my cat",
                "createdAt": 1714557600000,
                "username": "Bo",
            }
        )

        self.assertEqual(event.kind, EventKind.IMAGE)
        self.assertEqual(event.image_ref, "uploads/cat.png")
        self.assertEqual(event.content, "my cat")
        self.assertEqual(event.sender, "Bo")
        self.assertEqual(event.created_at, 1714557600000)
        self.assertIsNone(event.resolved_asset)

    def test_image_without_caption_has_empty_content(self):
        event = normalize({"messageType": "image", "imagePath": "a.png", "username": "Bo"})

        self.assertEqual(event.kind, EventKind.IMAGE)
        self.assertEqual(event.content, "")

    def test_image_without_path_falls_back_to_text(self):
        event = normalize({"messageType": "image", "username": "Bo", "content": "oops"})

        self.assertEqual(event.kind, EventKind.TEXT)
        self.assertIsNone(event.image_ref)

    def test_image_without_path_or_content_is_notice(self):
        payload = '{"messageType": "image", "username": "Bo"}'
        event = normalize(payload)

        self.assertEqual(event.kind, EventKind.SYSTEM_NOTICE)
        self.assertEqual(event.content, payload)

    def test_raw_string_is_notice_verbatim(self):
        event = normalize("Bo joined the room")

        self.assertEqual(event.kind, EventKind.SYSTEM_NOTICE)
        self.assertEqual(event.content, "Bo joined the room")
        self.assertEqual(event.sender, "")

    def test_malformed_json_is_notice_verbatim(self):
        payload = '{"username": "Al", "content": '
        event = normalize(payload)

        self.assertEqual(event.kind, EventKind.SYSTEM_NOTICE)
        self.assertEqual(event.content, payload)

    def test_object_missing_fields_is_notice(self):
        event = normalize({"username": "Al"})

        self.assertEqual(event.kind, EventKind.SYSTEM_NOTICE)
        self.assertEqual(json.loads(event.content), {"username": "Al"})

    def test_non_string_fields_are_notice(self):
        event = normalize({"username": 5, "content": ["x"]})

        self.assertEqual(event.kind, EventKind.SYSTEM_NOTICE)

    def test_bytes_frame(self):
        event = normalize(json.dumps({"username": "Al", "content": "héllo"}).encode("utf-8"))

        self.assertEqual(event.kind, EventKind.TEXT)
        self.assertEqual(event.content, "héllo")

    def test_invalid_utf8_bytes_is_notice(self):
        event = normalize(b"\xff\xfe\xfa")

        self.assertEqual(event.kind, EventKind.SYSTEM_NOTICE)
        self.assertTrue(event.content)

    def test_every_payload_maps_to_exactly_one_kind(self):
        payloads = [
            "",
            " ",
            "null",
            "[]",
            "[1, 2]",
            '"quoted"',
            "42",
            "{}",
            '{"content": "no sender"}',
            '{"username": "a", "content": "b", "createdAt": null}',
            '{"username": "a", "content": "b", "createdAt": ""}',
            '{"messageType": "image", "imagePath": "", "content": "c", "username": "a"}',
            '{"messageType": "video", "username": "a", "content": "b"}',
            "{" * 5000,
            b"",
            b"\x00\x01",
            None,
            12,
            3.5,
            [1, 2, 3],
            {"username": None, "content": None},
            {"nested": {"deep": [1, {"x": 2}]}},
            object(),
        ]
        for payload in payloads:
            with self.subTest(payload=repr(payload)[:40]):
                event = normalize(payload)
                self.assertIn(event.kind, set(EventKind))
                self.assertIsInstance(event.content, str)
                self.assertEqual(event.image_ref is not None, event.kind is EventKind.IMAGE)

    def test_same_message_from_history_and_live_shares_key(self):
        record = {"username": "Al", "content": "hi", "createdAt": "T1"}
        from_history = normalize(record)
        from_live = normalize(json.dumps(record))

        self.assertEqual(from_history.sequence_key, from_live.sequence_key)

    def test_different_content_gives_different_key(self):
        a = normalize({"username": "Al", "content": "hi", "createdAt": "T1"})
        b = normalize({"username": "Al", "content": "ho", "createdAt": "T1"})

        self.assertNotEqual(a.sequence_key, b.sequence_key)


if __name__ == "__main__":
    unittest.main()
