"""
Tests for the native-messaging bridge: framing, message dispatch and the
background learning feed.
"""

import io
from unittest.mock import Mock

import pytest


def frames(*messages):
    from scribeloop.bridge import encode_message

    return io.BytesIO(b"".join(encode_message(m) for m in messages))


class TestFraming:

    def test_roundtrip_and_eof(self):
        from scribeloop.bridge import read_message

        stream = frames({"type": "EDIT_DETECTED", "original": "héllo", "edited": "hello"})

        assert read_message(stream) == {"type": "EDIT_DETECTED", "original": "héllo", "edited": "hello"}
        assert read_message(stream) is None

    def test_length_prefix_is_little_endian(self):
        from scribeloop.bridge import encode_message

        frame = encode_message({"a": 1})
        assert frame[:4] == (len(frame) - 4).to_bytes(4, "little")

    @pytest.mark.parametrize("data", [
        b"\x05\x00",
        b"\x0a\x00\x00\x00abc",
        (5 * 1024 * 1024).to_bytes(4, "little"),
    ])
    def test_broken_frames(self, data):
        from scribeloop.bridge import InvalidPayload, ProtocolError, read_message

        with pytest.raises(ProtocolError) as info:
            read_message(io.BytesIO(data))
        assert not isinstance(info.value, InvalidPayload)

    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b"\xff\xfe"])
    def test_invalid_payloads(self, body):
        from scribeloop.bridge import HEADER, InvalidPayload, read_message

        with pytest.raises(InvalidPayload):
            read_message(io.BytesIO(HEADER.pack(len(body)) + body))


class TestNativeMessagingHost:

    def test_dispatch(self):
        from scribeloop.bridge import HEADER, NativeMessagingHost, encode_message

        stream = io.BytesIO(
            encode_message({"type": "CONTENT_SCRIPT_READY"})
            + encode_message({"type": "EDIT_DETECTED", "original": "a", "edited": "b", "url": "https://mail.example.com"})
            + HEADER.pack(5) + b"{bad}"
            + encode_message({"type": "EDIT_DETECTED", "original": "c", "edited": "d", "sourceURL": "https://chat.example.com"})
            + encode_message({"type": "EDIT_DETECTED", "original": "missing edited"})
            + encode_message({"type": "SOMETHING_NEW"})
        )
        on_edit = Mock()

        handled = NativeMessagingHost(stream, on_edit).serve_forever()

        assert handled == 5
        assert [c.args for c in on_edit.call_args_list] == [
            ("a", "b", "https://mail.example.com"),
            ("c", "d", "https://chat.example.com"),
        ]

    def test_broken_frame_stops(self):
        from scribeloop.bridge import NativeMessagingHost, encode_message

        stream = io.BytesIO(
            encode_message({"type": "EDIT_DETECTED", "original": "a", "edited": "b"})
            + b"\x09\x00"
        )
        on_edit = Mock()

        assert NativeMessagingHost(stream, on_edit).serve_forever() == 1
        on_edit.assert_called_once_with("a", "b", None)

    def test_raw_typing_events_are_not_edits(self):
        from scribeloop.bridge import NativeMessagingHost

        on_edit = Mock()
        host = NativeMessagingHost(
            frames({"type": "TEXT_CHANGED", "text": "Hi there"}, {"type": "FOCUS_LOST"}),
            on_edit,
        )

        assert host.serve_forever() == 2
        on_edit.assert_not_called()


class TestLearningFeed:

    def test_known_type_is_recorded(self):
        from scribeloop.bridge import LearningFeed
        from scribeloop.types import DocumentType

        store = Mock()
        feed = LearningFeed(store)
        assert feed.submit("thanks for your email", "Thanks for your email!", document_type=DocumentType.EMAIL)
        feed.shutdown()

        store.record.assert_called_once_with(DocumentType.EMAIL, "thanks for your email", "Thanks for your email!")

    def test_unknown_type_is_classified(self):
        from scribeloop.bridge import LearningFeed
        from scribeloop.types import DocumentType

        store = Mock()
        classifier = Mock()
        classifier.classify.return_value = DocumentType.MESSAGE
        feed = LearningFeed(store, classifier)
        feed.submit("c u soon", "see you soon", url="https://chat.example.com")
        feed.flush()

        classifier.classify.assert_called_once_with("c u soon")
        store.record.assert_called_once_with(DocumentType.MESSAGE, "c u soon", "see you soon")
        feed.shutdown()

    def test_classification_failure_records_unknown(self):
        from scribeloop.bridge import LearningFeed
        from scribeloop.errors import InferenceFailed
        from scribeloop.types import DocumentType

        store = Mock()
        classifier = Mock()
        classifier.classify.side_effect = InferenceFailed()
        feed = LearningFeed(store, classifier)
        feed.submit("x y z", "X Y Z")
        feed.shutdown()

        store.record.assert_called_once_with(DocumentType.UNKNOWN, "x y z", "X Y Z")

    def test_unchanged_or_blank_edits_are_dropped(self):
        from scribeloop.bridge import LearningFeed

        store = Mock()
        feed = LearningFeed(store)

        assert not feed.submit("same", "same")
        assert not feed.submit("  ", "something")
        feed.shutdown()
        store.record.assert_not_called()

    def test_store_failure_is_logged(self):
        from scribeloop.bridge import LearningFeed
        from scribeloop.errors import LearningStoreError
        from scribeloop.types import DocumentType

        store = Mock()
        store.record.side_effect = LearningStoreError("database is locked")
        metrics = Mock()
        feed = LearningFeed(store, metrics=metrics)
        feed.submit("a b", "A B", url="https://example.com", document_type=DocumentType.DOCUMENT)
        feed.submit("c d", "C D", document_type=DocumentType.DOCUMENT)
        feed.shutdown()

        assert store.record.call_count == 2
        first = metrics.log.call_args_list[0]
        assert first.args[0] == "learning_failed"
        assert first.kwargs["source_url"] == "https://example.com"
        assert first.kwargs["error"] == "database is locked"
