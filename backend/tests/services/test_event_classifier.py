# tests/services/test_event_classifier.py
"""
Tests for webhook event classification

Run with: pytest tests/services/test_event_classifier.py -v
"""

import pytest

from app.services.event_classifier import (
    EventKind,
    classify,
    classify_payload,
    normalize_event_type,
    parse_event,
)


class TestNormalizeEventType:

    def test_separators_and_case(self):
        assert normalize_event_type(" new-message ") == "NEW_MESSAGE"
        assert normalize_event_type("message.received") == "MESSAGE_RECEIVED"
        assert normalize_event_type("Relation Accepted") == "RELATION_ACCEPTED"

    def test_missing(self):
        assert normalize_event_type(None) == "UNKNOWN"
        assert normalize_event_type("  ") == "UNKNOWN"


class TestClassify:

    @pytest.mark.parametrize("event_type, kind", [
        ("message_received", EventKind.NEW_MESSAGE),
        ("new-message", EventKind.NEW_MESSAGE),
        ("new_relation", EventKind.INVITATION_ACCEPTED),
        ("relation accepted", EventKind.INVITATION_ACCEPTED),
        ("CONNECTION_ACCEPTED", EventKind.INVITATION_ACCEPTED),
        ("invitation_sent", EventKind.INVITATION_SENT),
        ("message_reaction", EventKind.MESSAGE_REACTION),
        ("message_edited", EventKind.MESSAGE_EDIT),
        ("message_deleted", EventKind.MESSAGE_DELETE),
        ("message_delivered", EventKind.MESSAGE_DELIVERED),
        ("message-read", EventKind.MESSAGE_READ),
    ])
    def test_known_kinds(self, event_type, kind):
        assert classify(event_type) == kind

    def test_read_is_whole_word_only(self):
        assert classify("thread_updated") == EventKind.UNKNOWN

    def test_unknown(self):
        assert classify("account_status") == EventKind.UNKNOWN
        assert classify("") == EventKind.UNKNOWN

    def test_classify_payload_nested_type(self):
        assert classify_payload({"event": {"type": "new_relation"}}) == EventKind.INVITATION_ACCEPTED
        assert classify_payload({"event": "message_received"}) == EventKind.NEW_MESSAGE
        assert classify_payload({}) == EventKind.UNKNOWN


class TestParseEvent:

    def test_message_event(self):
        event = parse_event({
            "event": "message_received",
            "account_id": "acc-1",
            "chat_id": "chat-1",
            "message_id": "msg-1",
            "message": "Hello there",
        })

        assert event.kind == EventKind.NEW_MESSAGE
        assert event.event_type == "MESSAGE_RECEIVED"
        assert event.account_id == "acc-1"
        assert event.message.thread_id == "chat-1"
        assert event.message.message_id == "msg-1"
        assert event.message.text == "Hello there"

    def test_non_object_payload(self):
        event = parse_event(["not", "an", "object"])

        assert event.kind == EventKind.UNKNOWN
        assert event.account_id is None
