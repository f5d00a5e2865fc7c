# tests/services/test_message_parser.py
"""
Tests for message payload parsing

Run with: pytest tests/services/test_message_parser.py -v
"""

import pytest
from datetime import datetime, timedelta, timezone

from app.services.message_parser import (
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    extract_account_id,
    extract_direction,
    parse_message,
    parse_send_response,
)


class TestParseMessage:

    def test_webhook_shape(self):
        parsed = parse_message({
            "account_id": "acc-1",
            "chat_id": "chat-1",
            "message_id": "msg-1",
            "message": "Hi!",
            "timestamp": "2024-05-01T10:00:00Z",
            "sender": {
                "attendee_id": "att-7",
                "attendee_name": "Jane Doe",
                "attendee_profile_url": "https://www.linkedin.com/in/jane-doe/",
            },
        })

        assert parsed.thread_id == "chat-1"
        assert parsed.message_id == "msg-1"
        assert parsed.text == "Hi!"
        assert parsed.sent_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert parsed.direction == DIRECTION_INBOUND
        assert parsed.is_inbound is True
        assert parsed.sender_name == "Jane Doe"
        assert parsed.sender_linkedin_url == "https://linkedin.com/in/jane-doe"
        assert parsed.sender_attendee_id == "att-7"

    def test_list_messages_shape(self):
        parsed = parse_message({
            "id": "msg-2",
            "chat_id": "chat-1",
            "text": "From the list endpoint",
            "is_sender": 1,
            "created_at": 1714557600000,
        })

        assert parsed.message_id == "msg-2"
        assert parsed.direction == DIRECTION_OUTBOUND
        assert parsed.sent_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_missing_timestamp_defaults_to_now(self):
        parsed = parse_message({"id": "msg-3"})

        assert abs(parsed.sent_at - datetime.now(timezone.utc)) < timedelta(seconds=5)
        assert parsed.thread_id is None
        assert parsed.text is None


class TestDirection:

    @pytest.mark.parametrize("value, expected", [
        ("OUTGOING", DIRECTION_OUTBOUND),
        ("incoming", DIRECTION_INBOUND),
        ("sent", DIRECTION_OUTBOUND),
        ("received", DIRECTION_INBOUND),
    ])
    def test_direction_field(self, value, expected):
        assert extract_direction({"direction": value}) == expected

    def test_self_flag(self):
        assert extract_direction({"from_me": "true"}) == DIRECTION_OUTBOUND
        assert extract_direction({"sender": {"is_self": False}}) == DIRECTION_INBOUND

    def test_default_inbound(self):
        assert extract_direction({}) == DIRECTION_INBOUND


class TestSendResponse:

    def test_top_level_message_id(self):
        parsed = parse_send_response({"object": "MessageSent", "message_id": "m-9"}, "chat-1", "Hello")

        assert parsed.message_id == "m-9"
        assert parsed.thread_id == "chat-1"
        assert parsed.text == "Hello"
        assert parsed.direction == DIRECTION_OUTBOUND

    def test_id_under_data(self):
        parsed = parse_send_response({"data": {"id": "m-10"}}, "chat-1", "Hello")
        assert parsed.message_id == "m-10"

    def test_no_id(self):
        assert parse_send_response("accepted", "chat-1", "Hello").message_id is None


def test_extract_account_id():
    assert extract_account_id({"account": {"id": "acc-2"}}) == "acc-2"
    assert extract_account_id({"data": {"accountId": "acc-3"}}) == "acc-3"
    assert extract_account_id({}) is None
