# tests/services/test_send_failures.py
"""
Tests for failure classification and user-facing messages

Run with: pytest tests/services/test_send_failures.py -v
"""

import pytest

from app.services.send_failures import (
    ACCOUNT_NOT_CONNECTED_MESSAGE,
    DEFAULT_SEND_MESSAGE,
    MUST_ACCEPT_INVITATION_MESSAGE,
    NOT_FOUND_MESSAGE,
    REASON_ACCOUNT_NOT_CONNECTED,
    REASON_NOT_FOUND,
    REASON_OTHER,
    REASON_RECIPIENT_NOT_REACHABLE,
    build_send_user_message,
    classify_failure_reason,
    first_failure_details,
    get_error_message,
    is_forbidden_or_not_connected,
)
from app.services.unipile_client import AttemptFailure


class TestGetErrorMessage:

    def test_plain_text(self):
        assert get_error_message("  Bad gateway ") == "Bad gateway"
        assert get_error_message("   ") is None

    def test_fields(self):
        assert get_error_message({"detail": "Missing account"}) == "Missing account"
        assert get_error_message({"error": {"message": "Nested reason"}}) == "Nested reason"
        assert get_error_message({"status": 400}) is None

    def test_non_object(self):
        assert get_error_message(123) is None
        assert get_error_message(None) is None


class TestClassification:

    @pytest.mark.parametrize("details, reason", [
        ("Account not connected", REASON_ACCOUNT_NOT_CONNECTED),
        ("Forbidden", REASON_ACCOUNT_NOT_CONNECTED),
        ("Recipient is not a 1st degree connection", REASON_RECIPIENT_NOT_REACHABLE),
        ("Pending invitation", REASON_RECIPIENT_NOT_REACHABLE),
        ("This member can't be messaged", REASON_RECIPIENT_NOT_REACHABLE),
        ("Recipient is not reachable without InMail credits", REASON_RECIPIENT_NOT_REACHABLE),
        ("A Premium subscription is required", REASON_RECIPIENT_NOT_REACHABLE),
        ("Resource not found", REASON_NOT_FOUND),
        ("Something odd", REASON_OTHER),
        (None, REASON_OTHER),
    ])
    def test_reasons(self, details, reason):
        assert classify_failure_reason(details) == reason

    def test_user_messages(self):
        assert build_send_user_message(None) == DEFAULT_SEND_MESSAGE
        assert build_send_user_message("unauthorized") == ACCOUNT_NOT_CONNECTED_MESSAGE
        assert build_send_user_message("not a 1st degree connection") == MUST_ACCEPT_INVITATION_MESSAGE
        assert build_send_user_message("HTTP 404") == NOT_FOUND_MESSAGE
        assert build_send_user_message(" boom ") == "Unable to send: boom"


class TestFirstFailureDetails:

    def test_first_with_details_wins(self):
        failures = [
            AttemptFailure("/api/v1/chats/x/messages", None, None),
            {"details": "first rejection"},
            {"details": "second rejection"},
        ]
        assert first_failure_details(failures) == "first rejection"

    def test_none(self):
        assert first_failure_details([]) is None
        assert first_failure_details([{"details": "  "}]) is None


class TestForbidden:

    def test_status(self):
        assert is_forbidden_or_not_connected(401, None) is True
        assert is_forbidden_or_not_connected(403, None) is True

    def test_details(self):
        assert is_forbidden_or_not_connected(400, "This member can't be messaged") is True
        assert is_forbidden_or_not_connected(422, "Account not connected") is True
        assert is_forbidden_or_not_connected(500, "oops") is False
        assert is_forbidden_or_not_connected(None, None) is False
