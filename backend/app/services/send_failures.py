# backend/app/services/send_failures.py
"""
Translate platform failures into user-facing sentences.

The platform exposes no stable error codes, so classification is substring
matching over the error text of the most diagnostic attempt.
"""

from typing import Any, Iterable, Optional

DEFAULT_SEND_MESSAGE = "Unable to send the LinkedIn message right now."
ACCOUNT_NOT_CONNECTED_MESSAGE = "LinkedIn account is not connected or not authorized."
MUST_ACCEPT_INVITATION_MESSAGE = "Unable to send: the prospect must accept your LinkedIn invitation first."
NOT_FOUND_MESSAGE = "Unable to send: LinkedIn conversation or profile not found."
PROVIDER_ID_MISSING_MESSAGE = "Unable to send: the prospect's LinkedIn provider_id could not be found."
PROFILE_LOOKUP_FAILED_MESSAGE = "Unable to send: LinkedIn profile not found on the messaging platform."
THREAD_UPSERT_FAILED_MESSAGE = "Unable to prepare the LinkedIn thread in the inbox."
MESSAGE_PERSIST_FAILED_MESSAGE = "Message sent but saving it locally failed."

REASON_ACCOUNT_NOT_CONNECTED = "account_not_connected"
REASON_RECIPIENT_NOT_REACHABLE = "recipient_not_reachable"
REASON_NOT_FOUND = "not_found"
REASON_OTHER = "other"

_ACCOUNT_PATTERNS = ("not connected", "forbidden", "unauthorized")
_RECIPIENT_PATTERNS = ("not a 1st degree", "invitation", "relation", "connection")
_NOT_FOUND_PATTERNS = ("not found", "404")
_NOT_MESSAGEABLE_PATTERNS = ("member can't be messaged", "cannot be messaged", "not messageable")
_UNREACHABLE_PATTERNS = _RECIPIENT_PATTERNS + _NOT_MESSAGEABLE_PATTERNS + (
    "inmail", "premium", "not reachable", "cannot be reached",
)


def get_error_message(payload: Any) -> Optional[str]:
    """Best error string from a response body (plain text or error/message/details field)."""
    if isinstance(payload, str):
        return payload.strip() or None
    if not isinstance(payload, dict):
        return None
    for key in ("error", "message", "details", "detail", "title"):
        candidate = payload.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        if isinstance(candidate, dict):
            nested = get_error_message(candidate)
            if nested:
                return nested
    return None


def classify_failure_reason(details: Optional[str]) -> str:
    if not details or not details.strip():
        return REASON_OTHER
    normalized = details.strip().lower()
    if any(pattern in normalized for pattern in _ACCOUNT_PATTERNS):
        return REASON_ACCOUNT_NOT_CONNECTED
    if any(pattern in normalized for pattern in _UNREACHABLE_PATTERNS):
        return REASON_RECIPIENT_NOT_REACHABLE
    if any(pattern in normalized for pattern in _NOT_FOUND_PATTERNS):
        return REASON_NOT_FOUND
    return REASON_OTHER


def build_send_user_message(details: Optional[str]) -> str:
    if not details or not details.strip():
        return DEFAULT_SEND_MESSAGE

    reason = classify_failure_reason(details)
    if reason == REASON_ACCOUNT_NOT_CONNECTED:
        return ACCOUNT_NOT_CONNECTED_MESSAGE
    if reason == REASON_RECIPIENT_NOT_REACHABLE:
        return MUST_ACCEPT_INVITATION_MESSAGE
    if reason == REASON_NOT_FOUND:
        return NOT_FOUND_MESSAGE
    return f"Unable to send: {details.strip()}"


def first_failure_details(failures: Iterable[Any]) -> Optional[str]:
    """Details of the first attempt that carried any; the first rejection is the most telling."""
    for failure in failures:
        details = getattr(failure, "details", None)
        if details is None and isinstance(failure, dict):
            details = failure.get("details")
        if isinstance(details, str) and details.strip():
            return details
    return None


def is_forbidden_or_not_connected(status: Optional[int], details: Optional[str]) -> bool:
    if status in (401, 403):
        return True
    if not details:
        return False
    normalized = details.lower()
    if any(pattern in normalized for pattern in _NOT_MESSAGEABLE_PATTERNS):
        return True
    return any(pattern in normalized for pattern in _ACCOUNT_PATTERNS)
