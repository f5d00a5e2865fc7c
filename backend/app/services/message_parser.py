# backend/app/services/message_parser.py
"""
Message payload parsing.

The same message shows up in webhooks, list-messages responses and send
responses with different field names; parse_message reads all of them.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from app.services.identity_resolver import normalize_profile_url
from app.services.payload_normalizer import (
    JsonObject,
    get_first_boolean,
    get_first_id,
    get_first_string,
    get_path_value,
    merge_objects,
    parse_timestamp,
    to_json_object,
    utc_now,
)

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

THREAD_ID_PATHS = [
    ("thread_id",), ("threadId",),
    ("conversation_id",), ("conversationId",),
    ("chat_id",), ("chatId",),
    ("message", "thread_id"), ("message", "conversation_id"), ("message", "chat_id"),
    ("data", "thread_id"), ("data", "conversation_id"), ("data", "chat_id"),
]

MESSAGE_ID_PATHS = [
    ("message_id",), ("messageId",),
    ("id",),
    ("provider_id",), ("providerId",),
    ("message", "id"), ("message", "message_id"), ("message", "provider_id"),
    ("data", "message_id"), ("data", "id"),
]

TEXT_PATHS = [
    ("text",), ("content",), ("body",), ("message",),
    ("message", "text"), ("message", "content"), ("message", "body"),
    ("data", "text"), ("data", "content"), ("data", "body"),
]

DIRECTION_PATHS = [
    ("direction",), ("message", "direction"), ("data", "direction"),
    ("message_direction",), ("messageDirection",),
]

IS_SELF_PATHS = [
    ("is_sender",), ("from_me",), ("is_from_me",), ("is_outbound",),
    ("message", "is_sender"), ("message", "from_me"),
    ("sender", "is_self"),
]

TIMESTAMP_PATHS = [
    ("sent_at",), ("sentAt",), ("timestamp",),
    ("occurred_at",), ("occurredAt",),
    ("created_at",), ("createdAt",),
    ("message", "sent_at"), ("message", "timestamp"), ("message", "created_at"),
    ("data", "sent_at"), ("data", "timestamp"),
]

SENDER_NAME_PATHS = [
    ("data", "sender", "name"), ("data", "sender", "full_name"), ("data", "sender", "fullName"),
    ("data", "sender", "display_name"), ("data", "sender", "displayName"),
    ("data", "attendee", "name"), ("data", "attendee", "full_name"), ("data", "attendee", "fullName"),
    ("data", "contact", "name"), ("data", "contact", "full_name"), ("data", "contact", "fullName"),
    ("sender_name",), ("senderName",),
    ("sender", "name"), ("sender", "attendee_name"),
    ("author", "name"), ("from", "name"), ("contact", "name"),
]

SENDER_URL_PATHS = [
    ("data", "sender", "profile_url"), ("data", "sender", "profileUrl"),
    ("data", "sender", "linkedin_url"), ("data", "sender", "linkedinUrl"),
    ("data", "attendee", "profile_url"), ("data", "attendee", "profileUrl"),
    ("data", "attendee", "linkedin_url"), ("data", "attendee", "linkedinUrl"),
    ("data", "contact", "profile_url"), ("data", "contact", "profileUrl"),
    ("data", "contact", "linkedin_url"), ("data", "contact", "linkedinUrl"),
    ("sender_linkedin_url",), ("senderLinkedInUrl",),
    ("sender", "linkedin_url"), ("sender", "linkedinUrl"),
    ("sender", "profile_url"), ("sender", "profileUrl"),
    ("sender", "attendee_profile_url"),
    ("author", "linkedin_url"), ("author", "profile_url"),
    ("from", "linkedin_url"), ("from", "profile_url"),
    ("contact", "linkedin_url"), ("contact", "profile_url"),
    ("participant", "linkedin_url"), ("participant", "profile_url"),
]

SENDER_ATTENDEE_ID_PATHS = [
    ("sender_attendee_id",), ("senderAttendeeId",),
    ("sender", "attendee_id"), ("sender", "attendeeId"), ("sender", "id"),
    ("attendee_id",), ("attendeeId",),
    ("data", "sender_attendee_id"), ("data", "senderAttendeeId"),
    ("data", "sender", "attendee_id"), ("data", "sender", "attendeeId"), ("data", "sender", "id"),
    ("data", "attendee_id"), ("data", "attendeeId"),
]

ACCOUNT_ID_PATHS = [
    ("account_id",), ("accountId",),
    ("account", "id"), ("account", "account_id"),
    ("data", "account_id"), ("data", "accountId"),
]


@dataclass
class ParsedMessage:
    """Normalized view of one message payload."""
    thread_id: Optional[str]
    message_id: Optional[str]
    sent_at: datetime
    text: Optional[str]
    direction: str
    sender_name: Optional[str]
    sender_linkedin_url: Optional[str]
    sender_attendee_id: Optional[str] = None

    @property
    def is_inbound(self) -> bool:
        return self.direction == DIRECTION_INBOUND


def extract_direction(payload: JsonObject) -> str:
    direction = get_first_string(payload, DIRECTION_PATHS)
    if direction:
        lowered = direction.lower()
        if "out" in lowered:
            return DIRECTION_OUTBOUND
        if "in" in lowered:
            return DIRECTION_INBOUND
        if "sent" in lowered:
            return DIRECTION_OUTBOUND
        if "received" in lowered:
            return DIRECTION_INBOUND

    if get_first_boolean(payload, IS_SELF_PATHS) is True:
        return DIRECTION_OUTBOUND
    return DIRECTION_INBOUND


def extract_timestamp(payload: JsonObject) -> datetime:
    """Message time, falling back to now when absent or unparseable."""
    for path in TIMESTAMP_PATHS:
        parsed = parse_timestamp(get_path_value(payload, path))
        if parsed is not None:
            return parsed
    return utc_now()


def parse_message(payload_input: Any) -> ParsedMessage:
    payload = to_json_object(payload_input)
    return ParsedMessage(
        thread_id=get_first_id(payload, THREAD_ID_PATHS),
        message_id=get_first_id(payload, MESSAGE_ID_PATHS),
        sent_at=extract_timestamp(payload),
        text=get_first_string(payload, TEXT_PATHS),
        direction=extract_direction(payload),
        sender_name=get_first_string(payload, SENDER_NAME_PATHS),
        sender_linkedin_url=normalize_profile_url(get_first_string(payload, SENDER_URL_PATHS)),
        sender_attendee_id=get_first_id(payload, SENDER_ATTENDEE_ID_PATHS),
    )


def parse_send_response(payload: Any, thread_id: str, text: str) -> ParsedMessage:
    """Parse a send-message response: top level merged with data/message, forced outbound."""
    root = to_json_object(payload)
    merged = merge_objects(root, root.get("data"), root.get("message"))
    merged.update({
        "direction": DIRECTION_OUTBOUND,
        "thread_id": thread_id,
        "text": text,
    })
    return parse_message(merged)


def extract_account_id(payload: Any) -> Optional[str]:
    return get_first_id(payload, ACCOUNT_ID_PATHS)
