# backend/app/services/event_classifier.py
"""Webhook event classification."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from app.services.message_parser import ParsedMessage, extract_account_id, parse_message
from app.services.payload_normalizer import get_first_string, to_json_object


class EventKind(str, Enum):
    NEW_MESSAGE = "new_message"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_SENT = "invitation_sent"
    MESSAGE_REACTION = "message_reaction"
    MESSAGE_EDIT = "message_edit"
    MESSAGE_DELETE = "message_delete"
    MESSAGE_DELIVERED = "message_delivered"
    MESSAGE_READ = "message_read"
    UNKNOWN = "unknown"


EVENT_TYPE_PATHS = [
    ("event_type",), ("eventType",),
    ("event",), ("type",), ("name",),
    ("event", "type"), ("event", "name"),
    ("trigger",), ("action",),
    ("data", "event_type"), ("data", "event"),
]

# Checked in order; more specific patterns first so "RELATION_ACCEPTED"
# never falls through to a broader rule.
CLASSIFICATION_RULES = (
    (EventKind.INVITATION_ACCEPTED, ("NEW_RELATION", "NEW_CONNECTION", "RELATION_ACCEPTED",
                                     "CONNECTION_ACCEPTED", "INVITATION_ACCEPTED")),
    (EventKind.INVITATION_SENT, ("INVITE_SENT", "INVITATION_SENT", "RELATION_SENT")),
    (EventKind.MESSAGE_EDIT, ("MESSAGE_EDIT", "EDIT_MESSAGE")),
    (EventKind.MESSAGE_DELETE, ("MESSAGE_DELETE", "DELETE_MESSAGE")),
    (EventKind.MESSAGE_REACTION, ("REACTION",)),
    (EventKind.MESSAGE_DELIVERED, ("DELIVERED",)),
    (EventKind.MESSAGE_READ, ("READ",)),
    (EventKind.NEW_MESSAGE, ("NEW_MESSAGE", "MESSAGE_NEW", "MESSAGE_RECEIVED")),
)

_SEPARATORS = re.compile(r"[\s\-./]+")


def normalize_event_type(raw_event: Optional[str]) -> str:
    if not raw_event or not raw_event.strip():
        return "UNKNOWN"
    return _SEPARATORS.sub("_", raw_event.strip()).upper()


def extract_event_type(payload: Any) -> str:
    return normalize_event_type(get_first_string(payload, EVENT_TYPE_PATHS))


def _matches(normalized: str, tokens: set, pattern: str) -> bool:
    # Single words match whole tokens only ("READ" must not hit "THREAD").
    if "_" in pattern:
        return pattern in normalized
    return pattern in tokens


def classify(event_type: str) -> EventKind:
    normalized = normalize_event_type(event_type)
    tokens = set(normalized.split("_"))
    for kind, patterns in CLASSIFICATION_RULES:
        if any(_matches(normalized, tokens, pattern) for pattern in patterns):
            return kind
    return EventKind.UNKNOWN


def classify_payload(payload: Any) -> EventKind:
    return classify(extract_event_type(payload))


@dataclass
class ParsedEvent:
    event_type: str
    kind: EventKind
    account_id: Optional[str]
    message: ParsedMessage


def parse_event(payload_input: Any) -> ParsedEvent:
    payload = to_json_object(payload_input)
    event_type = extract_event_type(payload)
    return ParsedEvent(
        event_type=event_type,
        kind=classify(event_type),
        account_id=extract_account_id(payload),
        message=parse_message(payload),
    )
