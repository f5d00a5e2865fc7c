# backend/app/services/thread_parser.py
"""Chat/thread payload parsing shared by inbox sync and webhooks."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from app.services.attendee_resolver import ResolvedAttendee, parse_attendee_candidate
from app.services.identity_resolver import normalize_profile_url
from app.services.payload_normalizer import (
    get_first_id,
    get_first_string,
    get_path_value,
    parse_timestamp,
    to_json_object,
    truncate_preview,
    utc_now,
)

CHAT_ID_PATHS = [
    ("thread_id",), ("threadId",),
    ("conversation_id",), ("conversationId",),
    ("chat_id",), ("chatId",),
    ("id",),
]
LAST_MESSAGE_AT_PATHS = [
    ("last_message_at",), ("lastMessageAt",),
    ("updated_at",), ("updatedAt",),
    ("created_at",), ("createdAt",),
    ("timestamp",),
    ("last_message", "sent_at"), ("last_message", "created_at"),
]
PREVIEW_PATHS = [
    ("last_message_preview",), ("lastMessagePreview",),
    ("last_message", "text"), ("last_message", "content"), ("last_message", "body"),
    ("snippet",),
]
CONTACT_URL_PATHS = [
    ("contact_linkedin_url",), ("contactLinkedInUrl",),
    ("lead_linkedin_url",), ("leadLinkedInUrl",),
    ("contact", "linkedin_url"), ("contact", "linkedinUrl"),
    ("contact", "profile_url"), ("contact", "profileUrl"),
    ("participant", "linkedin_url"), ("participant", "linkedinUrl"),
    ("participant", "profile_url"), ("participant", "profileUrl"),
    ("counterpart", "linkedin_url"), ("counterpart", "linkedinUrl"),
    ("counterpart", "profile_url"), ("counterpart", "profileUrl"),
]
CONTACT_NAME_PATHS = [
    ("contact_name",), ("contactName",),
    ("contact", "name"), ("participant", "name"),
    ("counterpart", "name"), ("recipient", "name"),
]
CONTACT_AVATAR_PATHS = [
    ("contact_avatar_url",), ("contactAvatarUrl",),
    ("contact", "avatar_url"), ("contact", "avatarUrl"),
    ("contact", "photo_url"), ("contact", "photoUrl"),
    ("contact", "profile_picture_url"), ("contact", "profilePictureUrl"),
    ("participant", "avatar_url"), ("participant", "avatarUrl"),
    ("participant", "photo_url"), ("participant", "photoUrl"),
    ("counterpart", "avatar_url"), ("counterpart", "avatarUrl"),
    ("counterpart", "photo_url"), ("counterpart", "photoUrl"),
]

PARTICIPANT_ARRAY_KEYS = ("attendees", "participants", "members", "recipients", "counterparts", "users", "people")
PARTICIPANT_OBJECT_KEYS = ("participant", "recipient", "counterpart", "contact", "other")


@dataclass
class Contact:
    name: Optional[str] = None
    linkedin_url: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.linkedin_url or self.avatar_url)


@dataclass
class ParsedThread:
    thread_id: str
    last_message_at: datetime
    last_message_preview: Optional[str]
    contact: Contact


def extract_other_participant(item: Any) -> Optional[ResolvedAttendee]:
    """Counterpart of a conversation: explicit is_self=false first, then any non-self entry with identity."""
    obj = to_json_object(item)
    participants: List[ResolvedAttendee] = []

    for key in PARTICIPANT_ARRAY_KEYS:
        entries = obj.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            parsed = parse_attendee_candidate(entry)
            if parsed:
                participants.append(parsed)

    for key in PARTICIPANT_OBJECT_KEYS:
        parsed = parse_attendee_candidate(obj.get(key))
        if parsed:
            participants.append(parsed)

    for participant in participants:
        if participant.is_self is False:
            return participant
    for participant in participants:
        if participant.is_self is not True and participant.has_identity:
            return participant
    return None


def extract_contact(item: Any) -> Contact:
    other = extract_other_participant(item)
    return Contact(
        name=(other.name if other else None) or get_first_string(item, CONTACT_NAME_PATHS),
        linkedin_url=(
            (other.linkedin_url if other else None)
            or normalize_profile_url(get_first_string(item, CONTACT_URL_PATHS))
        ),
        avatar_url=(other.avatar_url if other else None) or get_first_string(item, CONTACT_AVATAR_PATHS),
    )


def parse_thread(item: Any) -> Optional[ParsedThread]:
    """Chat list item -> ParsedThread; None when no thread id can be found."""
    obj = to_json_object(item)
    thread_id = get_first_id(obj, CHAT_ID_PATHS)
    if not thread_id:
        return None

    last_message_at = None
    for path in LAST_MESSAGE_AT_PATHS:
        last_message_at = parse_timestamp(get_path_value(obj, path))
        if last_message_at is not None:
            break

    return ParsedThread(
        thread_id=thread_id,
        last_message_at=last_message_at or utc_now(),
        last_message_preview=truncate_preview(get_first_string(obj, PREVIEW_PATHS)),
        contact=extract_contact(obj),
    )
