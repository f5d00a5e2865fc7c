# backend/app/services/attendee_resolver.py
"""
Attendee Resolver - turn a sender attendee id into a human identity

Resolution order:
1. Recently persisted messages of the same account that already carry a
   resolved name/URL/avatar for this attendee (bounded scan, newest first)
2. Attendee/user/profile lookups on the platform
3. Attendees of the conversation (preferring the "not self" entry when no
   attendee id is known)

One resolver instance lives for one sync pass and memoizes by attendee id,
so each attendee costs at most one remote lookup per pass even when many
messages reference it concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import InboxMessage
from app.services.identity_resolver import normalize_profile_url
from app.services.message_parser import SENDER_ATTENDEE_ID_PATHS
from app.services.payload_normalizer import (
    extract_array_candidates,
    get_first_boolean,
    get_first_id,
    get_first_string,
    to_json_object,
    utc_now,
)
from app.services.unipile_client import RequestCandidate, UnipileClient

logger = logging.getLogger(__name__)

ATTENDEE_ID_PATHS = [
    ("attendee_id",), ("attendeeId",),
    ("participant_id",), ("participantId",),
    ("user_id",), ("userId",),
    ("id",),
    ("profile_id",), ("profileId",),
]
ATTENDEE_NAME_PATHS = [
    ("display_name",), ("displayName",),
    ("name",), ("full_name",), ("fullName",),
    ("public_name",), ("publicName",),
]
ATTENDEE_URL_PATHS = [
    ("linkedin_url",), ("linkedinUrl",),
    ("profile_url",), ("profileUrl",),
    ("public_profile_url",), ("publicProfileUrl",),
    ("url",),
]
ATTENDEE_AVATAR_PATHS = [
    ("avatar_url",), ("avatarUrl",),
    ("photo_url",), ("photoUrl",),
    ("profile_picture_url",), ("profilePictureUrl",),
    ("image_url",), ("imageUrl",),
]
ATTENDEE_IS_SELF_PATHS = [
    ("is_self",), ("isSelf",), ("self",),
    ("is_sender",), ("isSender",), ("from_me",),
]

NESTED_OBJECT_KEYS = ("data", "attendee", "participant", "contact", "sender", "user", "profile")
NESTED_ARRAY_KEYS = ("attendees", "participants", "members", "recipients", "counterparts", "users", "people")


@dataclass
class ResolvedAttendee:
    attendee_id: Optional[str] = None
    name: Optional[str] = None
    linkedin_url: Optional[str] = None
    avatar_url: Optional[str] = None
    is_self: Optional[bool] = None

    @property
    def has_identity(self) -> bool:
        return bool(self.name or self.linkedin_url or self.avatar_url)

    def to_raw(self) -> Dict[str, Any]:
        """Shape stored under raw.resolved_sender on messages (read back by the cache scan)."""
        return {
            "attendee_id": self.attendee_id,
            "name": self.name,
            "linkedin_url": self.linkedin_url,
            "avatar_url": self.avatar_url,
        }


def parse_attendee_candidate(value: Any) -> Optional[ResolvedAttendee]:
    obj = to_json_object(value)
    if not obj:
        return None

    candidate = ResolvedAttendee(
        attendee_id=get_first_id(obj, ATTENDEE_ID_PATHS),
        name=get_first_string(obj, ATTENDEE_NAME_PATHS),
        linkedin_url=normalize_profile_url(get_first_string(obj, ATTENDEE_URL_PATHS)),
        avatar_url=get_first_string(obj, ATTENDEE_AVATAR_PATHS),
        is_self=get_first_boolean(obj, ATTENDEE_IS_SELF_PATHS),
    )
    if not candidate.attendee_id and not candidate.has_identity:
        return None
    return candidate


def extract_attendee_candidates(payload: Any) -> List[ResolvedAttendee]:
    root = to_json_object(payload)
    items: List[Any] = [root]
    items.extend(root.get(key) for key in NESTED_OBJECT_KEYS)
    for key in NESTED_ARRAY_KEYS:
        value = root.get(key)
        if isinstance(value, list):
            items.extend(value)
    items.extend(extract_array_candidates(payload))

    candidates = []
    for item in items:
        parsed = parse_attendee_candidate(item)
        if parsed:
            candidates.append(parsed)
    return candidates


def choose_attendee(
    candidates: List[ResolvedAttendee],
    attendee_id: Optional[str] = None,
    prefer_other: bool = False
) -> Optional[ResolvedAttendee]:
    """Exact id, then explicit not-self (if asked), then first with identity, then first."""
    if not candidates:
        return None

    if attendee_id:
        wanted = attendee_id.strip()
        for candidate in candidates:
            if candidate.attendee_id == wanted:
                return candidate

    if prefer_other:
        for candidate in candidates:
            if candidate.is_self is False:
                return candidate

    for candidate in candidates:
        if candidate.has_identity:
            return candidate

    return candidates[0]


def attendee_id_from_raw(raw: Any) -> Optional[str]:
    raw_obj = to_json_object(raw)
    return (
        get_first_id(raw_obj, [("resolved_sender", "attendee_id"), ("resolved_sender", "attendeeId")])
        or get_first_id(raw_obj, SENDER_ATTENDEE_ID_PATHS)
    )


class AttendeeResolver:
    """Per-pass attendee resolution for one (client, account)."""

    def __init__(
        self,
        db: AsyncSession,
        unipile: UnipileClient,
        client_id: Any,
        account_id: str
    ):
        self.db = db
        self.unipile = unipile
        self.client_id = client_id
        self.account_id = account_id
        self._memo: Dict[str, "asyncio.Future"] = {}
        self.remote_lookups = 0

    async def resolve(self, attendee_id: Optional[str], chat_id: Optional[str] = None) -> Optional[ResolvedAttendee]:
        """Resolve a sender; None means unknown sender, never an error."""
        if not attendee_id:
            return None

        key = attendee_id.strip()
        pending = self._memo.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._resolve_uncached(key, chat_id))
            self._memo[key] = pending
        return await asyncio.shield(pending)

    async def resolve_other_attendee(self, chat_id: Optional[str]) -> Optional[ResolvedAttendee]:
        """Counterpart of a conversation when no attendee id is known."""
        if not chat_id:
            return None
        key = f"chat:{chat_id}"
        pending = self._memo.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_remote(None, chat_id))
            self._memo[key] = pending
        return await asyncio.shield(pending)

    async def _resolve_uncached(self, attendee_id: str, chat_id: Optional[str]) -> Optional[ResolvedAttendee]:
        cached = await self.find_cached(attendee_id)
        if cached:
            return cached
        return await self._fetch_remote(attendee_id, chat_id)

    async def find_cached(self, attendee_id: str) -> Optional[ResolvedAttendee]:
        """Scan recent persisted messages for an already resolved identity."""
        cutoff = utc_now() - timedelta(days=settings.ATTENDEE_CACHE_DAYS)
        result = await self.db.execute(
            select(
                InboxMessage.sender_name,
                InboxMessage.sender_linkedin_url,
                InboxMessage.raw,
            )
            .where(
                InboxMessage.client_id == self.client_id,
                InboxMessage.unipile_account_id == self.account_id,
                InboxMessage.sent_at >= cutoff,
            )
            .order_by(InboxMessage.sent_at.desc())
            .limit(settings.ATTENDEE_CACHE_SCAN_LIMIT)
        )

        for sender_name, sender_linkedin_url, raw in result.all():
            if attendee_id_from_raw(raw) != attendee_id:
                continue

            raw_obj = to_json_object(raw)
            name = (sender_name or "").strip() or get_first_string(
                raw_obj, [("resolved_sender", "name"), ("sender_name",)]
            )
            linkedin_url = normalize_profile_url(sender_linkedin_url) or normalize_profile_url(
                get_first_string(raw_obj, [
                    ("resolved_sender", "linkedin_url"), ("resolved_sender", "linkedinUrl"),
                    ("resolved_sender", "profile_url"), ("resolved_sender", "profileUrl"),
                ])
            )
            avatar_url = get_first_string(raw_obj, [
                ("resolved_sender", "avatar_url"), ("resolved_sender", "avatarUrl"),
            ])

            if not name and not linkedin_url and not avatar_url:
                continue

            return ResolvedAttendee(
                attendee_id=attendee_id,
                name=name or None,
                linkedin_url=linkedin_url,
                avatar_url=avatar_url,
            )
        return None

    async def _fetch_remote(self, attendee_id: Optional[str], chat_id: Optional[str]) -> Optional[ResolvedAttendee]:
        self.remote_lookups += 1

        if attendee_id:
            direct = await self._fetch_from(
                self.unipile.attendee_lookup_candidates(self.account_id, attendee_id),
                attendee_id=attendee_id,
            )
            if direct:
                direct.attendee_id = direct.attendee_id or attendee_id
                return direct

        if not chat_id:
            return None

        fallback = await self._fetch_from(
            self.unipile.chat_attendee_candidates(self.account_id, chat_id),
            attendee_id=attendee_id,
            prefer_other=not attendee_id,
        )
        if fallback:
            fallback.attendee_id = fallback.attendee_id or attendee_id
        return fallback

    async def _fetch_from(
        self,
        candidates: List[RequestCandidate],
        attendee_id: Optional[str] = None,
        prefer_other: bool = False
    ) -> Optional[ResolvedAttendee]:
        result = await self.unipile.first_success(
            candidates,
            extract=lambda payload: choose_attendee(
                extract_attendee_candidates(payload), attendee_id, prefer_other
            ),
            missing_reason="no_attendee_in_response",
        )
        if not result.ok:
            logger.debug(
                f"Attendee lookup failed for account {self.account_id} "
                f"(attendee={attendee_id}): {len(result.failures)} attempt(s)"
            )
            return None
        return result.value
