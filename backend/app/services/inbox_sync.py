# backend/app/services/inbox_sync.py
"""
Inbox Sync - pull conversations from Unipile into the local mirror

For one client's account:
1. List chats; each item becomes a thread upsert (unread counter reset,
   lead linked by exact profile URL, contact identity filled)
2. List the latest messages of every chat and persist them idempotently
3. Unknown sender names go through one AttendeeResolver for the whole pass
"""

import logging
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import NotFoundError, UpstreamError
from app.models import InboxThread
from app.services.account_resolver import get_linkedin_account_id
from app.services.attendee_resolver import AttendeeResolver
from app.services.identity_resolver import IdentityResolver
from app.services.message_parser import parse_message
from app.services.message_persister import MessagePersister, MessageRecord
from app.services.payload_normalizer import extract_array_candidates
from app.services.optional_columns import update_rows
from app.services.thread_manager import THREAD_WRITE_SCHEMA, ThreadManager, ThreadRef
from app.services.thread_parser import ParsedThread, parse_thread
from app.services.unipile_client import RequestCandidate, UnipileClient

logger = logging.getLogger(__name__)


class SyncResult:
    """Counters for one sync pass."""

    def __init__(self):
        self.threads = 0
        self.messages_inserted = 0
        self.messages_patched = 0
        self.messages_skipped = 0
        self.remote_attendee_lookups = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "threads": self.threads,
            "messages_inserted": self.messages_inserted,
            "messages_patched": self.messages_patched,
            "messages_skipped": self.messages_skipped,
            "remote_attendee_lookups": self.remote_attendee_lookups,
        }


class InboxSync:
    """One sync pass per call."""

    def __init__(self, db: AsyncSession, unipile: UnipileClient):
        self.db = db
        self.unipile = unipile
        self.threads = ThreadManager(db)
        self.persister = MessagePersister(db, self.threads)
        self.identity = IdentityResolver(db)

    async def sync_client(self, client_id: Any) -> SyncResult:
        account_id = await get_linkedin_account_id(self.db, client_id)
        if not account_id:
            raise NotFoundError("linkedin_account_not_connected")

        chats = await self.fetch_chats(account_id)
        attendees = AttendeeResolver(self.db, self.unipile, client_id, account_id)
        result = SyncResult()

        for item in chats:
            parsed = parse_thread(item)
            if parsed is None:
                continue

            thread = await self.sync_thread(client_id, account_id, parsed)
            result.threads += 1

            messages = await self.unipile.list_chat_messages(
                account_id, parsed.thread_id, limit=settings.INBOX_SYNC_MESSAGE_LIMIT
            )
            for payload in messages:
                await self.sync_message(client_id, account_id, thread, parsed, payload, attendees, result)

        result.remote_attendee_lookups = attendees.remote_lookups
        await self.db.commit()

        logger.info(
            f"Inbox sync for client {client_id}: {result.threads} threads, "
            f"{result.messages_inserted} new messages, {result.messages_patched} patched"
        )
        return result

    async def fetch_chats(self, account_id: str) -> List[Dict[str, Any]]:
        """Chat list; a failed listing is an error (an empty one is not)."""
        params = {"account_id": account_id, "limit": settings.INBOX_SYNC_CHAT_LIMIT}
        response = await self.unipile.first_success([
            RequestCandidate("GET", "/api/v1/chats", params=params),
            RequestCandidate("GET", "/api/v1/conversations", params=params),
        ])
        if not response.ok:
            raise UpstreamError("unipile_threads_fetch_failed", details=response.failure_dicts())
        return extract_array_candidates(response.payload)

    async def sync_thread(self, client_id: Any, account_id: str, parsed: ParsedThread) -> ThreadRef:
        lead = await self.identity.find_lead_by_profile_url(client_id, parsed.contact.linkedin_url)
        thread = await self.threads.upsert_thread(
            client_id,
            account_id,
            parsed.thread_id,
            lead_id=lead.id if lead else None,
            lead_linkedin_url=parsed.contact.linkedin_url,
            contact_name=parsed.contact.name,
            contact_linkedin_url=parsed.contact.linkedin_url,
            contact_avatar_url=parsed.contact.avatar_url,
            last_message_at=parsed.last_message_at,
            last_message_preview=parsed.last_message_preview,
        )
        # A sync reflects what the platform shows; the local counter restarts from zero.
        await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {"unread_count": 0},
            InboxThread.id == thread.id,
            InboxThread.client_id == client_id,
        )
        return thread

    async def sync_message(
        self,
        client_id: Any,
        account_id: str,
        thread: ThreadRef,
        parsed_thread: ParsedThread,
        payload: Dict[str, Any],
        attendees: AttendeeResolver,
        result: SyncResult
    ):
        message = parse_message(payload)
        if not message.message_id:
            result.messages_skipped += 1
            return

        sender_name = message.sender_name
        sender_url = message.sender_linkedin_url
        raw: Dict[str, Any] = dict(payload)

        if message.is_inbound and not sender_name:
            resolved = await attendees.resolve(message.sender_attendee_id, parsed_thread.thread_id)
            if resolved is None and not message.sender_attendee_id:
                resolved = await attendees.resolve_other_attendee(parsed_thread.thread_id)
            if resolved is not None:
                sender_name = resolved.name
                sender_url = sender_url or resolved.linkedin_url
                raw["resolved_sender"] = resolved.to_raw()

        if message.is_inbound and not sender_name:
            sender_name = parsed_thread.contact.name
            sender_url = sender_url or parsed_thread.contact.linkedin_url

        persisted = await self.persister.persist(MessageRecord(
            client_id=client_id,
            account_id=account_id,
            thread_db_id=thread.id,
            unipile_thread_id=message.thread_id or parsed_thread.thread_id,
            unipile_message_id=message.message_id,
            direction=message.direction,
            sent_at=message.sent_at,
            text=message.text,
            sender_name=sender_name,
            sender_linkedin_url=sender_url,
            lead_id=thread.lead_id,
            raw=raw,
        ))
        if persisted.inserted:
            result.messages_inserted += 1
        elif persisted.patched:
            result.messages_patched += 1
