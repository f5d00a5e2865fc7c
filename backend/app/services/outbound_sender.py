# backend/app/services/outbound_sender.py
"""
Outbound Sender - lead/thread -> Unipile -> local rows

Flow for a lead:
1. Per-(client, lead) in-flight guard (409 on a concurrent duplicate)
2. Account + existing local thread
3. No thread: resolve provider id (lead, invitation history, slug lookup),
   open the conversation, or fall back to a direct first send
4. Send, persist the outbound message, flag the lead

Steps are strictly sequential. Commits happen after the remote side effect
so a local failure after a successful send is reported as a persistence
error instead of inviting a resend.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    ConversationCreateFailedError,
    MessagePersistFailedError,
    NotFoundError,
    ProviderIdMissingError,
    SchemaDriftError,
)
from app.services.account_resolver import get_linkedin_account_id
from app.services.identity_resolver import extract_slug, lead_normalized_url, lead_slug
from app.services.invitation_tracker import InvitationTracker
from app.services.lead_store import backfill_provider_id, get_lead, lead_full_name, update_lead
from app.services.message_parser import DIRECTION_OUTBOUND
from app.services.message_persister import MessagePersister, MessageRecord, PersistResult
from app.services.payload_normalizer import utc_now
from app.services.send_failures import (
    MESSAGE_PERSIST_FAILED_MESSAGE,
    PROVIDER_ID_MISSING_MESSAGE,
    build_send_user_message,
    first_failure_details,
)
from app.services.send_lock import send_lock_key
from app.services.thread_manager import ThreadManager, ThreadRef
from app.services.unipile_client import (
    SentMessage,
    UnipileClient,
    extract_provider_id,
    invitation_raw_candidates,
)

logger = logging.getLogger(__name__)

MESSAGE_STATUS_SENT = "sent"


class SendResult:
    """Result of one outbound send."""

    def __init__(
        self,
        sent: SentMessage,
        thread: ThreadRef,
        persisted: PersistResult,
        created_conversation: bool = False
    ):
        self.sent = sent
        self.thread = thread
        self.persisted = persisted
        self.created_conversation = created_conversation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "unipile_message_id": self.sent.message_id,
            "unipile_thread_id": self.thread.unipile_thread_id,
            "thread_db_id": str(self.thread.id),
            "message_db_id": str(self.persisted.message_db_id) if self.persisted.message_db_id else None,
            "sent_at": self.sent.sent_at.isoformat() if self.sent.sent_at else None,
            "created_conversation": self.created_conversation,
        }


class OutboundSender:
    """Sends direct messages to leads or into existing threads."""

    def __init__(self, db: AsyncSession, unipile: UnipileClient, lock: Any):
        self.db = db
        self.unipile = unipile
        self.lock = lock
        self.threads = ThreadManager(db)
        self.persister = MessagePersister(db, self.threads)
        self.invitations = InvitationTracker(db)

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    async def send_to_lead(self, client_id: Any, lead_id: Any, text: str) -> SendResult:
        async with self.lock.hold(send_lock_key(client_id, lead_id)):
            lead = await get_lead(self.db, client_id, lead_id)
            if lead is None:
                raise NotFoundError("lead_not_found")

            account_id = await get_linkedin_account_id(self.db, client_id)
            if not account_id:
                raise NotFoundError("linkedin_account_not_connected")

            thread = await self.threads.ensure_thread(
                client_id, account_id, lead.id, lead_linkedin_url=lead_normalized_url(lead)
            )

            if thread is not None:
                sent = await self.unipile.send_message(account_id, thread.unipile_thread_id, text)
                created = False
            else:
                thread, sent = await self._open_conversation_and_send(client_id, account_id, lead, text)
                created = True

            persisted = await self._persist_outbound(client_id, account_id, thread, sent, text, lead.id)

            now = utc_now()
            await update_lead(self.db, client_id, lead.id, {
                "message_sent": True,
                "message_sent_at": now,
                "next_followup_at": now + timedelta(days=settings.FOLLOWUP_DELAY_DAYS),
                "linkedin_chat_id": thread.unipile_thread_id,
            })
            await self.db.commit()

            logger.info(
                f"Message {sent.message_id} sent to lead {lead.id} "
                f"(client {client_id}, thread {thread.unipile_thread_id}, via {sent.endpoint})"
            )
            return SendResult(sent, thread, persisted, created_conversation=created)

    async def send_to_thread(self, client_id: Any, thread_db_id: Any, text: str) -> SendResult:
        row = await self.threads.get_thread_row(client_id, thread_db_id)
        if row is None:
            raise NotFoundError("thread_not_found")

        lock_key = send_lock_key(client_id, row.lead_id or f"thread:{row.id}")
        async with self.lock.hold(lock_key):
            thread = await self.threads.get_thread(client_id, row.id)
            sent = await self.unipile.send_message(row.unipile_account_id, row.unipile_thread_id, text)
            persisted = await self._persist_outbound(
                client_id, row.unipile_account_id, thread, sent, text, row.lead_id
            )
            await self.db.commit()
            return SendResult(sent, thread, persisted)

    # ========================================================================
    # CONVERSATION CREATION
    # ========================================================================

    async def _open_conversation_and_send(self, client_id: Any, account_id: str, lead: Any, text: str):
        provider_id = await self.resolve_provider_id(client_id, account_id, lead)

        created = await self.unipile.create_conversation(account_id, provider_id)
        if created.ok:
            thread = await self.threads.ensure_thread(
                client_id,
                account_id,
                lead.id,
                thread_id=created.value,
                lead_linkedin_url=lead_normalized_url(lead),
                contact_name=lead_full_name(lead),
                provider_id=provider_id,
            )
            await self.db.commit()
            sent = await self.unipile.send_message(account_id, thread.unipile_thread_id, text)
            return thread, sent

        logger.info(f"Conversation creation failed for lead {lead.id}, trying direct send")
        try:
            sent = await self.unipile.start_conversation_with_message(account_id, provider_id, text)
        except ConversationCreateFailedError as e:
            details = first_failure_details(created.failures) or first_failure_details(e.attempts)
            raise ConversationCreateFailedError(
                details={"create": created.failure_dicts(), "direct_send": e.attempts},
                user_message=build_send_user_message(details),
                attempts=created.failure_dicts() + e.attempts,
            ) from e

        thread = await self.threads.ensure_thread(
            client_id,
            account_id,
            lead.id,
            thread_id=sent.thread_id,
            lead_linkedin_url=lead_normalized_url(lead),
            contact_name=lead_full_name(lead),
            provider_id=provider_id,
        )
        return thread, sent

    async def resolve_provider_id(self, client_id: Any, account_id: str, lead: Any) -> str:
        """
        Stored provider id, else one found in the lead's invitation history,
        else a profile lookup by slug. A newly learned id is backfilled.
        """
        stored = (lead.linkedin_provider_id or "").strip()
        if stored:
            return stored

        for raw in await self.invitations.load_invitation_raws(client_id, lead.id, account_id):
            for candidate in invitation_raw_candidates(raw):
                provider_id = extract_provider_id(candidate)
                if provider_id:
                    await backfill_provider_id(self.db, client_id, lead.id, provider_id)
                    return provider_id

        slug = lead_slug(lead) or extract_slug(lead.linkedin_url)
        if not slug:
            raise ProviderIdMissingError(
                message="invalid_linkedin_url",
                user_message=PROVIDER_ID_MISSING_MESSAGE,
            )

        provider_id = await self.unipile.lookup_provider_id(account_id, slug)
        await backfill_provider_id(self.db, client_id, lead.id, provider_id)
        logger.info(f"Learned provider id for lead {lead.id} via profile lookup")
        return provider_id

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    async def _persist_outbound(
        self,
        client_id: Any,
        account_id: str,
        thread: ThreadRef,
        sent: SentMessage,
        text: str,
        lead_id: Optional[Any]
    ) -> PersistResult:
        record = MessageRecord(
            client_id=client_id,
            account_id=account_id,
            thread_db_id=thread.id,
            unipile_thread_id=thread.unipile_thread_id,
            unipile_message_id=sent.message_id,
            direction=DIRECTION_OUTBOUND,
            sent_at=sent.sent_at or utc_now(),
            text=text,
            sender_linkedin_url=sent.sender_linkedin_url,
            lead_id=lead_id,
            status=MESSAGE_STATUS_SENT,
            raw={"send_response": sent.payload, "endpoint": sent.endpoint},
        )
        try:
            return await self.persister.persist(record)
        except (SQLAlchemyError, SchemaDriftError) as e:
            logger.error(
                f"Message {sent.message_id} sent on thread {thread.unipile_thread_id} "
                f"but could not be stored: {e}"
            )
            raise MessagePersistFailedError(
                details={
                    "unipile_message_id": sent.message_id,
                    "unipile_thread_id": thread.unipile_thread_id,
                    "error": str(e),
                },
                user_message=MESSAGE_PERSIST_FAILED_MESSAGE,
            ) from e
