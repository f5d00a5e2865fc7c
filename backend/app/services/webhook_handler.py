# backend/app/services/webhook_handler.py
"""
Webhook Handler - Unipile events -> local state

Every delivery is logged to unipile_events and committed before any
processing, so a processing bug never loses the source payload. Processing
errors are logged and still acknowledged: the platform retries on non-2xx
and a retry storm helps nobody.

Handled kinds:
- new_message: thread upsert, contact fill, idempotent message insert
- message_edit / delete / reaction / delivered / read: raw patch on the
  stored message (read also clears the thread's unread counter)
- invitation_accepted: acceptance reconciliation + provider id learning
- invitation_sent: mark the matched lead's invitation sent
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, literal, literal_column, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import InboxMessage, UnipileEvent
from app.services.account_resolver import resolve_client_id
from app.services.attendee_resolver import AttendeeResolver, ResolvedAttendee
from app.services.event_classifier import EventKind, ParsedEvent, parse_event
from app.services.identity_resolver import IdentityResolver
from app.services.invitation_tracker import InvitationTracker
from app.services.message_persister import MESSAGE_WRITE_SCHEMA, MessagePersister, MessageRecord
from app.services.optional_columns import update_rows
from app.services.payload_normalizer import to_json_object
from app.services.thread_manager import ThreadManager
from app.services.thread_parser import extract_contact
from app.services.unipile_client import UnipileClient

logger = logging.getLogger(__name__)

MESSAGE_EVENT_KINDS = (
    EventKind.MESSAGE_EDIT,
    EventKind.MESSAGE_DELETE,
    EventKind.MESSAGE_REACTION,
    EventKind.MESSAGE_DELIVERED,
    EventKind.MESSAGE_READ,
)


class WebhookResult:
    """Acknowledgement returned to the webhook sender."""

    def __init__(self, processed: bool, kind: Optional[EventKind] = None, details: Any = None):
        self.processed = processed
        self.kind = kind
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": True, "processed": self.processed}
        if self.kind is not None:
            body["kind"] = self.kind.value
        return body


def message_raw_patch(kind: EventKind, payload: Dict[str, Any]) -> Dict[str, Any]:
    if kind == EventKind.MESSAGE_EDIT:
        return {"edit_event": payload}
    if kind == EventKind.MESSAGE_DELETE:
        return {"deleted": True, "delete_event": payload}
    if kind == EventKind.MESSAGE_REACTION:
        return {"reaction_event": payload}
    if kind == EventKind.MESSAGE_DELIVERED:
        return {"delivery_status": "delivered", "delivery_event": payload}
    if kind == EventKind.MESSAGE_READ:
        return {"delivery_status": "read", "read_event": payload}
    return {}


class WebhookHandler:
    """Dispatches one webhook delivery."""

    def __init__(self, db: AsyncSession, unipile: Optional[UnipileClient] = None):
        self.db = db
        self.unipile = unipile
        self.threads = ThreadManager(db)
        self.persister = MessagePersister(db, self.threads)
        self.identity = IdentityResolver(db)
        self.invitations = InvitationTracker(db, self.identity)

    async def handle(self, payload_input: Any) -> Dict[str, Any]:
        """Process a delivery; always returns an ok acknowledgement."""
        try:
            result = await self.process(payload_input)
            await self.db.commit()
            return result.to_dict()
        except Exception as e:
            logger.exception(f"Webhook processing failed: {e}")
            await self.db.rollback()
            return {"ok": True}

    async def process(self, payload_input: Any) -> WebhookResult:
        payload = to_json_object(payload_input)
        event = parse_event(payload)

        client_id = await resolve_client_id(self.db, event.account_id)
        await self.log_event(event, client_id, payload)

        if not client_id or not event.account_id:
            logger.info(
                f"Webhook {event.event_type} for unknown account {event.account_id}, not processed"
            )
            return WebhookResult(False)

        if event.kind == EventKind.NEW_MESSAGE:
            processed = await self.handle_new_message(client_id, event, payload)
            return WebhookResult(processed, event.kind)

        if event.kind in MESSAGE_EVENT_KINDS:
            processed = await self.handle_message_event(client_id, event, payload)
            return WebhookResult(processed, event.kind)

        if event.kind == EventKind.INVITATION_ACCEPTED:
            accepted = await self.invitations.handle_invitation_accepted(client_id, event.account_id, payload)
            return WebhookResult(True, event.kind, accepted.to_dict())

        if event.kind == EventKind.INVITATION_SENT:
            lead_id = await self.invitations.record_invitation_sent(client_id, event.account_id, payload)
            return WebhookResult(lead_id is not None, event.kind)

        logger.info(f"Webhook {event.event_type} ignored (kind {event.kind.value})")
        return WebhookResult(False, event.kind)

    async def log_event(self, event: ParsedEvent, client_id: Any, payload: Dict[str, Any]):
        self.db.add(UnipileEvent(
            client_id=client_id,
            unipile_account_id=event.account_id,
            event_type=event.event_type,
            payload=payload,
        ))
        await self.db.commit()

    # ========================================================================
    # MESSAGES
    # ========================================================================

    async def handle_new_message(self, client_id: Any, event: ParsedEvent, payload: Dict[str, Any]) -> bool:
        message = event.message
        account_id = event.account_id
        if not message.thread_id or not message.message_id:
            logger.warning(f"new_message on {account_id} without thread or message id")
            return False

        contact = extract_contact(payload)
        resolved = await self._resolve_sender(client_id, account_id, event)

        sender_name = message.sender_name or (resolved.name if resolved else None)
        sender_url = message.sender_linkedin_url or (resolved.linkedin_url if resolved else None)

        # Inbound sender is the counterpart; outbound rows only carry it in the payload's participants.
        counterpart_url = sender_url if message.is_inbound else contact.linkedin_url
        lead = await self.identity.find_lead_by_profile_url(client_id, counterpart_url)

        thread = await self.threads.upsert_thread(
            client_id,
            account_id,
            message.thread_id,
            lead_id=lead.id if lead else None,
            lead_linkedin_url=counterpart_url,
        )

        if not (thread.contact_name or "").strip():
            if message.is_inbound and not contact.name:
                await self.threads.fill_contact_if_missing(
                    client_id, thread.id, sender_name, sender_url,
                    resolved.avatar_url if resolved else None,
                )
            else:
                await self.threads.fill_contact_if_missing(
                    client_id, thread.id, contact.name, contact.linkedin_url, contact.avatar_url
                )

        raw: Dict[str, Any] = dict(payload)
        if resolved is not None:
            raw["resolved_sender"] = resolved.to_raw()

        record = MessageRecord(
            client_id=client_id,
            account_id=account_id,
            thread_db_id=thread.id,
            unipile_thread_id=message.thread_id,
            unipile_message_id=message.message_id,
            direction=message.direction,
            sent_at=message.sent_at,
            text=message.text,
            sender_name=sender_name,
            sender_linkedin_url=sender_url,
            lead_id=lead.id if lead else None,
            raw=raw,
        )
        persisted = await self.persister.persist(record, count_unread=True)
        logger.info(
            f"new_message {message.message_id} on thread {message.thread_id}: "
            f"inserted={persisted.inserted} patched={persisted.patched}"
        )
        return True

    async def _resolve_sender(
        self,
        client_id: Any,
        account_id: str,
        event: ParsedEvent
    ) -> Optional[ResolvedAttendee]:
        message = event.message
        if not message.is_inbound or message.sender_name or not message.sender_attendee_id:
            return None
        if self.unipile is None:
            return None
        resolver = AttendeeResolver(self.db, self.unipile, client_id, account_id)
        return await resolver.resolve(message.sender_attendee_id, message.thread_id)

    async def find_message(self, client_id: Any, account_id: str, message_id: Optional[str]) -> Optional[Any]:
        if not message_id:
            return None
        result = await self.db.execute(
            select(InboxMessage.id, InboxMessage.text, InboxMessage.unipile_thread_id).where(
                InboxMessage.client_id == client_id,
                InboxMessage.unipile_account_id == account_id,
                InboxMessage.unipile_message_id == message_id,
            ).limit(1)
        )
        return result.first()

    async def handle_message_event(self, client_id: Any, event: ParsedEvent, payload: Dict[str, Any]) -> bool:
        stored = await self.find_message(client_id, event.account_id, event.message.message_id)
        if stored is None:
            logger.info(
                f"{event.kind.value} for unknown message {event.message.message_id} on {event.account_id}"
            )
            return False

        values: Dict[str, Any] = {
            "raw": func.coalesce(InboxMessage.raw, literal_column("'{}'::jsonb")).op("||")(
                literal(message_raw_patch(event.kind, payload), JSONB)
            ),
        }
        if event.kind == EventKind.MESSAGE_EDIT:
            values["text"] = event.message.text or stored.text

        await update_rows(
            self.db,
            MESSAGE_WRITE_SCHEMA,
            values,
            InboxMessage.id == stored.id,
            InboxMessage.client_id == client_id,
        )

        if event.kind == EventKind.MESSAGE_READ:
            thread_id = event.message.thread_id or stored.unipile_thread_id
            if thread_id:
                await self.threads.mark_read_by_external_id(client_id, event.account_id, thread_id)
        return True
