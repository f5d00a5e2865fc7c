# backend/app/services/message_persister.py
"""
Message Persister - idempotent message rows

(client, account, external message id) is the idempotency key. A repeated
delivery never inserts twice; it can only fill sender fields that were still
NULL. Thread bookkeeping runs after the insert and is allowed to fail: the
message row stays and the next sync or event repairs the thread.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import InboxMessage
from app.services.identity_resolver import normalize_profile_url
from app.services.message_parser import DIRECTION_INBOUND, DIRECTION_OUTBOUND
from app.services.optional_columns import WriteSchema, insert_if_absent, update_rows
from app.services.thread_manager import PROVIDER_LINKEDIN, ThreadManager

logger = logging.getLogger(__name__)

MESSAGE_WRITE_SCHEMA = WriteSchema(
    InboxMessage,
    required=(
        "client_id", "provider", "thread_db_id",
        "unipile_account_id", "unipile_thread_id", "unipile_message_id",
        "direction", "sender_name", "sender_linkedin_url", "text", "sent_at", "raw",
    ),
    optional=("status", "provider_message_id", "lead_id"),
    conflict_columns=("client_id", "unipile_account_id", "unipile_message_id"),
    version=2,
)


@dataclass
class MessageRecord:
    """Everything needed to persist one message."""
    client_id: Any
    account_id: str
    thread_db_id: Any
    unipile_thread_id: str
    unipile_message_id: str
    direction: str
    sent_at: datetime
    text: Optional[str] = None
    sender_name: Optional[str] = None
    sender_linkedin_url: Optional[str] = None
    lead_id: Any = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_values(self) -> Dict[str, Any]:
        outbound = self.direction == DIRECTION_OUTBOUND
        return {
            "client_id": self.client_id,
            "provider": PROVIDER_LINKEDIN,
            "thread_db_id": self.thread_db_id,
            "unipile_account_id": self.account_id,
            "unipile_thread_id": self.unipile_thread_id,
            "unipile_message_id": self.unipile_message_id,
            "direction": self.direction,
            # Outbound rows never carry a sender identity; the sender is the account itself.
            "sender_name": None if outbound else ((self.sender_name or "").strip() or None),
            "sender_linkedin_url": None if outbound else normalize_profile_url(self.sender_linkedin_url),
            "text": self.text,
            "sent_at": self.sent_at,
            "raw": self.raw or {},
            "status": self.status,
            "provider_message_id": self.unipile_message_id if outbound else None,
            "lead_id": self.lead_id,
        }


class PersistResult:
    """Outcome of persisting one message."""

    def __init__(
        self,
        message_db_id: Any = None,
        inserted: bool = False,
        patched: bool = False,
        thread_updated: bool = False
    ):
        self.message_db_id = message_db_id
        self.inserted = inserted
        self.patched = patched
        self.thread_updated = thread_updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_db_id": str(self.message_db_id) if self.message_db_id else None,
            "inserted": self.inserted,
            "patched": self.patched,
            "thread_updated": self.thread_updated,
        }


class MessagePersister:
    """Writes message rows and keeps the owning thread's denormalized fields current."""

    def __init__(self, db: AsyncSession, threads: Optional[ThreadManager] = None):
        self.db = db
        self.threads = threads or ThreadManager(db)

    async def persist(self, record: MessageRecord, count_unread: bool = False) -> PersistResult:
        """
        Insert if absent, otherwise patch null sender fields.

        count_unread increments the thread's unread counter for a newly
        inserted inbound message (webhook deliveries; syncs reset the counter
        themselves).
        """
        values = record.to_values()
        outcome = await insert_if_absent(self.db, MESSAGE_WRITE_SCHEMA, values)
        if outcome.dropped_columns:
            logger.warning(
                f"Message {record.unipile_message_id} stored without columns {outcome.dropped_columns}"
            )

        if outcome.value is None:
            patched = await self.patch_sender_fields(
                record.client_id,
                record.account_id,
                record.unipile_message_id,
                values.get("sender_name"),
                values.get("sender_linkedin_url"),
            )
            return PersistResult(inserted=False, patched=patched)

        result = PersistResult(message_db_id=outcome.value, inserted=True)
        result.thread_updated = await self._update_thread(record, count_unread)
        return result

    async def patch_sender_fields(
        self,
        client_id: Any,
        account_id: str,
        message_id: str,
        sender_name: Optional[str],
        sender_linkedin_url: Optional[str]
    ) -> bool:
        """Fill NULL sender columns of an existing row; resolved values are never replaced."""
        if not sender_name and not sender_linkedin_url:
            return False

        values = {
            "sender_name": func.coalesce(InboxMessage.sender_name, sender_name) if sender_name else None,
            "sender_linkedin_url": (
                func.coalesce(InboxMessage.sender_linkedin_url, sender_linkedin_url)
                if sender_linkedin_url else None
            ),
        }
        null_checks = []
        if sender_name:
            null_checks.append(InboxMessage.sender_name.is_(None))
        if sender_linkedin_url:
            null_checks.append(InboxMessage.sender_linkedin_url.is_(None))

        outcome = await update_rows(
            self.db,
            MESSAGE_WRITE_SCHEMA,
            values,
            InboxMessage.client_id == client_id,
            InboxMessage.unipile_account_id == account_id,
            InboxMessage.unipile_message_id == message_id,
            InboxMessage.direction == DIRECTION_INBOUND,
            or_(*null_checks),
        )
        return bool(outcome.value)

    async def _update_thread(self, record: MessageRecord, count_unread: bool) -> bool:
        try:
            await self.threads.refresh_last_message(
                record.client_id, record.thread_db_id, record.sent_at, record.text
            )
            if count_unread and record.direction == DIRECTION_INBOUND:
                await self.threads.increment_unread(record.client_id, record.thread_db_id)
        except SQLAlchemyError as e:
            logger.error(
                f"Message {record.unipile_message_id} stored but thread {record.thread_db_id} "
                f"update failed: {e}"
            )
            return False
        return True
