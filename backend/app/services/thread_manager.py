# backend/app/services/thread_manager.py
"""
Thread Manager - local mirror of external conversations

One row per (client, account, external thread id). Every write is an
INSERT .. ON CONFLICT on that key; contact and lead linkage columns only ever
fill NULLs so a later, poorer payload cannot erase what an earlier one taught.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import SchemaDriftError, ThreadUpsertFailedError
from app.models import InboxMessage, InboxThread
from app.services.identity_resolver import normalize_profile_url
from app.services.optional_columns import (
    WriteSchema,
    read_with_optional_columns,
    update_rows,
    upsert_row,
)
from app.services.payload_normalizer import truncate_preview, utc_now
from app.services.send_failures import THREAD_UPSERT_FAILED_MESSAGE

logger = logging.getLogger(__name__)

PROVIDER_LINKEDIN = "linkedin"

THREAD_WRITE_SCHEMA = WriteSchema(
    InboxThread,
    required=("client_id", "provider", "unipile_account_id", "unipile_thread_id", "updated_at"),
    optional=(
        "unipile_chat_id", "provider_id",
        "lead_id", "lead_linkedin_url",
        "contact_name", "contact_linkedin_url", "contact_avatar_url",
        "last_message_at", "last_message_preview",
        "unread_count", "last_read_at",
    ),
    conflict_columns=("client_id", "unipile_account_id", "unipile_thread_id"),
    preserve_existing=(
        "unipile_chat_id", "provider_id",
        "lead_id", "lead_linkedin_url",
        "contact_name", "contact_linkedin_url", "contact_avatar_url",
    ),
    version=3,
)

THREAD_READ_COLUMNS = (
    "id", "unipile_account_id", "unipile_thread_id",
    "lead_id", "lead_linkedin_url",
    "contact_name", "contact_linkedin_url",
    "unread_count", "last_message_at",
)


@dataclass
class ThreadRef:
    """Identifiers of a thread row plus the fields callers branch on."""
    id: Any
    unipile_thread_id: str
    contact_name: Optional[str] = None
    unread_count: int = 0
    last_message_at: Optional[datetime] = None
    lead_id: Any = None

    def to_dict(self) -> dict:
        return {
            "thread_db_id": str(self.id),
            "unipile_thread_id": self.unipile_thread_id,
        }


def _thread_ref(row: Any) -> ThreadRef:
    return ThreadRef(
        id=row.id,
        unipile_thread_id=row.unipile_thread_id,
        contact_name=row.contact_name,
        unread_count=row.unread_count or 0,
        last_message_at=row.last_message_at,
        lead_id=row.lead_id,
    )


def _contact_name_missing():
    return or_(InboxThread.contact_name.is_(None), func.trim(InboxThread.contact_name) == "")


class ThreadManager:
    """Finds, creates and maintains inbox thread rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # UPSERT / LOOKUP
    # ========================================================================

    async def upsert_thread(
        self,
        client_id: Any,
        account_id: str,
        thread_id: str,
        lead_id: Any = None,
        lead_linkedin_url: Optional[str] = None,
        contact_name: Optional[str] = None,
        contact_linkedin_url: Optional[str] = None,
        contact_avatar_url: Optional[str] = None,
        provider_id: Optional[str] = None,
        last_message_at: Optional[datetime] = None,
        last_message_preview: Optional[str] = None
    ) -> ThreadRef:
        """
        Upsert keyed by (client, account, thread id) and return the row.

        Last-message fields are only written on insert here; existing rows
        move forward through refresh_last_message so an older event never
        rewinds the preview.
        """
        values = {
            "client_id": client_id,
            "provider": PROVIDER_LINKEDIN,
            "unipile_account_id": account_id,
            "unipile_thread_id": thread_id,
            "unipile_chat_id": thread_id,
            "provider_id": provider_id,
            "lead_id": lead_id,
            "lead_linkedin_url": normalize_profile_url(lead_linkedin_url),
            "contact_name": (contact_name or "").strip() or None,
            "contact_linkedin_url": normalize_profile_url(contact_linkedin_url),
            "contact_avatar_url": contact_avatar_url,
            "last_message_at": last_message_at,
            "last_message_preview": truncate_preview(last_message_preview),
            "updated_at": utc_now(),
        }
        update_columns = set(values) - {"last_message_at", "last_message_preview"}

        outcome = await upsert_row(self.db, THREAD_WRITE_SCHEMA, values, update_columns=update_columns)
        if outcome.dropped_columns:
            logger.warning(
                f"Thread {thread_id} upserted without columns {outcome.dropped_columns}"
            )

        thread = await self.get_thread(client_id, outcome.value)
        if thread is None:
            raise ThreadUpsertFailedError(
                message="thread_db_id_not_found_after_upsert",
                user_message=THREAD_UPSERT_FAILED_MESSAGE,
            )
        return thread

    async def ensure_thread(
        self,
        client_id: Any,
        account_id: str,
        lead_id: Any,
        thread_id: Optional[str] = None,
        lead_linkedin_url: Optional[str] = None,
        contact_name: Optional[str] = None,
        provider_id: Optional[str] = None
    ) -> Optional[ThreadRef]:
        """
        Thread for a lead.

        With thread_id: upsert and link the lead. Without: look the thread up
        locally; None means the conversation has to be created remotely first.
        """
        if not thread_id:
            return await self.find_existing_thread_for_lead(
                client_id, account_id, lead_id, normalize_profile_url(lead_linkedin_url)
            )

        normalized_url = normalize_profile_url(lead_linkedin_url)
        try:
            return await self.upsert_thread(
                client_id,
                account_id,
                thread_id,
                lead_id=lead_id,
                lead_linkedin_url=normalized_url,
                contact_name=contact_name,
                contact_linkedin_url=normalized_url,
                provider_id=provider_id,
            )
        except (SQLAlchemyError, SchemaDriftError) as e:
            logger.error(f"Thread upsert failed for client {client_id} thread {thread_id}: {e}")
            raise ThreadUpsertFailedError(
                details=str(e),
                user_message=THREAD_UPSERT_FAILED_MESSAGE,
            ) from e

    async def get_thread(self, client_id: Any, thread_db_id: Any) -> Optional[ThreadRef]:
        if thread_db_id is None:
            return None
        row = await self.get_thread_row(client_id, thread_db_id)
        return _thread_ref(row) if row else None

    async def select_threads(
        self,
        *criteria: Any,
        order_by: Sequence[Any] = (),
        limit: Optional[int] = None
    ) -> List[Any]:
        """Rows of THREAD_READ_COLUMNS; unmigrated optional columns read as NULL."""
        def build(selected):
            stmt = select(*selected).where(*criteria)
            if order_by:
                stmt = stmt.order_by(*order_by)
            if limit is not None:
                stmt = stmt.limit(limit)
            return stmt

        return await read_with_optional_columns(self.db, THREAD_WRITE_SCHEMA, THREAD_READ_COLUMNS, build)

    async def get_thread_row(self, client_id: Any, thread_db_id: Any) -> Optional[Any]:
        rows = await self.select_threads(
            InboxThread.id == thread_db_id,
            InboxThread.client_id == client_id,
            limit=1,
        )
        return rows[0] if rows else None

    async def get_thread_by_external_id(
        self,
        client_id: Any,
        account_id: str,
        thread_id: str
    ) -> Optional[ThreadRef]:
        rows = await self.select_threads(
            InboxThread.client_id == client_id,
            InboxThread.unipile_account_id == account_id,
            InboxThread.unipile_thread_id == thread_id,
            limit=1,
        )
        return _thread_ref(rows[0]) if rows else None

    async def find_existing_thread_for_lead(
        self,
        client_id: Any,
        account_id: str,
        lead_id: Any,
        normalized_lead_url: Optional[str]
    ) -> Optional[ThreadRef]:
        """
        Lead-linked thread first, then a bounded scan of the account's most
        recently updated threads matched on lead or contact profile URL.
        """
        recent_first = (InboxThread.updated_at.desc().nulls_last(),)
        linked = await self.select_threads(
            InboxThread.client_id == client_id,
            InboxThread.unipile_account_id == account_id,
            InboxThread.lead_id == lead_id,
            order_by=recent_first,
            limit=1,
        )
        if linked and linked[0].unipile_thread_id:
            return _thread_ref(linked[0])

        normalized_lead_url = normalize_profile_url(normalized_lead_url)
        if not normalized_lead_url:
            return None

        rows = await self.select_threads(
            InboxThread.client_id == client_id,
            InboxThread.unipile_account_id == account_id,
            order_by=recent_first,
            limit=settings.THREAD_SCAN_LIMIT,
        )
        for row in rows:
            if not row.unipile_thread_id:
                continue
            if normalize_profile_url(row.lead_linkedin_url) == normalized_lead_url:
                return _thread_ref(row)
            if normalize_profile_url(row.contact_linkedin_url) == normalized_lead_url:
                return _thread_ref(row)
        return None

    # ========================================================================
    # DENORMALIZED BOOKKEEPING
    # ========================================================================

    async def refresh_last_message(
        self,
        client_id: Any,
        thread_db_id: Any,
        sent_at: datetime,
        text: Optional[str]
    ) -> int:
        """
        Move last_message_at/preview forward (never back) and touch updated_at,
        in one statement so concurrent deliveries cannot interleave.
        """
        is_newer = or_(
            InboxThread.last_message_at.is_(None),
            InboxThread.last_message_at <= sent_at,
        )
        values = {
            "last_message_at": case((is_newer, sent_at), else_=InboxThread.last_message_at),
            "last_message_preview": case(
                (is_newer, truncate_preview(text)),
                else_=InboxThread.last_message_preview,
            ),
            "updated_at": utc_now(),
        }
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            values,
            InboxThread.id == thread_db_id,
            InboxThread.client_id == client_id,
        )
        return outcome.value or 0

    async def increment_unread(self, client_id: Any, thread_db_id: Any) -> int:
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {"unread_count": func.coalesce(InboxThread.unread_count, 0) + 1},
            InboxThread.id == thread_db_id,
            InboxThread.client_id == client_id,
        )
        return outcome.value or 0

    async def fill_contact_if_missing(
        self,
        client_id: Any,
        thread_db_id: Any,
        name: Optional[str],
        linkedin_url: Optional[str] = None,
        avatar_url: Optional[str] = None
    ) -> int:
        """Set the contact identity only while the thread has no contact name."""
        name = (name or "").strip()
        if not name:
            return 0
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {
                "contact_name": name,
                "contact_linkedin_url": normalize_profile_url(linkedin_url),
                "contact_avatar_url": avatar_url,
            },
            InboxThread.id == thread_db_id,
            InboxThread.client_id == client_id,
            _contact_name_missing(),
        )
        return outcome.value or 0

    async def enrich_provider_id(self, client_id: Any, lead_id: Any, provider_id: str) -> int:
        """Copy a lead's learned provider id onto its threads that have none."""
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {"provider_id": provider_id, "updated_at": utc_now()},
            InboxThread.client_id == client_id,
            InboxThread.lead_id == lead_id,
            InboxThread.provider_id.is_(None),
        )
        return outcome.value or 0

    async def mark_read(self, client_id: Any, thread_db_id: Any) -> int:
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {"unread_count": 0, "updated_at": utc_now()},
            InboxThread.id == thread_db_id,
            InboxThread.client_id == client_id,
        )
        return outcome.value or 0

    async def mark_read_by_external_id(self, client_id: Any, account_id: str, thread_id: str) -> int:
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {"unread_count": 0},
            InboxThread.client_id == client_id,
            InboxThread.unipile_account_id == account_id,
            InboxThread.unipile_thread_id == thread_id,
        )
        return outcome.value or 0

    async def mark_all_read(self, client_id: Any) -> int:
        now = utc_now()
        outcome = await update_rows(
            self.db,
            THREAD_WRITE_SCHEMA,
            {"unread_count": 0, "last_read_at": now, "updated_at": now},
            InboxThread.client_id == client_id,
        )
        return outcome.value or 0

    async def unread_count(self, client_id: Any) -> int:
        """Total unread messages across the client's threads (negatives ignored)."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(InboxThread.unread_count), 0)).where(
                InboxThread.client_id == client_id,
                InboxThread.unread_count > 0,
            )
        )
        return int(result.scalar_one() or 0)

    async def backfill_contact_names(self, client_id: Any) -> int:
        """Copy the latest named inbound sender onto threads that have no contact name yet."""
        result = await self.db.execute(
            select(InboxThread.id).where(
                InboxThread.client_id == client_id,
                _contact_name_missing(),
            )
        )
        thread_ids: List[Any] = list(result.scalars().all())

        updated = 0
        for thread_db_id in thread_ids:
            latest = await self.db.execute(
                select(InboxMessage.sender_name, InboxMessage.sender_linkedin_url)
                .where(
                    InboxMessage.client_id == client_id,
                    InboxMessage.thread_db_id == thread_db_id,
                    InboxMessage.direction == "inbound",
                    InboxMessage.sender_name.isnot(None),
                )
                .order_by(InboxMessage.sent_at.desc())
                .limit(1)
            )
            row = latest.first()
            if row is None:
                continue

            sender_name = (row.sender_name or "").strip()
            if not sender_name:
                continue

            values = {
                "contact_name": sender_name,
                "contact_linkedin_url": (row.sender_linkedin_url or "").strip() or None,
                "updated_at": utc_now(),
            }
            outcome = await update_rows(
                self.db,
                THREAD_WRITE_SCHEMA,
                values,
                InboxThread.id == thread_db_id,
                InboxThread.client_id == client_id,
                _contact_name_missing(),
            )
            if outcome.value:
                updated += 1

        logger.info(f"Backfilled contact names on {updated}/{len(thread_ids)} threads for client {client_id}")
        return updated
