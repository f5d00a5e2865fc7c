# backend/app/services/lead_store.py
"""Lead reads and the narrow set of lead columns the engine writes."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Lead
from app.services.optional_columns import WriteSchema, read_with_optional_columns, update_rows
from app.services.payload_normalizer import utc_now

logger = logging.getLogger(__name__)

LEAD_WRITE_SCHEMA = WriteSchema(
    Lead,
    required=("traite",),
    optional=(
        "linkedin_provider_id", "linkedin_public_identifier", "linkedin_url_normalized",
        "linkedin_chat_id", "message_sent", "message_sent_at", "next_followup_at",
        "updated_at",
    ),
    version=2,
)

LEAD_READ_COLUMNS = (
    "id", "client_id", "first_name", "last_name", "linkedin_url",
    "linkedin_url_normalized", "linkedin_public_identifier", "linkedin_provider_id",
)


def lead_full_name(lead: Any) -> Optional[str]:
    parts = (getattr(lead, "first_name", None), getattr(lead, "last_name", None))
    return " ".join(part.strip() for part in parts if part and part.strip()) or None


async def load_leads(
    db: AsyncSession,
    *criteria: Any,
    order_by: Sequence[Any] = (),
    limit: Optional[int] = None
) -> List[Any]:
    """Lead rows of LEAD_READ_COLUMNS; unmigrated identity columns read as NULL."""
    def build(selected):
        stmt = select(*selected).where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        return stmt

    return await read_with_optional_columns(db, LEAD_WRITE_SCHEMA, LEAD_READ_COLUMNS, build)


async def get_lead(db: AsyncSession, client_id: Any, lead_id: Any) -> Optional[Any]:
    rows = await load_leads(db, Lead.id == lead_id, Lead.client_id == client_id, limit=1)
    return rows[0] if rows else None


async def update_lead(db: AsyncSession, client_id: Any, lead_id: Any, values: Dict[str, Any]) -> int:
    """Tenant-scoped lead update; optional columns missing on the live table are skipped."""
    outcome = await update_rows(
        db,
        LEAD_WRITE_SCHEMA,
        {**values, "updated_at": utc_now()},
        Lead.id == lead_id,
        Lead.client_id == client_id,
    )
    if outcome.dropped_columns:
        logger.warning(f"Lead {lead_id} updated without columns {outcome.dropped_columns}")
    return outcome.value or 0


async def mark_lead_processed(db: AsyncSession, client_id: Any, lead_id: Any) -> int:
    return await update_lead(db, client_id, lead_id, {"traite": True})


async def backfill_provider_id(
    db: AsyncSession,
    client_id: Any,
    lead_id: Any,
    provider_id: str
) -> int:
    """Store a learned provider id only where none is stored yet."""
    outcome = await update_rows(
        db,
        LEAD_WRITE_SCHEMA,
        {"linkedin_provider_id": provider_id, "updated_at": utc_now()},
        Lead.id == lead_id,
        Lead.client_id == client_id,
        Lead.linkedin_provider_id.is_(None),
    )
    return outcome.value or 0
