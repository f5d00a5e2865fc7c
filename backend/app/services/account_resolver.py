# backend/app/services/account_resolver.py
"""Mapping between tenants and their connected messaging accounts."""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import ClientLinkedInSettings, UnipileAccount

logger = logging.getLogger(__name__)


async def resolve_client_id(db: AsyncSession, account_id: Optional[str]) -> Optional[Any]:
    """Tenant owning an external account id (webhook routing)."""
    if not account_id:
        return None
    result = await db.execute(
        select(UnipileAccount.client_id)
        .where(
            UnipileAccount.unipile_account_id == account_id,
            UnipileAccount.provider == "linkedin",
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_linkedin_account_id(db: AsyncSession, client_id: Any) -> Optional[str]:
    """Account selected in the client's settings, else the most recently connected one."""
    result = await db.execute(
        select(ClientLinkedInSettings.unipile_account_id)
        .where(ClientLinkedInSettings.client_id == client_id)
        .limit(1)
    )
    selected = (result.scalar_one_or_none() or "").strip()
    if selected:
        return selected

    result = await db.execute(
        select(UnipileAccount.unipile_account_id)
        .where(
            UnipileAccount.client_id == client_id,
            UnipileAccount.provider == "linkedin",
        )
        .order_by(UnipileAccount.connected_at.desc().nulls_last())
        .limit(1)
    )
    account_id = (result.scalar_one_or_none() or "").strip()
    if not account_id:
        logger.info(f"No LinkedIn account connected for client {client_id}")
    return account_id or None
