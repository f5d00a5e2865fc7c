"""Outbound prospection: direct messages and manual invitations."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict
from uuid import UUID
import logging

from app.auth import require_active_subscription
from app.database import get_db
from app.schemas.messaging import (
    InviteLeadRequest,
    InviteLeadResponse,
    SendLinkedInMessageRequest,
    SendMessageResponse,
)
from app.services.invitation_tracker import InvitationTracker
from app.services.outbound_sender import OutboundSender
from app.services.send_lock import get_send_lock
from app.services.unipile_client import UnipileClient, get_unipile_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["prospection"])


@router.post("/prospection/send-linkedin-message", response_model=SendMessageResponse)
async def send_linkedin_message(
    request: SendLinkedInMessageRequest,
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
    unipile: UnipileClient = Depends(get_unipile_client),
    lock: Any = Depends(get_send_lock),
) -> Dict[str, Any]:
    """
    Send a LinkedIn message to a lead.

    Reuses the lead's thread when one is known, otherwise opens a conversation
    first. Errors come back as {success: false, error, message, attempts}.
    """
    sender = OutboundSender(db, unipile, lock)
    result = await sender.send_to_lead(client_id, request.lead_id, request.text)
    return result.to_dict()


@router.post("/linkedin/invite", response_model=InviteLeadResponse)
async def invite_lead(
    request: InviteLeadRequest,
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
    unipile: UnipileClient = Depends(get_unipile_client),
) -> Dict[str, Any]:
    """Send a LinkedIn invitation to one lead (no-op when one already exists)."""
    result = await InvitationTracker(db).invite_lead(unipile, client_id, request.lead_id)
    await db.commit()
    return result
