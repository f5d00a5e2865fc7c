"""Inbox: send into threads, sync from Unipile, read state."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict
from uuid import UUID
import logging

from app.auth import require_active_subscription
from app.database import get_db
from app.schemas.messaging import InboxSendRequest, MarkReadRequest, SendMessageResponse, SyncResponse
from app.services.inbox_sync import InboxSync
from app.services.outbound_sender import OutboundSender
from app.services.send_lock import get_send_lock
from app.services.thread_manager import ThreadManager
from app.services.unipile_client import UnipileClient, get_unipile_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/inbox", tags=["inbox"])


@router.post("/send", response_model=SendMessageResponse)
async def send_in_thread(
    request: InboxSendRequest,
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
    unipile: UnipileClient = Depends(get_unipile_client),
    lock: Any = Depends(get_send_lock),
) -> Dict[str, Any]:
    """Send a message into an existing thread."""
    result = await OutboundSender(db, unipile, lock).send_to_thread(client_id, request.thread_db_id, request.text)
    return result.to_dict()


@router.post("/sync", response_model=SyncResponse)
async def sync_inbox(
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
    unipile: UnipileClient = Depends(get_unipile_client),
) -> Dict[str, Any]:
    """Pull chats and their latest messages from Unipile."""
    result = await InboxSync(db, unipile).sync_client(client_id)
    return result.to_dict()


@router.post("/mark-read")
async def mark_read(
    request: MarkReadRequest,
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    updated = await ThreadManager(db).mark_read(client_id, request.thread_db_id)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="thread_not_found")
    await db.commit()
    return {"success": True}


@router.post("/mark-all-read")
async def mark_all_read(
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    updated = await ThreadManager(db).mark_all_read(client_id)
    await db.commit()
    return {"success": True, "updated": updated}


@router.get("/unread-count")
async def unread_count(
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return {"unread": await ThreadManager(db).unread_count(client_id)}


@router.post("/backfill-contact-names")
async def backfill_contact_names(
    client_id: UUID = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Copy the latest inbound sender name of each thread onto the thread."""
    updated = await ThreadManager(db).backfill_contact_names(client_id)
    await db.commit()
    return {"success": True, "updated": updated}
