"""Unipile webhook receiver."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, Optional
import json
import logging

from app.auth import verify_webhook_secret
from app.database import get_db
from app.exceptions import UnipileConfigurationError
from app.services.unipile_client import UnipileClient
from app.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/unipile", tags=["unipile"])


def get_optional_unipile_client() -> Optional[UnipileClient]:
    """Webhooks are still logged and reconciled when outbound API access is not configured."""
    try:
        return UnipileClient.from_settings()
    except UnipileConfigurationError:
        logger.info("Unipile API not configured; webhook sender lookups disabled")
        return None


@router.post("/webhook", dependencies=[Depends(verify_webhook_secret)])
async def unipile_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    unipile: Optional[UnipileClient] = Depends(get_optional_unipile_client),
) -> Dict[str, Any]:
    """
    Receive a Unipile event.

    Always answers 200 once authenticated; processing failures are only
    visible in server logs and the raw event log.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON, logging an empty payload")
        payload = {}

    return await WebhookHandler(db, unipile).handle(payload)
