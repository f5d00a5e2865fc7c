"""HTTP trigger for the LinkedIn invitation cron."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict
import logging

from app.auth import verify_cron_secret
from app.database import get_db
from app.services.cron_orchestrator import CronOrchestrator
from app.services.unipile_client import UnipileClient, get_unipile_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/linkedin/cron", tags=["cron"])


@router.post("/run", dependencies=[Depends(verify_cron_secret)])
async def run_linkedin_cron(
    db: AsyncSession = Depends(get_db),
    unipile: UnipileClient = Depends(get_unipile_client),
) -> Dict[str, Any]:
    """Run one cron pass now (external schedulers call this instead of APScheduler)."""
    return await CronOrchestrator(db, unipile).run()
