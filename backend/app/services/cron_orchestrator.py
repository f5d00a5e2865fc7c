# backend/app/services/cron_orchestrator.py
"""
LinkedIn Invitation Cron

One run, at most one invitation per eligible client:
1. Advisory lock (overlapping triggers skip with lock_not_acquired)
2. Clients on plan 'full' with an active subscription
3. Client-local working window [08:00, 18:00)
4. Daily quota (1..200, default 10) against invitations queued/sent/accepted
   since local midnight
5. Newest still-eligible lead without any invitation row on the account
6. Provider id lookup by slug -> invite -> 'sent' (or 'queued' + error detail,
   stamped with the attempt time so failures also consume the quota)

Every decision is appended to the run report and, for send attempts, to
automation_logs.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytz
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from app.config import settings
from app.database import engine
from app.exceptions import InvitationFailedError, ProviderIdMissingError
from app.models import AutomationLog, Client, ClientLinkedInSettings, Lead, UnipileAccount
from app.services.identity_resolver import extract_slug
from app.services.invitation_tracker import STATUS_QUEUED, InvitationTracker
from app.services.lead_store import load_leads
from app.services.payload_normalizer import utc_now
from app.services.unipile_client import UnipileClient

logger = logging.getLogger(__name__)

RUNNER_NAME = "linkedin-cron-runner"
CRON_LOCK_KEY = 8_240_317
AUTOMATION_ACTION = "invitation_send"


# ============================================================================
# PURE HELPERS
# ============================================================================

def normalize_quota(raw_quota: Any) -> int:
    """Daily quota bounded to [1, MAX]; unusable values fall back to the default."""
    default = settings.DEFAULT_DAILY_INVITE_QUOTA
    try:
        parsed = float(raw_quota)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    quota = math.trunc(parsed)
    if quota < 1:
        return default
    return min(quota, settings.MAX_DAILY_INVITE_QUOTA)


def resolve_timezone(name: Optional[str]):
    name = (name or "").strip() or settings.DEFAULT_TIMEZONE
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone {name!r}, using {settings.DEFAULT_TIMEZONE}")
        return pytz.timezone(settings.DEFAULT_TIMEZONE)


def is_within_window(now_minutes: int, start_minutes: int, end_minutes: int) -> bool:
    """Half-open [start, end); an empty or inverted window never matches."""
    if end_minutes <= start_minutes:
        return False
    return start_minutes <= now_minutes < end_minutes


def local_day_bounds(now_utc: datetime, tz) -> Tuple[datetime, datetime, datetime]:
    """(local now, start of local day in UTC, start of next local day in UTC)."""
    local_now = now_utc.astimezone(tz)
    midnight = datetime(local_now.year, local_now.month, local_now.day)
    start = tz.localize(midnight)
    end = tz.localize(midnight + timedelta(days=1))
    return local_now, start.astimezone(pytz.UTC), end.astimezone(pytz.UTC)


class AdvisoryLock:
    """
    Session-level Postgres advisory lock on its own connection.

    The lock belongs to the connection that took it, so it is held outside
    the ORM session whose connection goes back to the pool on every commit.
    """

    def __init__(self, bind: AsyncEngine, key: int):
        self.bind = bind
        self.key = key
        self._conn: Optional[AsyncConnection] = None

    async def acquire(self) -> bool:
        self._conn = await self.bind.connect()
        result = await self._conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": self.key})
        if result.scalar():
            return True
        await self._conn.close()
        self._conn = None
        return False

    async def release(self):
        if self._conn is None:
            return
        try:
            await self._conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self.key})
        finally:
            await self._conn.close()
            self._conn = None


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class CronOrchestrator:
    """Runs one pass of the invitation cron."""

    def __init__(self, db: AsyncSession, unipile: UnipileClient, lock: Optional[AdvisoryLock] = None):
        self.db = db
        self.unipile = unipile
        self.lock = lock or AdvisoryLock(engine, CRON_LOCK_KEY)
        self.invitations = InvitationTracker(db)

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        if not await self.lock.acquire():
            logger.info("LinkedIn cron skipped: lock held by another runner")
            return {"ok": True, "skipped": "lock_not_acquired"}

        try:
            now = now or utc_now()
            processed: List[Dict[str, Any]] = []
            for client, client_settings in await self.load_clients():
                entry = await self.process_client(client, client_settings, now)
                processed.append(entry)
                await self.db.commit()

            logger.info(
                f"LinkedIn cron processed {len(processed)} clients, "
                f"{sum(1 for entry in processed if entry.get('sent'))} invitation(s) sent"
            )
            return {"ok": True, "processed": processed}
        finally:
            await self.lock.release()

    async def load_clients(self) -> List[Tuple[Client, Optional[ClientLinkedInSettings]]]:
        result = await self.db.execute(
            select(Client, ClientLinkedInSettings)
            .outerjoin(ClientLinkedInSettings, ClientLinkedInSettings.client_id == Client.id)
            .where(
                Client.plan == "full",
                Client.subscription_status == "active",
            )
        )
        return [
            (client, client_settings)
            for client, client_settings in result.all()
            if client_settings is None or client_settings.enabled
        ]

    async def resolve_account(self, client_id: Any, client_settings: Optional[ClientLinkedInSettings]) -> Optional[str]:
        selected = (client_settings.unipile_account_id if client_settings else None) or ""
        if selected.strip():
            return selected.strip()

        result = await self.db.execute(
            select(UnipileAccount.unipile_account_id)
            .where(
                UnipileAccount.client_id == client_id,
                UnipileAccount.provider == "linkedin",
                UnipileAccount.status == "connected",
            )
            .order_by(UnipileAccount.connected_at.desc().nulls_last())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def process_client(
        self,
        client: Client,
        client_settings: Optional[ClientLinkedInSettings],
        now: datetime
    ) -> Dict[str, Any]:
        client_id = client.id
        tz = resolve_timezone(client_settings.timezone if client_settings else None)
        local_now, day_start, day_end = local_day_bounds(now, tz)

        now_minutes = local_now.hour * 60 + local_now.minute
        if not is_within_window(
            now_minutes,
            settings.WORKING_HOURS_START * 60,
            settings.WORKING_HOURS_END * 60,
        ):
            return {"client_id": str(client_id), "skipped": "outside_window"}

        daily_quota = normalize_quota(client_settings.daily_invite_quota if client_settings else None)
        account_id = await self.resolve_account(client_id, client_settings)
        if not account_id:
            await self.log_automation(client_id, "skipped", details={"reason": "missing_unipile_account_id"})
            return {"client_id": str(client_id), "skipped": "missing_account"}

        sent_today = await self.invitations.count_sent_today(client_id, account_id, day_start, day_end)
        if sent_today >= daily_quota:
            return {"client_id": str(client_id), "skipped": "quota_reached", "sent_today": sent_today}

        leads = await self.load_candidate_leads(client_id)
        if not leads:
            return {"client_id": str(client_id), "skipped": "no_eligible_leads"}

        invited = await self.invitations.invited_lead_ids(client_id, account_id, [lead.id for lead in leads])
        lead = next((candidate for candidate in leads if candidate.id not in invited), None)
        if lead is None:
            return {"client_id": str(client_id), "skipped": "all_leads_already_invited"}

        profile_slug = extract_slug(lead.linkedin_url)
        if not profile_slug:
            await self.log_automation(
                client_id, "skipped", lead_id=lead.id,
                details={"reason": "invalid_linkedin_url", "linkedin_url": lead.linkedin_url,
                         "unipile_account_id": account_id},
            )
            return {"client_id": str(client_id), "skipped": "invalid_linkedin_url", "lead_id": str(lead.id)}

        try:
            await self.invitations.send_invitation(
                self.unipile, client_id, lead.id, account_id, profile_slug,
                raw_context={"runner": RUNNER_NAME},
            )
        except (ProviderIdMissingError, InvitationFailedError) as e:
            error = e.message if isinstance(e, ProviderIdMissingError) else e.code
            await self.invitations.upsert_invitation(
                client_id, lead.id, account_id, STATUS_QUEUED,
                raw={"runner": RUNNER_NAME, "error": error, "details": e.details},
                sent_at=now,
            )
            await self.log_automation(
                client_id, "error", lead_id=lead.id,
                details={"reason": error, "details": e.details, "unipile_account_id": account_id},
            )
            logger.warning(f"❌ Invitation for lead {lead.id} (client {client_id}) failed: {error}")
            return {"client_id": str(client_id), "error": error, "lead_id": str(lead.id)}

        await self.log_automation(
            client_id, "success", lead_id=lead.id,
            details={
                "sent_today": sent_today + 1,
                "daily_quota": daily_quota,
                "timezone": tz.zone,
                "unipile_account_id": account_id,
            },
        )
        logger.info(f"✅ Invitation sent to lead {lead.id} for client {client_id} ({sent_today + 1}/{daily_quota})")
        return {
            "client_id": str(client_id),
            "sent": True,
            "lead_id": str(lead.id),
            "unipile_account_id": account_id,
        }

    async def load_candidate_leads(self, client_id: Any) -> List[Any]:
        """Newest leads with a profile URL that were never processed, answered or messaged."""
        return await load_leads(
            self.db,
            Lead.client_id == client_id,
            Lead.linkedin_url.isnot(None),
            Lead.linkedin_url != "",
            Lead.traite.isnot(True),
            Lead.responded.isnot(True),
            Lead.message_sent.isnot(True),
            order_by=(Lead.created_at.desc(),),
            limit=settings.CRON_LEAD_SCAN_LIMIT,
        )

    async def log_automation(
        self,
        client_id: Any,
        status: str,
        lead_id: Any = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.db.add(AutomationLog(
            client_id=client_id,
            lead_id=lead_id,
            action=AUTOMATION_ACTION,
            status=status,
            details=details or {},
        ))
        await self.db.flush()
