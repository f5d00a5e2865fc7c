# backend/app/services/invitation_tracker.py
"""
Invitation Lifecycle Tracker

States move forward only: queued -> pending -> sent -> accepted -> connected.
One row per (client, lead, account). The raw column accumulates context:
an acceptance nests the previous raw under "invitation" and the webhook plus
matching metadata under "acceptance", so the payload behind each transition
stays inspectable.

Acceptance matching:
1. Counterpart identity matched to a lead (url_exact / slug_match): that
   lead's sent invitation is accepted
2. No identity match: the most recently sent invitation of the account is
   accepted and flagged strategy=fallback_last_sent, uncertain=true
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import func, literal_column, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    BadRequestError,
    InvitationFailedError,
    NotFoundError,
    ProviderIdMissingError,
    UpstreamError,
)
from app.models import LinkedInInvitation
from app.services.account_resolver import get_linkedin_account_id
from app.services.identity_resolver import (
    STRATEGY_FALLBACK_LAST_SENT,
    IdentityResolver,
    MatchResult,
    extract_counterpart_identity,
    extract_slug,
    lead_normalized_url,
    normalize_slug,
)
from app.services.lead_store import get_lead, mark_lead_processed, update_lead
from app.services.optional_columns import WriteSchema, execute_with_optional_columns
from app.services.payload_normalizer import to_json_object, utc_now
from app.services.send_failures import first_failure_details
from app.services.thread_manager import ThreadManager
from app.services.unipile_client import UnipileClient

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_ACCEPTED = "accepted"
STATUS_CONNECTED = "connected"
STATUS_DECLINED = "declined"

STATUS_ORDER = (STATUS_QUEUED, STATUS_PENDING, STATUS_SENT, STATUS_ACCEPTED, STATUS_CONNECTED)
ACTIVE_STATUSES = STATUS_ORDER
ACCEPTED_STATUSES = (STATUS_ACCEPTED, STATUS_CONNECTED)
QUOTA_STATUSES = (STATUS_QUEUED, STATUS_SENT, STATUS_ACCEPTED)

# Provider id sync outcomes
SYNC_UPDATED = "UPDATED"
SYNC_ALREADY_PRESENT = "ALREADY_PRESENT"
SYNC_LEAD_NOT_FOUND = "LEAD_NOT_FOUND"
SYNC_PROVIDER_ID_MISSING = "PROVIDER_ID_MISSING"
SYNC_MISMATCH_WARNING = "MISMATCH_WARNING"
SYNC_LEAD_UPDATE_FAILED = "LEAD_UPDATE_FAILED"

INVITATION_WRITE_SCHEMA = WriteSchema(
    LinkedInInvitation,
    required=("client_id", "lead_id", "unipile_account_id", "status"),
    optional=("sent_at", "accepted_at", "raw", "updated_at"),
    conflict_columns=("client_id", "lead_id", "unipile_account_id"),
)


def statuses_up_to(status: str) -> List[str]:
    """Statuses a row may hold and still be moved to `status`."""
    if status not in STATUS_ORDER:
        return [status]
    return list(STATUS_ORDER[:STATUS_ORDER.index(status) + 1])


def acceptance_raw(payload: Any, match: MatchResult) -> Dict[str, Any]:
    return {
        "webhook_payload": to_json_object(payload),
        "matching": match.matching_context(),
    }


# ============================================================================
# RESULT TYPES
# ============================================================================

class AcceptResult:
    """What an invitation_accepted event did."""

    def __init__(
        self,
        outcome: str,
        lead_id: Any = None,
        invitation_id: Any = None,
        match: Optional[MatchResult] = None
    ):
        self.outcome = outcome
        self.lead_id = lead_id
        self.invitation_id = invitation_id
        self.match = match

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "lead_id": str(self.lead_id) if self.lead_id is not None else None,
            "invitation_id": str(self.invitation_id) if self.invitation_id is not None else None,
            "matching": self.match.matching_context() if self.match else None,
        }


class ProviderSyncResult:
    """Outcome of learning a provider id from a relation payload."""

    def __init__(
        self,
        result: str,
        lead_id: Any = None,
        provider_id: Optional[str] = None,
        strategy: Optional[str] = None,
        details: Any = None
    ):
        self.result = result
        self.lead_id = lead_id
        self.provider_id = provider_id
        self.strategy = strategy
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "lead_id": str(self.lead_id) if self.lead_id is not None else None,
            "user_provider_id": self.provider_id,
            "strategy": self.strategy,
            "details": self.details,
        }


# ============================================================================
# TRACKER
# ============================================================================

class InvitationTracker:
    """Invitation rows: upserts, acceptance reconciliation, provider id learning."""

    def __init__(self, db: AsyncSession, identity: Optional[IdentityResolver] = None):
        self.db = db
        self.identity = identity or IdentityResolver(db)

    async def upsert_invitation(
        self,
        client_id: Any,
        lead_id: Any,
        account_id: str,
        status: str,
        raw: Optional[Dict[str, Any]] = None,
        sent_at: Optional[datetime] = None,
        accepted_at: Optional[datetime] = None
    ) -> Optional[Any]:
        """
        Upsert on (client, lead, account). Existing raw is merged with the new
        keys and the status only moves forward; None means the row was
        already further along and was left untouched.
        """
        model = LinkedInInvitation
        values = {
            "client_id": client_id,
            "lead_id": lead_id,
            "unipile_account_id": account_id,
            "status": status,
            "raw": raw,
            "sent_at": sent_at,
            "accepted_at": accepted_at,
            "updated_at": utc_now(),
        }

        def build(payload: Dict[str, Any]):
            stmt = insert(model).values(**payload)
            set_: Dict[str, Any] = {"status": stmt.excluded.status}
            if "raw" in payload:
                set_["raw"] = func.coalesce(model.raw, literal_column("'{}'::jsonb")).op("||")(stmt.excluded.raw)
            for key in ("sent_at", "accepted_at", "updated_at"):
                if key in payload:
                    set_[key] = stmt.excluded[key]
            return stmt.on_conflict_do_update(
                index_elements=list(INVITATION_WRITE_SCHEMA.conflict_columns),
                set_=set_,
                where=model.status.in_(statuses_up_to(status)),
            ).returning(model.id)

        outcome = await execute_with_optional_columns(
            self.db, INVITATION_WRITE_SCHEMA, values, build, lambda result: result.scalar_one_or_none()
        )
        if outcome.value is None:
            logger.info(
                f"Invitation for lead {lead_id} on {account_id} already past '{status}', left unchanged"
            )
        return outcome.value

    async def count_sent_today(
        self,
        client_id: Any,
        account_id: str,
        start_utc: datetime,
        end_utc: datetime
    ) -> int:
        result = await self.db.execute(
            select(func.count(LinkedInInvitation.id)).where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.unipile_account_id == account_id,
                LinkedInInvitation.sent_at >= start_utc,
                LinkedInInvitation.sent_at < end_utc,
                LinkedInInvitation.status.in_(QUOTA_STATUSES),
            )
        )
        return int(result.scalar_one() or 0)

    async def invited_lead_ids(self, client_id: Any, account_id: str, lead_ids: Iterable[Any]) -> Set[Any]:
        lead_ids = list(lead_ids)
        if not lead_ids:
            return set()
        result = await self.db.execute(
            select(LinkedInInvitation.lead_id).where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.unipile_account_id == account_id,
                LinkedInInvitation.lead_id.in_(lead_ids),
            )
        )
        return {lead_id for lead_id in result.scalars().all() if lead_id is not None}

    async def find_active_invitation(self, client_id: Any, lead_id: Any) -> Optional[Any]:
        """Any non-terminal invitation for the lead, on any account."""
        result = await self.db.execute(
            select(LinkedInInvitation.id, LinkedInInvitation.status)
            .where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.lead_id == lead_id,
                LinkedInInvitation.status.in_(ACTIVE_STATUSES),
            )
            .order_by(LinkedInInvitation.status.in_(ACCEPTED_STATUSES).desc())
            .limit(1)
        )
        return result.first()

    async def load_invitation_raws(self, client_id: Any, lead_id: Any, account_id: str, limit: int = 20) -> List[Any]:
        result = await self.db.execute(
            select(LinkedInInvitation.raw)
            .where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.lead_id == lead_id,
                LinkedInInvitation.unipile_account_id == account_id,
            )
            .order_by(LinkedInInvitation.updated_at.desc().nulls_last())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ========================================================================
    # WEBHOOK TRANSITIONS
    # ========================================================================

    async def record_invitation_sent(self, client_id: Any, account_id: str, payload: Any) -> Optional[Any]:
        """invitation_sent event: upsert 'sent' for the matched lead; no fallback guessing."""
        match = await self.identity.match_counterpart(client_id, payload)
        if not match.matched:
            logger.info(f"invitation_sent on {account_id} matched no lead for client {client_id}")
            return None

        await self.upsert_invitation(
            client_id,
            match.lead_id,
            account_id,
            STATUS_SENT,
            raw={"sent_webhook": to_json_object(payload)},
            sent_at=utc_now(),
        )
        return match.lead_id

    async def handle_invitation_accepted(self, client_id: Any, account_id: str, payload: Any) -> AcceptResult:
        match = await self.identity.match_counterpart(client_id, payload)

        if match.matched:
            result = await self.mark_invitation_accepted(client_id, match.lead_id, account_id, payload, match)
            sync = await self.sync_lead_provider_from_relation(client_id, payload, match)
            logger.info(
                f"Relation for client {client_id} lead {match.lead_id}: "
                f"invitation {result.outcome}, provider sync {sync.result}"
            )
            return result

        return await self.fallback_accept_last_sent(client_id, account_id, payload, match)

    async def mark_invitation_accepted(
        self,
        client_id: Any,
        lead_id: Any,
        account_id: str,
        payload: Any,
        match: MatchResult
    ) -> AcceptResult:
        now = utc_now()
        acceptance = acceptance_raw(payload, match)

        result = await self.db.execute(
            select(LinkedInInvitation.id, LinkedInInvitation.raw, LinkedInInvitation.status)
            .where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.lead_id == lead_id,
                LinkedInInvitation.unipile_account_id == account_id,
                LinkedInInvitation.status.in_((STATUS_PENDING, STATUS_SENT)),
            )
            .order_by(LinkedInInvitation.sent_at.desc().nulls_last())
            .limit(1)
        )
        sent = result.first()

        if sent is not None:
            updated = await self._accept_row(client_id, sent.id, sent.status, sent.raw, acceptance, now)
            if updated:
                return AcceptResult("accepted", lead_id=lead_id, invitation_id=sent.id, match=match)

        result = await self.db.execute(
            select(LinkedInInvitation.id).where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.lead_id == lead_id,
                LinkedInInvitation.unipile_account_id == account_id,
                LinkedInInvitation.status.in_(ACCEPTED_STATUSES),
            ).limit(1)
        )
        already = result.scalar_one_or_none()
        if already is not None:
            return AcceptResult("already_accepted", lead_id=lead_id, invitation_id=already, match=match)

        # Acceptance with no sent row (invite sent outside the app, or only queued here).
        invitation_id = await self.upsert_invitation(
            client_id,
            lead_id,
            account_id,
            STATUS_ACCEPTED,
            raw={"acceptance": acceptance},
            accepted_at=now,
        )
        if invitation_id is None:
            logger.warning(
                f"Acceptance for lead {lead_id} on {account_id} ignored: invitation is in a terminal status"
            )
            return AcceptResult("status_locked", lead_id=lead_id, match=match)
        return AcceptResult("accepted_created", lead_id=lead_id, invitation_id=invitation_id, match=match)

    async def fallback_accept_last_sent(
        self,
        client_id: Any,
        account_id: str,
        payload: Any,
        match: MatchResult
    ) -> AcceptResult:
        """Attribute an unidentifiable acceptance to the latest sent invitation, flagged uncertain."""
        fallback_match = MatchResult(
            lead_id=None,
            strategy=STRATEGY_FALLBACK_LAST_SENT,
            uncertain=True,
            matched_linkedin_url=match.matched_linkedin_url,
            matched_slug=match.matched_slug,
        )

        result = await self.db.execute(
            select(
                LinkedInInvitation.id,
                LinkedInInvitation.lead_id,
                LinkedInInvitation.raw,
                LinkedInInvitation.status,
            )
            .where(
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.unipile_account_id == account_id,
                LinkedInInvitation.status == STATUS_SENT,
                LinkedInInvitation.lead_id.isnot(None),
            )
            .order_by(LinkedInInvitation.sent_at.desc().nulls_last())
            .limit(1)
        )
        last_sent = result.first()
        if last_sent is None:
            logger.info(f"Unmatched relation for client {client_id} on {account_id} and no sent invitation")
            return AcceptResult("unmatched", match=fallback_match)

        fallback_match.lead_id = last_sent.lead_id
        updated = await self._accept_row(
            client_id,
            last_sent.id,
            last_sent.status,
            last_sent.raw,
            acceptance_raw(payload, fallback_match),
            utc_now(),
        )
        if not updated:
            return AcceptResult("unmatched", match=fallback_match)

        logger.warning(
            f"Relation for client {client_id} attributed to lead {last_sent.lead_id} "
            f"via {STRATEGY_FALLBACK_LAST_SENT} (uncertain)"
        )
        return AcceptResult(
            "accepted_uncertain",
            lead_id=last_sent.lead_id,
            invitation_id=last_sent.id,
            match=fallback_match,
        )

    async def _accept_row(
        self,
        client_id: Any,
        invitation_id: Any,
        expected_status: str,
        previous_raw: Any,
        acceptance: Dict[str, Any],
        accepted_at: datetime
    ) -> bool:
        # Guarded on the status read above so a concurrent duplicate delivery updates nothing.
        result = await self.db.execute(
            update(LinkedInInvitation)
            .where(
                LinkedInInvitation.id == invitation_id,
                LinkedInInvitation.client_id == client_id,
                LinkedInInvitation.status == expected_status,
            )
            .values(
                status=STATUS_ACCEPTED,
                accepted_at=accepted_at,
                updated_at=accepted_at,
                raw={"invitation": previous_raw, "acceptance": acceptance},
            )
        )
        return bool(result.rowcount)

    # ========================================================================
    # PROVIDER ID LEARNING
    # ========================================================================

    async def sync_lead_provider_from_relation(
        self,
        client_id: Any,
        payload: Any,
        match: MatchResult
    ) -> ProviderSyncResult:
        """
        Store the counterpart provider id on a confidently matched lead.

        An existing, different provider id is never replaced: the conflict is
        reported as MISMATCH_WARNING.
        """
        identity = extract_counterpart_identity(payload)
        provider_id = (identity.provider_id or "").strip() or None

        if not match.matched or match.uncertain:
            return ProviderSyncResult(SYNC_LEAD_NOT_FOUND, strategy=match.strategy)

        if not provider_id:
            return ProviderSyncResult(SYNC_PROVIDER_ID_MISSING, lead_id=match.lead_id, strategy=match.strategy)

        lead = await get_lead(self.db, client_id, match.lead_id)
        if lead is None:
            return ProviderSyncResult(
                SYNC_LEAD_UPDATE_FAILED,
                lead_id=match.lead_id,
                provider_id=provider_id,
                strategy=match.strategy,
                details="lead_row_not_found",
            )

        existing = (lead.linkedin_provider_id or "").strip()
        if existing and existing != provider_id:
            logger.warning(
                f"Provider id mismatch for lead {lead.id}: stored {existing}, incoming {provider_id}"
            )
            return ProviderSyncResult(
                SYNC_MISMATCH_WARNING,
                lead_id=lead.id,
                provider_id=provider_id,
                strategy=match.strategy,
                details={"existing_provider_id": existing},
            )

        values: Dict[str, Any] = {}
        if not existing:
            values["linkedin_provider_id"] = provider_id
        public_identifier = normalize_slug(identity.slug) or extract_slug(identity.profile_url)
        if public_identifier and normalize_slug(lead.linkedin_public_identifier) != public_identifier:
            values["linkedin_public_identifier"] = public_identifier
        target_url = identity.normalized_url or lead_normalized_url(lead)
        if target_url and target_url != lead.linkedin_url_normalized:
            values["linkedin_url_normalized"] = target_url

        threads = ThreadManager(self.db)
        if not values:
            await threads.enrich_provider_id(client_id, lead.id, provider_id)
            return ProviderSyncResult(
                SYNC_ALREADY_PRESENT, lead_id=lead.id, provider_id=provider_id, strategy=match.strategy
            )

        updated = await update_lead(self.db, client_id, lead.id, values)
        if not updated:
            return ProviderSyncResult(
                SYNC_LEAD_UPDATE_FAILED,
                lead_id=lead.id,
                provider_id=provider_id,
                strategy=match.strategy,
                details=sorted(values),
            )

        await threads.enrich_provider_id(client_id, lead.id, provider_id)
        logger.info(f"Lead {lead.id} learned provider id {provider_id} via {match.strategy}")
        return ProviderSyncResult(SYNC_UPDATED, lead_id=lead.id, provider_id=provider_id, strategy=match.strategy)

    # ========================================================================
    # SENDING
    # ========================================================================

    async def send_invitation(
        self,
        unipile: UnipileClient,
        client_id: Any,
        lead_id: Any,
        account_id: str,
        profile_slug: str,
        raw_context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Look up the provider id by slug, invite, record 'sent' and flag the
        lead processed. Lookup and invite failures propagate; the caller
        decides whether to record a queued row.
        """
        provider_id = await unipile.lookup_provider_id(account_id, profile_slug)

        response = await unipile.send_invitation(account_id, provider_id)
        if not response.ok:
            raise InvitationFailedError(
                details=response.failure_dicts(),
                user_message=first_failure_details(response.failures),
            )

        raw = {
            **(raw_context or {}),
            "profile_slug": profile_slug,
            "provider_id": provider_id,
            "invite_response": response.payload,
        }
        await self.upsert_invitation(
            client_id, lead_id, account_id, STATUS_SENT, raw=raw, sent_at=utc_now()
        )
        await mark_lead_processed(self.db, client_id, lead_id)
        return {"provider_id": provider_id, "invite_response": response.payload}

    async def invite_lead(self, unipile: UnipileClient, client_id: Any, lead_id: Any) -> Dict[str, Any]:
        """
        Manual invitation for one lead.

        An invitation already queued, sent or accepted short-circuits with
        alreadySent=True (the lead is still flagged processed).
        """
        lead = await get_lead(self.db, client_id, lead_id)
        if lead is None:
            raise NotFoundError("lead_not_found")

        if not (lead.linkedin_url or "").strip():
            raise BadRequestError("missing_linkedin_url")

        profile_slug = extract_slug(lead.linkedin_url)
        if not profile_slug:
            raise BadRequestError("invalid_linkedin_url")

        account_id = await get_linkedin_account_id(self.db, client_id)
        if not account_id:
            raise NotFoundError("linkedin_account_not_connected")

        existing = await self.find_active_invitation(client_id, lead.id)
        if existing is not None:
            await mark_lead_processed(self.db, client_id, lead.id)
            status = STATUS_ACCEPTED if existing.status in ACCEPTED_STATUSES else STATUS_SENT
            logger.info(f"Lead {lead.id} already invited ({existing.status}), skipping")
            return {"success": True, "alreadySent": True, "invitationStatus": status}

        try:
            sent = await self.send_invitation(
                unipile,
                client_id,
                lead.id,
                account_id,
                profile_slug,
                raw_context={"account_id": account_id, "source": "manual"},
            )
        except ProviderIdMissingError as e:
            code = (
                "unipile_profile_lookup_failed"
                if e.message == "profile_lookup_failed"
                else "unipile_provider_id_missing"
            )
            raise UpstreamError(code, details=e.details, user_message=e.user_message) from e

        logger.info(f"Invitation sent to lead {lead.id} on {account_id}")
        return {
            "success": True,
            "alreadySent": False,
            "invitationStatus": STATUS_SENT,
            "provider_id": sent["provider_id"],
        }
