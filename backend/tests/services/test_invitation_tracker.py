# tests/services/test_invitation_tracker.py
"""
Tests for the invitation lifecycle tracker

Coverage:
- Forward-only status upserts
- Acceptance matching (identity match, already accepted, fallback_last_sent)
- Provider id learning from relation payloads
- Manual invitations

Run with: pytest tests/services/test_invitation_tracker.py -v
"""

import pytest
from types import SimpleNamespace
from uuid import uuid4
from unittest.mock import AsyncMock, Mock, patch

from sqlalchemy.dialects import postgresql

from app.exceptions import BadRequestError, InvitationFailedError, NotFoundError, ProviderIdMissingError, UpstreamError
from app.services.identity_resolver import (
    STRATEGY_FALLBACK_LAST_SENT,
    STRATEGY_NONE,
    STRATEGY_URL_EXACT,
    MatchResult,
)
from app.services.invitation_tracker import (
    STATUS_QUEUED,
    STATUS_SENT,
    SYNC_ALREADY_PRESENT,
    SYNC_LEAD_NOT_FOUND,
    SYNC_MISMATCH_WARNING,
    SYNC_PROVIDER_ID_MISSING,
    SYNC_UPDATED,
    InvitationTracker,
    statuses_up_to,
)
from app.services.unipile_client import AttemptFailure, FirstSuccessResult, UnipileClient

MODULE = "app.services.invitation_tracker"

RELATION_PAYLOAD = {
    "event": "new_relation",
    "account_id": "acc-1",
    "user_full_name": "Jane Doe",
    "user_profile_url": "https://www.linkedin.com/in/jane-doe/",
    "user_public_identifier": "jane-doe",
    "user_provider_id": "ACoAA123",
}


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def identity():
    resolver = Mock()
    resolver.match_counterpart = AsyncMock(return_value=MatchResult())
    return resolver


@pytest.fixture
def tracker(mock_db, identity):
    return InvitationTracker(mock_db, identity)


@pytest.fixture
def threads():
    with patch(f"{MODULE}.ThreadManager") as manager_cls:
        manager_cls.return_value.enrich_provider_id = AsyncMock(return_value=1)
        yield manager_cls.return_value


@pytest.fixture
def unipile():
    client = Mock(spec=UnipileClient)
    client.lookup_provider_id = AsyncMock(return_value="ACoAA123")
    client.send_invitation = AsyncMock(return_value=FirstSuccessResult(
        payload={"object": "UserInvitationSent", "invitation_id": "inv-remote"},
        endpoint="/api/v1/users/invite",
        status=201,
    ))
    return client


def matched(lead_id):
    return MatchResult(
        lead_id=lead_id,
        strategy=STRATEGY_URL_EXACT,
        uncertain=False,
        matched_linkedin_url="https://linkedin.com/in/jane-doe",
        matched_slug="jane-doe",
    )


def compiled(statement):
    return statement.compile(dialect=postgresql.dialect())


# ============================================================================
# TEST: Upserts
# ============================================================================

class TestUpsert:

    def test_statuses_up_to(self):
        assert statuses_up_to("sent") == ["queued", "pending", "sent"]
        assert statuses_up_to("connected") == ["queued", "pending", "sent", "accepted", "connected"]
        assert statuses_up_to("declined") == ["declined"]

    @pytest.mark.asyncio
    async def test_upsert_is_status_guarded(self, tracker, mock_db, result_factory, client_id, lead_id):
        invitation_id = uuid4()
        mock_db.execute.return_value = result_factory(scalar=invitation_id)

        result = await tracker.upsert_invitation(client_id, lead_id, "acc-1", STATUS_SENT, raw={"a": 1})

        assert result == invitation_id
        sql = str(compiled(mock_db.execute.await_args.args[0]))
        assert "ON CONFLICT (client_id, lead_id, unipile_account_id) DO UPDATE" in sql
        assert "WHERE linkedin_invitations.status IN" in sql
        assert "||" in sql

    @pytest.mark.asyncio
    async def test_upsert_past_status_returns_none(self, tracker, mock_db, result_factory, client_id, lead_id):
        mock_db.execute.return_value = result_factory(scalar=None)

        assert await tracker.upsert_invitation(client_id, lead_id, "acc-1", STATUS_QUEUED) is None


# ============================================================================
# TEST: Acceptance
# ============================================================================

class TestAcceptance:

    @pytest.mark.asyncio
    async def test_matched_sent_invitation_is_accepted(
        self, tracker, identity, mock_db, result_factory, client_id, lead_id, threads, make_lead
    ):
        invitation_id = uuid4()
        previous_raw = {"provider_id": "ACoAA123", "runner": "linkedin-cron-runner"}
        identity.match_counterpart.return_value = matched(lead_id)
        mock_db.execute.side_effect = [
            result_factory(first=SimpleNamespace(id=invitation_id, raw=previous_raw, status="sent")),
            result_factory(rowcount=1),
        ]

        with patch(f"{MODULE}.get_lead", new_callable=AsyncMock) as get_lead, \
                patch(f"{MODULE}.update_lead", new_callable=AsyncMock) as update_lead:
            get_lead.return_value = make_lead(id=lead_id)
            update_lead.return_value = 1
            result = await tracker.handle_invitation_accepted(client_id, "acc-1", RELATION_PAYLOAD)

        assert result.outcome == "accepted"
        assert result.invitation_id == invitation_id
        assert result.match.strategy == STRATEGY_URL_EXACT

        params = compiled(mock_db.execute.await_args_list[1].args[0]).params
        assert params["status"] == "accepted"
        assert params["raw"]["invitation"] == previous_raw
        assert params["raw"]["acceptance"]["matching"]["strategy"] == STRATEGY_URL_EXACT
        assert params["raw"]["acceptance"]["webhook_payload"] == RELATION_PAYLOAD

        update_lead.assert_awaited_once()
        assert update_lead.await_args.args[3]["linkedin_provider_id"] == "ACoAA123"
        threads.enrich_provider_id.assert_awaited_once_with(client_id, lead_id, "ACoAA123")

    @pytest.mark.asyncio
    async def test_already_accepted(self, tracker, mock_db, result_factory, client_id, lead_id):
        existing = uuid4()
        mock_db.execute.side_effect = [
            result_factory(first=None),
            result_factory(scalar=existing),
        ]

        result = await tracker.mark_invitation_accepted(client_id, lead_id, "acc-1", RELATION_PAYLOAD, matched(lead_id))

        assert result.outcome == "already_accepted"
        assert result.invitation_id == existing

    @pytest.mark.asyncio
    async def test_acceptance_without_sent_row_creates_accepted(self, tracker, mock_db, result_factory, client_id, lead_id):
        mock_db.execute.side_effect = [result_factory(first=None), result_factory(scalar=None)]
        created = uuid4()

        with patch.object(tracker, "upsert_invitation", new_callable=AsyncMock) as upsert:
            upsert.return_value = created
            result = await tracker.mark_invitation_accepted(
                client_id, lead_id, "acc-1", RELATION_PAYLOAD, matched(lead_id)
            )

        assert result.outcome == "accepted_created"
        assert result.invitation_id == created
        assert upsert.await_args.args[3] == "accepted"
        assert "acceptance" in upsert.await_args.kwargs["raw"]

    @pytest.mark.asyncio
    async def test_declined_row_is_not_reported_as_created(self, tracker, mock_db, result_factory, client_id, lead_id):
        mock_db.execute.side_effect = [result_factory(first=None), result_factory(scalar=None)]

        with patch.object(tracker, "upsert_invitation", new_callable=AsyncMock) as upsert:
            upsert.return_value = None
            result = await tracker.mark_invitation_accepted(
                client_id, lead_id, "acc-1", RELATION_PAYLOAD, matched(lead_id)
            )

        assert result.outcome == "status_locked"
        assert result.invitation_id is None
        assert result.to_dict()["lead_id"] == str(lead_id)

    @pytest.mark.asyncio
    async def test_unmatched_falls_back_to_last_sent(self, tracker, identity, mock_db, result_factory, client_id):
        fallback_lead = uuid4()
        invitation_id = uuid4()
        identity.match_counterpart.return_value = MatchResult(strategy=STRATEGY_NONE)
        mock_db.execute.side_effect = [
            result_factory(first=SimpleNamespace(id=invitation_id, lead_id=fallback_lead, raw={}, status="sent")),
            result_factory(rowcount=1),
        ]

        result = await tracker.handle_invitation_accepted(client_id, "acc-1", {"event": "new_relation"})

        assert result.outcome == "accepted_uncertain"
        assert result.lead_id == fallback_lead
        assert result.match.strategy == STRATEGY_FALLBACK_LAST_SENT
        assert result.match.uncertain is True
        params = compiled(mock_db.execute.await_args_list[1].args[0]).params
        assert params["raw"]["acceptance"]["matching"]["uncertain"] is True

    @pytest.mark.asyncio
    async def test_unmatched_without_sent_invitation(self, tracker, mock_db, result_factory, client_id):
        mock_db.execute.return_value = result_factory(first=None)

        result = await tracker.handle_invitation_accepted(client_id, "acc-1", {"event": "new_relation"})

        assert result.outcome == "unmatched"
        assert result.lead_id is None

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_updates_nothing(self, tracker, mock_db, result_factory, client_id):
        mock_db.execute.side_effect = [
            result_factory(first=SimpleNamespace(id=uuid4(), lead_id=uuid4(), raw={}, status="sent")),
            result_factory(rowcount=0),
        ]

        result = await tracker.fallback_accept_last_sent(client_id, "acc-1", {}, MatchResult())

        assert result.outcome == "unmatched"

    @pytest.mark.asyncio
    async def test_invitation_sent_event(self, tracker, identity, client_id, lead_id):
        identity.match_counterpart.return_value = matched(lead_id)

        with patch.object(tracker, "upsert_invitation", new_callable=AsyncMock) as upsert:
            result = await tracker.record_invitation_sent(client_id, "acc-1", RELATION_PAYLOAD)

        assert result == lead_id
        assert upsert.await_args.args[3] == STATUS_SENT
        assert upsert.await_args.kwargs["raw"] == {"sent_webhook": RELATION_PAYLOAD}

    @pytest.mark.asyncio
    async def test_invitation_sent_event_without_match(self, tracker, client_id):
        with patch.object(tracker, "upsert_invitation", new_callable=AsyncMock) as upsert:
            assert await tracker.record_invitation_sent(client_id, "acc-1", {}) is None
        upsert.assert_not_awaited()


# ============================================================================
# TEST: Provider id learning
# ============================================================================

class TestProviderSync:

    @pytest.mark.asyncio
    async def test_uncertain_match_is_ignored(self, tracker, client_id, lead_id):
        match = MatchResult(lead_id=lead_id, strategy=STRATEGY_FALLBACK_LAST_SENT, uncertain=True)

        result = await tracker.sync_lead_provider_from_relation(client_id, RELATION_PAYLOAD, match)

        assert result.result == SYNC_LEAD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_payload_without_provider_id(self, tracker, client_id, lead_id):
        payload = {"user_profile_url": "https://linkedin.com/in/jane-doe"}

        result = await tracker.sync_lead_provider_from_relation(client_id, payload, matched(lead_id))

        assert result.result == SYNC_PROVIDER_ID_MISSING

    @pytest.mark.asyncio
    async def test_existing_different_provider_id_is_kept(self, tracker, client_id, lead_id, make_lead):
        with patch(f"{MODULE}.get_lead", new_callable=AsyncMock) as get_lead, \
                patch(f"{MODULE}.update_lead", new_callable=AsyncMock) as update_lead:
            get_lead.return_value = make_lead(id=lead_id, linkedin_provider_id="ACoOTHER")
            result = await tracker.sync_lead_provider_from_relation(client_id, RELATION_PAYLOAD, matched(lead_id))

        assert result.result == SYNC_MISMATCH_WARNING
        assert result.details == {"existing_provider_id": "ACoOTHER"}
        update_lead.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_new(self, tracker, client_id, lead_id, make_lead, threads):
        lead = make_lead(
            id=lead_id,
            linkedin_provider_id="ACoAA123",
            linkedin_public_identifier="jane-doe",
            linkedin_url_normalized="https://linkedin.com/in/jane-doe",
        )
        with patch(f"{MODULE}.get_lead", new_callable=AsyncMock) as get_lead, \
                patch(f"{MODULE}.update_lead", new_callable=AsyncMock) as update_lead:
            get_lead.return_value = lead
            result = await tracker.sync_lead_provider_from_relation(client_id, RELATION_PAYLOAD, matched(lead_id))

        assert result.result == SYNC_ALREADY_PRESENT
        update_lead.assert_not_awaited()
        threads.enrich_provider_id.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_updated(self, tracker, client_id, lead_id, make_lead, threads):
        with patch(f"{MODULE}.get_lead", new_callable=AsyncMock) as get_lead, \
                patch(f"{MODULE}.update_lead", new_callable=AsyncMock) as update_lead:
            get_lead.return_value = make_lead(id=lead_id)
            update_lead.return_value = 1
            result = await tracker.sync_lead_provider_from_relation(client_id, RELATION_PAYLOAD, matched(lead_id))

        assert result.result == SYNC_UPDATED
        values = update_lead.await_args.args[3]
        assert values == {
            "linkedin_provider_id": "ACoAA123",
            "linkedin_public_identifier": "jane-doe",
            "linkedin_url_normalized": "https://linkedin.com/in/jane-doe",
        }


# ============================================================================
# TEST: Sending
# ============================================================================

class TestSendInvitation:

    @pytest.mark.asyncio
    async def test_success_records_sent(self, tracker, unipile, client_id, lead_id):
        with patch.object(tracker, "upsert_invitation", new_callable=AsyncMock) as upsert, \
                patch(f"{MODULE}.mark_lead_processed", new_callable=AsyncMock) as mark_processed:
            result = await tracker.send_invitation(
                unipile, client_id, lead_id, "acc-1", "jane-doe", raw_context={"runner": "test"}
            )

        assert result["provider_id"] == "ACoAA123"
        unipile.lookup_provider_id.assert_awaited_once_with("acc-1", "jane-doe")
        unipile.send_invitation.assert_awaited_once_with("acc-1", "ACoAA123")
        raw = upsert.await_args.kwargs["raw"]
        assert raw["runner"] == "test"
        assert raw["profile_slug"] == "jane-doe"
        assert raw["provider_id"] == "ACoAA123"
        assert upsert.await_args.kwargs["sent_at"] is not None
        mark_processed.assert_awaited_once_with(tracker.db, client_id, lead_id)

    @pytest.mark.asyncio
    async def test_invite_rejected(self, tracker, unipile, client_id, lead_id):
        unipile.send_invitation.return_value = FirstSuccessResult(
            failures=[AttemptFailure("/api/v1/users/invite", 422, "Invitation already pending")]
        )

        with patch.object(tracker, "upsert_invitation", new_callable=AsyncMock) as upsert:
            with pytest.raises(InvitationFailedError) as exc_info:
                await tracker.send_invitation(unipile, client_id, lead_id, "acc-1", "jane-doe")

        assert exc_info.value.user_message == "Invitation already pending"
        upsert.assert_not_awaited()


class TestInviteLead:

    @pytest.fixture
    def patched(self, make_lead):
        with patch(f"{MODULE}.get_lead", new_callable=AsyncMock) as get_lead, \
                patch(f"{MODULE}.get_linkedin_account_id", new_callable=AsyncMock) as get_account, \
                patch(f"{MODULE}.mark_lead_processed", new_callable=AsyncMock) as mark_processed:
            get_lead.return_value = make_lead()
            get_account.return_value = "acc-1"
            yield SimpleNamespace(get_lead=get_lead, get_account=get_account, mark_processed=mark_processed)

    @pytest.mark.asyncio
    async def test_lead_not_found(self, tracker, unipile, patched, client_id, lead_id):
        patched.get_lead.return_value = None

        with pytest.raises(NotFoundError) as exc_info:
            await tracker.invite_lead(unipile, client_id, lead_id)
        assert exc_info.value.code == "lead_not_found"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url, code", [
        (None, "missing_linkedin_url"),
        ("   ", "missing_linkedin_url"),
        ("https://example.com/company/acme", "invalid_linkedin_url"),
    ])
    async def test_bad_profile_url(self, tracker, unipile, patched, make_lead, client_id, lead_id, url, code):
        patched.get_lead.return_value = make_lead(linkedin_url=url)

        with pytest.raises(BadRequestError) as exc_info:
            await tracker.invite_lead(unipile, client_id, lead_id)
        assert exc_info.value.code == code
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_no_account(self, tracker, unipile, patched, client_id, lead_id):
        patched.get_account.return_value = None

        with pytest.raises(NotFoundError) as exc_info:
            await tracker.invite_lead(unipile, client_id, lead_id)
        assert exc_info.value.code == "linkedin_account_not_connected"

    @pytest.mark.asyncio
    async def test_already_invited(self, tracker, unipile, patched, client_id, lead_id):
        with patch.object(tracker, "find_active_invitation", new_callable=AsyncMock) as find_active:
            find_active.return_value = SimpleNamespace(status="connected")
            result = await tracker.invite_lead(unipile, client_id, lead_id)

        assert result == {"success": True, "alreadySent": True, "invitationStatus": "accepted"}
        patched.mark_processed.assert_awaited_once()
        unipile.send_invitation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_profile_lookup_failure(self, tracker, unipile, patched, client_id, lead_id):
        unipile.lookup_provider_id.side_effect = ProviderIdMissingError(message="profile_lookup_failed")

        with patch.object(tracker, "find_active_invitation", new_callable=AsyncMock) as find_active:
            find_active.return_value = None
            with pytest.raises(UpstreamError) as exc_info:
                await tracker.invite_lead(unipile, client_id, lead_id)

        assert exc_info.value.code == "unipile_profile_lookup_failed"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_sent(self, tracker, unipile, patched, client_id, lead_id):
        with patch.object(tracker, "find_active_invitation", new_callable=AsyncMock) as find_active, \
                patch.object(tracker, "upsert_invitation", new_callable=AsyncMock):
            find_active.return_value = None
            result = await tracker.invite_lead(unipile, client_id, lead_id)

        assert result == {
            "success": True,
            "alreadySent": False,
            "invitationStatus": "sent",
            "provider_id": "ACoAA123",
        }
        unipile.lookup_provider_id.assert_awaited_once_with("acc-1", "jane-doe")
