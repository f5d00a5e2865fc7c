# tests/services/test_identity_resolver.py
"""
Tests for profile URL / slug normalization and lead matching

Run with: pytest tests/services/test_identity_resolver.py -v
"""

import pytest
from types import SimpleNamespace
from uuid import uuid4

from app.services.identity_resolver import (
    STRATEGY_NONE,
    STRATEGY_SLUG_MATCH,
    STRATEGY_URL_EXACT,
    IdentityResolver,
    extract_counterpart_identity,
    extract_slug,
    match_identity_in_leads,
    normalize_profile_url,
)


def lead(url, **extra):
    return SimpleNamespace(
        id=uuid4(),
        linkedin_url=url,
        linkedin_url_normalized=extra.get("normalized"),
        linkedin_public_identifier=extra.get("public_identifier"),
    )


# ============================================================================
# TEST: Normalization
# ============================================================================

class TestNormalizeProfileUrl:

    @pytest.mark.parametrize("raw, expected", [
        ("https://www.LinkedIn.com/in/Jane-Doe/", "https://linkedin.com/in/jane-doe"),
        ("linkedin.com/in/jane?trk=public_profile", "https://linkedin.com/in/jane"),
        ("http://linkedin.com//in//jane//", "https://linkedin.com/in/jane"),
        ("www.linkedin.com/in/jane#about", "https://linkedin.com/in/jane"),
    ])
    def test_canonical_form(self, raw, expected):
        assert normalize_profile_url(raw) == expected

    def test_variants_compare_equal(self):
        assert normalize_profile_url("https://www.linkedin.com/in/jane/") == \
            normalize_profile_url("LINKEDIN.COM/in/jane")

    @pytest.mark.parametrize("raw", [None, "", "   ", 42])
    def test_unusable_input(self, raw):
        assert normalize_profile_url(raw) is None


class TestExtractSlug:

    def test_from_profile_url(self):
        assert extract_slug("https://www.linkedin.com/in/Jane-Doe/") == "jane-doe"

    def test_percent_decoded(self):
        assert extract_slug("https://www.linkedin.com/in/J%C3%A9r%C3%B4me-D/") == "jérôme-d"

    def test_relative_path(self):
        assert extract_slug("in/jane-doe") == "jane-doe"

    def test_bare_handle(self):
        assert extract_slug("Jane-Doe") == "jane-doe"

    def test_single_segment_url(self):
        assert extract_slug("https://linkedin.com/jane") == "jane"

    def test_multi_segment_non_profile_url(self):
        assert extract_slug("https://example.com/company/acme") is None

    def test_too_short_token(self):
        assert extract_slug("ab") is None
        assert extract_slug(None) is None


# ============================================================================
# TEST: Matching
# ============================================================================

class TestMatchIdentityInLeads:

    def test_exact_url_wins(self):
        jane = lead("https://www.linkedin.com/in/jane-doe/")
        john = lead("https://linkedin.com/in/john")

        match = match_identity_in_leads([john, jane], "https://linkedin.com/in/jane-doe", "jane-doe")

        assert match.lead_id == jane.id
        assert match.strategy == STRATEGY_URL_EXACT
        assert match.uncertain is False

    def test_slug_fallback(self):
        john = lead("https://linkedin.com/in/john")

        match = match_identity_in_leads([john], "https://fr.linkedin.com/in/john", "john")

        assert match.lead_id == john.id
        assert match.strategy == STRATEGY_SLUG_MATCH

    def test_slug_from_public_identifier(self):
        other = lead("https://linkedin.com/company/acme", public_identifier="Acme-Person")

        match = match_identity_in_leads([other], None, "acme-person")

        assert match.lead_id == other.id
        assert match.strategy == STRATEGY_SLUG_MATCH

    def test_normalized_column_preferred(self):
        row = lead("https://linkedin.com/in/old-handle", normalized="https://linkedin.com/in/new-handle")

        match = match_identity_in_leads([row], "https://www.linkedin.com/in/new-handle/", None)

        assert match.lead_id == row.id

    def test_no_match(self):
        match = match_identity_in_leads([lead("https://linkedin.com/in/john")], "https://linkedin.com/in/jane", "jane")

        assert match.matched is False
        assert match.strategy == STRATEGY_NONE
        assert match.uncertain is True
        assert match.matching_context()["profile_slug"] == "jane"

    def test_empty_identity(self):
        match = match_identity_in_leads([lead("https://linkedin.com/in/john")], None, None)
        assert match.strategy == STRATEGY_NONE
        assert match.lead_id is None


class TestCounterpartIdentity:

    def test_relation_payload(self):
        identity = extract_counterpart_identity({
            "event": "new_relation",
            "user_full_name": "Jane Doe",
            "user_profile_url": "https://www.linkedin.com/in/Jane-Doe",
            "user_provider_id": "ACoAA123",
        })

        assert identity.normalized_url == "https://linkedin.com/in/jane-doe"
        assert identity.slug == "jane-doe"
        assert identity.provider_id == "ACoAA123"
        assert identity.is_empty is False

    def test_nested_public_identifier(self):
        identity = extract_counterpart_identity({"user": {"public_identifier": "Jane-Doe"}})

        assert identity.normalized_url is None
        assert identity.slug == "jane-doe"

    def test_nothing(self):
        assert extract_counterpart_identity({"event": "new_relation"}).is_empty is True


# ============================================================================
# TEST: Service
# ============================================================================

class TestIdentityResolver:

    @pytest.mark.asyncio
    async def test_match_lead_by_identity_loads_client_leads(self, mock_db, result_factory, client_id):
        jane = lead("https://www.linkedin.com/in/jane-doe/")
        mock_db.execute.return_value = result_factory(rows=[jane])

        match = await IdentityResolver(mock_db).match_lead_by_identity(
            client_id, "https://linkedin.com/in/jane-doe", None
        )

        assert match.lead_id == jane.id
        mock_db.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_identity_skips_query(self, mock_db, client_id):
        match = await IdentityResolver(mock_db).match_lead_by_identity(client_id, None, "")

        assert match.strategy == STRATEGY_NONE
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_find_lead_by_profile_url(self, mock_db, result_factory, client_id):
        jane = lead("https://www.linkedin.com/in/jane-doe/")
        mock_db.execute.return_value = result_factory(rows=[jane])
        resolver = IdentityResolver(mock_db)

        assert await resolver.find_lead_by_profile_url(client_id, "linkedin.com/in/jane-doe") is jane
        assert await resolver.find_lead_by_profile_url(client_id, "linkedin.com/in/someone-else") is None
        assert await resolver.find_lead_by_profile_url(client_id, None) is None
