# backend/app/services/identity_resolver.py
"""
Identity Resolver - map external profile identities onto leads

Two-tier matching:
1. Exact normalized profile URL (strategy=url_exact, high confidence)
2. Profile slug equality (strategy=slug_match, medium confidence)

When the payload carries no identity at all the result is strategy=none and
the caller decides whether a flagged fallback is acceptable.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlsplit

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Lead
from app.services.lead_store import load_leads
from app.services.payload_normalizer import get_first_string

logger = logging.getLogger(__name__)

STRATEGY_URL_EXACT = "url_exact"
STRATEGY_SLUG_MATCH = "slug_match"
STRATEGY_FALLBACK_LAST_SENT = "fallback_last_sent"
STRATEGY_NONE = "none"

_PROTOCOL = re.compile(r"^https?://", re.IGNORECASE)
_PROFILE_PATH = re.compile(r"linkedin\.[a-z.]+/(?:in|pub)/([^/?#\s]+)", re.IGNORECASE)
_RELATIVE_PROFILE_PATH = re.compile(r"^/?(?:in|pub)/([^/?#\s]+)", re.IGNORECASE)
_SLUG_TOKEN = re.compile(r"^[-a-zA-Z0-9_%.]{3,120}$")
_MULTI_SLASH = re.compile(r"/{2,}")

RELATION_URL_PATHS = [
    ("profile_url",), ("profileUrl",), ("linkedin_url",), ("linkedinUrl",),
    ("user_profile_url",), ("userProfileUrl",),
    ("user", "profile_url"), ("user", "profileUrl"),
    ("user", "linkedin_url"), ("user", "linkedinUrl"),
    ("contact", "profile_url"), ("contact", "profileUrl"),
    ("contact", "linkedin_url"), ("contact", "linkedinUrl"),
    ("relation", "profile_url"), ("relation", "profileUrl"),
    ("relation", "linkedin_url"), ("relation", "linkedinUrl"),
    ("counterpart", "profile_url"), ("counterpart", "profileUrl"),
    ("counterpart", "linkedin_url"), ("counterpart", "linkedinUrl"),
    ("attendee", "profile_url"), ("attendee", "profileUrl"),
    ("attendee", "linkedin_url"), ("attendee", "linkedinUrl"),
]

RELATION_SLUG_PATHS = [
    ("public_identifier",), ("publicIdentifier",),
    ("user_public_identifier",), ("userPublicIdentifier",),
    ("user", "public_identifier"), ("user", "publicIdentifier"),
    ("contact", "public_identifier"), ("contact", "publicIdentifier"),
    ("relation", "public_identifier"), ("relation", "publicIdentifier"),
    ("counterpart", "public_identifier"), ("counterpart", "publicIdentifier"),
]

RELATION_PROVIDER_ID_PATHS = [
    ("user_provider_id",), ("userProviderId",),
    ("provider_id",), ("providerId",),
    ("user", "provider_id"), ("user", "providerId"),
    ("contact", "provider_id"), ("contact", "providerId"),
    ("relation", "provider_id"), ("relation", "providerId"),
    ("counterpart", "provider_id"), ("counterpart", "providerId"),
]


# ============================================================================
# PURE HELPERS
# ============================================================================

def normalize_profile_url(value: Optional[str]) -> Optional[str]:
    """
    Canonical form used as an equality key: https://<host>/<path>, lowercase,
    no www., no duplicate or trailing slashes, no query or fragment.
    """
    if not value or not isinstance(value, str):
        return None

    raw = value.strip()
    if not raw:
        return None

    with_protocol = raw if _PROTOCOL.match(raw) else f"https://{raw}"

    try:
        parsed = urlsplit(with_protocol)
        host = (parsed.hostname or "").lower()
    except ValueError:
        return None

    if not host or " " in host:
        return None
    if host.startswith("www."):
        host = host[4:]

    path = parsed.path.strip()
    if not path.startswith("/"):
        path = f"/{path}"
    path = _MULTI_SLASH.sub("/", path).rstrip("/")
    if not path:
        path = "/"

    return f"https://{host}{path}".lower()


def normalize_slug(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    decoded = _safe_unquote(value.strip())
    normalized = decoded.strip().lower()
    return normalized or None


def extract_slug(value: Optional[str]) -> Optional[str]:
    """
    Profile handle from a URL (".../in/<slug>"), a relative path ("in/<slug>"),
    a single-segment URL, or a bare handle-like token. Percent-decoded and
    lowercased.
    """
    if not value or not isinstance(value, str):
        return None

    raw = value.strip()
    if not raw:
        return None

    match = _PROFILE_PATH.search(raw) or _RELATIVE_PROFILE_PATH.match(raw)
    if match:
        return normalize_slug(match.group(1))

    if "/" in raw or _PROTOCOL.match(raw) or raw.lower().startswith("www."):
        normalized = normalize_profile_url(raw)
        if not normalized:
            return None
        segments = [segment for segment in urlsplit(normalized).path.split("/") if segment]
        if len(segments) == 1:
            return normalize_slug(segments[0])
        return None

    if _SLUG_TOKEN.match(raw):
        return normalize_slug(raw)

    return None


def _safe_unquote(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class CounterpartIdentity:
    """Identity of the other party extracted from a webhook payload."""
    profile_url: Optional[str] = None
    normalized_url: Optional[str] = None
    slug: Optional[str] = None
    provider_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.normalized_url and not self.slug


class MatchResult:
    """Outcome of matching a counterpart identity against a client's leads."""

    def __init__(
        self,
        lead_id: Any = None,
        strategy: str = STRATEGY_NONE,
        uncertain: bool = True,
        matched_linkedin_url: Optional[str] = None,
        matched_slug: Optional[str] = None
    ):
        self.lead_id = lead_id
        self.strategy = strategy
        self.uncertain = uncertain
        self.matched_linkedin_url = matched_linkedin_url
        self.matched_slug = matched_slug

    @property
    def matched(self) -> bool:
        return self.lead_id is not None

    def matching_context(self) -> Dict[str, Any]:
        """Shape stored under raw.acceptance.matching on invitations."""
        return {
            "strategy": self.strategy,
            "uncertain": self.uncertain,
            "normalized_linkedin_url": self.matched_linkedin_url,
            "profile_slug": self.matched_slug,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": str(self.lead_id) if self.lead_id is not None else None,
            **self.matching_context(),
        }


def extract_counterpart_identity(payload: Any) -> CounterpartIdentity:
    """Pull URL / slug / provider id of the counterpart out of a relation payload."""
    url_candidate = get_first_string(payload, RELATION_URL_PATHS)
    slug_candidate = get_first_string(payload, RELATION_SLUG_PATHS)
    provider_id = get_first_string(payload, RELATION_PROVIDER_ID_PATHS)

    normalized_url = normalize_profile_url(url_candidate)
    slug = (
        extract_slug(slug_candidate)
        or normalize_slug(slug_candidate)
        or extract_slug(normalized_url)
    )

    return CounterpartIdentity(
        profile_url=url_candidate,
        normalized_url=normalized_url,
        slug=slug,
        provider_id=provider_id,
    )


def lead_normalized_url(lead: Any) -> Optional[str]:
    return (
        normalize_profile_url(getattr(lead, "linkedin_url_normalized", None))
        or normalize_profile_url(getattr(lead, "linkedin_url", None))
    )


def lead_slug(lead: Any) -> Optional[str]:
    return (
        extract_slug(getattr(lead, "linkedin_url", None))
        or normalize_slug(getattr(lead, "linkedin_public_identifier", None))
    )


def match_identity_in_leads(
    leads: Iterable[Any],
    normalized_url: Optional[str],
    slug: Optional[str]
) -> MatchResult:
    """Two-tier match over already-loaded lead rows."""
    normalized_url = normalize_profile_url(normalized_url)
    slug = normalize_slug(slug)

    if not normalized_url and not slug:
        return MatchResult(strategy=STRATEGY_NONE, uncertain=True)

    candidates: List[Any] = list(leads)

    if normalized_url:
        for lead in candidates:
            if lead_normalized_url(lead) == normalized_url:
                return MatchResult(
                    lead_id=lead.id,
                    strategy=STRATEGY_URL_EXACT,
                    uncertain=False,
                    matched_linkedin_url=normalized_url,
                    matched_slug=slug,
                )

    if slug:
        for lead in candidates:
            if lead_slug(lead) == slug:
                return MatchResult(
                    lead_id=lead.id,
                    strategy=STRATEGY_SLUG_MATCH,
                    uncertain=False,
                    matched_linkedin_url=normalized_url,
                    matched_slug=slug,
                )

    return MatchResult(
        strategy=STRATEGY_NONE,
        uncertain=True,
        matched_linkedin_url=normalized_url,
        matched_slug=slug,
    )


# ============================================================================
# SERVICE
# ============================================================================

class IdentityResolver:
    """Matches counterpart identities against the leads of one client."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_identity_leads(self, client_id: Any) -> List[Any]:
        return await load_leads(self.db, Lead.client_id == client_id, Lead.linkedin_url.isnot(None))

    async def match_lead_by_identity(
        self,
        client_id: Any,
        normalized_url: Optional[str],
        slug: Optional[str]
    ) -> MatchResult:
        if not normalize_profile_url(normalized_url) and not normalize_slug(slug):
            return MatchResult(strategy=STRATEGY_NONE, uncertain=True)

        leads = await self.load_identity_leads(client_id)
        match = match_identity_in_leads(leads, normalized_url, slug)

        if match.matched:
            logger.debug(
                f"Identity matched lead {match.lead_id} for client {client_id} "
                f"via {match.strategy}"
            )
        else:
            logger.info(
                f"No lead matched for client {client_id} "
                f"(url={match.matched_linkedin_url}, slug={match.matched_slug})"
            )
        return match

    async def match_counterpart(self, client_id: Any, payload: Any) -> MatchResult:
        identity = extract_counterpart_identity(payload)
        return await self.match_lead_by_identity(client_id, identity.normalized_url, identity.slug)

    async def find_lead_by_profile_url(self, client_id: Any, url: Optional[str]) -> Optional[Any]:
        """Exact URL lookup used to link synced threads and inbound senders."""
        normalized = normalize_profile_url(url)
        if not normalized:
            return None
        leads = await self.load_identity_leads(client_id)
        for lead in leads:
            if lead_normalized_url(lead) == normalized:
                return lead
        return None
