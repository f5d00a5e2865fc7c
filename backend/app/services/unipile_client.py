# backend/app/services/unipile_client.py
"""
Unipile REST client.

The platform accepts several endpoint and body conventions for the same
operation and does not document which one a given account supports. Each
operation is therefore a declarative table of RequestCandidate entries run by
one "first success wins" executor that keeps every failed attempt for
diagnostics.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.exceptions import (
    ConversationCreateFailedError,
    ProviderIdMissingError,
    SendFailedError,
    UnipileConfigurationError,
)
from app.services.message_parser import ParsedMessage, parse_send_response
from app.services.payload_normalizer import (
    extract_array_candidates,
    get_first_id,
    to_json_object,
)
from app.services.send_failures import (
    PROFILE_LOOKUP_FAILED_MESSAGE,
    PROVIDER_ID_MISSING_MESSAGE,
    build_send_user_message,
    first_failure_details,
    get_error_message,
)

logger = logging.getLogger(__name__)

_API_SUFFIX = re.compile(r"/api/v1(/.*)?$")

PROVIDER_ID_PATHS = [
    ("provider_id",), ("providerId",),
    ("user_provider_id",), ("userProviderId",),
    ("data", "provider_id"), ("data", "providerId"),
    ("user", "provider_id"), ("user", "providerId"),
    ("profile", "provider_id"), ("profile", "providerId"),
    ("message", "provider_id"), ("message", "providerId"),
    ("data", "user", "provider_id"), ("data", "user", "providerId"),
    ("data", "profile", "provider_id"), ("data", "profile", "providerId"),
]

CREATED_THREAD_ID_PATHS = [
    ("thread_id",), ("threadId",),
    ("conversation_id",), ("conversationId",),
    ("chat_id",), ("chatId",),
    ("id",),
    ("data", "thread_id"), ("data", "threadId"),
    ("data", "conversation_id"), ("data", "conversationId"),
    ("data", "chat_id"), ("data", "chatId"),
    ("data", "id"),
    ("message", "thread_id"), ("message", "conversation_id"), ("message", "chat_id"),
    ("chat", "id"), ("conversation", "id"),
]


def normalize_base_url(dsn: str) -> str:
    """Strip trailing slashes and any /api/v1/... suffix; add https:// when missing."""
    base = dsn.strip().rstrip("/")
    base = _API_SUFFIX.sub("", base).rstrip("/")
    if base and not re.match(r"^https?://", base, re.IGNORECASE):
        base = f"https://{base}"
    return base


def read_response_body(response: httpx.Response) -> Any:
    """JSON when parseable, raw text otherwise, None for an empty body."""
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def extract_provider_id(payload: Any) -> Optional[str]:
    return get_first_id(payload, PROVIDER_ID_PATHS)


def extract_created_thread_id(payload: Any) -> Optional[str]:
    return get_first_id(payload, CREATED_THREAD_ID_PATHS)


def dedupe_bodies(bodies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for body in bodies:
        key = json.dumps(body, sort_keys=True)
        if key in seen:
            continue
        seen.add(key)
        unique.append(body)
    return unique


# ============================================================================
# EXECUTOR
# ============================================================================

@dataclass
class RequestCandidate:
    """One endpoint/body shape to try."""
    method: str
    path: str
    body: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None


@dataclass
class AttemptFailure:
    endpoint: str
    status: Optional[int]
    details: Optional[str]
    body: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "status": self.status,
            "details": self.details,
            "body": self.body,
        }


@dataclass
class FirstSuccessResult:
    payload: Any = None
    endpoint: Optional[str] = None
    value: Any = None
    status: Optional[int] = None
    failures: List[AttemptFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.endpoint is not None

    def failure_dicts(self) -> List[Dict[str, Any]]:
        return [failure.to_dict() for failure in self.failures]


class SentMessage:
    """Message created by a successful send."""

    def __init__(self, message: ParsedMessage, payload: Any, endpoint: str, thread_id: str,
                 failures: Optional[List[AttemptFailure]] = None):
        self.message_id = message.message_id
        self.sent_at = message.sent_at
        self.sender_linkedin_url = message.sender_linkedin_url
        self.thread_id = thread_id
        self.payload = payload
        self.endpoint = endpoint
        self.failures = failures or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unipile_message_id": self.message_id,
            "unipile_thread_id": self.thread_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "endpoint": self.endpoint,
        }


class UnipileClient:
    """Async client for the Unipile API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not base_url or not api_key:
            raise UnipileConfigurationError("UNIPILE_DSN and UNIPILE_API_KEY must be set")
        self.base_url = normalize_base_url(base_url)
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "X-API-KEY": api_key,
            "accept": "application/json",
        }

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "UnipileClient":
        return cls(
            base_url=settings.UNIPILE_DSN or "",
            api_key=settings.UNIPILE_API_KEY or "",
            timeout=settings.UNIPILE_HTTP_TIMEOUT,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def first_success(
        self,
        candidates: List[RequestCandidate],
        extract: Optional[Callable[[Any], Any]] = None,
        missing_reason: str = "unusable_response"
    ) -> FirstSuccessResult:
        """
        Try candidates in order; the first 2xx whose payload passes extract wins.

        extract returns the useful value (e.g. a message id) or None; a 2xx
        without it is recorded as a failure with missing_reason. Transport
        errors are recorded too and never abort the chain.
        """
        failures: List[AttemptFailure] = []

        async with self._client() as client:
            for candidate in candidates:
                try:
                    response = await client.request(
                        candidate.method,
                        candidate.path,
                        json=candidate.body,
                        params=candidate.params,
                    )
                except httpx.HTTPError as e:
                    logger.warning(f"Unipile {candidate.method} {candidate.path} failed: {e}")
                    failures.append(AttemptFailure(candidate.path, None, str(e) or type(e).__name__, candidate.body))
                    continue

                payload = read_response_body(response)

                if not response.is_success:
                    failures.append(AttemptFailure(
                        candidate.path, response.status_code, get_error_message(payload), candidate.body
                    ))
                    continue

                value = extract(payload) if extract else payload
                if extract and value is None:
                    failures.append(AttemptFailure(candidate.path, response.status_code, missing_reason, candidate.body))
                    continue

                if failures:
                    logger.info(
                        f"Unipile {candidate.path} succeeded after {len(failures)} failed attempt(s)"
                    )
                return FirstSuccessResult(
                    payload=payload,
                    endpoint=candidate.path,
                    value=value,
                    status=response.status_code,
                    failures=failures,
                )

        return FirstSuccessResult(failures=failures)

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> FirstSuccessResult:
        return await self.first_success([RequestCandidate("GET", path, params=params)])

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    @staticmethod
    def send_message_candidates(account_id: str, thread_id: str, text: str) -> List[RequestCandidate]:
        encoded = quote(thread_id, safe="")
        return [
            RequestCandidate("POST", f"/api/v1/chats/{encoded}/messages",
                             {"account_id": account_id, "text": text}),
            RequestCandidate("POST", f"/api/v1/conversations/{encoded}/messages",
                             {"account_id": account_id, "text": text}),
            RequestCandidate("POST", "/api/v1/messages",
                             {"account_id": account_id, "chat_id": thread_id, "text": text}),
        ]

    async def send_message(self, account_id: str, thread_id: str, text: str) -> SentMessage:
        """Send text into an existing conversation; raises SendFailedError with every attempt."""
        result = await self.first_success(
            self.send_message_candidates(account_id, thread_id, text),
            extract=lambda payload: _parsed_with_id(parse_send_response(payload, thread_id, text)),
            missing_reason="message_id_missing_in_send_response",
        )

        if not result.ok:
            details = first_failure_details(result.failures)
            logger.error(
                f"Send failed for account {account_id} thread {thread_id}: "
                f"{len(result.failures)} attempt(s), first error: {details}"
            )
            raise SendFailedError(
                details=result.failure_dicts(),
                user_message=build_send_user_message(details),
                attempts=result.failure_dicts(),
            )

        return SentMessage(result.value, result.payload, result.endpoint, thread_id, result.failures)

    @staticmethod
    def create_conversation_candidates(account_id: str, provider_id: str) -> List[RequestCandidate]:
        bodies = dedupe_bodies([
            {"account_id": account_id, "provider_id": provider_id},
            {"account_id": account_id, "recipient_provider_id": provider_id},
            {"account_id": account_id, "attendee_id": provider_id},
            {"account_id": account_id, "participant_id": provider_id},
            {"account_id": account_id, "provider_ids": [provider_id]},
            {"account_id": account_id, "attendee_ids": [provider_id]},
            {"account_id": account_id, "participant_ids": [provider_id]},
            {"account_id": account_id, "attendees": [{"provider_id": provider_id}]},
            {"account_id": account_id, "participants": [{"provider_id": provider_id}]},
        ])
        return [
            RequestCandidate("POST", endpoint, body)
            for endpoint in ("/api/v1/chats", "/api/v1/conversations")
            for body in bodies
        ]

    async def create_conversation(self, account_id: str, provider_id: str) -> FirstSuccessResult:
        """Open a conversation with provider_id; value is the new thread id (None on failure)."""
        if not provider_id:
            raise ProviderIdMissingError(user_message=PROVIDER_ID_MISSING_MESSAGE)

        result = await self.first_success(
            self.create_conversation_candidates(account_id, provider_id),
            extract=extract_created_thread_id,
            missing_reason="thread_id_missing_in_create_response",
        )
        if not result.ok:
            logger.warning(
                f"Conversation creation failed for account {account_id} provider {provider_id}: "
                f"{first_failure_details(result.failures)}"
            )
        return result

    @staticmethod
    def direct_send_candidates(account_id: str, provider_id: str, text: str) -> List[RequestCandidate]:
        return [
            RequestCandidate("POST", "/api/v1/chats",
                             {"account_id": account_id, "attendees_ids": [provider_id], "text": text}),
            RequestCandidate("POST", "/api/v1/messages",
                             {"account_id": account_id, "provider_id": provider_id, "text": text}),
            RequestCandidate("POST", "/api/v1/messages",
                             {"account_id": account_id, "attendee_id": provider_id, "text": text}),
        ]

    async def start_conversation_with_message(self, account_id: str, provider_id: str, text: str) -> SentMessage:
        """
        Open a conversation and send in one call, for providers that create the
        thread implicitly on first message. Both ids must come back.
        """
        def extract(payload: Any) -> Optional[ParsedMessage]:
            thread_id = extract_created_thread_id(payload)
            if not thread_id:
                return None
            parsed = _parsed_with_id(parse_send_response(payload, thread_id, text))
            if parsed is None:
                return None
            parsed.thread_id = thread_id
            return parsed

        result = await self.first_success(
            self.direct_send_candidates(account_id, provider_id, text),
            extract=extract,
            missing_reason="ids_missing_in_direct_send_response",
        )
        if not result.ok:
            details = first_failure_details(result.failures)
            raise ConversationCreateFailedError(
                details=result.failure_dicts(),
                user_message=build_send_user_message(details),
                attempts=result.failure_dicts(),
            )
        return SentMessage(result.value, result.payload, result.endpoint, result.value.thread_id, result.failures)

    # ------------------------------------------------------------------
    # Profiles & invitations
    # ------------------------------------------------------------------

    async def get_user_profile(self, account_id: str, identifier: str) -> FirstSuccessResult:
        return await self.get_json(
            f"/api/v1/users/{quote(identifier, safe='')}",
            params={"account_id": account_id},
        )

    async def lookup_provider_id(self, account_id: str, slug: str) -> str:
        """Provider id for a public profile slug; raises ProviderIdMissingError."""
        result = await self.get_user_profile(account_id, slug)
        if not result.ok:
            raise ProviderIdMissingError(
                message="profile_lookup_failed",
                details=result.failure_dicts(),
                user_message=PROFILE_LOOKUP_FAILED_MESSAGE,
            )

        provider_id = extract_provider_id(result.payload)
        if not provider_id:
            raise ProviderIdMissingError(
                details=result.payload,
                user_message=PROVIDER_ID_MISSING_MESSAGE,
            )
        return provider_id

    async def send_invitation(self, account_id: str, provider_id: str) -> FirstSuccessResult:
        return await self.first_success([
            RequestCandidate("POST", "/api/v1/users/invite",
                             {"account_id": account_id, "provider_id": provider_id}),
        ])

    # ------------------------------------------------------------------
    # Inbox reads
    # ------------------------------------------------------------------

    async def list_chats(self, account_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        params = {"account_id": account_id, "limit": limit}
        result = await self.first_success([
            RequestCandidate("GET", "/api/v1/chats", params=params),
            RequestCandidate("GET", "/api/v1/conversations", params=params),
        ])
        if not result.ok:
            logger.warning(f"Listing chats failed for account {account_id}: {first_failure_details(result.failures)}")
            return []
        return extract_array_candidates(result.payload)

    async def list_chat_messages(self, account_id: str, chat_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        encoded = quote(chat_id, safe="")
        params = {"account_id": account_id, "limit": limit}
        result = await self.first_success([
            RequestCandidate("GET", f"/api/v1/chats/{encoded}/messages", params=params),
            RequestCandidate("GET", f"/api/v1/conversations/{encoded}/messages", params=params),
            RequestCandidate("GET", "/api/v1/messages", params={**params, "chat_id": chat_id}),
        ])
        if not result.ok:
            logger.warning(f"Listing messages failed for chat {chat_id}: {first_failure_details(result.failures)}")
            return []
        return extract_array_candidates(result.payload)

    @staticmethod
    def attendee_lookup_candidates(account_id: str, attendee_id: str) -> List[RequestCandidate]:
        encoded = quote(attendee_id, safe="")
        return [
            RequestCandidate("GET", f"/api/v1/attendees/{encoded}", params={"account_id": account_id}),
            RequestCandidate("GET", f"/api/v1/users/{encoded}", params={"account_id": account_id}),
            RequestCandidate("GET", f"/api/v1/profiles/{encoded}", params={"account_id": account_id}),
            RequestCandidate("GET", "/api/v1/attendees", params={"account_id": account_id, "attendee_id": attendee_id}),
            RequestCandidate("GET", "/api/v1/attendees", params={"account_id": account_id, "id": attendee_id}),
        ]

    @staticmethod
    def chat_attendee_candidates(account_id: str, chat_id: str) -> List[RequestCandidate]:
        encoded = quote(chat_id, safe="")
        params = {"account_id": account_id}
        return [
            RequestCandidate("GET", f"/api/v1/chats/{encoded}/attendees", params=params),
            RequestCandidate("GET", f"/api/v1/conversations/{encoded}/attendees", params=params),
            RequestCandidate("GET", f"/api/v1/chats/{encoded}", params=params),
            RequestCandidate("GET", f"/api/v1/conversations/{encoded}", params=params),
        ]


def _parsed_with_id(parsed: ParsedMessage) -> Optional[ParsedMessage]:
    return parsed if parsed.message_id else None


def get_unipile_client() -> UnipileClient:
    """Factory used as a FastAPI dependency and by background jobs."""
    return UnipileClient.from_settings()


def invitation_raw_candidates(raw: Any) -> List[Dict[str, Any]]:
    """Objects inside an invitation's raw history that may carry a provider id."""
    root = to_json_object(raw)
    acceptance = to_json_object(root.get("acceptance"))
    return [
        root,
        to_json_object(root.get("invitation")),
        acceptance,
        to_json_object(acceptance.get("webhook_payload")),
        to_json_object(root.get("sent_webhook")),
        to_json_object(root.get("invite_response")),
        *extract_array_candidates(root),
    ]
