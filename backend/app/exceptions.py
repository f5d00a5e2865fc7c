"""Error taxonomy for the outreach engine."""

from typing import Any, Dict, List, Optional


class OutreachError(Exception):
    """Base error carrying a machine code, an HTTP status and diagnostics."""

    code = "server_error"
    status_code = 500

    def __init__(
        self,
        message: Optional[str] = None,
        details: Any = None,
        user_message: Optional[str] = None,
        attempts: Optional[List[Dict[str, Any]]] = None
    ):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details
        self.user_message = user_message
        self.attempts = attempts or []

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.code,
        }
        if self.user_message:
            body["message"] = self.user_message
        if self.details is not None:
            body["details"] = self.details
        if self.attempts:
            body["attempts"] = self.attempts
        return body


class IdentityUnresolvedError(OutreachError):
    code = "identity_unresolved"
    status_code = 404


class ProviderIdMissingError(OutreachError):
    code = "provider_id_missing"
    status_code = 400


class ConversationCreateFailedError(OutreachError):
    code = "conversation_create_failed"
    status_code = 502


class SendFailedError(OutreachError):
    code = "send_failed"
    status_code = 502


class ThreadUpsertFailedError(OutreachError):
    code = "thread_upsert_failed"
    status_code = 500


class MessagePersistFailedError(OutreachError):
    code = "message_persist_failed"
    status_code = 500


class SchemaDriftError(OutreachError):
    """An optional column is missing from the live table."""
    code = "schema_drift"

    def __init__(self, column: str, table: str):
        super().__init__(f"column {column!r} missing on {table!r}")
        self.column = column
        self.table = table


class InvitationFailedError(OutreachError):
    code = "unipile_invite_failed"
    status_code = 502


class SendInProgressError(OutreachError):
    code = "already_in_progress"
    status_code = 409


class UnipileConfigurationError(OutreachError):
    code = "unipile_not_configured"
    status_code = 500


class NotFoundError(OutreachError):
    status_code = 404

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class BadRequestError(OutreachError):
    status_code = 400

    def __init__(self, code: str, message: Optional[str] = None, user_message: Optional[str] = None):
        super().__init__(message or code, user_message=user_message)
        self.code = code


class UpstreamError(OutreachError):
    """Unipile call failed on a route with its own error code."""
    status_code = 502

    def __init__(self, code: str, details: Any = None, user_message: Optional[str] = None):
        super().__init__(code, details=details, user_message=user_message)
        self.code = code
