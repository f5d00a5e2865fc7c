"""Pydantic schemas for request/response validation."""

from app.schemas.messaging import (
    SendLinkedInMessageRequest,
    InboxSendRequest,
    InviteLeadRequest,
    MarkReadRequest,
    SendMessageResponse,
    InviteLeadResponse,
    SyncResponse,
    ErrorResponse,
)
