"""Request/response schemas for messaging, inbox and invitations."""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from uuid import UUID


class SendLinkedInMessageRequest(BaseModel):
    """Send a direct message to a lead."""
    lead_id: UUID
    text: str = Field(..., min_length=1, max_length=8000)

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v):
        if not v.strip():
            raise ValueError("text cannot be blank")
        return v.strip()


class InboxSendRequest(BaseModel):
    """Send a message into an existing inbox thread."""
    thread_db_id: UUID
    text: str = Field(..., min_length=1, max_length=8000)

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v):
        if not v.strip():
            raise ValueError("text cannot be blank")
        return v.strip()


class InviteLeadRequest(BaseModel):
    """Manual LinkedIn invitation for one lead."""
    lead_id: UUID


class MarkReadRequest(BaseModel):
    thread_db_id: UUID


class SendMessageResponse(BaseModel):
    success: bool
    unipile_message_id: str
    unipile_thread_id: str
    thread_db_id: str
    message_db_id: Optional[str] = None
    sent_at: Optional[str] = None
    created_conversation: bool = False


class InviteLeadResponse(BaseModel):
    success: bool
    alreadySent: bool = False
    invitationStatus: str
    provider_id: Optional[str] = None


class SyncResponse(BaseModel):
    success: bool
    threads: int
    messages_inserted: int
    messages_patched: int
    messages_skipped: int = 0
    remote_attendee_lookups: int = 0


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    message: Optional[str] = None
    details: Optional[Any] = None
    attempts: Optional[List[Dict[str, Any]]] = None
