# backend/app/models.py
"""
SQLAlchemy ORM models for the LinkedIn outreach engine.

Natural keys coming from the external platform (account id, thread id,
message id) are enforced with unique constraints; every upsert in the
services targets one of these constraints.
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Text, Index, TIMESTAMP, ForeignKey,
    CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
from app.database import Base
import uuid


# ============================================================================
# CLIENT & ACCOUNT MODELS
# ============================================================================

class Client(Base):
    """Tenant owning leads, accounts and inbox data."""
    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), index=True)
    plan = Column(String(50), nullable=False, default="essential")
    subscription_status = Column(String(50), nullable=False, default="inactive")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_clients_plan_status', 'plan', 'subscription_status'),
    )


class ClientLinkedInSettings(Base):
    """Per-client automation settings (quota, timezone, selected account)."""
    __tablename__ = "client_linkedin_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)
    daily_invite_quota = Column(Integer, nullable=False, default=10)
    timezone = Column(String(64))
    unipile_account_id = Column(String(255))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class UnipileAccount(Base):
    """A messaging account connected on the external platform."""
    __tablename__ = "unipile_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="linkedin")
    unipile_account_id = Column(String(255), nullable=False, unique=True)
    status = Column(String(50), nullable=False, default="connected")
    connected_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


# ============================================================================
# LEAD & INVITATION MODELS
# ============================================================================

class Lead(Base):
    """Prospect owned by exactly one client."""
    __tablename__ = "leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)

    first_name = Column(String(255))
    last_name = Column(String(255))
    company_name = Column(String(255))

    # Identity
    linkedin_url = Column(Text)
    linkedin_url_normalized = Column(Text)
    linkedin_public_identifier = Column(String(255))
    linkedin_provider_id = Column(String(255))
    linkedin_chat_id = Column(String(255))

    # Workflow flags
    traite = Column(Boolean, nullable=False, default=False)
    responded = Column(Boolean, nullable=False, default=False)
    message_sent = Column(Boolean, nullable=False, default=False)
    message_sent_at = Column(TIMESTAMP(timezone=True))
    next_followup_at = Column(TIMESTAMP(timezone=True))

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_leads_client_created', 'client_id', 'created_at'),
        Index('idx_leads_client_url_normalized', 'client_id', 'linkedin_url_normalized'),
    )


class LinkedInInvitation(Base):
    """Connection request lifecycle: queued -> sent -> accepted."""
    __tablename__ = "linkedin_invitations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    unipile_account_id = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default="queued")
    sent_at = Column(TIMESTAMP(timezone=True))
    accepted_at = Column(TIMESTAMP(timezone=True))
    raw = Column(JSONB, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('client_id', 'lead_id', 'unipile_account_id', name='uq_invitation_client_lead_account'),
        CheckConstraint(
            "status IN ('queued', 'pending', 'sent', 'accepted', 'connected', 'declined')",
            name="chk_invitation_status"
        ),
        Index('idx_invitations_client_account_status', 'client_id', 'unipile_account_id', 'status', 'sent_at'),
    )


# ============================================================================
# INBOX MODELS
# ============================================================================

class InboxThread(Base):
    """Local mirror of one external conversation."""
    __tablename__ = "inbox_threads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False, default="linkedin")
    unipile_account_id = Column(String(255), nullable=False)
    unipile_thread_id = Column(String(255), nullable=False)
    unipile_chat_id = Column(String(255))
    provider_id = Column(String(255))

    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id", ondelete="SET NULL"))
    lead_linkedin_url = Column(Text)

    contact_name = Column(String(255))
    contact_linkedin_url = Column(Text)
    contact_avatar_url = Column(Text)

    last_message_at = Column(TIMESTAMP(timezone=True))
    last_message_preview = Column(Text)
    unread_count = Column(Integer, nullable=False, default=0)
    last_read_at = Column(TIMESTAMP(timezone=True))

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('client_id', 'unipile_account_id', 'unipile_thread_id', name='uq_thread_client_account_thread'),
        Index('idx_threads_client_lead', 'client_id', 'lead_id'),
        Index('idx_threads_client_account_updated', 'client_id', 'unipile_account_id', 'updated_at'),
    )


class InboxMessage(Base):
    """Append-only message row; enrichment only fills null sender fields."""
    __tablename__ = "inbox_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False, default="linkedin")
    thread_db_id = Column(UUID(as_uuid=True), ForeignKey("inbox_threads.id", ondelete="CASCADE"))
    unipile_account_id = Column(String(255), nullable=False)
    unipile_thread_id = Column(String(255), nullable=False)
    unipile_message_id = Column(String(255), nullable=False)
    provider_message_id = Column(String(255))
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id", ondelete="SET NULL"))

    direction = Column(String(20), nullable=False)
    status = Column(String(50))
    sender_name = Column(String(255))
    sender_linkedin_url = Column(Text)
    text = Column(Text)
    sent_at = Column(TIMESTAMP(timezone=True), nullable=False)
    raw = Column(JSONB, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('client_id', 'unipile_account_id', 'unipile_message_id', name='uq_message_client_account_message'),
        CheckConstraint("direction IN ('inbound', 'outbound')", name="chk_message_direction"),
        Index('idx_messages_client_account_sent', 'client_id', 'unipile_account_id', 'sent_at'),
        Index('idx_messages_thread_sent', 'thread_db_id', 'sent_at'),
    )


# ============================================================================
# LOG MODELS
# ============================================================================

class UnipileEvent(Base):
    """Raw webhook log, written before any processing."""
    __tablename__ = "unipile_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="SET NULL"))
    unipile_account_id = Column(String(255))
    event_type = Column(String(100))
    payload = Column(JSONB, nullable=False)
    received_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_unipile_events_account_received', 'unipile_account_id', 'received_at'),
    )


class AutomationLog(Base):
    """Audit trail of automated actions taken for a client."""
    __tablename__ = "automation_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id", ondelete="SET NULL"))
    action = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False, default="success")
    details = Column(JSONB, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_automation_logs_client_created', 'client_id', 'created_at'),
    )
