"""
Personalization model - per-visitor, per-page cache of generated variations.
One live row per (visitor_id, page_url_hash, organization_id).
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, Index, UniqueConstraint

from personalization_backend.core.clock import utcnow
from personalization_backend.models.types import JSONVariant, UTCDateTime


STATUS_PENDING = "pending"
STATUS_GENERATED = "generated"
STATUS_APPLIED = "applied"
STATUS_FAILED = "failed"

SERVABLE_STATUSES = (STATUS_GENERATED, STATUS_APPLIED)

TRIGGER_SOURCES = ("behavior", "chat", "manual", "api")


class Personalization(SQLModel, table=True):
    """
    Personalization record and cache entry.
    Lifecycle: pending -> generated -> applied, or failed. Expiry is read-side only.
    """
    __table_args__ = (
        UniqueConstraint(
            "visitor_id", "page_url_hash", "organization_id",
            name="uq_personalization_visitor_page_org",
        ),
        Index("ix_personalization_org_status", "organization_id", "status"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    visitor_id: str = Field(index=True)
    organization_id: str = Field(index=True)

    # Page information
    page_url: str
    page_url_hash: str = Field(index=True)
    page_title: Optional[str] = None
    page_schema: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONVariant))

    # Intent extraction + generated variation (native JSON, never JSON strings)
    intent: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONVariant))
    variation: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONVariant))

    # Denormalized for analytics rollups
    visitor_segment: Optional[str] = Field(default=None, index=True)
    confidence: Optional[float] = None

    # Cache control
    cache_duration_seconds: int = Field(default=43200)
    expires_at: datetime = Field(sa_column=Column(UTCDateTime, nullable=False, index=True))

    # Analytics
    times_applied: int = Field(default=0)
    last_applied_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime))

    # Status
    status: str = Field(default=STATUS_PENDING)  # pending, generated, applied, failed
    error_message: Optional[str] = None

    # Source tracking
    trigger_source: str = Field(default="behavior")  # behavior, chat, manual, api
    visitor_journey_id: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime, nullable=False))
