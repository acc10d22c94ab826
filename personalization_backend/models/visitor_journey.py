"""
Visitor journey model - behavioural signal snapshots fed to intent extraction.
"""
import uuid
from datetime import datetime
from typing import Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import Column

from personalization_backend.core.clock import utcnow
from personalization_backend.models.types import JSONVariant, UTCDateTime


class VisitorJourney(SQLModel, table=True):
    __tablename__ = "visitor_journey"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    visitor_id: str = Field(index=True)
    organization_id: str = Field(index=True)

    # Page views, session, engagement... as collected by the widget
    journey: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONVariant))

    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime, nullable=False, index=True))
