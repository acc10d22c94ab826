"""
Organization configuration model.
Holds the brand reference content and the pre-generated persona variations.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any

from sqlmodel import SQLModel, Field
from sqlalchemy import Column

from personalization_backend.core.clock import utcnow
from personalization_backend.models.types import JSONVariant, UTCDateTime


class OrganizationConfig(SQLModel, table=True):
    """
    Per-organization personalization configuration.
    persona_variations maps persona key -> PersonaVariationEntry (JSON).
    """
    __tablename__ = "organization_config"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    organization_id: str = Field(unique=True, index=True)

    # Website content used as brand reference for generation and judging
    reference_content: Optional[str] = None

    # Persona pre-generation
    persona_variations: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONVariant))
    persona_last_generated_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime))
    persona_page_schema: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONVariant))

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime, nullable=False))
