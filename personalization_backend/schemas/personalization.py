"""
Personalization schemas.

Capability contracts (Intent, Variation, Judgment) accept both snake_case and the
camelCase keys emitted by the remote inference service. Array fields that arrive
JSON-encoded as strings are decoded into native lists.
"""
import json
import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


def _decode_json_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.strip()
        return json.loads(value) if value else []
    return value


class ContractModel(BaseModel):
    """Base for capability payloads."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"


# ---------------------------------------------------------------------------
# Intent
# ---------------------------------------------------------------------------

class Intent(ContractModel):
    """Output of intent extraction for one visitor journey."""
    primary_intent: Optional[str] = None
    interest_signals: List[Any] = []
    visitor_segment: Optional[str] = None  # developer, marketer, executive, founder, sales, support, researcher, general
    urgency_level: Optional[str] = None  # high, medium, low, browsing
    buyer_stage: Optional[str] = None  # awareness, consideration, decision, retention
    personalization_prompt: Optional[str] = None
    recommended_actions: List[Any] = []
    reasoning: Optional[str] = None

    @field_validator("interest_signals", "recommended_actions", mode="before")
    @classmethod
    def decode_json_lists(cls, value):
        return _decode_json_list(value)


# ---------------------------------------------------------------------------
# Variation
# ---------------------------------------------------------------------------

class LayoutChange(ContractModel):
    section_id: str
    current_priority: Optional[float] = None
    new_priority: float
    reason: Optional[str] = None


class ContentVariation(ContractModel):
    selector: str
    element_type: Optional[str] = None
    original_text: Optional[str] = None
    new_text: str
    reason: Optional[str] = None


class CtaVariation(ContractModel):
    selector: str
    original_text: Optional[str] = None
    new_text: str
    new_href: Optional[str] = None
    reason: Optional[str] = None


class StyleEmphasis(ContractModel):
    selector: str
    action: str = "none"  # highlight, fade, none
    reason: Optional[str] = None


class VariationChanges(ContractModel):
    """The DOM edits of a variation, without generation metadata."""
    layout_changes: List[LayoutChange] = []
    content_variations: List[ContentVariation] = []
    cta_variations: List[CtaVariation] = []
    style_emphasis: List[StyleEmphasis] = []

    @field_validator(
        "layout_changes", "content_variations", "cta_variations", "style_emphasis",
        mode="before",
    )
    @classmethod
    def decode_json_lists(cls, value):
        return _decode_json_list(value)


class Variation(VariationChanges):
    """A generated set of edits targeting selectors of a page schema."""
    variation_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    cache_duration: Optional[int] = None  # generator-recommended TTL in seconds

    def changes(self) -> VariationChanges:
        return VariationChanges(**self.model_dump(include=set(VariationChanges.model_fields)))


# ---------------------------------------------------------------------------
# Judgment
# ---------------------------------------------------------------------------

JUDGE_PASS = "pass"
JUDGE_NEEDS_IMPROVEMENT = "needs_improvement"
JUDGE_FAIL = "fail"
JUDGE_MAX_TURNS_REACHED = "max_turns_reached"


class Judgment(ContractModel):
    """Ephemeral quality verdict on a variation."""
    score: str  # pass, needs_improvement, fail
    feedback: str = ""
    issues: List[Any] = []
    brand_alignment_score: float = Field(default=0.0, ge=0.0, le=1.0)
    text_quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: Optional[str] = None

    @field_validator("issues", mode="before")
    @classmethod
    def decode_issues(cls, value):
        return _decode_json_list(value)

    @field_validator("score")
    @classmethod
    def known_score(cls, value: str) -> str:
        if value not in (JUDGE_PASS, JUDGE_NEEDS_IMPROVEMENT, JUDGE_FAIL):
            raise ValueError(f"unknown judgment score '{value}'")
        return value


class JudgeFeedback(BaseModel):
    """One needs_improvement turn carried into the next prompt."""
    turn: int
    feedback: str
    issues: List[Any] = []
    brand_alignment_score: float
    text_quality_score: float


class GenerationResult(BaseModel):
    """Variation chosen by the judge loop plus how it was chosen."""
    variation: Variation
    judge_turns: Optional[int] = None
    judge_score: Optional[str] = None  # pass, max_turns_reached, or None when not judged
    brand_alignment_score: Optional[float] = None
    text_quality_score: Optional[float] = None


# ---------------------------------------------------------------------------
# Personas
# ---------------------------------------------------------------------------

class PersonaConfig(BaseModel):
    """A persona to pre-generate a variation for."""
    key: str
    keywords: List[str] = []
    prompt: str


class PersonaVariationEntry(BaseModel):
    """Stored per organization under persona_variations[key]."""
    key: str
    keywords: List[str] = []
    variation: VariationChanges
    confidence: float
    generated_at: datetime
    source_content_hash: str = ""


class PersonaBatchResult(BaseModel):
    variations: Dict[str, Any]  # persona key -> stored PersonaVariationEntry
    generated_at: datetime
    errors: List[Dict[str, str]] = []


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------

class RegisterSchemaRequest(BaseModel):
    """Register a page schema without generating."""
    visitor_id: Optional[str] = None
    page_url: Optional[str] = None
    page_schema: Optional[Dict[str, Any]] = None
    organization_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "visitor_id": "v_123",
                "page_url": "https://example.com/pricing",
                "organization_id": "org_1",
                "page_schema": {
                    "pageTitle": "Pricing",
                    "sections": [
                        {
                            "sectionId": "hero-section",
                            "selector": "section.hero",
                            "elements": [
                                {"type": "headline", "selector": "section.hero > h1", "currentText": "Simple pricing"}
                            ]
                        }
                    ]
                }
            }
        }


class GenerateRequest(RegisterSchemaRequest):
    """Run the full personalization pipeline."""
    visitor_journey_id: Optional[str] = None
    trigger_source: str = "behavior"


class PreGenerateRequest(BaseModel):
    organization_id: Optional[str] = None
    personas: Optional[List[PersonaConfig]] = None
    page_schema: Optional[Dict[str, Any]] = None


class StoreSchemaRequest(BaseModel):
    organization_id: Optional[str] = None
    page_schema: Optional[Dict[str, Any]] = None


class StoreContentRequest(BaseModel):
    organization_id: Optional[str] = None
    content: Optional[str] = None


class CleanupRequest(BaseModel):
    organization_id: Optional[str] = None


class VisitorJourneyCreate(BaseModel):
    visitor_id: str
    organization_id: str
    journey: Dict[str, Any] = {}


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class PersonalizationResponse(BaseModel):
    """Full personalization record."""
    id: uuid.UUID
    visitor_id: str
    organization_id: str
    page_url: str
    page_url_hash: str
    page_title: Optional[str]
    page_schema: Optional[Dict[str, Any]]
    intent: Optional[Dict[str, Any]]
    variation: Optional[Dict[str, Any]]
    cache_duration_seconds: int
    expires_at: datetime
    times_applied: int
    last_applied_at: Optional[datetime]
    status: str
    error_message: Optional[str]
    trigger_source: str
    visitor_journey_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class VisitorJourneyResponse(BaseModel):
    id: uuid.UUID
    visitor_id: str
    organization_id: str
    journey: Dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


class CachedIntent(BaseModel):
    visitor_segment: Optional[str] = None
    urgency_level: Optional[str] = None


class CachedPersonalizationResponse(BaseModel):
    cached: bool
    variation: Optional[Dict[str, Any]] = None
    intent: Optional[CachedIntent] = None
    expires_at: Optional[datetime] = None


class RegisterSchemaResponse(BaseModel):
    personalization_id: uuid.UUID
    status: str


class GeneratedIntent(BaseModel):
    primary_intent: Optional[str] = None
    visitor_segment: Optional[str] = None
    urgency_level: Optional[str] = None
    buyer_stage: Optional[str] = None


class GenerateResponse(BaseModel):
    personalization_id: uuid.UUID
    variation: Optional[Dict[str, Any]]
    intent: GeneratedIntent
    expires_at: datetime


class PersonaVariationsResponse(BaseModel):
    variations: Dict[str, Any] = {}
    last_generated: Optional[datetime] = None


class CleanupResponse(BaseModel):
    deleted_count: int


class OkResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None
