"""
Shared test fixtures for the personalization backend.

Provides:
- in-memory SQLite database (aiosqlite) with all tables created per test
- scripted capability ports so the pipeline runs without any model or network
- async FastAPI test client with session and capability dependencies overridden
"""
import os
import time
from typing import Any, List, Optional

# Ensure test env vars before any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CAPABILITY_PROVIDER", "remote")
os.environ.setdefault("GEMINI_API_KEY", "")
os.environ.setdefault("OPENAI_API_KEY", "")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

import personalization_backend.models  # noqa: F401  registers tables
from personalization_backend.schemas.personalization import Intent, Judgment, Variation
from personalization_backend.services.capabilities.base import (
    CapabilitySet,
    IntentExtractor,
    QualityJudge,
    VariationGenerator,
)


# ---------------------------------------------------------------------------
# Scripted capability ports
# ---------------------------------------------------------------------------

def make_variation(confidence: float = 0.85, variation_id: Optional[str] = None, **overrides: Any) -> Variation:
    data = {
        "variation_id": variation_id or f"var_{confidence}_{time.monotonic_ns()}",
        "confidence": confidence,
        "layout_changes": [{"section_id": "pricing", "new_priority": 1, "reason": "high intent"}],
        "content_variations": [
            {"selector": "section.hero > h1", "new_text": "Pricing that scales with you", "reason": "pricing focus"}
        ],
        "cta_variations": [{"selector": "a.cta", "new_text": "Start free trial"}],
        "style_emphasis": [{"selector": "section.pricing", "action": "highlight"}],
        "reasoning": "Visitor is comparing plans",
        "cache_duration": 43200,
    }
    data.update(overrides)
    return Variation(**data)


def make_judgment(score: str, brand: float = 0.8, text: float = 0.8, feedback: str = "") -> Judgment:
    return Judgment(
        score=score,
        feedback=feedback or f"{score} feedback",
        issues=[] if score == "pass" else [{"selector": "section.hero > h1", "issue": "too generic"}],
        brand_alignment_score=brand,
        text_quality_score=text,
        reasoning="scripted",
    )


class ScriptedGenerator(VariationGenerator):
    """Returns (or raises) the scripted outcomes in order; the last one repeats."""

    def __init__(self, outcomes: List[Any]):
        self.outcomes = list(outcomes)
        self.calls = []

    async def generate(self, prompt, page_schema, visitor_id, original_content=None):
        self.calls.append(
            {"prompt": prompt, "page_schema": page_schema, "visitor_id": visitor_id, "original_content": original_content}
        )
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class ScriptedJudge(QualityJudge):
    def __init__(self, outcomes: List[Any]):
        self.outcomes = list(outcomes)
        self.calls = []

    async def evaluate(self, variation, original_content, page_schema):
        self.calls.append({"variation": variation, "original_content": original_content})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class StaticIntentExtractor(IntentExtractor):
    def __init__(self, intent: Optional[Intent] = None, error: Optional[Exception] = None):
        self.intent = intent
        self.error = error
        self.calls = []

    async def extract(self, visitor_journey):
        self.calls.append(visitor_journey)
        if self.error:
            raise self.error
        return self.intent


def make_intent(**overrides: Any) -> Intent:
    data = {
        "primary_intent": "compare pricing plans",
        "interest_signals": ["pricing", "enterprise"],
        "visitor_segment": "developer",
        "urgency_level": "high",
        "buyer_stage": "decision",
        "personalization_prompt": "Emphasize transparent pricing and the free trial.",
        "recommended_actions": ["highlight pricing"],
        "reasoning": "Visited pricing twice",
    }
    data.update(overrides)
    return Intent(**data)


PAGE_SCHEMA = {
    "pageTitle": "Pricing",
    "sections": [
        {
            "sectionId": "hero",
            "selector": "section.hero",
            "elements": [{"type": "headline", "selector": "section.hero > h1", "currentText": "Simple pricing"}],
        },
        {"sectionId": "pricing", "selector": "section.pricing", "elements": []},
    ],
}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

@pytest.fixture
def intent_extractor():
    return StaticIntentExtractor(make_intent())


@pytest.fixture
def generator():
    return ScriptedGenerator([make_variation(0.85, "var_pricing_1")])


@pytest.fixture
def judge():
    return ScriptedJudge([make_judgment("pass")])


@pytest.fixture
def capabilities(intent_extractor, generator, judge):
    return CapabilitySet(intent_extractor=intent_extractor, generator=generator, judge=judge)


# ---------------------------------------------------------------------------
# FastAPI test client
# ---------------------------------------------------------------------------

@pytest.fixture
async def client(session_maker, capabilities):
    """Async HTTP client bound to the app, backed by the test database."""
    from personalization_backend.api.deps import get_capabilities
    from personalization_backend.database import get_session
    from personalization_backend.main import app

    async def _session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_capabilities] = lambda: capabilities

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
