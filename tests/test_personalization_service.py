"""
Tests for the personalization lifecycle: registration, cache hits, generation, failures.
"""
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import update
from sqlmodel import select

from personalization_backend.config import settings
from personalization_backend.core.clock import utcnow
from personalization_backend.core.exceptions import PipelineError
from personalization_backend.core.hashing import hash_page_url
from personalization_backend.models.personalization import Personalization
from personalization_backend.repositories.org_config_repo import OrganizationConfigRepository
from personalization_backend.schemas.personalization import VisitorJourneyCreate
from personalization_backend.services.capabilities.base import CapabilitySet
from personalization_backend.services.personalization_service import PersonalizationService
from tests.conftest import (
    PAGE_SCHEMA,
    ScriptedGenerator,
    ScriptedJudge,
    StaticIntentExtractor,
    make_intent,
    make_judgment,
    make_variation,
)

VISITOR = "v1"
PAGE = "/pricing"
ORG = "org1"


def assert_close(actual: datetime, expected: datetime, seconds: int = 5):
    assert abs((actual - expected).total_seconds()) < seconds


async def fetch(service: PersonalizationService, visitor_id=VISITOR, page_url=PAGE, organization_id=ORG):
    return await service.personalization_repo.get_by_key(visitor_id, hash_page_url(page_url), organization_id)


async def record_journey(service: PersonalizationService, visitor_id=VISITOR):
    return await service.record_journey(
        VisitorJourneyCreate(
            visitor_id=visitor_id,
            organization_id=ORG,
            journey={"page_views": [{"url": PAGE, "time_on_page": 95}], "session_count": 3},
        )
    )


async def expire(session, visitor_id=VISITOR):
    await session.exec(
        update(Personalization)
        .where(Personalization.visitor_id == visitor_id)
        .values(expires_at=utcnow() - timedelta(seconds=60))
    )
    await session.commit()


@pytest.fixture
def service(session, capabilities):
    return PersonalizationService(session, capabilities)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_lookup_without_record_is_a_miss(service):
    assert await service.lookup(VISITOR, PAGE, ORG) is None


@pytest.mark.asyncio
async def test_register_creates_pending_record(service):
    record = await service.register(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert record.status == "pending"
    assert record.page_url_hash == hash_page_url(PAGE)
    assert record.page_title == "Pricing"
    assert record.page_schema == PAGE_SCHEMA
    assert_close(record.expires_at, utcnow() + timedelta(seconds=86400))
    assert record.expires_at.utcoffset() == timedelta(0)
    assert record.created_at.utcoffset() == timedelta(0)


@pytest.mark.asyncio
async def test_register_twice_keeps_one_record(service):
    first = await service.register(VISITOR, PAGE, PAGE_SCHEMA, ORG)
    updated_schema = {**PAGE_SCHEMA, "pageTitle": "Pricing v2"}
    second = await service.register(VISITOR, PAGE, updated_schema, ORG)

    assert second.id == first.id
    assert second.page_title == "Pricing v2"
    rows = await service.session.exec(select(Personalization).where(Personalization.organization_id == ORG))
    assert len(rows.all()) == 1


@pytest.mark.asyncio
async def test_register_does_not_reset_generated_record(service):
    await record_journey(service)
    generated = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)
    expires_at = generated.expires_at

    again = await service.register(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert again.status == "generated"
    assert again.expires_at == expires_at


# ---------------------------------------------------------------------------
# Cache hits
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pending_record_is_not_served(service):
    await service.register(VISITOR, PAGE, PAGE_SCHEMA, ORG)
    assert await service.lookup(VISITOR, PAGE, ORG) is None


@pytest.mark.asyncio
async def test_hit_returns_snapshot_and_counts_application(service):
    await record_journey(service)
    generated = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    snapshot = await service.lookup(VISITOR, PAGE, ORG)

    assert snapshot is not None
    assert snapshot.variation["variation_id"] == generated.variation["variation_id"]
    assert snapshot.times_applied == 0
    assert snapshot.status == "generated"

    record = await fetch(service)
    assert record.times_applied == 1
    assert record.status == "applied"
    assert record.last_applied_at is not None


@pytest.mark.asyncio
async def test_each_hit_increments_by_one(service):
    await record_journey(service)
    await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    for _ in range(3):
        assert await service.lookup(VISITOR, PAGE, ORG) is not None

    record = await fetch(service)
    assert record.times_applied == 3


@pytest.mark.asyncio
async def test_expired_record_is_never_a_hit(service, session):
    await record_journey(service)
    await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)
    await expire(session)

    assert await service.lookup(VISITOR, PAGE, ORG) is None


@pytest.mark.asyncio
async def test_lookup_is_scoped_to_organization(service):
    await record_journey(service)
    await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert await service.lookup(VISITOR, PAGE, "other-org") is None


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_without_reference_content_skips_judge(service, generator, judge):
    await record_journey(service)

    record = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG, trigger_source="chat")

    assert record.status == "generated"
    assert record.error_message is None
    assert record.variation["variation_id"] == "var_pricing_1"
    assert record.variation["confidence"] == 0.85
    assert record.intent["visitor_segment"] == "developer"
    assert record.visitor_segment == "developer"
    assert record.confidence == 0.85
    assert record.cache_duration_seconds == 43200
    assert record.trigger_source == "chat"
    assert_close(record.expires_at, utcnow() + timedelta(seconds=43200))
    assert len(generator.calls) == 1
    assert judge.calls == []


@pytest.mark.asyncio
async def test_generate_with_reference_content_runs_judge_loop(session, intent_extractor):
    await OrganizationConfigRepository(session).upsert_fields(
        ORG, {"reference_content": "Acme: observability for engineering teams."}
    )
    generator = ScriptedGenerator([make_variation(0.6, "first"), make_variation(0.8, "second")])
    judge = ScriptedJudge([make_judgment("needs_improvement"), make_judgment("pass")])
    service = PersonalizationService(session, CapabilitySet(intent_extractor, generator, judge))
    await record_journey(service)

    record = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert record.variation["variation_id"] == "second"
    assert len(judge.calls) == 2
    assert judge.calls[0]["original_content"].startswith("Acme")
    assert generator.calls[0]["original_content"].startswith("Acme")


@pytest.mark.asyncio
async def test_generate_uses_default_cache_duration(session, intent_extractor, judge):
    generator = ScriptedGenerator([make_variation(0.85, "no-ttl", cache_duration=None)])
    service = PersonalizationService(session, CapabilitySet(intent_extractor, generator, judge))
    await record_journey(service)

    record = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert record.cache_duration_seconds == 43200
    assert "cache_duration" not in record.variation


@pytest.mark.asyncio
async def test_generate_honors_generator_cache_duration(session, intent_extractor, judge):
    generator = ScriptedGenerator([make_variation(0.95, "long", cache_duration=86400)])
    service = PersonalizationService(session, CapabilitySet(intent_extractor, generator, judge))
    await record_journey(service)

    record = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert record.cache_duration_seconds == 86400
    assert_close(record.expires_at, utcnow() + timedelta(seconds=86400))


@pytest.mark.asyncio
async def test_generate_resolves_journey_by_id(service, intent_extractor):
    await record_journey(service)
    other = await service.record_journey(
        VisitorJourneyCreate(visitor_id=VISITOR, organization_id=ORG, journey={"marker": "chosen"})
    )
    await record_journey(service)

    await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG, visitor_journey_id=str(other.id))

    assert intent_extractor.calls[0]["marker"] == "chosen"
    assert intent_extractor.calls[0]["id"] == str(other.id)


@pytest.mark.asyncio
async def test_generate_without_journey_marks_failed(service):
    with pytest.raises(PipelineError):
        await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    record = await fetch(service)
    assert record.status == "failed"
    assert "Visitor journey not found" in record.error_message
    assert await service.lookup(VISITOR, PAGE, ORG) is None


@pytest.mark.asyncio
async def test_intent_without_prompt_is_a_failure(session, generator, judge):
    extractor = StaticIntentExtractor(make_intent(personalization_prompt=None))
    service = PersonalizationService(session, CapabilitySet(extractor, generator, judge))
    await record_journey(service)

    with pytest.raises(PipelineError):
        await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    record = await fetch(service)
    assert record.status == "failed"
    assert generator.calls == []


@pytest.mark.asyncio
async def test_failed_regeneration_keeps_valid_cache_servable(session, intent_extractor, judge):
    generator = ScriptedGenerator([make_variation(0.85, "good"), RuntimeError("generator down")])
    service = PersonalizationService(session, CapabilitySet(intent_extractor, generator, judge))
    await record_journey(service)
    await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    with pytest.raises(RuntimeError):
        await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    record = await fetch(service)
    assert record.status == "generated"
    assert record.error_message == "generator down"
    assert record.variation["variation_id"] == "good"
    assert await service.lookup(VISITOR, PAGE, ORG) is not None


@pytest.mark.asyncio
async def test_failed_regeneration_evicts_when_not_preserving(session, intent_extractor, judge, monkeypatch):
    monkeypatch.setattr(settings, "PRESERVE_VALID_CACHE_ON_FAILURE", False)
    generator = ScriptedGenerator([make_variation(0.85, "good"), RuntimeError("generator down")])
    service = PersonalizationService(session, CapabilitySet(intent_extractor, generator, judge))
    await record_journey(service)
    await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    with pytest.raises(RuntimeError):
        await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    record = await fetch(service)
    assert record.status == "failed"
    assert record.error_message == "generator down"
    assert record.variation["variation_id"] == "good"
    assert await service.lookup(VISITOR, PAGE, ORG) is None


@pytest.mark.asyncio
async def test_success_after_failure_clears_error(session, intent_extractor, judge):
    generator = ScriptedGenerator([RuntimeError("generator down"), make_variation(0.85, "recovered")])
    service = PersonalizationService(session, CapabilitySet(intent_extractor, generator, judge))
    await record_journey(service)

    with pytest.raises(RuntimeError):
        await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)
    record = await service.generate(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert record.status == "generated"
    assert record.error_message is None


# ---------------------------------------------------------------------------
# Point operations
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_and_delete(service):
    record = await service.register(VISITOR, PAGE, PAGE_SCHEMA, ORG)

    assert (await service.get(record.id)).id == record.id
    assert await service.delete(record.id) is True

    with pytest.raises(HTTPException) as exc_info:
        await service.get(record.id)
    assert exc_info.value.status_code == 404

    with pytest.raises(HTTPException) as exc_info:
        await service.delete(record.id)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_cleanup_deletes_only_expired(service, session):
    await service.register("expired-visitor", PAGE, PAGE_SCHEMA, ORG)
    await service.register("live-visitor", PAGE, PAGE_SCHEMA, ORG)
    await service.register("other-org-visitor", PAGE, PAGE_SCHEMA, "org2")
    await expire(session, "expired-visitor")
    await expire(session, "other-org-visitor")

    assert await service.cleanup_expired(ORG) == 1
    assert await fetch(service, visitor_id="live-visitor") is not None
    assert await fetch(service, visitor_id="other-org-visitor", organization_id="org2") is not None

    assert await service.cleanup_expired() == 1
