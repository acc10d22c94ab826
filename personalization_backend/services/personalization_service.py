"""
Personalization service - record lifecycle, cache semantics and the generation pipeline.
"""
import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Optional, Dict, Any

from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.config import settings
from personalization_backend.core.clock import utcnow
from personalization_backend.core.exceptions import CapabilityError, PipelineError, raise_not_found
from personalization_backend.core.hashing import hash_page_url
from personalization_backend.models.personalization import Personalization
from personalization_backend.models.visitor_journey import VisitorJourney
from personalization_backend.repositories.journey_repo import VisitorJourneyRepository
from personalization_backend.repositories.org_config_repo import OrganizationConfigRepository
from personalization_backend.repositories.personalization_repo import PersonalizationRepository
from personalization_backend.schemas.personalization import (
    GenerationResult,
    Intent,
    PersonalizationResponse,
    Variation,
    VisitorJourneyCreate,
)
from personalization_backend.services.capabilities.base import CapabilitySet
from personalization_backend.services.judge_loop import JudgeLoopController

logger = logging.getLogger(__name__)


class PersonalizationService:
    """Service for personalization records and generation."""

    def __init__(self, session: AsyncSession, capabilities: Optional[CapabilitySet] = None):
        self.session = session
        self.capabilities = capabilities
        self.personalization_repo = PersonalizationRepository(session)
        self.org_config_repo = OrganizationConfigRepository(session)
        self.journey_repo = VisitorJourneyRepository(session)

    # ------------------------------------------------------------------
    # Cache lifecycle
    # ------------------------------------------------------------------

    async def lookup(
        self, visitor_id: str, page_url: str, organization_id: str
    ) -> Optional[PersonalizationResponse]:
        """
        Serve a cached personalization.
        A hit is a generated/applied record whose expires_at is in the future.
        On a hit the record is counted as applied; the caller gets the snapshot
        taken before that bookkeeping.
        """
        page_url_hash = hash_page_url(page_url)
        now = utcnow()
        record = await self.personalization_repo.find_servable(
            visitor_id, page_url_hash, organization_id, now
        )
        if not record:
            logger.info(
                f"Cache MISS visitor={visitor_id} page_hash={page_url_hash} org={organization_id}"
            )
            return None

        snapshot = PersonalizationResponse.model_validate(record)
        logger.info(
            f"Cache HIT personalization={record.id} status={record.status} "
            f"times_applied={record.times_applied}"
        )

        try:
            await self.personalization_repo.record_application(record.id, now)
        except Exception as e:
            # Bookkeeping never fails the read
            logger.warning(f"Failed to record application for {record.id}: {e}")
            await self.session.rollback()

        return snapshot

    async def register(
        self,
        visitor_id: str,
        page_url: str,
        page_schema: Dict[str, Any],
        organization_id: str,
    ) -> Personalization:
        """Idempotent schema registration; never resets status or expiry of an existing record."""
        page_url_hash = hash_page_url(page_url)
        now = utcnow()
        record = await self.personalization_repo.upsert_schema(
            visitor_id=visitor_id,
            page_url=page_url,
            page_url_hash=page_url_hash,
            organization_id=organization_id,
            page_schema=page_schema,
            expires_at=now + timedelta(seconds=settings.SCHEMA_REGISTRATION_TTL_S),
            now=now,
        )
        logger.info(f"Page schema registered personalization={record.id} status={record.status}")
        return record

    async def commit(
        self,
        visitor_id: str,
        page_url: str,
        organization_id: str,
        page_schema: Dict[str, Any],
        intent: Intent,
        variation: Variation,
        cache_duration_seconds: Optional[int] = None,
        trigger_source: str = "behavior",
        visitor_journey_id: Optional[str] = None,
    ) -> Personalization:
        """Persist a generated variation as status=generated with a fresh TTL."""
        duration = cache_duration_seconds or variation.cache_duration or settings.DEFAULT_CACHE_DURATION_S
        now = utcnow()
        return await self.personalization_repo.upsert_generated(
            visitor_id=visitor_id,
            page_url=page_url,
            page_url_hash=hash_page_url(page_url),
            organization_id=organization_id,
            page_schema=page_schema,
            intent=intent.model_dump(mode="json"),
            variation=variation.model_dump(mode="json", exclude={"cache_duration"}),
            cache_duration_seconds=duration,
            expires_at=now + timedelta(seconds=duration),
            trigger_source=trigger_source,
            visitor_journey_id=visitor_journey_id,
            now=now,
        )

    async def mark_failed(
        self,
        visitor_id: str,
        page_url: str,
        organization_id: str,
        error_message: str,
        page_schema: Optional[Dict[str, Any]] = None,
    ) -> Personalization:
        """Record a pipeline failure; the cached variation content is left as is."""
        return await self.personalization_repo.upsert_failed(
            visitor_id=visitor_id,
            page_url=page_url,
            page_url_hash=hash_page_url(page_url),
            organization_id=organization_id,
            page_schema=page_schema,
            error_message=error_message,
            now=utcnow(),
            preserve_servable=settings.PRESERVE_VALID_CACHE_ON_FAILURE,
        )

    # ------------------------------------------------------------------
    # Generation pipeline
    # ------------------------------------------------------------------

    async def generate(
        self,
        visitor_id: str,
        page_url: str,
        page_schema: Dict[str, Any],
        organization_id: str,
        visitor_journey_id: Optional[str] = None,
        trigger_source: str = "behavior",
    ) -> Personalization:
        """
        Full pipeline: journey -> intent -> judged variation -> commit.
        Failures are persisted on the record and re-raised.
        """
        if not self.capabilities:
            raise PipelineError("No capabilities configured")

        start = time.monotonic()
        logger.info(
            f"Generate personalization visitor={visitor_id} page={page_url} "
            f"org={organization_id} trigger={trigger_source}"
        )

        try:
            journey = await self.journey_repo.resolve(visitor_journey_id, visitor_id, organization_id)
            if not journey:
                raise PipelineError("Visitor journey not found")

            original_content = await self.org_config_repo.get_reference_content(organization_id)
            intent = await self._extract_intent(journey)
            result = await self._generate_variation(intent, page_schema, visitor_id, original_content)

            record = await self.commit(
                visitor_id=visitor_id,
                page_url=page_url,
                organization_id=organization_id,
                page_schema=page_schema,
                intent=intent,
                variation=result.variation,
                trigger_source=trigger_source,
                visitor_journey_id=visitor_journey_id,
            )
        except Exception as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.error(
                f"Generate personalization FAILED after {elapsed_ms}ms "
                f"visitor={visitor_id} page={page_url} org={organization_id}: {e}"
            )
            await self.session.rollback()
            await self.mark_failed(visitor_id, page_url, organization_id, str(e), page_schema)
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Generate personalization complete in {elapsed_ms}ms personalization={record.id} "
            f"variation={result.variation.variation_id} confidence={result.variation.confidence} "
            f"judge_turns={result.judge_turns} judge_score={result.judge_score}"
        )
        return record

    async def _extract_intent(self, journey: VisitorJourney) -> Intent:
        payload = {
            "id": str(journey.id),
            "visitor_id": journey.visitor_id,
            "organization_id": journey.organization_id,
            "created_at": journey.created_at.isoformat(),
            **(journey.journey or {}),
        }
        try:
            intent = await asyncio.wait_for(
                self.capabilities.intent_extractor.extract(payload),
                timeout=settings.INTENT_TIMEOUT_S,
            )
        except asyncio.TimeoutError:
            raise CapabilityError("Intent extraction", "timeout")

        if not intent.personalization_prompt:
            raise PipelineError("Intent extraction failed - no personalization prompt in response")
        return intent

    async def _generate_variation(
        self,
        intent: Intent,
        page_schema: Dict[str, Any],
        visitor_id: str,
        original_content: Optional[str],
    ) -> GenerationResult:
        controller = JudgeLoopController(self.capabilities.generator, self.capabilities.judge)

        # Judging needs brand reference content to compare against
        if not original_content:
            logger.info("No reference content, using single generation without judge")
            return await controller.generate_once(
                intent.personalization_prompt, page_schema, visitor_id
            )

        try:
            return await asyncio.wait_for(
                controller.run(intent.personalization_prompt, page_schema, visitor_id, original_content),
                timeout=controller.deadline,
            )
        except asyncio.TimeoutError:
            raise CapabilityError("Variation generation", "judge loop deadline exceeded")

    # ------------------------------------------------------------------
    # Point operations
    # ------------------------------------------------------------------

    async def get(self, personalization_id: uuid.UUID) -> Personalization:
        """Get a personalization by ID."""
        record = await self.personalization_repo.get(personalization_id)
        if not record:
            raise_not_found("Personalization", str(personalization_id))
        return record

    async def delete(self, personalization_id: uuid.UUID) -> bool:
        """Delete a personalization."""
        deleted = await self.personalization_repo.delete(personalization_id)
        if not deleted:
            raise_not_found("Personalization", str(personalization_id))
        return True

    async def cleanup_expired(self, organization_id: Optional[str] = None) -> int:
        """Delete expired records. Best effort: errors degrade to 0."""
        try:
            deleted = await self.personalization_repo.delete_expired(utcnow(), organization_id)
        except Exception as e:
            logger.warning(f"Cleanup of expired personalizations failed: {e}")
            await self.session.rollback()
            return 0
        logger.info(f"Deleted {deleted} expired personalizations (org={organization_id or 'all'})")
        return deleted

    async def record_journey(self, journey_data: VisitorJourneyCreate) -> VisitorJourney:
        """Store a visitor journey snapshot for later intent extraction."""
        return await self.journey_repo.create(journey_data.model_dump())
