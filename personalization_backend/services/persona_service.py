"""
Persona service - batch pre-generation of persona variations.
"""
import asyncio
import logging
import time
from typing import Optional, List, Dict, Any

from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.config import settings
from personalization_backend.core.clock import utcnow
from personalization_backend.core.exceptions import ValidationError
from personalization_backend.core.hashing import content_hash
from personalization_backend.repositories.org_config_repo import OrganizationConfigRepository
from personalization_backend.schemas.personalization import (
    PersonaBatchResult,
    PersonaConfig,
    PersonaVariationEntry,
    VariationChanges,
)
from personalization_backend.services.capabilities.base import VariationGenerator
from personalization_backend.services.judge_loop import build_generation_prompt

logger = logging.getLogger(__name__)

DEFAULT_PERSONA_KEY = "default"

DEFAULT_PERSONAS = [
    PersonaConfig(
        key="analytics",
        keywords=["analytics", "tracking", "data", "insights", "metrics", "dashboard"],
        prompt=(
            "Personalize for a visitor interested in analytics and tracking. Emphasize data insights, "
            "metrics, and dashboard features. Use data-driven language."
        ),
    ),
    PersonaConfig(
        key="developer",
        keywords=["developer", "api", "sdk", "code", "bug", "error", "fix", "integration", "technical"],
        prompt=(
            "Personalize for a developer interested in bug hunting and code quality. Emphasize error "
            "detection, auto-fix features, and technical capabilities. Use developer-friendly language."
        ),
    ),
    PersonaConfig(
        key="enterprise",
        keywords=["enterprise", "business", "team", "company", "scale", "security"],
        prompt=(
            "Personalize for an enterprise buyer. Emphasize scalability, security, team features, "
            "and business value. Use professional, ROI-focused language."
        ),
    ),
]


class PersonaBatchPipeline:
    """
    Generates one variation per persona against a shared page schema and merges
    the results into the organization's persona variation map.

    Personas run one after another to bound load on the generator. A persona that
    fails is reported in `errors` and the rest still run.
    """

    def __init__(self, session: AsyncSession, generator: VariationGenerator):
        self.session = session
        self.generator = generator
        self.org_config_repo = OrganizationConfigRepository(session)

    async def run(
        self,
        organization_id: str,
        personas: Optional[List[PersonaConfig]] = None,
        page_schema: Optional[Dict[str, Any]] = None,
    ) -> PersonaBatchResult:
        start = time.monotonic()
        if personas is None:
            personas = DEFAULT_PERSONAS

        config = await self.org_config_repo.get_by_organization(organization_id)
        schema = page_schema or (config.persona_page_schema if config else None)
        if not schema:
            raise ValidationError(
                "No page schema available. Store a page schema first using /store-schema.",
                "page_schema",
            )

        reference_content = (config.reference_content if config else None) or ""
        source_hash = content_hash(reference_content, settings.CONTENT_HASH_CHARS)
        existing = dict(config.persona_variations or {}) if config else {}

        logger.info(
            f"Pre-generating {len(personas)} personas for org={organization_id} "
            f"existing={len(existing)} content_hash={source_hash or '-'}"
        )

        generated: Dict[str, Any] = {}
        errors: List[Dict[str, str]] = []

        for persona in personas:
            if persona.key == DEFAULT_PERSONA_KEY and DEFAULT_PERSONA_KEY in existing:
                logger.info(f"Skipping persona '{DEFAULT_PERSONA_KEY}': stored entry is kept")
                continue
            try:
                entry = await self._generate_persona(persona, schema, reference_content, source_hash)
            except Exception as e:
                logger.warning(f"Persona '{persona.key}' failed: {e}")
                errors.append({"persona": persona.key, "error": str(e)})
                continue
            generated[persona.key] = entry.model_dump(mode="json")

        if DEFAULT_PERSONA_KEY not in existing and DEFAULT_PERSONA_KEY not in generated:
            generated[DEFAULT_PERSONA_KEY] = PersonaVariationEntry(
                key=DEFAULT_PERSONA_KEY,
                keywords=[],
                variation=VariationChanges(),
                confidence=1.0,
                generated_at=utcnow(),
                source_content_hash=source_hash,
            ).model_dump(mode="json")

        # New entries win on key collision; old-only keys survive
        merged = {**existing, **generated}
        generated_at = utcnow()

        await self.org_config_repo.upsert_fields(
            organization_id,
            {
                "persona_variations": merged,
                "persona_last_generated_at": generated_at,
                "persona_page_schema": schema,
            },
        )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Pre-generation complete in {elapsed_ms}ms: generated={len(generated)} "
            f"errors={len(errors)} keys={sorted(merged)}"
        )
        return PersonaBatchResult(variations=merged, generated_at=generated_at, errors=errors)

    async def _generate_persona(
        self,
        persona: PersonaConfig,
        page_schema: Dict[str, Any],
        reference_content: str,
        source_hash: str,
    ) -> PersonaVariationEntry:
        visitor_id = f"pre-gen-{persona.key}"
        prompt = build_generation_prompt(persona.prompt, page_schema, visitor_id, reference_content)
        step_start = time.monotonic()
        try:
            variation = await asyncio.wait_for(
                self.generator.generate(prompt, page_schema, visitor_id, reference_content or None),
                timeout=settings.GENERATION_TIMEOUT_S,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"generation timed out after {settings.GENERATION_TIMEOUT_S}s")

        logger.info(
            f"Persona '{persona.key}' generated in {int((time.monotonic() - step_start) * 1000)}ms "
            f"confidence={variation.confidence}"
        )
        return PersonaVariationEntry(
            key=persona.key,
            keywords=persona.keywords,
            variation=variation.changes(),
            confidence=variation.confidence,
            generated_at=utcnow(),
            source_content_hash=source_hash,
        )
