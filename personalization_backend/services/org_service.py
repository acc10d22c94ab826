"""
Organization config service - reference content, stored page schema and persona variations.
"""
import logging
from typing import Dict, Any

from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.repositories.org_config_repo import OrganizationConfigRepository
from personalization_backend.schemas.personalization import PersonaVariationsResponse

logger = logging.getLogger(__name__)


class OrganizationConfigService:
    """Service for per-organization personalization configuration."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.org_config_repo = OrganizationConfigRepository(session)

    async def get_persona_variations(self, organization_id: str) -> PersonaVariationsResponse:
        """Stored persona variation map; empty for an unknown organization."""
        config = await self.org_config_repo.get_by_organization(organization_id)
        if not config:
            return PersonaVariationsResponse()
        return PersonaVariationsResponse(
            variations=config.persona_variations or {},
            last_generated=config.persona_last_generated_at,
        )

    async def store_page_schema(self, organization_id: str, page_schema: Dict[str, Any]) -> None:
        """Keep a page schema for later pre-generation runs."""
        await self.org_config_repo.upsert_fields(organization_id, {"persona_page_schema": page_schema})
        logger.info(
            f"Page schema stored for org={organization_id} "
            f"sections={len(page_schema.get('sections') or [])}"
        )

    async def store_reference_content(self, organization_id: str, content: str) -> None:
        """Set the brand reference content used for generation and judging."""
        await self.org_config_repo.upsert_fields(organization_id, {"reference_content": content})
        logger.info(f"Reference content stored for org={organization_id} length={len(content)}")
