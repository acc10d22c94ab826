"""
Organization configuration repository.
"""
import uuid
from typing import Optional, Dict, Any

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.core.clock import utcnow
from personalization_backend.models.organization_config import OrganizationConfig
from personalization_backend.repositories.base import BaseRepository


class OrganizationConfigRepository(BaseRepository[OrganizationConfig]):
    """Repository for OrganizationConfig operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(OrganizationConfig, session)

    async def get_by_organization(self, organization_id: str) -> Optional[OrganizationConfig]:
        """Get config for an organization."""
        query = (
            select(OrganizationConfig)
            .where(OrganizationConfig.organization_id == organization_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.exec(query)
        return result.first()

    async def upsert_fields(self, organization_id: str, fields: Dict[str, Any]) -> OrganizationConfig:
        """Set fields on the organization's config, creating it if missing."""
        now = utcnow()
        values = {**fields, "updated_at": now}
        stmt = self._insert().values(
            {
                "id": uuid.uuid4(),
                "organization_id": organization_id,
                "persona_variations": {},
                "created_at": now,
                **values,
            }
        )
        stmt = stmt.on_conflict_do_update(index_elements=["organization_id"], set_=values)
        await self.session.exec(stmt)
        await self.session.commit()
        return await self.get_by_organization(organization_id)

    async def get_reference_content(self, organization_id: str) -> Optional[str]:
        """Brand/content reference text, if the organization has any."""
        config = await self.get_by_organization(organization_id)
        if config and config.reference_content:
            return config.reference_content
        return None
