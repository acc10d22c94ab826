"""
Visitor journey repository.
"""
import uuid
from typing import Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.models.visitor_journey import VisitorJourney
from personalization_backend.repositories.base import BaseRepository


class VisitorJourneyRepository(BaseRepository[VisitorJourney]):
    """Repository for VisitorJourney operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(VisitorJourney, session)

    async def get_latest_for_visitor(
        self, visitor_id: str, organization_id: str
    ) -> Optional[VisitorJourney]:
        """Most recent journey snapshot for a visitor."""
        query = (
            select(VisitorJourney)
            .where(
                VisitorJourney.visitor_id == visitor_id,
                VisitorJourney.organization_id == organization_id,
            )
            .order_by(VisitorJourney.created_at.desc())
        )
        result = await self.session.exec(query)
        return result.first()

    async def resolve(
        self, journey_id: Optional[str], visitor_id: str, organization_id: str
    ) -> Optional[VisitorJourney]:
        """Look up by journey id when it parses as one, else fall back to the visitor's latest."""
        if journey_id:
            try:
                journey = await self.get(uuid.UUID(journey_id))
            except ValueError:
                journey = None
            if journey:
                return journey
        return await self.get_latest_for_visitor(visitor_id, organization_id)
