"""
Analytics service - read-only rollups over personalization records.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.core.clock import as_utc
from personalization_backend.repositories.personalization_repo import PersonalizationRepository

logger = logging.getLogger(__name__)

EMPTY_OVERVIEW = {
    "total": 0,
    "applied": 0,
    "generated": 0,
    "failed": 0,
    "total_applications": 0,
    "avg_confidence": 0,
}


class AnalyticsService:
    """Service for personalization analytics."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.personalization_repo = PersonalizationRepository(session)

    async def get_analytics(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict:
        """
        Overview counts, per-segment breakdown and the top 10 most-applied records.
        Reporting is best effort: a store error yields an empty result.
        """
        # Query strings may carry any offset (or none); compare in UTC
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        try:
            overview = await self.personalization_repo.get_overview(organization_id, start_date, end_date)
            segments = await self.personalization_repo.get_segment_breakdown(
                organization_id, start_date, end_date
            )
            top = await self.personalization_repo.get_top_applied(organization_id, start_date, end_date)
        except Exception as e:
            logger.warning(f"Analytics query failed for org={organization_id}: {e}")
            return {"overview": dict(EMPTY_OVERVIEW), "segment_breakdown": [], "top_variations": []}

        return {
            "overview": overview,
            "segment_breakdown": segments,
            "top_variations": [
                {
                    "id": str(record.id),
                    "page_url": record.page_url,
                    "variation_id": (record.variation or {}).get("variation_id"),
                    "confidence": record.confidence,
                    "times_applied": record.times_applied,
                    "visitor_segment": record.visitor_segment,
                }
                for record in top
            ],
        }
