"""
Visitor journey API routes.
"""
from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.config import settings
from personalization_backend.database import get_session
from personalization_backend.schemas.personalization import VisitorJourneyCreate, VisitorJourneyResponse
from personalization_backend.services.personalization_service import PersonalizationService

router = APIRouter(prefix=f"{settings.API_PREFIX}/visitor-journeys", tags=["visitor-journeys"])


@router.post("/", response_model=VisitorJourneyResponse, status_code=201)
async def record_visitor_journey(
    journey_data: VisitorJourneyCreate,
    session: AsyncSession = Depends(get_session)
):
    """Record a behavioural snapshot for later intent extraction."""
    service = PersonalizationService(session)
    return await service.record_journey(journey_data)
