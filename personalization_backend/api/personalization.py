"""
Personalization API routes.
"""
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from personalization_backend.api.deps import get_capabilities
from personalization_backend.config import settings
from personalization_backend.core.exceptions import (
    ValidationError,
    raise_bad_request,
    raise_generation_failed,
    raise_missing_fields,
)
from personalization_backend.database import get_session
from personalization_backend.models.personalization import TRIGGER_SOURCES
from personalization_backend.schemas.personalization import (
    CachedIntent,
    CachedPersonalizationResponse,
    CleanupRequest,
    CleanupResponse,
    GenerateRequest,
    GenerateResponse,
    GeneratedIntent,
    OkResponse,
    PersonaVariationsResponse,
    PersonalizationResponse,
    PreGenerateRequest,
    RegisterSchemaRequest,
    RegisterSchemaResponse,
    StoreContentRequest,
    StoreSchemaRequest,
)
from personalization_backend.services.analytics_service import AnalyticsService
from personalization_backend.services.capabilities import CapabilitySet
from personalization_backend.services.org_service import OrganizationConfigService
from personalization_backend.services.persona_service import PersonaBatchPipeline
from personalization_backend.services.personalization_service import PersonalizationService

router = APIRouter(prefix=f"{settings.API_PREFIX}/personalization", tags=["personalization"])

PAGE_FIELDS = ("visitor_id", "page_url", "page_schema", "organization_id")


def _require(data, fields):
    missing = [field for field in fields if not getattr(data, field)]
    if missing:
        raise_missing_fields(*missing)


def _parse_id(personalization_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(personalization_id)
    except ValueError:
        raise_bad_request("must be a UUID", "personalization_id")


@router.get("/", response_model=CachedPersonalizationResponse, response_model_exclude_none=True)
async def get_cached_personalization(
    visitor_id: Optional[str] = Query(None),
    page_url: Optional[str] = Query(None),
    organization_id: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session)
):
    """Serve a cached variation for a visitor/page. A miss is not an error."""
    missing = [
        name for name, value in
        (("visitor_id", visitor_id), ("page_url", page_url), ("organization_id", organization_id))
        if not value
    ]
    if missing:
        raise_missing_fields(*missing)

    service = PersonalizationService(session)
    record = await service.lookup(visitor_id, page_url, organization_id)
    if not record:
        return CachedPersonalizationResponse(cached=False)

    intent = record.intent or {}
    return CachedPersonalizationResponse(
        cached=True,
        variation=record.variation,
        intent=CachedIntent(
            visitor_segment=intent.get("visitor_segment"),
            urgency_level=intent.get("urgency_level"),
        ),
        expires_at=record.expires_at,
    )


@router.post("/register", response_model=RegisterSchemaResponse)
async def register_page_schema(
    register_data: RegisterSchemaRequest,
    session: AsyncSession = Depends(get_session)
):
    """Register a page schema without generating. Repeat calls are no-ops on status/expiry."""
    _require(register_data, PAGE_FIELDS)
    service = PersonalizationService(session)
    record = await service.register(
        register_data.visitor_id,
        register_data.page_url,
        register_data.page_schema,
        register_data.organization_id,
    )
    return RegisterSchemaResponse(personalization_id=record.id, status=record.status)


@router.post("/generate", response_model=GenerateResponse)
async def generate_personalization(
    generate_data: GenerateRequest,
    session: AsyncSession = Depends(get_session),
    capabilities: CapabilitySet = Depends(get_capabilities)
):
    """Run the full pipeline: intent -> judged variation -> cache."""
    _require(generate_data, PAGE_FIELDS)
    if generate_data.trigger_source not in TRIGGER_SOURCES:
        raise_bad_request(f"must be one of {', '.join(TRIGGER_SOURCES)}", "trigger_source")
    service = PersonalizationService(session, capabilities)
    try:
        record = await service.generate(
            visitor_id=generate_data.visitor_id,
            page_url=generate_data.page_url,
            page_schema=generate_data.page_schema,
            organization_id=generate_data.organization_id,
            visitor_journey_id=generate_data.visitor_journey_id,
            trigger_source=generate_data.trigger_source,
        )
    except Exception as e:
        raise_generation_failed("Failed to generate personalization", str(e))

    intent = record.intent or {}
    return GenerateResponse(
        personalization_id=record.id,
        variation=record.variation,
        intent=GeneratedIntent(
            primary_intent=intent.get("primary_intent"),
            visitor_segment=intent.get("visitor_segment"),
            urgency_level=intent.get("urgency_level"),
            buyer_stage=intent.get("buyer_stage"),
        ),
        expires_at=record.expires_at,
    )


@router.get("/variations", response_model=PersonaVariationsResponse)
async def get_persona_variations(
    organization_id: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session)
):
    """Pre-generated persona variations for an organization."""
    if not organization_id:
        raise_missing_fields("organization_id")
    service = OrganizationConfigService(session)
    return await service.get_persona_variations(organization_id)


@router.post("/pre-generate")
async def pre_generate_variations(
    pre_generate_data: PreGenerateRequest,
    session: AsyncSession = Depends(get_session),
    capabilities: CapabilitySet = Depends(get_capabilities)
):
    """Generate persona variations and merge them into the stored map."""
    _require(pre_generate_data, ("organization_id",))
    pipeline = PersonaBatchPipeline(session, capabilities.generator)
    try:
        result = await pipeline.run(
            pre_generate_data.organization_id,
            pre_generate_data.personas,
            pre_generate_data.page_schema,
        )
    except ValidationError as e:
        raise_bad_request(e.message)
    except Exception as e:
        raise_generation_failed("Failed to pre-generate variations", str(e))

    response = {"variations": result.variations, "generated_at": result.generated_at}
    if result.errors:
        response["errors"] = result.errors
    return response


@router.post("/store-schema", response_model=OkResponse)
async def store_page_schema(
    schema_data: StoreSchemaRequest,
    session: AsyncSession = Depends(get_session)
):
    """Store a page schema for later pre-generation."""
    _require(schema_data, ("organization_id", "page_schema"))
    service = OrganizationConfigService(session)
    await service.store_page_schema(schema_data.organization_id, schema_data.page_schema)
    return OkResponse(message="Page schema stored successfully")


@router.post("/store-content", response_model=OkResponse)
async def store_reference_content(
    content_data: StoreContentRequest,
    session: AsyncSession = Depends(get_session)
):
    """Store brand reference content used by generation and the judge."""
    _require(content_data, ("organization_id", "content"))
    service = OrganizationConfigService(session)
    await service.store_reference_content(content_data.organization_id, content_data.content)
    return OkResponse(message="Reference content stored successfully")


@router.get("/analytics/{organization_id}")
async def get_analytics(
    organization_id: str,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    session: AsyncSession = Depends(get_session)
):
    """Rollups for an organization over an optional date range."""
    service = AnalyticsService(session)
    return await service.get_analytics(organization_id, start_date, end_date)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_expired(
    cleanup_data: Optional[CleanupRequest] = None,
    session: AsyncSession = Depends(get_session)
):
    """Delete expired records, optionally for one organization."""
    organization_id = cleanup_data.organization_id if cleanup_data else None
    service = PersonalizationService(session)
    deleted = await service.cleanup_expired(organization_id)
    return CleanupResponse(deleted_count=deleted)


@router.get("/{personalization_id}", response_model=PersonalizationResponse)
async def get_personalization(
    personalization_id: str,
    session: AsyncSession = Depends(get_session)
):
    """Get a personalization by ID."""
    service = PersonalizationService(session)
    return await service.get(_parse_id(personalization_id))


@router.delete("/{personalization_id}", response_model=OkResponse)
async def delete_personalization(
    personalization_id: str,
    session: AsyncSession = Depends(get_session)
):
    """Delete a personalization."""
    service = PersonalizationService(session)
    await service.delete(_parse_id(personalization_id))
    return OkResponse(message="Personalization deleted")
