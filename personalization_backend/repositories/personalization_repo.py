"""
Personalization repository - keyed upserts, cache lookups and rollups.
"""
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import and_, case, delete, func, update
from sqlalchemy import select as sa_select

from personalization_backend.models.personalization import (
    Personalization,
    SERVABLE_STATUSES,
    STATUS_APPLIED,
    STATUS_FAILED,
    STATUS_GENERATED,
    STATUS_PENDING,
)
from personalization_backend.repositories.base import BaseRepository

KEY_COLUMNS = ["visitor_id", "page_url_hash", "organization_id"]


class PersonalizationRepository(BaseRepository[Personalization]):
    """Repository for Personalization operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Personalization, session)

    def _key_filter(self, visitor_id: str, page_url_hash: str, organization_id: str):
        return and_(
            Personalization.visitor_id == visitor_id,
            Personalization.page_url_hash == page_url_hash,
            Personalization.organization_id == organization_id,
        )

    async def get_by_key(
        self, visitor_id: str, page_url_hash: str, organization_id: str
    ) -> Optional[Personalization]:
        """Get the record for a (visitor, page, organization) key."""
        query = (
            select(Personalization)
            .where(self._key_filter(visitor_id, page_url_hash, organization_id))
            .execution_options(populate_existing=True)
        )
        result = await self.session.exec(query)
        return result.first()

    async def find_servable(
        self, visitor_id: str, page_url_hash: str, organization_id: str, now: datetime
    ) -> Optional[Personalization]:
        """Record that can be served from cache: generated/applied and not expired."""
        query = (
            select(Personalization)
            .where(
                self._key_filter(visitor_id, page_url_hash, organization_id),
                Personalization.status.in_(SERVABLE_STATUSES),
                Personalization.expires_at > now,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.exec(query)
        return result.first()

    async def record_application(self, personalization_id: uuid.UUID, now: datetime) -> None:
        """Atomically count a cache hit and mark the record applied."""
        stmt = (
            update(Personalization)
            .where(Personalization.id == personalization_id)
            .values(
                times_applied=Personalization.times_applied + 1,
                last_applied_at=now,
                status=STATUS_APPLIED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.exec(stmt)
        await self.session.commit()

    async def _upsert(self, insert_values: dict, update_values: dict) -> None:
        stmt = self._insert().values(**insert_values)
        stmt = stmt.on_conflict_do_update(index_elements=KEY_COLUMNS, set_=update_values)
        await self.session.exec(stmt)
        await self.session.commit()

    async def upsert_schema(
        self,
        visitor_id: str,
        page_url: str,
        page_url_hash: str,
        organization_id: str,
        page_schema: Dict[str, Any],
        expires_at: datetime,
        now: datetime,
    ) -> Personalization:
        """
        Store the page schema for a key.
        expires_at and status are only written when the row is created.
        """
        page_title = page_schema.get("pageTitle") or page_schema.get("page_title")
        await self._upsert(
            insert_values={
                "id": uuid.uuid4(),
                "visitor_id": visitor_id,
                "page_url_hash": page_url_hash,
                "organization_id": organization_id,
                "page_url": page_url,
                "page_title": page_title,
                "page_schema": page_schema,
                "cache_duration_seconds": 0,
                "expires_at": expires_at,
                "times_applied": 0,
                "status": STATUS_PENDING,
                "trigger_source": "behavior",
                "created_at": now,
                "updated_at": now,
            },
            update_values={
                "page_url": page_url,
                "page_title": page_title,
                "page_schema": page_schema,
                "updated_at": now,
            },
        )
        return await self.get_by_key(visitor_id, page_url_hash, organization_id)

    async def upsert_generated(
        self,
        visitor_id: str,
        page_url: str,
        page_url_hash: str,
        organization_id: str,
        page_schema: Dict[str, Any],
        intent: Dict[str, Any],
        variation: Dict[str, Any],
        cache_duration_seconds: int,
        expires_at: datetime,
        trigger_source: str,
        visitor_journey_id: Optional[str],
        now: datetime,
    ) -> Personalization:
        """Commit a generated variation; clears any previous error."""
        values = {
            "page_url": page_url,
            "page_title": page_schema.get("pageTitle") or page_schema.get("page_title"),
            "page_schema": page_schema,
            "intent": intent,
            "variation": variation,
            "visitor_segment": intent.get("visitor_segment"),
            "confidence": variation.get("confidence"),
            "cache_duration_seconds": cache_duration_seconds,
            "expires_at": expires_at,
            "status": STATUS_GENERATED,
            "error_message": None,
            "trigger_source": trigger_source,
            "visitor_journey_id": visitor_journey_id,
            "updated_at": now,
        }
        await self._upsert(
            insert_values={
                **values,
                "id": uuid.uuid4(),
                "visitor_id": visitor_id,
                "page_url_hash": page_url_hash,
                "organization_id": organization_id,
                "times_applied": 0,
                "created_at": now,
            },
            update_values=values,
        )
        return await self.get_by_key(visitor_id, page_url_hash, organization_id)

    async def upsert_failed(
        self,
        visitor_id: str,
        page_url: str,
        page_url_hash: str,
        organization_id: str,
        page_schema: Optional[Dict[str, Any]],
        error_message: str,
        now: datetime,
        preserve_servable: bool,
    ) -> Personalization:
        """
        Record a pipeline failure. Cached variation content is never touched.
        With preserve_servable, a still-servable row keeps its status and only
        gets the error message.
        """
        table = Personalization.__table__
        if preserve_servable:
            status_value = case(
                (
                    and_(table.c.status.in_(SERVABLE_STATUSES), table.c.expires_at > now),
                    table.c.status,
                ),
                else_=STATUS_FAILED,
            )
        else:
            status_value = STATUS_FAILED

        await self._upsert(
            insert_values={
                "id": uuid.uuid4(),
                "visitor_id": visitor_id,
                "page_url_hash": page_url_hash,
                "organization_id": organization_id,
                "page_url": page_url,
                "page_schema": page_schema,
                "cache_duration_seconds": 0,
                "expires_at": now,
                "times_applied": 0,
                "status": STATUS_FAILED,
                "error_message": error_message,
                "trigger_source": "behavior",
                "created_at": now,
                "updated_at": now,
            },
            update_values={
                "status": status_value,
                "error_message": error_message,
                "updated_at": now,
            },
        )
        return await self.get_by_key(visitor_id, page_url_hash, organization_id)

    async def delete_expired(self, now: datetime, organization_id: Optional[str] = None) -> int:
        """Garbage-collect rows whose expires_at has passed."""
        stmt = delete(Personalization).where(Personalization.expires_at < now)
        if organization_id:
            stmt = stmt.where(Personalization.organization_id == organization_id)
        result = await self.session.exec(stmt.execution_options(synchronize_session=False))
        await self.session.commit()
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Rollups
    # ------------------------------------------------------------------

    def _range_conditions(
        self,
        organization_id: str,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> list:
        conditions = [Personalization.organization_id == organization_id]
        if start_date:
            conditions.append(Personalization.created_at >= start_date)
        if end_date:
            conditions.append(Personalization.created_at <= end_date)
        return conditions

    async def get_overview(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict:
        """Status counts, total applications and average confidence."""
        query = sa_select(
            func.count(Personalization.id).label("total"),
            func.sum(case((Personalization.status == STATUS_APPLIED, 1), else_=0)).label("applied"),
            func.sum(case((Personalization.status == STATUS_GENERATED, 1), else_=0)).label("generated"),
            func.sum(case((Personalization.status == STATUS_FAILED, 1), else_=0)).label("failed"),
            func.sum(Personalization.times_applied).label("total_applications"),
            func.avg(Personalization.confidence).label("avg_confidence"),
        ).where(*self._range_conditions(organization_id, start_date, end_date))

        result = await self.session.exec(query)
        row = result.one()
        return {
            "total": row.total or 0,
            "applied": int(row.applied or 0),
            "generated": int(row.generated or 0),
            "failed": int(row.failed or 0),
            "total_applications": int(row.total_applications or 0),
            "avg_confidence": round(float(row.avg_confidence or 0), 4),
        }

    async def get_segment_breakdown(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[dict]:
        """Record count and average confidence per visitor segment."""
        count_col = func.count(Personalization.id).label("count")
        query = (
            sa_select(
                Personalization.visitor_segment,
                count_col,
                func.avg(Personalization.confidence).label("avg_confidence"),
            )
            .where(
                *self._range_conditions(organization_id, start_date, end_date),
                Personalization.visitor_segment.is_not(None),
            )
            .group_by(Personalization.visitor_segment)
            .order_by(count_col.desc())
        )
        result = await self.session.exec(query)
        return [
            {
                "visitor_segment": row.visitor_segment,
                "count": row.count,
                "avg_confidence": round(float(row.avg_confidence or 0), 4),
            }
            for row in result.all()
        ]

    async def get_top_applied(
        self,
        organization_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Personalization]:
        """Most-served records, by times_applied descending."""
        query = (
            select(Personalization)
            .where(
                *self._range_conditions(organization_id, start_date, end_date),
                Personalization.times_applied > 0,
            )
            .order_by(Personalization.times_applied.desc())
            .limit(limit)
        )
        result = await self.session.exec(query)
        return result.all()
