"""Async repository pattern for database access.

A thin generic base over one SQLAlchemy model: tenant-scoped reads, inserts
and newest-first history queries. The gateway subclasses it per table and
adds lookups by runtime id (see gateway.repository).
"""

from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.models.base import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Generic async repository with tenant isolation.

    Subclass and set `model` to your SQLAlchemy model::

        class HealthCheckRepository(BaseRepository[HealthCheckRecord]):
            model = HealthCheckRecord
    """

    model: type[ModelT]

    def __init__(self, session: AsyncSession):
        self.session = session

    async def all(self, tenant_id: str | None = None) -> list[ModelT]:
        """Every row, optionally for one tenant. Used to hydrate runtime state."""
        stmt = select(self.model)
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, tenant_id: str, values: dict[str, Any]) -> ModelT:
        """Insert a row. Server-side defaults stay unloaded until the next read."""
        row = self.model(tenant_id=tenant_id, **values)
        self.session.add(row)
        await self.session.flush()
        return row

    async def recent(self, tenant_id: str, order_by: Any, limit: int = 50, **match: Any) -> list[ModelT]:
        """Newest rows first, filtered on equality of the given columns."""
        stmt = select(self.model).where(self.model.tenant_id == tenant_id)
        for column, value in match.items():
            stmt = stmt.where(getattr(self.model, column) == value)
        stmt = stmt.order_by(order_by.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
