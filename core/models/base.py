"""Declarative base and shared columns for the gateway's persistence layer.

The in-memory registries are authoritative at runtime; these tables mirror
them so that a restart can hydrate the same state. Rows are keyed twice:
``id`` is the row's own UUID, and mirrored tables add a ``ref`` column
holding the runtime object's id, unique per tenant (see tenant_ref_unique).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, UniqueConstraint, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def tenant_ref_unique(table: str) -> tuple:
    """``__table_args__`` making ``ref`` unique within a tenant."""
    return (UniqueConstraint("tenant_id", "ref", name=f"uq_{table}_tenant_ref"),)


class TenantMixin:
    """Row UUID, owning tenant and audit timestamps.

    ``tenant_id`` defaults to ``"default"``, the tenant used when a request
    names none. Timestamps are set by the database.
    """

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False, default="default")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
