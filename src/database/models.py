"""
SQLAlchemy declarative base and shared column mixins.

Architecture:
- Primary Keys: UUID for all tables (globally unique)
- Instants: naive UTC ``DateTime`` columns; callers normalise at the edge
- Soft delete: explicit ``deleted_at`` column, inspected by every query method
  (there is no ambient query scope)
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Uuid
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def utcnow() -> datetime:
    """Current instant as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an instant to naive UTC; naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class AuditColumnsMixin:
    """created/updated by + timestamp columns shared by every table."""

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    created_by = Column(Uuid, nullable=True)
    updated_by = Column(Uuid, nullable=True)


class SoftDeleteMixin:
    """Explicit soft-delete marker."""

    deleted_at = Column(DateTime, nullable=True, index=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def mark_deleted(self, when: Optional[datetime] = None) -> None:
        self.deleted_at = when or utcnow()
