"""
Database layer for the access-control core.

This module provides:
- SQLAlchemy declarative base and shared column mixins
- Engine / session factory management
- Field encryption at the store edge
"""

from .models import (
    Base,
    AuditColumnsMixin,
    SoftDeleteMixin,
    utcnow,
    to_naive_utc,
)

from .connection import (
    build_engine,
    get_engine,
    make_session_factory,
    get_session_factory,
    get_db_session,
    create_schema,
    close_engine,
)

__all__ = [
    "Base",
    "AuditColumnsMixin",
    "SoftDeleteMixin",
    "utcnow",
    "to_naive_utc",
    "build_engine",
    "get_engine",
    "make_session_factory",
    "get_session_factory",
    "get_db_session",
    "create_schema",
    "close_engine",
]
