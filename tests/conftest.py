"""Pytest configuration and fixtures for the access-control test suite."""

import os
import sys
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import pytest

# Set test environment BEFORE any other imports
os.environ.setdefault("ACCESS_ENVIRONMENT", "test")
os.environ.setdefault("ACCESS_ENCRYPTION_KEY", "5f" * 32)

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from config.database import DatabaseSettings
from config.settings import AccessControlSettings
from database.connection import build_engine, create_schema, make_session_factory
from core.access_control import (
    AccessControlService,
    ContentStatus,
    DecisionCache,
    EntityStore,
    FixedClock,
    GrantRegistry,
    InMemoryAuditEmitter,
)


# Fixed evaluation instant used throughout the suite
NOW = datetime(2026, 3, 2, 12, 0, 0)


# =============================================================================
# INFRASTRUCTURE FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return AccessControlSettings(
        _env_file=None,
        environment="test",
        encryption_key="5f" * 32,
        cache_ttl_seconds=300,
        cache_max_entries=1000,
        conflict_retries=2,
    )


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    engine = build_engine(DatabaseSettings(_env_file=None, url_override="sqlite://"))
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    """Session for store / registry level tests; rolled back afterwards."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store(session):
    return EntityStore(session)


@pytest.fixture
def registry(session, store):
    return GrantRegistry(session, store)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def audit():
    return InMemoryAuditEmitter()


@pytest.fixture
def cache(settings):
    return DecisionCache.from_settings(settings)


@pytest.fixture
def service(session_factory, cache, clock, audit, settings):
    return AccessControlService(
        session_factory,
        cache=cache,
        clock=clock,
        audit=audit,
        settings=settings,
    )


# =============================================================================
# DATA BUILDERS
# =============================================================================

class PortalBuilder:
    """Terse creation of portal entities through the service."""

    def __init__(self, service):
        self.service = service

    def user(self, email=None, **kwargs):
        return self.service.create_user(email or f"{uuid4().hex[:10]}@example.com", **kwargs)

    def role(self, name=None, priority=0, **kwargs):
        return self.service.create_role(name or f"role_{uuid4().hex[:8]}", priority=priority, **kwargs)

    def permission(self, name=None, **kwargs):
        return self.service.create_permission(name or f"module_{uuid4().hex[:6]}.view", **kwargs)

    def menu(self, slug=None, parent=None, **kwargs):
        slug = slug or f"menu-{uuid4().hex[:8]}"
        return self.service.create_menu(
            slug,
            kwargs.pop("name", slug.replace("-", " ").title()),
            parent_id=parent.id if parent is not None else None,
            **kwargs,
        )

    def content(self, slug=None, **kwargs):
        slug = slug or f"content-{uuid4().hex[:8]}"
        kwargs.setdefault("status", ContentStatus.PUBLISHED)
        return self.service.create_content(slug, kwargs.pop("title", slug.title()), **kwargs)


@pytest.fixture
def portal(service):
    return PortalBuilder(service)


@pytest.fixture
def editor_setup(service, portal):
    """Role ``editor`` granted ``content.publish``; user assigned to it."""
    editor = portal.role("editor", priority=10)
    publish = portal.permission("content.publish")
    user = portal.user("u1@example.com")
    service.grant_permission(editor.id, publish.id)
    service.assign_role(user.id, editor.id)
    return user, editor, publish
