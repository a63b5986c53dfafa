"""
Access Control Database Models - SQLAlchemy ORM models for the portal's
authorization core.

Tables:
- users: Identities the core authorizes (authentication lives elsewhere)
- roles: Role definitions, optionally arranged in a parent hierarchy
- permissions: Permission catalog (``module.action`` names)
- menus: Navigation tree, capped at three levels
- contents: Portal content items (dashboards, embedded reports, pages)
- user_roles: User -> Role grants
- role_permissions: Role -> Permission grants
- role_menus: Role -> Menu grants
- role_contents: Role -> Content grants

Every grant table shares the same shape (``GrantColumnsMixin``): activation
flag, validity window, priority, polarity and soft-delete marker. A partial
unique index keeps at most one live grant per (subject, target) pair.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime,
    Text, ForeignKey, Index, CheckConstraint, Enum, Uuid, text
)
from sqlalchemy.orm import synonym

from database.models import Base, AuditColumnsMixin, SoftDeleteMixin


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Polarity(str, PyEnum):
    """Whether a grant allows or explicitly blocks its target."""
    GRANT = "grant"
    DENY = "deny"


class Effect(str, PyEnum):
    """Outcome of an access decision."""
    ALLOW = "allow"
    DENY = "deny"


class RelationKind(str, PyEnum):
    """Which role -> target grant table a decision consults."""
    PERMISSION = "permission"
    MENU = "menu"
    CONTENT = "content"


class GrantKind(str, PyEnum):
    """The four grant tables, including user -> role assignments."""
    USER_ROLE = "user_role"
    PERMISSION = "permission"
    MENU = "menu"
    CONTENT = "content"

    @classmethod
    def for_relation(cls, relation: RelationKind) -> "GrantKind":
        return cls(relation.value)


class ContentAction(str, PyEnum):
    """What a user wants to do with a content item."""
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    PUBLISH = "publish"

    @property
    def flag(self) -> str:
        """Column on ``role_contents`` that grants this action."""
        return f"can_{self.value}"


class EntityKind(str, PyEnum):
    """Entity tables addressable through the store."""
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    MENU = "menu"
    CONTENT = "content"


class ContentStatus(str, PyEnum):
    """Publication lifecycle of a content item."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class ContentType(str, PyEnum):
    """How a content item is rendered by the portal."""
    HTML = "html"
    EMBEDDED = "embedded"
    IFRAME = "iframe"
    REDIRECT = "redirect"


class RejectionCode(str, PyEnum):
    """Structured reasons a mutation is rejected before any write."""
    MAX_DEPTH_EXCEEDED = "MAX_DEPTH_EXCEEDED"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    PARENT_NOT_FOUND = "PARENT_NOT_FOUND"
    INVALID_WINDOW = "INVALID_WINDOW"
    DUPLICATE_GRANT = "DUPLICATE_GRANT"
    ENTITY_IN_USE = "ENTITY_IN_USE"
    INVALID_NAME = "INVALID_NAME"
    LEVEL_MISMATCH = "LEVEL_MISMATCH"


class MutationStatus(str, PyEnum):
    """What a grant mutation actually did."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REVOKED = "revoked"


# Menu hierarchy is capped at three levels (0, 1, 2)
MAX_MENU_LEVEL = 2


# =============================================================================
# ENTITY MODELS
# =============================================================================

class User(Base, AuditColumnsMixin, SoftDeleteMixin):
    """
    An identity the core authorizes.

    Authentication (passwords, sessions) is handled by collaborators; this row
    only carries what authorization needs.
    """
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<User(email={self.email})>"


class Role(Base, AuditColumnsMixin, SoftDeleteMixin):
    """
    Role definition.

    ``parent_id`` places the role in a hierarchy. The hierarchy only feeds
    permission resolution when ``inherit_permissions`` is set; otherwise it is
    informational (level / ordering).
    """
    __tablename__ = "roles"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False, unique=True, index=True)
    display_name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)

    # Hierarchy
    parent_id = Column(Uuid, ForeignKey("roles.id"), nullable=True, index=True)
    level = Column(Integer, nullable=False, default=0)
    inherit_permissions = Column(Boolean, nullable=False, default=False)

    # Status
    is_system = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("level >= 0", name="ck_roles_level"),
    )

    def __repr__(self):
        return f"<Role(name={self.name}, priority={self.priority})>"


class Permission(Base, AuditColumnsMixin, SoftDeleteMixin):
    """
    Permission catalog entry.

    Names follow the ``module.action`` convention (e.g. ``content.publish``).
    """
    __tablename__ = "permissions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(150), nullable=False, unique=True, index=True)
    display_name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)

    # Classification
    module = Column(String(100), nullable=False, index=True)
    category = Column(String(100), nullable=True, index=True)
    action = Column(String(100), nullable=False)

    # Status
    is_system = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Permission(name={self.name})>"


class Menu(Base, AuditColumnsMixin, SoftDeleteMixin):
    """
    Navigation node.

    Invariant: ``level == parent.level + 1`` for non-root nodes, root nodes
    have level 0, and ``level <= MAX_MENU_LEVEL``.
    """
    __tablename__ = "menus"

    id = Column(Uuid, primary_key=True, default=uuid4)
    slug = Column(String(150), nullable=False, unique=True, index=True)
    name = Column(String(150), nullable=False)
    display_name = Column(String(200), nullable=True)

    # Tree placement
    parent_id = Column(Uuid, ForeignKey("menus.id"), nullable=True, index=True)
    level = Column(Integer, nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)

    # Rendering
    url = Column(String(500), nullable=True)
    icon = Column(String(100), nullable=True)

    # Status
    is_active = Column(Boolean, nullable=False, default=True)
    is_visible = Column(Boolean, nullable=False, default=True)
    is_system = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(f"level >= 0 AND level <= {MAX_MENU_LEVEL}", name="ck_menus_level"),
    )

    def __repr__(self):
        return f"<Menu(slug={self.slug}, level={self.level})>"


class Content(Base, AuditColumnsMixin, SoftDeleteMixin):
    """
    Portal content item.

    ``body`` holds the stored form. When ``is_encrypted`` is set it is the
    AES-GCM envelope produced at the store edge; use
    ``EntityStore.read_content_body`` to obtain plaintext.
    """
    __tablename__ = "contents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    slug = Column(String(150), nullable=False, unique=True, index=True)
    title = Column(String(300), nullable=False)
    content_type = Column(
        Enum(ContentType, name="content_type", native_enum=False),
        nullable=False,
        default=ContentType.HTML,
    )
    body = Column(Text, nullable=True)
    is_encrypted = Column(Boolean, nullable=False, default=False)

    # Publication
    status = Column(
        Enum(ContentStatus, name="content_status", native_enum=False),
        nullable=False,
        default=ContentStatus.DRAFT,
        index=True,
    )
    published_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Visibility
    is_public = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def is_published_at(self, now: datetime) -> bool:
        """Published status, scheduled publication reached and not yet expired."""
        return (
            self.status == ContentStatus.PUBLISHED
            and (self.published_at is None or self.published_at <= now)
            and (self.expires_at is None or now < self.expires_at)
        )

    def __repr__(self):
        return f"<Content(slug={self.slug}, status={self.status})>"


# =============================================================================
# GRANT MODELS
# =============================================================================

class GrantColumnsMixin(AuditColumnsMixin, SoftDeleteMixin):
    """
    Columns shared by every grant table.

    Concrete tables expose their subject/target columns under the generic
    ``subject_id`` / ``target_id`` synonyms so the registry can treat all four
    tables alike.
    """

    id = Column(Uuid, primary_key=True, default=uuid4)
    is_active = Column(Boolean, nullable=False, default=True)
    starts_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    polarity = Column(
        Enum(Polarity, name="grant_polarity", native_enum=False),
        nullable=False,
        default=Polarity.GRANT,
    )
    is_inherited = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)


def _live_pair_index(table: str, subject: str, target: str) -> Index:
    """Unique (subject, target) among rows that are not soft-deleted."""
    return Index(
        f"uq_{table}_live_pair",
        subject,
        target,
        unique=True,
        sqlite_where=text("deleted_at IS NULL"),
        postgresql_where=text("deleted_at IS NULL"),
    )


def _window_check(table: str) -> CheckConstraint:
    return CheckConstraint(
        "starts_at IS NULL OR expires_at IS NULL OR starts_at < expires_at",
        name=f"ck_{table}_window",
    )


class UserRole(Base, GrantColumnsMixin):
    """User -> Role grant. ``is_primary`` is advisory (one per user)."""
    __tablename__ = "user_roles"

    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    role_id = Column(Uuid, ForeignKey("roles.id"), nullable=False, index=True)
    is_primary = Column(Boolean, nullable=False, default=False)

    subject_id = synonym("user_id")
    target_id = synonym("role_id")

    __table_args__ = (
        _live_pair_index("user_roles", "user_id", "role_id"),
        _window_check("user_roles"),
    )


class RolePermission(Base, GrantColumnsMixin):
    """Role -> Permission grant."""
    __tablename__ = "role_permissions"

    role_id = Column(Uuid, ForeignKey("roles.id"), nullable=False, index=True)
    permission_id = Column(Uuid, ForeignKey("permissions.id"), nullable=False, index=True)

    subject_id = synonym("role_id")
    target_id = synonym("permission_id")

    __table_args__ = (
        _live_pair_index("role_permissions", "role_id", "permission_id"),
        _window_check("role_permissions"),
    )


class RoleMenu(Base, GrantColumnsMixin):
    """
    Role -> Menu grant.

    The ``custom_*`` columns let a role see a menu under its own label, icon,
    URL or position. They never affect whether the menu is visible.
    """
    __tablename__ = "role_menus"

    role_id = Column(Uuid, ForeignKey("roles.id"), nullable=False, index=True)
    menu_id = Column(Uuid, ForeignKey("menus.id"), nullable=False, index=True)

    custom_label = Column(String(150), nullable=True)
    custom_icon = Column(String(100), nullable=True)
    custom_url = Column(String(500), nullable=True)
    custom_sort_order = Column(Integer, nullable=True)

    subject_id = synonym("role_id")
    target_id = synonym("menu_id")

    __table_args__ = (
        _live_pair_index("role_menus", "role_id", "menu_id"),
        _window_check("role_menus"),
    )


class RoleContent(Base, GrantColumnsMixin):
    """Role -> Content grant, scoped to the actions whose flag is set."""
    __tablename__ = "role_contents"

    role_id = Column(Uuid, ForeignKey("roles.id"), nullable=False, index=True)
    content_id = Column(Uuid, ForeignKey("contents.id"), nullable=False, index=True)

    can_view = Column(Boolean, nullable=False, default=True)
    can_edit = Column(Boolean, nullable=False, default=False)
    can_delete = Column(Boolean, nullable=False, default=False)
    can_publish = Column(Boolean, nullable=False, default=False)

    def granted_actions(self) -> frozenset:
        actions = set()
        for action in ContentAction:
            value = getattr(self, action.flag)
            # Unflushed rows have not received their column defaults yet
            if value is None:
                value = action == ContentAction.VIEW
            if value:
                actions.add(action)
        return frozenset(actions)

    subject_id = synonym("role_id")
    target_id = synonym("content_id")

    __table_args__ = (
        _live_pair_index("role_contents", "role_id", "content_id"),
        _window_check("role_contents"),
    )


# =============================================================================
# LOOKUP TABLES
# =============================================================================

GRANT_MODELS = {
    GrantKind.USER_ROLE: UserRole,
    GrantKind.PERMISSION: RolePermission,
    GrantKind.MENU: RoleMenu,
    GrantKind.CONTENT: RoleContent,
}

ENTITY_MODELS = {
    EntityKind.USER: User,
    EntityKind.ROLE: Role,
    EntityKind.PERMISSION: Permission,
    EntityKind.MENU: Menu,
    EntityKind.CONTENT: Content,
}

# Subject / target entity kinds per grant table
GRANT_ENDPOINTS = {
    GrantKind.USER_ROLE: (EntityKind.USER, EntityKind.ROLE),
    GrantKind.PERMISSION: (EntityKind.ROLE, EntityKind.PERMISSION),
    GrantKind.MENU: (EntityKind.ROLE, EntityKind.MENU),
    GrantKind.CONTENT: (EntityKind.ROLE, EntityKind.CONTENT),
}


def target_kind(relation: RelationKind) -> EntityKind:
    """Entity kind addressed by a relation."""
    return EntityKind(relation.value)


def grant_model(kind: GrantKind):
    return GRANT_MODELS[kind]


def entity_model(kind: EntityKind):
    return ENTITY_MODELS[kind]


def grant_window(starts_at: Optional[datetime], expires_at: Optional[datetime]) -> bool:
    """True when the window bounds are consistent (open ends allowed)."""
    return starts_at is None or expires_at is None or starts_at < expires_at
