"""
Entity Store - durable records for users, roles, permissions, menus and
content.

Every query filters ``deleted_at`` explicitly; there is no ambient
soft-delete scope. Writers validate names and structure, enforce the
system-row protections, and keep content bodies encrypted at this edge.

The store never commits; the caller owns the transaction.
"""

import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select

from database.encrypted_fields import decrypt_field, encrypt_field
from database.models import to_naive_utc, utcnow

from .exceptions import (
    EntityNotFoundError,
    StructuralViolationError,
    SystemProtectedError,
)
from .hierarchy import validate_menu_placement, validate_role_parent
from .models import (
    Content,
    ContentStatus,
    ContentType,
    EntityKind,
    GRANT_MODELS,
    GRANT_ENDPOINTS,
    Menu,
    Permission,
    RejectionCode,
    Role,
    User,
    entity_model,
    grant_window,
)

logger = logging.getLogger(__name__)


PERMISSION_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")
ROLE_NAME_RE = re.compile(r"^[a-z][a-z0-9_\-]{0,99}$")
SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9_\-]{0,149}$")

ROLE_FIELDS = {
    "display_name", "description", "parent_id", "priority",
    "inherit_permissions", "is_active", "is_default", "is_system",
}
PERMISSION_FIELDS = {
    "name", "display_name", "description", "module", "category",
    "action", "priority", "is_active", "is_system",
}
CONTENT_FIELDS = {
    "slug", "title", "content_type", "body", "is_encrypted", "status",
    "published_at", "expires_at", "is_public", "is_active",
}


def split_permission_name(name: str) -> tuple:
    """``module.action`` -> (module, action)."""
    module, _, action = name.partition(".")
    return module, action


class EntityStore:
    """Point lookups, existence checks and validated writers for entities."""

    def __init__(self, session):
        self.session = session

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _first(self, model, *conditions, include_deleted: bool = False):
        stmt = select(model).where(*conditions)
        if not include_deleted:
            stmt = stmt.where(model.deleted_at.is_(None))
        return self.session.execute(stmt).scalar_one_or_none()

    def get(self, kind: EntityKind, entity_id: UUID, include_deleted: bool = False):
        if entity_id is None:
            return None
        model = entity_model(EntityKind(kind))
        return self._first(model, model.id == entity_id, include_deleted=include_deleted)

    def get_user(self, user_id: UUID, include_deleted: bool = False) -> Optional[User]:
        return self.get(EntityKind.USER, user_id, include_deleted)

    def get_user_by_email(self, email: str, include_deleted: bool = False) -> Optional[User]:
        return self._first(User, User.email == email.strip().lower(), include_deleted=include_deleted)

    def get_role(self, role_id: UUID, include_deleted: bool = False) -> Optional[Role]:
        return self.get(EntityKind.ROLE, role_id, include_deleted)

    def get_role_by_name(self, name: str, include_deleted: bool = False) -> Optional[Role]:
        return self._first(Role, Role.name == name, include_deleted=include_deleted)

    def get_permission(self, permission_id: UUID, include_deleted: bool = False) -> Optional[Permission]:
        return self.get(EntityKind.PERMISSION, permission_id, include_deleted)

    def get_permission_by_name(self, name: str, include_deleted: bool = False) -> Optional[Permission]:
        return self._first(Permission, Permission.name == name, include_deleted=include_deleted)

    def get_menu(self, menu_id: UUID, include_deleted: bool = False) -> Optional[Menu]:
        return self.get(EntityKind.MENU, menu_id, include_deleted)

    def get_menu_by_slug(self, slug: str, include_deleted: bool = False) -> Optional[Menu]:
        return self._first(Menu, Menu.slug == slug, include_deleted=include_deleted)

    def get_content(self, content_id: UUID, include_deleted: bool = False) -> Optional[Content]:
        return self.get(EntityKind.CONTENT, content_id, include_deleted)

    def get_content_by_slug(self, slug: str, include_deleted: bool = False) -> Optional[Content]:
        return self._first(Content, Content.slug == slug, include_deleted=include_deleted)

    def exists(self, kind: EntityKind, entity_id: UUID) -> bool:
        """Live row with this id exists."""
        return self.get(kind, entity_id) is not None

    def require(self, kind: EntityKind, entity_id: UUID, include_deleted: bool = False):
        row = self.get(kind, entity_id, include_deleted)
        if row is None:
            raise EntityNotFoundError(EntityKind(kind).value, entity_id)
        return row

    def menu_children(self, parent_ids: Sequence[UUID], include_deleted: bool = False) -> List[Menu]:
        if not parent_ids:
            return []
        stmt = select(Menu).where(Menu.parent_id.in_(list(parent_ids)))
        if not include_deleted:
            stmt = stmt.where(Menu.deleted_at.is_(None))
        return list(self.session.execute(stmt).scalars().all())

    def role_children(self, parent_ids: Sequence[UUID]) -> List[Role]:
        if not parent_ids:
            return []
        stmt = select(Role).where(Role.parent_id.in_(list(parent_ids)), Role.deleted_at.is_(None))
        return list(self.session.execute(stmt).scalars().all())

    def role_descendants(self, role_id: UUID) -> List[UUID]:
        """Ids of every live role below ``role_id`` (breadth first)."""
        seen = {role_id}
        result = []
        frontier = [role_id]
        while frontier:
            children = [r.id for r in self.role_children(frontier) if r.id not in seen]
            seen.update(children)
            result.extend(children)
            frontier = children
        return result

    def list_menus(self, active_only: bool = True) -> List[Menu]:
        stmt = select(Menu).where(Menu.deleted_at.is_(None))
        if active_only:
            stmt = stmt.where(Menu.is_active.is_(True), Menu.is_visible.is_(True))
        stmt = stmt.order_by(Menu.level, Menu.sort_order, Menu.name)
        return list(self.session.execute(stmt).scalars().all())

    def list_permissions(self, ids: Optional[Iterable[UUID]] = None, active_only: bool = True) -> List[Permission]:
        stmt = select(Permission).where(Permission.deleted_at.is_(None))
        if ids is not None:
            stmt = stmt.where(Permission.id.in_(list(ids)))
        if active_only:
            stmt = stmt.where(Permission.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(Permission.name)).scalars().all())

    def list_roles(self, ids: Iterable[UUID]) -> List[Role]:
        stmt = select(Role).where(Role.id.in_(list(ids)), Role.deleted_at.is_(None))
        return list(self.session.execute(stmt).scalars().all())

    # =========================================================================
    # VALIDATION HELPERS
    # =========================================================================

    def _check_unique(self, model, column, value: str, exclude_id: Optional[UUID] = None) -> None:
        # Unique constraints span soft-deleted rows too
        stmt = select(func.count()).select_from(model).where(column == value)
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        if self.session.execute(stmt).scalar_one():
            raise StructuralViolationError(
                RejectionCode.INVALID_NAME,
                f"{model.__tablename__} name already in use: {value}",
                value=value,
            )

    @staticmethod
    def _check_pattern(pattern, value: Optional[str], what: str) -> str:
        if not value or not pattern.match(value):
            raise StructuralViolationError(
                RejectionCode.INVALID_NAME,
                f"Invalid {what}: {value!r}",
                value=value,
            )
        return value

    @staticmethod
    def _check_unknown_fields(changes: dict, allowed: set) -> None:
        unknown = set(changes) - allowed
        if unknown:
            raise TypeError(f"Unknown fields: {', '.join(sorted(unknown))}")

    # =========================================================================
    # USERS
    # =========================================================================

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        is_active: bool = True,
        actor_id: Optional[UUID] = None,
    ) -> User:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise StructuralViolationError(RejectionCode.INVALID_NAME, f"Invalid email: {email!r}")
        self._check_unique(User, User.email, email)

        user = User(
            id=uuid4(),
            email=email,
            name=name,
            is_active=is_active,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def set_user_active(self, user_id: UUID, is_active: bool, actor_id: Optional[UUID] = None) -> User:
        user = self.require(EntityKind.USER, user_id)
        user.is_active = is_active
        user.updated_by = actor_id
        self.session.flush()
        return user

    # =========================================================================
    # ROLES
    # =========================================================================

    def create_role(
        self,
        name: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        parent_id: Optional[UUID] = None,
        priority: int = 0,
        inherit_permissions: bool = False,
        is_system: bool = False,
        is_default: bool = False,
        is_active: bool = True,
        actor_id: Optional[UUID] = None,
    ) -> Role:
        self._check_pattern(ROLE_NAME_RE, name, "role name")
        self._check_unique(Role, Role.name, name)
        placement = validate_role_parent(self, None, parent_id).raise_for_rejection()

        role = Role(
            id=uuid4(),
            name=name,
            display_name=display_name or name.replace("_", " ").title(),
            description=description,
            parent_id=parent_id,
            level=placement.level,
            priority=priority,
            inherit_permissions=inherit_permissions,
            is_system=is_system,
            is_default=is_default,
            is_active=is_active,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.session.add(role)
        self.session.flush()
        return role

    def update_role(self, role_id: UUID, actor_id: Optional[UUID] = None, **changes) -> Role:
        """
        Update role attributes.

        Re-parenting re-validates the hierarchy and re-levels descendants.
        The system flag can never change.
        """
        self._check_unknown_fields(changes, ROLE_FIELDS)
        role = self.require(EntityKind.ROLE, role_id)

        if "is_system" in changes and bool(changes["is_system"]) != bool(role.is_system):
            raise SystemProtectedError(f"System flag of role '{role.name}' cannot change")
        changes.pop("is_system", None)

        if "parent_id" in changes and changes["parent_id"] != role.parent_id:
            placement = validate_role_parent(self, role.id, changes["parent_id"]).raise_for_rejection()
            role.parent_id = changes.pop("parent_id")
            role.level = placement.level
            self._relevel_roles(role)
        changes.pop("parent_id", None)

        for key, value in changes.items():
            setattr(role, key, value)
        role.updated_by = actor_id
        self.session.flush()
        return role

    def _relevel_roles(self, root: Role) -> None:
        levels = {root.id: root.level}
        frontier = [root.id]
        while frontier:
            children = [r for r in self.role_children(frontier) if r.id not in levels]
            for child in children:
                child.level = levels[child.parent_id] + 1
                levels[child.id] = child.level
            frontier = [c.id for c in children]

    # =========================================================================
    # PERMISSIONS
    # =========================================================================

    def create_permission(
        self,
        name: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        module: Optional[str] = None,
        category: Optional[str] = None,
        action: Optional[str] = None,
        priority: int = 0,
        is_system: bool = False,
        is_active: bool = True,
        actor_id: Optional[UUID] = None,
    ) -> Permission:
        self._check_pattern(PERMISSION_NAME_RE, name, "permission name")
        self._check_unique(Permission, Permission.name, name)
        derived_module, derived_action = split_permission_name(name)

        permission = Permission(
            id=uuid4(),
            name=name,
            display_name=display_name or name,
            description=description,
            module=module or derived_module,
            category=category or module or derived_module,
            action=action or derived_action,
            priority=priority,
            is_system=is_system,
            is_active=is_active,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.session.add(permission)
        self.session.flush()
        return permission

    def update_permission(self, permission_id: UUID, actor_id: Optional[UUID] = None, **changes) -> Permission:
        self._check_unknown_fields(changes, PERMISSION_FIELDS)
        permission = self.require(EntityKind.PERMISSION, permission_id)

        if "is_system" in changes and bool(changes["is_system"]) != bool(permission.is_system):
            raise SystemProtectedError(f"System flag of permission '{permission.name}' cannot change")
        changes.pop("is_system", None)

        new_name = changes.pop("name", None)
        if new_name is not None and new_name != permission.name:
            if permission.is_system:
                raise SystemProtectedError(f"System permission '{permission.name}' cannot be renamed")
            self._check_pattern(PERMISSION_NAME_RE, new_name, "permission name")
            self._check_unique(Permission, Permission.name, new_name, exclude_id=permission.id)
            permission.name = new_name
            module, action = split_permission_name(new_name)
            changes.setdefault("module", module)
            changes.setdefault("action", action)

        for key, value in changes.items():
            setattr(permission, key, value)
        permission.updated_by = actor_id
        self.session.flush()
        return permission

    # =========================================================================
    # MENUS
    # =========================================================================

    def create_menu(
        self,
        slug: str,
        name: str,
        parent_id: Optional[UUID] = None,
        display_name: Optional[str] = None,
        sort_order: int = 0,
        url: Optional[str] = None,
        icon: Optional[str] = None,
        is_active: bool = True,
        is_visible: bool = True,
        is_system: bool = False,
        actor_id: Optional[UUID] = None,
    ) -> Menu:
        self._check_pattern(SLUG_RE, slug, "menu slug")
        self._check_unique(Menu, Menu.slug, slug)
        placement = validate_menu_placement(self, None, parent_id).raise_for_rejection()

        menu = Menu(
            id=uuid4(),
            slug=slug,
            name=name,
            display_name=display_name or name,
            parent_id=parent_id,
            level=placement.level,
            sort_order=sort_order,
            url=url,
            icon=icon,
            is_active=is_active,
            is_visible=is_visible,
            is_system=is_system,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.session.add(menu)
        self.session.flush()
        return menu

    def move_menu(
        self,
        menu_id: UUID,
        new_parent_id: Optional[UUID],
        sort_order: Optional[int] = None,
        actor_id: Optional[UUID] = None,
    ) -> List[UUID]:
        """
        Re-parent a menu and re-level its subtree.

        Returns the ids of every menu whose placement changed.
        """
        menu = self.require(EntityKind.MENU, menu_id)
        placement = validate_menu_placement(self, menu.id, new_parent_id).raise_for_rejection()

        menu.parent_id = new_parent_id
        menu.level = placement.level
        if sort_order is not None:
            menu.sort_order = sort_order
        menu.updated_by = actor_id

        levels = {menu.id: menu.level}
        frontier = [menu.id]
        while frontier:
            children = [m for m in self.menu_children(frontier) if m.id not in levels]
            for child in children:
                child.level = levels[child.parent_id] + 1
                child.updated_by = actor_id
                levels[child.id] = child.level
            frontier = [c.id for c in children]

        self.session.flush()
        return list(levels)

    # =========================================================================
    # CONTENT
    # =========================================================================

    @staticmethod
    def _seal_body(content_id: UUID, body: Optional[str], encrypted: bool) -> Optional[str]:
        if body is None or not encrypted:
            return body
        return encrypt_field(body, field_type="content", associated_data=str(content_id).encode())

    def read_content_body(self, content: Content) -> Optional[str]:
        """Plaintext body; decrypts at this edge when the row is encrypted."""
        if content.body is None or not content.is_encrypted:
            return content.body
        return decrypt_field(
            content.body,
            field_type="content",
            associated_data=str(content.id).encode(),
        )

    def create_content(
        self,
        slug: str,
        title: str,
        body: Optional[str] = None,
        content_type: ContentType = ContentType.HTML,
        status: ContentStatus = ContentStatus.DRAFT,
        published_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        is_public: bool = False,
        is_encrypted: bool = False,
        is_active: bool = True,
        actor_id: Optional[UUID] = None,
    ) -> Content:
        self._check_pattern(SLUG_RE, slug, "content slug")
        self._check_unique(Content, Content.slug, slug)
        published_at = to_naive_utc(published_at)
        expires_at = to_naive_utc(expires_at)
        if not grant_window(published_at, expires_at):
            raise StructuralViolationError(
                RejectionCode.INVALID_WINDOW,
                "Content must be published before it expires",
            )

        content_id = uuid4()
        content = Content(
            id=content_id,
            slug=slug,
            title=title,
            content_type=ContentType(content_type),
            body=self._seal_body(content_id, body, is_encrypted),
            is_encrypted=is_encrypted,
            status=ContentStatus(status),
            published_at=published_at,
            expires_at=expires_at,
            is_public=is_public,
            is_active=is_active,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.session.add(content)
        self.session.flush()
        return content

    def update_content(self, content_id: UUID, actor_id: Optional[UUID] = None, **changes) -> Content:
        self._check_unknown_fields(changes, CONTENT_FIELDS)
        content = self.require(EntityKind.CONTENT, content_id)

        if "slug" in changes and changes["slug"] != content.slug:
            self._check_pattern(SLUG_RE, changes["slug"], "content slug")
            self._check_unique(Content, Content.slug, changes["slug"], exclude_id=content.id)

        for key in ("published_at", "expires_at"):
            if key in changes:
                changes[key] = to_naive_utc(changes[key])
        published_at = changes.get("published_at", content.published_at)
        expires_at = changes.get("expires_at", content.expires_at)
        if not grant_window(published_at, expires_at):
            raise StructuralViolationError(
                RejectionCode.INVALID_WINDOW,
                "Content must be published before it expires",
            )

        if "body" in changes or "is_encrypted" in changes:
            plaintext = changes.pop("body") if "body" in changes else self.read_content_body(content)
            encrypted = bool(changes.pop("is_encrypted", content.is_encrypted))
            content.body = self._seal_body(content.id, plaintext, encrypted)
            content.is_encrypted = encrypted

        if "status" in changes:
            changes["status"] = ContentStatus(changes["status"])
        if "content_type" in changes:
            changes["content_type"] = ContentType(changes["content_type"])

        for key, value in changes.items():
            setattr(content, key, value)
        content.updated_by = actor_id
        self.session.flush()
        return content

    # =========================================================================
    # DELETION
    # =========================================================================

    def live_references(self, kind: EntityKind, entity_id: UUID) -> int:
        """Live grants, child menus and child roles pointing at an entity."""
        kind = EntityKind(kind)
        total = 0
        for grant_kind, (subject_kind, object_kind) in GRANT_ENDPOINTS.items():
            model = GRANT_MODELS[grant_kind]
            columns = []
            if subject_kind == kind:
                columns.append(model.subject_id)
            if object_kind == kind:
                columns.append(model.target_id)
            for column in columns:
                stmt = (
                    select(func.count()).select_from(model)
                    .where(column == entity_id, model.deleted_at.is_(None))
                )
                total += self.session.execute(stmt).scalar_one()

        if kind == EntityKind.MENU:
            total += len(self.menu_children([entity_id]))
        elif kind == EntityKind.ROLE:
            total += len(self.role_children([entity_id]))
        return total

    def delete_entity(
        self,
        kind: EntityKind,
        entity_id: UUID,
        actor_id: Optional[UUID] = None,
        when: Optional[datetime] = None,
    ):
        """
        Soft-delete an entity.

        System rows are never deleted; rows still referenced by live grants
        (or live child menus / roles) must be released first.
        """
        kind = EntityKind(kind)
        row = self.require(kind, entity_id)

        if getattr(row, "is_system", False):
            raise SystemProtectedError(f"System {kind.value} cannot be deleted", entity_id=entity_id)

        references = self.live_references(kind, entity_id)
        if references:
            raise StructuralViolationError(
                RejectionCode.ENTITY_IN_USE,
                f"{kind.value} is still referenced by {references} live record(s)",
                entity_id=entity_id,
            )

        row.mark_deleted(to_naive_utc(when) or utcnow())
        row.updated_by = actor_id
        self.session.flush()
        logger.info(
            "Entity soft-deleted",
            extra={"extra_data": {"kind": kind.value, "entity_id": str(entity_id)}},
        )
        return row
