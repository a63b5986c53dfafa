"""
Default permission catalog and roles.

Seeding is idempotent: existing permissions and roles (soft-deleted ones
included) and live grants are left as they are; only missing rows are created.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

from .models import GrantKind, MutationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionSeed:
    name: str
    display_name: str
    description: str
    category: str
    action: str

    @property
    def module(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def is_system(self) -> bool:
        return self.module in SYSTEM_MODULES


@dataclass(frozen=True)
class RoleSeed:
    name: str
    display_name: str
    description: str
    is_system: bool
    priority: int
    # Selects which catalog entries the role is granted
    selects: Callable[[PermissionSeed], bool] = field(compare=False)
    is_default: bool = False


# Permissions in these modules are system rows (cannot be deleted or renamed)
SYSTEM_MODULES = {"system", "terms"}


DEFAULT_PERMISSIONS: Tuple[PermissionSeed, ...] = (
    # User management
    PermissionSeed("users.view", "View Users", "Can view user listings and profiles", "user_management", "read"),
    PermissionSeed("users.create", "Create Users", "Can create new user accounts", "user_management", "create"),
    PermissionSeed("users.edit", "Edit Users", "Can edit existing user accounts", "user_management", "update"),
    PermissionSeed("users.delete", "Delete Users", "Can delete user accounts", "user_management", "delete"),
    PermissionSeed("users.manage_roles", "Manage User Roles", "Can assign and remove roles from users", "user_management", "update"),

    # Role management
    PermissionSeed("roles.view", "View Roles", "Can view role listings and details", "role_management", "read"),
    PermissionSeed("roles.create", "Create Roles", "Can create new roles", "role_management", "create"),
    PermissionSeed("roles.edit", "Edit Roles", "Can edit existing roles", "role_management", "update"),
    PermissionSeed("roles.delete", "Delete Roles", "Can delete roles", "role_management", "delete"),
    PermissionSeed("permissions.manage", "Manage Permissions", "Can assign and remove permissions", "role_management", "update"),

    # Content management
    PermissionSeed("content.view", "View Content", "Can view content listings", "content_management", "read"),
    PermissionSeed("content.create", "Create Content", "Can create new content", "content_management", "create"),
    PermissionSeed("content.edit", "Edit Content", "Can edit existing content", "content_management", "update"),
    PermissionSeed("content.delete", "Delete Content", "Can delete content", "content_management", "delete"),
    PermissionSeed("content.publish", "Publish Content", "Can publish and unpublish content", "content_management", "update"),

    # Analytics
    PermissionSeed("analytics.view", "View Analytics", "Can view analytics reports", "analytics", "read"),
    PermissionSeed("analytics.export", "Export Analytics", "Can export analytics data", "analytics", "export"),
    PermissionSeed("analytics.advanced", "Advanced Analytics", "Can access advanced analytics features", "analytics", "read"),

    # System administration
    PermissionSeed("system.view", "View System Settings", "Can view system configuration", "system_administration", "read"),
    PermissionSeed("system.edit", "Edit System Settings", "Can edit system configuration", "system_administration", "update"),
    PermissionSeed("system.backup", "System Backup", "Can perform system backups", "system_administration", "export"),
    PermissionSeed("system.maintenance", "System Maintenance", "Can perform system maintenance", "system_administration", "update"),

    # Terms & conditions
    PermissionSeed("terms.manage", "Manage Terms", "Can update Terms & Conditions", "terms_management", "update"),
    PermissionSeed("terms.view_stats", "View Terms Stats", "Can view Terms & Conditions acceptance statistics", "terms_management", "read"),
)


DEFAULT_ROLES: Tuple[RoleSeed, ...] = (
    RoleSeed(
        "super_admin", "Super Administrator", "Full system access with all permissions",
        is_system=True, priority=100,
        selects=lambda p: True,
    ),
    RoleSeed(
        "admin", "Administrator", "Administrative access with most permissions",
        is_system=True, priority=90,
        selects=lambda p: p.name not in {"system.backup", "system.maintenance"},
    ),
    RoleSeed(
        "manager", "Manager", "Management level access for content and users",
        is_system=True, priority=70,
        selects=lambda p: p.category in {"user_management", "content_management", "analytics"},
    ),
    RoleSeed(
        "editor", "Editor", "Content creation and editing permissions",
        is_system=False, priority=50,
        selects=lambda p: p.category == "content_management" and p.name != "content.delete",
    ),
    RoleSeed(
        "analyst", "Data Analyst", "Analytics viewing and reporting permissions",
        is_system=False, priority=40,
        selects=lambda p: p.category == "analytics",
    ),
    RoleSeed(
        "user", "Standard User", "Basic user permissions",
        is_system=True, priority=10, is_default=True,
        selects=lambda p: p.name in {"content.view", "analytics.view"},
    ),
)


def role_permission_map() -> Dict[str, List[str]]:
    """Role name -> permission names it is seeded with."""
    return {
        role.name: [p.name for p in DEFAULT_PERMISSIONS if role.selects(p)]
        for role in DEFAULT_ROLES
    }


def seed_defaults(store, registry, actor_id: Optional[UUID] = None) -> Dict[str, int]:
    """
    Install the default catalog inside the caller's transaction.

    Returns counts of created permissions, roles and grants.
    """
    counts = {"permissions": 0, "roles": 0, "grants": 0}

    permissions = {}
    for seed in DEFAULT_PERMISSIONS:
        permission = store.get_permission_by_name(seed.name, include_deleted=True)
        if permission is not None and permission.is_deleted:
            continue
        if permission is None:
            permission = store.create_permission(
                seed.name,
                display_name=seed.display_name,
                description=seed.description,
                module=seed.module,
                category=seed.category,
                action=seed.action,
                is_system=seed.is_system,
                actor_id=actor_id,
            )
            counts["permissions"] += 1
        permissions[seed.name] = permission

    for seed in DEFAULT_ROLES:
        role = store.get_role_by_name(seed.name, include_deleted=True)
        if role is not None and role.is_deleted:
            continue
        if role is None:
            role = store.create_role(
                seed.name,
                display_name=seed.display_name,
                description=seed.description,
                priority=seed.priority,
                is_system=seed.is_system,
                is_default=seed.is_default,
                actor_id=actor_id,
            )
            counts["roles"] += 1

        for permission_seed in DEFAULT_PERMISSIONS:
            permission = permissions.get(permission_seed.name)
            if permission is None or not seed.selects(permission_seed):
                continue
            if registry.find(GrantKind.PERMISSION, role.id, permission.id) is not None:
                continue
            outcome = registry.grant(GrantKind.PERMISSION, role.id, permission.id, actor_id=actor_id)
            if outcome.status == MutationStatus.CREATED:
                counts["grants"] += 1

    logger.info("Default access catalog seeded", extra={"extra_data": counts})
    return counts
