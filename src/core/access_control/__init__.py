"""
Access Control - authorization core for the analytics portal.

Features:
- Entity Store for users, roles, permissions, menus and content
- Grant Registry: user -> role and role -> permission / menu / content grants
  with activation, validity windows, priority and GRANT / DENY polarity
- Deterministic resolver (priority desc, deny wins ties, fail closed)
- Content grants scoped to view / edit / delete / publish actions
- Per-role menu labels, icons, URLs and ordering
- Three-level menu hierarchy validation
- Decision cache with tag-epoch invalidation after commit

Usage:
    from core.access_control import AccessControlService, RelationKind

    service = AccessControlService.from_settings()
    service.can(user_id, "content.publish")
    service.visible_menu_tree(user_id)

    # FastAPI guards
    from core.access_control.dependencies import RequirePermission
"""

from .models import (
    # Enums
    Polarity,
    Effect,
    RelationKind,
    GrantKind,
    EntityKind,
    ContentStatus,
    ContentType,
    ContentAction,
    RejectionCode,
    MutationStatus,
    MAX_MENU_LEVEL,
    # Entities
    User,
    Role,
    Permission,
    Menu,
    Content,
    # Grants
    UserRole,
    RolePermission,
    RoleMenu,
    RoleContent,
)

from .exceptions import (
    AccessControlError,
    EntityNotFoundError,
    GrantNotFoundError,
    StructuralViolationError,
    GrantConflictError,
    SystemProtectedError,
)

from .resolver import (
    Decision,
    DecisionReason,
    GrantSnapshot,
    GrantResolver,
    MenuOverrides,
    in_effect,
    rank_key,
    resolve,
    effective_roles,
)

from .hierarchy import (
    PlacementResult,
    validate_menu_placement,
    validate_menu_integrity,
    validate_role_parent,
)

from .cache import DecisionCache
from .clock import SystemClock, FixedClock
from .store import EntityStore
from .registry import GrantRegistry, GrantOutcome
from .audit import (
    AuditEmitter,
    NullAuditEmitter,
    LoggingAuditEmitter,
    InMemoryAuditEmitter,
)
from .service import AccessControlService, MenuNode

__all__ = [
    # Enums
    "Polarity",
    "Effect",
    "RelationKind",
    "GrantKind",
    "EntityKind",
    "ContentStatus",
    "ContentType",
    "ContentAction",
    "RejectionCode",
    "MutationStatus",
    "MAX_MENU_LEVEL",
    # Entities
    "User",
    "Role",
    "Permission",
    "Menu",
    "Content",
    "UserRole",
    "RolePermission",
    "RoleMenu",
    "RoleContent",
    # Errors
    "AccessControlError",
    "EntityNotFoundError",
    "GrantNotFoundError",
    "StructuralViolationError",
    "GrantConflictError",
    "SystemProtectedError",
    # Resolution
    "Decision",
    "DecisionReason",
    "GrantSnapshot",
    "GrantResolver",
    "MenuOverrides",
    "in_effect",
    "rank_key",
    "resolve",
    "effective_roles",
    # Hierarchy
    "PlacementResult",
    "validate_menu_placement",
    "validate_menu_integrity",
    "validate_role_parent",
    # Infrastructure
    "DecisionCache",
    "SystemClock",
    "FixedClock",
    "EntityStore",
    "GrantRegistry",
    "GrantOutcome",
    "AuditEmitter",
    "NullAuditEmitter",
    "LoggingAuditEmitter",
    "InMemoryAuditEmitter",
    # Facade
    "AccessControlService",
    "MenuNode",
]
