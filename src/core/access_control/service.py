"""
Access Control Service - the facade controllers and middleware call.

Reads (hot path):
    decide / can / can_any / can_all / effective_permissions /
    visible_menu_tree / menu_breadcrumb / can_access_content / user_roles

Writes:
    Every mutation runs in its own transaction, serialised per
    (subject, target) pair inside the process, retried on write conflicts,
    and invalidates decision-cache tags only AFTER its commit. Mutations are
    emitted to the audit emitter once committed.

Usage:
    service = AccessControlService.from_settings()
    if service.can(user_id, "content.publish"):
        ...
"""

import hashlib
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from config.database import DatabaseSettings
from config.settings import AccessControlSettings, get_settings
from database.connection import create_schema, get_engine, get_session_factory
from database.models import to_naive_utc
from services.logging_config import get_logger

from .audit import NullAuditEmitter, safe_emit
from .cache import DecisionCache
from .clock import SystemClock
from .exceptions import AccessControlError, GrantConflictError
from .models import (
    ContentAction,
    ContentStatus,
    EntityKind,
    GrantKind,
    MAX_MENU_LEVEL,
    Menu,
    Polarity,
    RelationKind,
)
from .registry import GrantOutcome, GrantRegistry, check_kind
from .resolver import Decision, GrantResolver, MenuOverrides, Tag, check_relation, content_action
from .seed import seed_defaults as install_defaults
from .store import EntityStore

logger = get_logger(__name__, component="access_control")


# =============================================================================
# SUPPORTING TYPES
# =============================================================================

@dataclass
class MenuNode:
    """A visible menu entry annotated with the decision that admitted it."""
    menu_id: UUID
    slug: str
    name: str
    display_name: Optional[str]
    url: Optional[str]
    icon: Optional[str]
    level: int
    sort_order: int
    decision: Decision
    children: List["MenuNode"] = field(default_factory=list)

    @classmethod
    def from_menu(
        cls,
        menu: Menu,
        decision: Decision,
        overrides: Optional[MenuOverrides] = None,
    ) -> "MenuNode":
        """Node for ``menu``, restyled by the winning grant's custom attributes."""
        overrides = overrides or MenuOverrides()
        return cls(
            menu_id=menu.id,
            slug=menu.slug,
            name=menu.name,
            display_name=overrides.label if overrides.label is not None else menu.display_name,
            url=overrides.url if overrides.url is not None else menu.url,
            icon=overrides.icon if overrides.icon is not None else menu.icon,
            level=menu.level,
            sort_order=overrides.sort_order if overrides.sort_order is not None else menu.sort_order,
            decision=decision,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.menu_id),
            "slug": self.slug,
            "name": self.display_name or self.name,
            "url": self.url,
            "icon": self.icon,
            "level": self.level,
            "source": self.decision.reason.value,
            "children": [child.to_dict() for child in self.children],
        }


def build_menu_forest(
    menus: Iterable[Menu],
    decisions: Dict[UUID, Decision],
    overrides: Optional[Dict[UUID, MenuOverrides]] = None,
) -> List[MenuNode]:
    """
    Ordered forest of allowed menus.

    A menu is shown only if it is allowed and its parent is shown; children
    of hidden parents are pruned, not promoted. Siblings are ordered by
    ``sort_order`` (after per-role overrides) then name.
    """
    overrides = overrides or {}
    nodes: Dict[UUID, MenuNode] = {}
    roots: List[MenuNode] = []

    for menu in sorted(menus, key=lambda m: m.level):
        decision = decisions.get(menu.id)
        if decision is None or not decision.allowed:
            continue
        node = MenuNode.from_menu(menu, decision, overrides.get(menu.id))
        if menu.parent_id is None:
            roots.append(node)
        elif menu.parent_id in nodes:
            nodes[menu.parent_id].children.append(node)
        else:
            continue
        nodes[menu.id] = node

    def order(items: List[MenuNode]) -> None:
        items.sort(key=lambda n: (n.sort_order, n.name))

    order(roots)
    for node in nodes.values():
        order(node.children)
    return roots


def grant_tags(kind: GrantKind, subject_id: UUID, target_id: UUID) -> Set[Tag]:
    """Cache tags a change to this pair can affect."""
    if kind == GrantKind.USER_ROLE:
        return {("user", subject_id)}
    return {("role", subject_id), (kind.value, target_id)}


class StripedLock:
    """Fixed pool of locks; a key always maps to the same lock."""

    def __init__(self, stripes: int = 64):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key: Tuple) -> threading.Lock:
        digest = hashlib.blake2b(repr(key).encode("utf-8"), digest_size=8).digest()
        return self._locks[int.from_bytes(digest, "big") % len(self._locks)]

    @contextmanager
    def hold(self, key: Tuple):
        lock = self.for_key(key)
        with lock:
            yield


# =============================================================================
# SERVICE
# =============================================================================

class AccessControlService:
    """
    Facade over the Entity Store, Grant Registry, resolver and Decision Cache.

    Thread-safe: reads open their own session; writes are serialised per key.
    """

    def __init__(
        self,
        session_factory: Callable,
        cache: Optional[DecisionCache] = None,
        clock=None,
        audit=None,
        settings: Optional[AccessControlSettings] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.cache = cache if cache is not None else DecisionCache.from_settings(self.settings)
        self.clock = clock or SystemClock()
        self.audit = audit or NullAuditEmitter()
        self._locks = StripedLock()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AccessControlSettings] = None,
        db_settings: Optional[DatabaseSettings] = None,
        create_tables: bool = True,
        **kwargs,
    ) -> "AccessControlService":
        """Service bound to the process-wide engine."""
        settings = settings or get_settings()
        errors = settings.validate_production_security()
        if errors:
            raise RuntimeError("Insecure production configuration: " + "; ".join(errors))
        if create_tables:
            create_schema(get_engine(db_settings))
        return cls(get_session_factory(db_settings), settings=settings, **kwargs)

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _now(self, now: Optional[datetime]) -> datetime:
        return to_naive_utc(now) if now is not None else self.clock.now()

    @contextmanager
    def _reading(self):
        """Read-only session with a store, registry and resolver."""
        session = self._session_factory()
        try:
            store = EntityStore(session)
            registry = GrantRegistry(session, store)
            yield store, registry, GrantResolver(store, registry)
        finally:
            session.close()

    @contextmanager
    def _transaction(self):
        session = self._session_factory()
        try:
            store = EntityStore(session)
            yield store, GrantRegistry(session, store)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise GrantConflictError("Concurrent write conflict") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _mutate(
        self,
        action: str,
        lock_key: Tuple,
        work: Callable,
        actor_id: Optional[UUID] = None,
    ):
        """
        Run ``work(store, registry) -> (result, tags, details)`` transactionally.

        Tags are invalidated after commit; the event is emitted last.
        """
        attempts = self.settings.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._locks.hold(lock_key):
                    with self._transaction() as (store, registry):
                        result, tags, details = work(store, registry)
                break
            except GrantConflictError:
                if attempt >= attempts:
                    logger.warning(
                        "Mutation conflict, giving up",
                        extra={"extra_data": {"action": action, "attempts": attempt}},
                    )
                    raise
                logger.info(
                    "Mutation conflict, retrying",
                    extra={"extra_data": {"action": action, "attempt": attempt}},
                )
            except AccessControlError as e:
                logger.warning(
                    "Mutation rejected",
                    extra={"extra_data": {"action": action, "code": e.code, "reason": e.message}},
                )
                raise

        if tags:
            self.cache.invalidate_tags(tags)
        safe_emit(self.audit.emit_mutation, action, self.clock.now(), actor_id=actor_id, **details)
        return result

    # =========================================================================
    # DECISIONS
    # =========================================================================

    def decide(
        self,
        user_id: UUID,
        target_id: UUID,
        relation: RelationKind,
        now: Optional[datetime] = None,
        action: Optional[ContentAction] = None,
    ) -> Decision:
        """
        Cached, audited resolution of one (user, target, relation).

        ``action`` selects the content action (default view) and is rejected
        for permissions and menus.
        """
        check_relation(relation)
        action = content_action(relation, action)
        if user_id is None or target_id is None:
            raise ValueError("user_id and target_id are required")
        now = self._now(now)

        token = self.cache.begin()
        decision = self.cache.get(user_id, target_id, relation, now, action)
        if decision is not None:
            decision = replace(decision, evaluated_at=now)
        else:
            with self._reading() as (_, _, resolver):
                decision, tags = resolver.decide(user_id, target_id, relation, now, action)
            self.cache.put(user_id, target_id, relation, decision, tags, token, action)

        if self.settings.audit_decisions:
            safe_emit(self.audit.emit_decision, decision, user_id, target_id, relation, now)
        return decision

    def _permission_id(self, permission_name: str) -> Optional[UUID]:
        with self._reading() as (store, _, _):
            permission = store.get_permission_by_name(permission_name)
            return permission.id if permission is not None else None

    def can(self, user_id: UUID, permission_name: str, now: Optional[datetime] = None) -> bool:
        """Whether the user holds ``permission_name`` at ``now``."""
        if user_id is None:
            raise ValueError("user_id is required")
        permission_id = self._permission_id(permission_name)
        if permission_id is None:
            return False
        return self.decide(user_id, permission_id, RelationKind.PERMISSION, now).allowed

    def can_any(self, user_id: UUID, permission_names: Iterable[str], now: Optional[datetime] = None) -> bool:
        now = self._now(now)
        return any(self.can(user_id, name, now) for name in permission_names)

    def can_all(self, user_id: UUID, permission_names: Iterable[str], now: Optional[datetime] = None) -> bool:
        now = self._now(now)
        return all(self.can(user_id, name, now) for name in permission_names)

    def effective_permissions(self, user_id: UUID, now: Optional[datetime] = None) -> List[str]:
        """Names of every permission the user is allowed at ``now``."""
        now = self._now(now)
        with self._reading() as (store, _, resolver):
            context = resolver.subject_context(user_id, now)
            grouped: Dict[UUID, list] = {}
            for grant in resolver.target_snapshots(context, RelationKind.PERMISSION):
                grouped.setdefault(grant.target_id, []).append(grant)

            allowed = []
            for permission in store.list_permissions(ids=grouped.keys()):
                decision, _ = resolver.decide_target(
                    context, RelationKind.PERMISSION, permission, grouped[permission.id]
                )
                if decision.allowed:
                    allowed.append(permission.name)
        return sorted(allowed)

    def user_roles(self, user_id: UUID, now: Optional[datetime] = None) -> List[str]:
        """Effective role names at ``now``, highest priority first."""
        now = self._now(now)
        with self._reading() as (store, _, resolver):
            context = resolver.subject_context(user_id, now)
            names = {role.id: role.name for role in store.list_roles(context.role_ids)}
        return [names[r.role_id] for r in context.roles if r.role_id in names]

    def visible_menu_tree(self, user_id: UUID, now: Optional[datetime] = None) -> List[MenuNode]:
        """Ordered forest of the menus the user may see at ``now``."""
        if user_id is None:
            raise ValueError("user_id is required")
        now = self._now(now)

        token = self.cache.begin()
        with self._reading() as (store, _, resolver):
            menus = store.list_menus(active_only=True)
            context = resolver.subject_context(user_id, now)
            grouped: Dict[UUID, list] = {}
            for grant in resolver.target_snapshots(context, RelationKind.MENU):
                grouped.setdefault(grant.target_id, []).append(grant)

            decisions = {}
            overrides = {}
            for menu in menus:
                grants = grouped.get(menu.id, [])
                decision, tags = resolver.decide_target(context, RelationKind.MENU, menu, grants)
                self.cache.put(user_id, menu.id, RelationKind.MENU, decision, tags, token)
                decisions[menu.id] = decision
                winner = next((g for g in grants if g.grant_id == decision.grant_id), None)
                if winner is not None and winner.menu_overrides is not None:
                    overrides[menu.id] = winner.menu_overrides

        return build_menu_forest(menus, decisions, overrides)

    def menu_breadcrumb(self, user_id: UUID, menu_id: UUID, now: Optional[datetime] = None) -> List[MenuNode]:
        """Root-to-menu path, or an empty list if any step is hidden."""
        now = self._now(now)
        with self._reading() as (store, _, _):
            path = []
            seen: Set[UUID] = set()
            current = store.get_menu(menu_id)
            while current is not None and current.id not in seen and len(path) <= MAX_MENU_LEVEL:
                seen.add(current.id)
                path.append(current)
                current = store.get_menu(current.parent_id) if current.parent_id else None
            if not path or path[-1].parent_id is not None:
                return []

        steps = []
        for menu in reversed(path):
            if not menu.is_visible:
                return []
            decision = self.decide(user_id, menu.id, RelationKind.MENU, now)
            if not decision.allowed:
                return []
            steps.append((menu, decision))

        with self._reading() as (_, registry, _):
            crumbs = []
            for menu, decision in steps:
                row = registry.get(GrantKind.MENU, decision.grant_id) if decision.grant_id else None
                overrides = MenuOverrides.from_row(row) if row is not None else None
                crumbs.append(MenuNode.from_menu(menu, decision, overrides))
        return crumbs

    def can_access_content(
        self,
        user_id: Optional[UUID],
        content: Union[UUID, str],
        now: Optional[datetime] = None,
        action: ContentAction = ContentAction.VIEW,
    ) -> bool:
        """
        Whether the user may perform ``action`` on a content item (by id or slug).

        Public content is viewable by anyone, including anonymous callers
        (``user_id=None``). Every other action needs a content grant
        carrying that action's flag.
        """
        action = ContentAction(action)
        now = self._now(now)
        with self._reading() as (store, _, _):
            row = store.get_content(content) if isinstance(content, UUID) else store.get_content_by_slug(content)
            if row is None:
                return False
            content_id, public = row.id, row.is_public and row.is_active

        if user_id is None:
            return public and action == ContentAction.VIEW
        return self.decide(user_id, content_id, RelationKind.CONTENT, now, action).allowed

    def read_content(self, user_id: Optional[UUID], content: Union[UUID, str], now: Optional[datetime] = None) -> Optional[str]:
        """Decrypted body if the user may read the item, otherwise None."""
        if not self.can_access_content(user_id, content, now):
            return None
        with self._reading() as (store, _, _):
            row = store.get_content(content) if isinstance(content, UUID) else store.get_content_by_slug(content)
            return store.read_content_body(row) if row is not None else None

    # =========================================================================
    # GRANT MUTATIONS
    # =========================================================================

    def _grant(self, kind: GrantKind, subject_id: UUID, target_id: UUID, actor_id: Optional[UUID] = None, **options) -> GrantOutcome:
        def work(store, registry):
            outcome = registry.grant(kind, subject_id, target_id, actor_id=actor_id, **options)
            tags = grant_tags(kind, subject_id, target_id) if outcome.changed else set()
            return outcome, tags, self._outcome_details(outcome)

        return self._mutate(f"grant.{kind.value}", (kind.value, subject_id, target_id), work, actor_id)

    def _revoke_pair(self, kind: GrantKind, subject_id: UUID, target_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        def work(store, registry):
            outcome = registry.revoke_pair(kind, subject_id, target_id, actor_id=actor_id)
            tags = grant_tags(kind, subject_id, target_id) if outcome.changed else set()
            return outcome, tags, self._outcome_details(outcome)

        return self._mutate(f"revoke.{kind.value}", (kind.value, subject_id, target_id), work, actor_id)

    @staticmethod
    def _outcome_details(outcome: GrantOutcome) -> Dict[str, Any]:
        return {
            "kind": outcome.kind.value,
            "status": outcome.status.value,
            "grant_id": outcome.grant_id,
            "subject_id": outcome.subject_id,
            "target_id": outcome.target_id,
        }

    def assign_role(
        self,
        user_id: UUID,
        role_id: UUID,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        priority: int = 0,
        polarity: Polarity = Polarity.GRANT,
        is_primary: Optional[bool] = None,
        notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> GrantOutcome:
        """
        Assign (or re-assign) a role to a user.

        ``is_primary=None`` keeps the stored primary flag (False on a new row).
        """
        return self._grant(
            GrantKind.USER_ROLE, user_id, role_id, actor_id=actor_id,
            starts_at=starts_at, expires_at=expires_at, priority=priority,
            polarity=polarity, is_primary=is_primary, notes=notes,
        )

    def revoke_role(self, user_id: UUID, role_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        return self._revoke_pair(GrantKind.USER_ROLE, user_id, role_id, actor_id)

    def grant_permission(
        self,
        role_id: UUID,
        permission_id: UUID,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        priority: int = 0,
        polarity: Polarity = Polarity.GRANT,
        notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> GrantOutcome:
        return self._grant(
            GrantKind.PERMISSION, role_id, permission_id, actor_id=actor_id,
            starts_at=starts_at, expires_at=expires_at, priority=priority,
            polarity=polarity, notes=notes,
        )

    def revoke_permission(self, role_id: UUID, permission_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        return self._revoke_pair(GrantKind.PERMISSION, role_id, permission_id, actor_id)

    def grant_menu(
        self,
        role_id: UUID,
        menu_id: UUID,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        priority: int = 0,
        polarity: Polarity = Polarity.GRANT,
        notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
        custom_label: Optional[str] = None,
        custom_icon: Optional[str] = None,
        custom_url: Optional[str] = None,
        custom_sort_order: Optional[int] = None,
    ) -> GrantOutcome:
        """Grant a menu to a role, optionally restyled for that role."""
        return self._grant(
            GrantKind.MENU, role_id, menu_id, actor_id=actor_id,
            starts_at=starts_at, expires_at=expires_at, priority=priority,
            polarity=polarity, notes=notes,
            custom_label=custom_label, custom_icon=custom_icon,
            custom_url=custom_url, custom_sort_order=custom_sort_order,
        )

    def revoke_menu(self, role_id: UUID, menu_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        return self._revoke_pair(GrantKind.MENU, role_id, menu_id, actor_id)

    def grant_content(
        self,
        role_id: UUID,
        content_id: UUID,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        priority: int = 0,
        polarity: Polarity = Polarity.GRANT,
        notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
        actions: Optional[Iterable[ContentAction]] = None,
    ) -> GrantOutcome:
        """Grant content actions to a role (view only unless ``actions`` says otherwise)."""
        return self._grant(
            GrantKind.CONTENT, role_id, content_id, actor_id=actor_id,
            starts_at=starts_at, expires_at=expires_at, priority=priority,
            polarity=polarity, notes=notes, actions=actions,
        )

    def revoke_content(self, role_id: UUID, content_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        return self._revoke_pair(GrantKind.CONTENT, role_id, content_id, actor_id)

    def revoke_grant(self, kind: GrantKind, grant_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        """Revoke a grant by id in any of the four tables."""
        check_kind(kind)
        with self._reading() as (_, registry, _):
            row = registry.get(kind, grant_id)
            pair = (row.subject_id, row.target_id) if row is not None else (None, grant_id)

        def work(store, registry):
            outcome = registry.revoke(kind, grant_id, actor_id=actor_id)
            tags = grant_tags(kind, outcome.subject_id, outcome.target_id) if outcome.changed else set()
            return outcome, tags, self._outcome_details(outcome)

        return self._mutate(f"revoke.{kind.value}", (kind.value,) + pair, work, actor_id)

    # =========================================================================
    # ENTITY MUTATIONS
    # =========================================================================

    def _entity_mutation(self, action: str, lock_key: Tuple, work: Callable, actor_id: Optional[UUID] = None):
        """Entity writes: ``work`` returns (row, tags)."""
        def wrapped(store, registry):
            row, tags = work(store, registry)
            return row, tags, {"entity_id": getattr(row, "id", None)}

        return self._mutate(action, lock_key, wrapped, actor_id)

    def create_user(self, email: str, name: Optional[str] = None, actor_id: Optional[UUID] = None):
        return self._entity_mutation(
            "user.created", ("user", (email or "").strip().lower()),
            lambda store, _: (store.create_user(email, name=name, actor_id=actor_id), set()),
            actor_id,
        )

    def deactivate_user(self, user_id: UUID, actor_id: Optional[UUID] = None):
        """Inactive users are denied everything."""
        return self._entity_mutation(
            "user.deactivated", ("user", user_id),
            lambda store, _: (store.set_user_active(user_id, False, actor_id=actor_id), {("user", user_id)}),
            actor_id,
        )

    def activate_user(self, user_id: UUID, actor_id: Optional[UUID] = None):
        return self._entity_mutation(
            "user.activated", ("user", user_id),
            lambda store, _: (store.set_user_active(user_id, True, actor_id=actor_id), {("user", user_id)}),
            actor_id,
        )

    def create_role(self, name: str, actor_id: Optional[UUID] = None, **options):
        return self._entity_mutation(
            "role.created", ("role", name),
            lambda store, _: (store.create_role(name, actor_id=actor_id, **options), set()),
            actor_id,
        )

    def update_role(self, role_id: UUID, actor_id: Optional[UUID] = None, **changes):
        """Changes reach every decision that consulted the role or a descendant."""
        def work(store, _):
            role = store.update_role(role_id, actor_id=actor_id, **changes)
            tags = {("role", rid) for rid in [role_id] + store.role_descendants(role_id)}
            return role, tags

        # Re-parenting walks the role tree
        return self._entity_mutation("role.updated", ("role-tree",), work, actor_id)

    def create_permission(self, name: str, actor_id: Optional[UUID] = None, **options):
        return self._entity_mutation(
            "permission.created", ("permission", name),
            lambda store, _: (store.create_permission(name, actor_id=actor_id, **options), set()),
            actor_id,
        )

    def update_permission(self, permission_id: UUID, actor_id: Optional[UUID] = None, **changes):
        return self._entity_mutation(
            "permission.updated", ("permission", permission_id),
            lambda store, _: (
                store.update_permission(permission_id, actor_id=actor_id, **changes),
                {("permission", permission_id)},
            ),
            actor_id,
        )

    def create_menu(self, slug: str, name: str, parent_id: Optional[UUID] = None, actor_id: Optional[UUID] = None, **options):
        return self._entity_mutation(
            "menu.created", ("menu-tree",),
            lambda store, _: (store.create_menu(slug, name, parent_id=parent_id, actor_id=actor_id, **options), set()),
            actor_id,
        )

    def move_menu(
        self,
        menu_id: UUID,
        new_parent_id: Optional[UUID],
        sort_order: Optional[int] = None,
        actor_id: Optional[UUID] = None,
    ) -> List[UUID]:
        """Re-parent a menu; returns the ids of the re-levelled subtree."""
        def work(store, _):
            moved = store.move_menu(menu_id, new_parent_id, sort_order=sort_order, actor_id=actor_id)
            return moved, {("menu", mid) for mid in moved}, {"entity_id": menu_id, "moved": len(moved)}

        return self._mutate("menu.moved", ("menu-tree",), work, actor_id)

    def create_content(self, slug: str, title: str, actor_id: Optional[UUID] = None, **options):
        return self._entity_mutation(
            "content.created", ("content", slug),
            lambda store, _: (store.create_content(slug, title, actor_id=actor_id, **options), set()),
            actor_id,
        )

    def update_content(self, content_id: UUID, actor_id: Optional[UUID] = None, **changes):
        return self._entity_mutation(
            "content.updated", ("content", content_id),
            lambda store, _: (
                store.update_content(content_id, actor_id=actor_id, **changes),
                {("content", content_id)},
            ),
            actor_id,
        )

    def publish_content(self, content_id: UUID, published_at: Optional[datetime] = None, actor_id: Optional[UUID] = None):
        """Mark published, effective from ``published_at`` (default now)."""
        return self.update_content(
            content_id,
            actor_id=actor_id,
            status=ContentStatus.PUBLISHED,
            published_at=self._now(published_at),
        )

    def delete_entity(self, kind: EntityKind, entity_id: UUID, actor_id: Optional[UUID] = None):
        """Soft-delete a user, role, permission, menu or content item."""
        kind = EntityKind(kind)
        tag = ("user", entity_id) if kind == EntityKind.USER else (kind.value, entity_id)
        lock_key = ("menu-tree",) if kind == EntityKind.MENU else (kind.value, entity_id)
        return self._entity_mutation(
            f"{kind.value}.deleted", lock_key,
            lambda store, _: (
                store.delete_entity(kind, entity_id, actor_id=actor_id, when=self.clock.now()),
                {tag},
            ),
            actor_id,
        )

    def seed_defaults(self, actor_id: Optional[UUID] = None) -> Dict[str, int]:
        """Install the default permission catalog and roles."""
        def work(store, registry):
            counts = install_defaults(store, registry, actor_id=actor_id)
            return counts, set(), dict(counts)

        counts = self._mutate("catalog.seeded", ("catalog",), work, actor_id)
        self.cache.clear()
        return counts
