"""
Grant Resolver - turns the grant registry into ALLOW / DENY decisions.

Resolution Order:
1. Target must exist, be live and active (public content short-circuits here)
2. Subject must exist, be live and active
3. Effective role set: user -> role grants in effect at ``now`` with GRANT
   polarity, minus roles blocked by an in-effect DENY assignment, expanded
   through parents of roles with ``inherit_permissions``
4. Collect role -> target grants in effect at ``now``; for content, only
   grants covering the requested action (view, edit, delete, publish)
5. Rank: priority desc, DENY before GRANT, role priority desc, grant id
6. The highest-ranked grant's polarity is the decision; no grant is DENY

The ranking and window logic are pure functions over ``GrantSnapshot``
values so they can be tested without a database. ``GrantResolver`` performs
the reads and returns the decision together with the cache tags it depends on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum as PyEnum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from .models import (
    Content,
    ContentAction,
    Effect,
    GrantKind,
    Polarity,
    RelationKind,
    RoleContent,
    RoleMenu,
    target_kind,
)

logger = logging.getLogger(__name__)

Tag = Tuple[str, ...]


# =============================================================================
# VALUE TYPES
# =============================================================================

class DecisionReason(str, PyEnum):
    """Why a decision came out the way it did (never shown to end users)."""
    GRANTED = "granted"
    DENIED_BY_GRANT = "denied_by_grant"
    NO_GRANT = "no_grant"
    NO_EFFECTIVE_ROLES = "no_effective_roles"
    PUBLIC_CONTENT = "public_content"
    TARGET_UNAVAILABLE = "target_unavailable"
    SUBJECT_UNAVAILABLE = "subject_unavailable"


@dataclass(frozen=True)
class MenuOverrides:
    """Per-role presentation of a menu node; ``None`` keeps the menu's own value."""
    label: Optional[str] = None
    icon: Optional[str] = None
    url: Optional[str] = None
    sort_order: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> Optional["MenuOverrides"]:
        overrides = cls(
            label=row.custom_label,
            icon=row.custom_icon,
            url=row.custom_url,
            sort_order=row.custom_sort_order,
        )
        return overrides if overrides != cls() else None


@dataclass(frozen=True)
class GrantSnapshot:
    """Immutable view of one grant row at read time."""
    grant_id: UUID
    subject_id: UUID
    target_id: UUID
    priority: int = 0
    polarity: Polarity = Polarity.GRANT
    is_active: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_inherited: bool = False
    is_deleted: bool = False
    role_priority: int = 0
    actions: FrozenSet[ContentAction] = frozenset({ContentAction.VIEW})
    menu_overrides: Optional[MenuOverrides] = None

    def covers(self, action: Optional[ContentAction]) -> bool:
        """Whether this grant speaks to ``action``; DENY grants cover every action."""
        if action is None or self.polarity == Polarity.DENY:
            return True
        return action in self.actions

    @classmethod
    def from_row(cls, row, role_priority: int = 0, inherited: bool = False) -> "GrantSnapshot":
        extra = {}
        if isinstance(row, RoleContent):
            extra["actions"] = row.granted_actions()
        elif isinstance(row, RoleMenu):
            extra["menu_overrides"] = MenuOverrides.from_row(row)
        return cls(
            grant_id=row.id,
            subject_id=row.subject_id,
            target_id=row.target_id,
            priority=row.priority or 0,
            polarity=Polarity(row.polarity),
            is_active=bool(row.is_active),
            starts_at=row.starts_at,
            expires_at=row.expires_at,
            is_inherited=bool(row.is_inherited) or inherited,
            is_deleted=row.deleted_at is not None,
            role_priority=role_priority,
            **extra,
        )


@dataclass(frozen=True)
class RoleSnapshot:
    """The role attributes resolution depends on."""
    role_id: UUID
    priority: int = 0
    parent_id: Optional[UUID] = None
    inherit_permissions: bool = False
    usable: bool = True

    @classmethod
    def from_row(cls, row) -> "RoleSnapshot":
        return cls(
            role_id=row.id,
            priority=row.priority or 0,
            parent_id=row.parent_id,
            inherit_permissions=bool(row.inherit_permissions),
            usable=bool(row.is_active) and row.deleted_at is None,
        )


@dataclass(frozen=True)
class EffectiveRole:
    """A role the user holds at the evaluation instant."""
    role_id: UUID
    priority: int
    via_grant_id: UUID
    inherited: bool = False


@dataclass(frozen=True)
class Decision:
    """
    Outcome of one resolution.

    ``valid_from`` / ``valid_until`` bound the half-open interval around
    ``evaluated_at`` in which no contributing window boundary is crossed, so
    the same inputs give the same decision anywhere inside it. ``None`` means
    unbounded on that side.
    """
    effect: Effect
    reason: DecisionReason
    evaluated_at: datetime
    grant_id: Optional[UUID] = None
    role_id: Optional[UUID] = None
    inherited: bool = False
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.effect == Effect.ALLOW

    def holds_at(self, now: datetime) -> bool:
        """Whether this decision is still the answer at ``now``."""
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_until is not None and now >= self.valid_until:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "effect": self.effect.value,
            "reason": self.reason.value,
            "evaluated_at": self.evaluated_at.isoformat(),
            "grant_id": str(self.grant_id) if self.grant_id else None,
            "role_id": str(self.role_id) if self.role_id else None,
            "inherited": self.inherited,
        }


# =============================================================================
# PURE RESOLUTION FUNCTIONS
# =============================================================================

def in_effect(grant: GrantSnapshot, now: datetime) -> bool:
    """Live, active, and ``starts_at <= now < expires_at`` (open ends allowed)."""
    if grant.is_deleted or not grant.is_active:
        return False
    if grant.starts_at is not None and now < grant.starts_at:
        return False
    if grant.expires_at is not None and now >= grant.expires_at:
        return False
    return True


def rank_key(grant: GrantSnapshot) -> tuple:
    """
    Total order over grants; the smallest key wins.

    Priority descending, then DENY before GRANT on equal priority, then the
    granting role's priority, then grant id so the winner is deterministic.
    """
    return (
        -grant.priority,
        0 if grant.polarity == Polarity.DENY else 1,
        -grant.role_priority,
        str(grant.grant_id),
    )


def resolve(grants: Iterable[GrantSnapshot], now: datetime) -> Optional[GrantSnapshot]:
    """Highest-ranked grant in effect at ``now``, or None."""
    candidates = [g for g in grants if in_effect(g, now)]
    if not candidates:
        return None
    return min(candidates, key=rank_key)


def window_boundaries(grants: Iterable[GrantSnapshot]) -> List[datetime]:
    """Instants at which any live, active grant enters or leaves effect."""
    instants = []
    for grant in grants:
        if grant.is_deleted or not grant.is_active:
            continue
        if grant.starts_at is not None:
            instants.append(grant.starts_at)
        if grant.expires_at is not None:
            instants.append(grant.expires_at)
    return instants


def validity_interval(
    boundaries: Iterable[datetime],
    now: datetime,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Latest boundary <= now and earliest boundary > now."""
    valid_from = None
    valid_until = None
    for instant in boundaries:
        if instant <= now:
            if valid_from is None or instant > valid_from:
                valid_from = instant
        elif valid_until is None or instant < valid_until:
            valid_until = instant
    return valid_from, valid_until


def effective_roles(
    assignments: Iterable[GrantSnapshot],
    roles: Dict[UUID, RoleSnapshot],
    now: datetime,
) -> List[EffectiveRole]:
    """
    Roles the user holds at ``now``.

    ``roles`` must contain every directly assigned role and, for roles with
    ``inherit_permissions``, their ancestors. Missing entries count as
    unusable. A DENY assignment in effect blocks the role everywhere,
    including when it would be reached through inheritance.
    """
    assignments = [a for a in assignments if in_effect(a, now)]
    blocked = {a.target_id for a in assignments if a.polarity == Polarity.DENY}

    result: Dict[UUID, EffectiveRole] = {}
    for assignment in sorted(assignments, key=rank_key):
        if assignment.polarity != Polarity.GRANT or assignment.target_id in blocked:
            continue
        role = roles.get(assignment.target_id)
        if role is None or not role.usable:
            continue
        if role.role_id not in result or result[role.role_id].inherited:
            result[role.role_id] = EffectiveRole(
                role_id=role.role_id,
                priority=role.priority,
                via_grant_id=assignment.grant_id,
            )

    # Walk parents of inheriting roles iteratively
    for direct in list(result.values()):
        if direct.inherited:
            continue
        current = roles.get(direct.role_id)
        visited: Set[UUID] = {direct.role_id}
        while current is not None and current.inherit_permissions and current.parent_id:
            if current.parent_id in visited:
                logger.warning(
                    "Role hierarchy cycle",
                    extra={"extra_data": {"role_id": str(direct.role_id), "parent_id": str(current.parent_id)}},
                )
                break
            visited.add(current.parent_id)
            parent = roles.get(current.parent_id)
            if parent is None or not parent.usable or parent.role_id in blocked:
                break
            if parent.role_id not in result:
                result[parent.role_id] = EffectiveRole(
                    role_id=parent.role_id,
                    priority=parent.priority,
                    via_grant_id=direct.via_grant_id,
                    inherited=True,
                )
            current = parent

    return sorted(result.values(), key=lambda r: (-r.priority, str(r.role_id)))


def decide_from_grants(
    grants: Iterable[GrantSnapshot],
    now: datetime,
    boundaries: Iterable[datetime] = (),
    action: Optional[ContentAction] = None,
) -> Decision:
    """
    Decision for an already-collected set of role -> target grants.

    With an ``action`` only grants covering it take part: GRANT rows whose
    flag for the action is set, and every DENY row.
    """
    grants = [g for g in grants if g.covers(action)]
    valid_from, valid_until = validity_interval(
        list(boundaries) + window_boundaries(grants), now
    )
    winner = resolve(grants, now)

    if winner is None:
        return Decision(
            effect=Effect.DENY,
            reason=DecisionReason.NO_GRANT,
            evaluated_at=now,
            valid_from=valid_from,
            valid_until=valid_until,
        )

    allowed = winner.polarity == Polarity.GRANT
    return Decision(
        effect=Effect.ALLOW if allowed else Effect.DENY,
        reason=DecisionReason.GRANTED if allowed else DecisionReason.DENIED_BY_GRANT,
        evaluated_at=now,
        grant_id=winner.grant_id,
        role_id=winner.subject_id,
        inherited=winner.is_inherited,
        valid_from=valid_from,
        valid_until=valid_until,
    )


def _deny(reason: DecisionReason, now: datetime, boundaries: Iterable[datetime] = ()) -> Decision:
    valid_from, valid_until = validity_interval(boundaries, now)
    return Decision(
        effect=Effect.DENY,
        reason=reason,
        evaluated_at=now,
        valid_from=valid_from,
        valid_until=valid_until,
    )


def check_relation(relation) -> RelationKind:
    """Reject anything that is not a ``RelationKind`` (caller bug)."""
    if not isinstance(relation, RelationKind):
        raise TypeError(f"relation must be a RelationKind, got {type(relation).__name__}")
    return relation


def content_action(relation: RelationKind, action: Optional[ContentAction]) -> Optional[ContentAction]:
    """Normalize ``action``: content defaults to VIEW, other relations take none."""
    if relation == RelationKind.CONTENT:
        return ContentAction(action) if action is not None else ContentAction.VIEW
    if action is not None:
        raise ValueError(f"actions apply to content only, not {relation.value}")
    return None


# =============================================================================
# DATABASE-BACKED RESOLVER
# =============================================================================

@dataclass
class SubjectContext:
    """Everything about a user resolution needs, read once per request."""
    user_id: UUID
    now: datetime
    roles: List[EffectiveRole] = field(default_factory=list)
    role_snapshots: Dict[UUID, RoleSnapshot] = field(default_factory=dict)
    boundaries: List[datetime] = field(default_factory=list)
    tags: Set[Tag] = field(default_factory=set)
    failure: Optional[DecisionReason] = None

    @property
    def role_ids(self) -> List[UUID]:
        return [r.role_id for r in self.roles]

    def role(self, role_id: UUID) -> Optional[EffectiveRole]:
        for role in self.roles:
            if role.role_id == role_id:
                return role
        return None


class GrantResolver:
    """
    Reads the Entity Store and Grant Registry inside one session and resolves.

    Usage:
        resolver = GrantResolver(store, registry)
        decision, tags = resolver.decide(user_id, permission_id, RelationKind.PERMISSION, now)
    """

    def __init__(self, store, registry):
        self.store = store
        self.registry = registry

    def subject_context(self, user_id: UUID, now: datetime) -> SubjectContext:
        """Effective role set of ``user_id`` at ``now``."""
        context = SubjectContext(user_id=user_id, now=now, tags={("user", user_id)})

        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            context.failure = DecisionReason.SUBJECT_UNAVAILABLE
            return context

        assignments = [GrantSnapshot.from_row(row) for row in self.registry.user_role_grants(user_id)]
        context.boundaries.extend(window_boundaries(assignments))

        snapshots = self._load_roles({a.target_id for a in assignments})
        context.role_snapshots = snapshots
        context.tags.update(("role", role_id) for role_id in snapshots)

        context.roles = effective_roles(assignments, snapshots, now)
        if not context.roles:
            context.failure = DecisionReason.NO_EFFECTIVE_ROLES
        return context

    def _load_roles(self, role_ids: Set[UUID]) -> Dict[UUID, RoleSnapshot]:
        """Load assigned roles plus the ancestors of inheriting roles."""
        snapshots: Dict[UUID, RoleSnapshot] = {}
        pending = list(role_ids)
        missing: Set[UUID] = set()
        while pending:
            role_id = pending.pop()
            if role_id in snapshots or role_id in missing:
                continue
            row = self.store.get_role(role_id, include_deleted=True)
            if row is None:
                missing.add(role_id)
                continue
            snapshot = RoleSnapshot.from_row(row)
            snapshots[role_id] = snapshot
            if snapshot.inherit_permissions and snapshot.parent_id and snapshot.parent_id not in snapshots:
                pending.append(snapshot.parent_id)
        return snapshots

    def target_snapshots(
        self,
        context: SubjectContext,
        relation: RelationKind,
        target_id: Optional[UUID] = None,
    ) -> List[GrantSnapshot]:
        """Role -> target grants of the user's effective roles."""
        if not context.roles:
            return []
        rows = self.registry.target_grants(GrantKind.for_relation(relation), context.role_ids, target_id)
        snapshots = []
        for row in rows:
            role = context.role(row.subject_id)
            snapshots.append(GrantSnapshot.from_row(
                row,
                role_priority=role.priority if role else 0,
                inherited=role.inherited if role else False,
            ))
        return snapshots

    def decide_target(
        self,
        context: SubjectContext,
        relation: RelationKind,
        target,
        grants: Sequence[GrantSnapshot],
        action: Optional[ContentAction] = None,
    ) -> Tuple[Decision, FrozenSet[Tag]]:
        """
        Decision for a loaded target row given the user's context.

        Viewing content needs it published and public content is open to
        everyone. Editing, deleting and publishing always need a grant, and
        they work on drafts too.
        """
        action = content_action(relation, action)
        now = context.now
        tags = set(context.tags)
        if target is not None:
            tags.add((relation.value, target.id))

        if target is None or target.is_deleted or not target.is_active:
            return _deny(DecisionReason.TARGET_UNAVAILABLE, now), frozenset(tags)

        content_boundaries: List[datetime] = []
        if isinstance(target, Content) and action == ContentAction.VIEW:
            if target.is_public:
                return Decision(
                    effect=Effect.ALLOW,
                    reason=DecisionReason.PUBLIC_CONTENT,
                    evaluated_at=now,
                ), frozenset(tags)
            if target.published_at is not None:
                content_boundaries.append(target.published_at)
            if target.expires_at is not None:
                content_boundaries.append(target.expires_at)
            if not target.is_published_at(now):
                return _deny(DecisionReason.TARGET_UNAVAILABLE, now, content_boundaries), frozenset(tags)

        if context.failure is not None:
            return (
                _deny(context.failure, now, context.boundaries + content_boundaries),
                frozenset(tags),
            )

        relevant = [g for g in grants if g.target_id == target.id]
        decision = decide_from_grants(relevant, now, context.boundaries + content_boundaries, action)
        return decision, frozenset(tags)

    def decide(
        self,
        subject_id: UUID,
        target_id: UUID,
        relation: RelationKind,
        now: datetime,
        action: Optional[ContentAction] = None,
    ) -> Tuple[Decision, FrozenSet[Tag]]:
        """
        Resolve one (user, target, relation) at ``now``.

        ``action`` applies to content only and defaults to viewing. Never
        raises for missing data; raises ``TypeError`` for a bad relation and
        ``ValueError`` for a missing id or an action on a non-content target.
        """
        check_relation(relation)
        action = content_action(relation, action)
        if subject_id is None or target_id is None:
            raise ValueError("subject_id and target_id are required")

        target = self.store.get(target_kind(relation), target_id)
        if target is None:
            tags = frozenset({("user", subject_id), (relation.value, target_id)})
            return _deny(DecisionReason.TARGET_UNAVAILABLE, now), tags

        if (
            isinstance(target, Content)
            and action == ContentAction.VIEW
            and target.is_public
            and target.is_active
        ):
            tags = frozenset({(relation.value, target_id)})
            return Decision(
                effect=Effect.ALLOW,
                reason=DecisionReason.PUBLIC_CONTENT,
                evaluated_at=now,
            ), tags

        context = self.subject_context(subject_id, now)
        grants = self.target_snapshots(context, relation, target_id)
        decision, tags = self.decide_target(context, relation, target, grants, action)

        logger.debug(
            "Access decision",
            extra={"extra_data": {
                "subject_id": str(subject_id),
                "target_id": str(target_id),
                "relation": relation.value,
                "action": action.value if action else None,
                "effect": decision.effect.value,
                "reason": decision.reason.value,
            }},
        )
        return decision, tags
