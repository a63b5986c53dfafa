"""
Grant Registry - the four grant tables as first-class records.

Tables (see ``GrantKind``):
- USER_ROLE:   users -> roles
- PERMISSION:  roles -> permissions
- MENU:        roles -> menus
- CONTENT:     roles -> contents

Each (subject, target) pair has at most one live (not soft-deleted) row.
Re-granting an existing pair updates that row in place; revoking soft-deletes
it. The registry never commits; ``AccessControlService`` owns transactions,
locking, retries and cache invalidation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from database.models import to_naive_utc

from .exceptions import (
    EntityNotFoundError,
    GrantConflictError,
    GrantNotFoundError,
    StructuralViolationError,
)
from .hierarchy import validate_menu_integrity
from .models import (
    GRANT_ENDPOINTS,
    ContentAction,
    GrantKind,
    MutationStatus,
    Polarity,
    RejectionCode,
    UserRole,
    grant_model,
    grant_window,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class GrantOutcome:
    """What a grant or revoke did, and to which row."""
    kind: GrantKind
    status: MutationStatus
    grant_id: Optional[UUID] = None
    subject_id: Optional[UUID] = None
    target_id: Optional[UUID] = None

    @property
    def changed(self) -> bool:
        return self.status != MutationStatus.UNCHANGED


def check_kind(kind) -> GrantKind:
    if not isinstance(kind, GrantKind):
        raise TypeError(f"kind must be a GrantKind, got {type(kind).__name__}")
    return kind


# =============================================================================
# REGISTRY
# =============================================================================

class GrantRegistry:
    """Explicit repository over the grant tables."""

    def __init__(self, session, store):
        self.session = session
        self.store = store

    # =========================================================================
    # READS
    # =========================================================================

    def find(self, kind: GrantKind, subject_id: UUID, target_id: UUID):
        """The live grant for a pair, or None."""
        model = grant_model(check_kind(kind))
        stmt = select(model).where(
            model.subject_id == subject_id,
            model.target_id == target_id,
            model.deleted_at.is_(None),
        )
        rows = list(self.session.execute(stmt).scalars().all())
        if len(rows) > 1:
            raise StructuralViolationError(
                RejectionCode.DUPLICATE_GRANT,
                f"{len(rows)} live {kind.value} grants for one pair",
                subject_id=subject_id,
                target_id=target_id,
            )
        return rows[0] if rows else None

    def get(self, kind: GrantKind, grant_id: UUID):
        """Grant row by id, including revoked rows."""
        model = grant_model(check_kind(kind))
        return self.session.execute(select(model).where(model.id == grant_id)).scalar_one_or_none()

    def user_role_grants(self, user_id: UUID) -> List[UserRole]:
        stmt = select(UserRole).where(UserRole.user_id == user_id, UserRole.deleted_at.is_(None))
        return list(self.session.execute(stmt).scalars().all())

    def target_grants(
        self,
        kind: GrantKind,
        role_ids: Sequence[UUID],
        target_id: Optional[UUID] = None,
    ) -> list:
        """Live role -> target grants held by any of ``role_ids``."""
        if check_kind(kind) == GrantKind.USER_ROLE:
            raise TypeError("target_grants reads role -> target tables only")
        if not role_ids:
            return []
        model = grant_model(kind)
        stmt = select(model).where(
            model.subject_id.in_(list(role_ids)),
            model.deleted_at.is_(None),
        )
        if target_id is not None:
            stmt = stmt.where(model.target_id == target_id)
        return list(self.session.execute(stmt).scalars().all())

    def list_for_subject(self, kind: GrantKind, subject_id: UUID, include_revoked: bool = False) -> list:
        model = grant_model(check_kind(kind))
        stmt = select(model).where(model.subject_id == subject_id)
        if not include_revoked:
            stmt = stmt.where(model.deleted_at.is_(None))
        stmt = stmt.order_by(model.priority.desc(), model.created_at)
        return list(self.session.execute(stmt).scalars().all())

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _flush(self, kind: GrantKind, subject_id: UUID, target_id: UUID) -> None:
        try:
            self.session.flush()
        except IntegrityError as e:
            raise GrantConflictError(
                f"Concurrent {kind.value} grant for the same pair",
                subject_id=subject_id,
                target_id=target_id,
            ) from e

    def grant(
        self,
        kind: GrantKind,
        subject_id: UUID,
        target_id: UUID,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        priority: int = 0,
        polarity: Polarity = Polarity.GRANT,
        is_active: bool = True,
        is_inherited: bool = False,
        is_primary: Optional[bool] = None,
        notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
        actions: Optional[Iterable[ContentAction]] = None,
        custom_label: Optional[str] = None,
        custom_icon: Optional[str] = None,
        custom_url: Optional[str] = None,
        custom_sort_order: Optional[int] = None,
    ) -> GrantOutcome:
        """
        Create or update the single live grant for (subject, target).

        ``actions`` (content grants only) lists what the grant allows and
        defaults to viewing. The ``custom_*`` arguments (menu grants only)
        restyle the menu for the role. Both replace the stored values on a
        re-grant; ``is_primary=None`` leaves the stored flag alone.

        Returns UNCHANGED when the live row already carries these values.
        """
        check_kind(kind)
        customized = (custom_label, custom_icon, custom_url, custom_sort_order)
        if actions is not None and kind != GrantKind.CONTENT:
            raise ValueError("actions apply to content grants only")
        if kind != GrantKind.MENU and any(value is not None for value in customized):
            raise ValueError("custom menu attributes apply to menu grants only")
        if subject_id is None or target_id is None:
            raise ValueError("subject_id and target_id are required")

        starts_at = to_naive_utc(starts_at)
        expires_at = to_naive_utc(expires_at)
        if not grant_window(starts_at, expires_at):
            raise StructuralViolationError(
                RejectionCode.INVALID_WINDOW,
                "starts_at must be before expires_at",
            )
        polarity = Polarity(polarity)

        subject_kind, object_kind = GRANT_ENDPOINTS[kind]
        if not self.store.exists(subject_kind, subject_id):
            raise EntityNotFoundError(subject_kind.value, subject_id)
        if not self.store.exists(object_kind, target_id):
            raise EntityNotFoundError(object_kind.value, target_id)

        if kind == GrantKind.MENU:
            validate_menu_integrity(self.store, target_id).raise_for_rejection()

        values = {
            "starts_at": starts_at,
            "expires_at": expires_at,
            "priority": priority,
            "polarity": polarity,
            "is_active": is_active,
            "is_inherited": is_inherited,
            "notes": notes,
        }
        if kind == GrantKind.USER_ROLE and is_primary is not None:
            values["is_primary"] = is_primary
        elif kind == GrantKind.CONTENT:
            allowed = {ContentAction(a) for a in actions} if actions is not None else {ContentAction.VIEW}
            if not allowed:
                raise ValueError("a content grant needs at least one action")
            for action in ContentAction:
                values[action.flag] = action in allowed
        elif kind == GrantKind.MENU:
            values.update(
                custom_label=custom_label,
                custom_icon=custom_icon,
                custom_url=custom_url,
                custom_sort_order=custom_sort_order,
            )

        row = self.find(kind, subject_id, target_id)
        if row is not None:
            if all(getattr(row, key) == value for key, value in values.items()):
                return GrantOutcome(kind, MutationStatus.UNCHANGED, row.id, subject_id, target_id)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_by = actor_id
            status = MutationStatus.UPDATED
        else:
            model = grant_model(kind)
            row = model(id=uuid4(), created_by=actor_id, updated_by=actor_id, **values)
            row.subject_id = subject_id
            row.target_id = target_id
            self.session.add(row)
            status = MutationStatus.CREATED

        if kind == GrantKind.USER_ROLE and values.get("is_primary"):
            self._clear_other_primaries(subject_id, row.id)

        self._flush(kind, subject_id, target_id)
        logger.info(
            "Grant %s", status.value,
            extra={"extra_data": {
                "kind": kind.value,
                "grant_id": str(row.id),
                "subject_id": str(subject_id),
                "target_id": str(target_id),
                "polarity": polarity.value,
                "priority": priority,
            }},
        )
        return GrantOutcome(kind, status, row.id, subject_id, target_id)

    def _clear_other_primaries(self, user_id: UUID, keep_id: UUID) -> None:
        """One primary role per user."""
        self.session.execute(
            update(UserRole)
            .where(
                UserRole.user_id == user_id,
                UserRole.id != keep_id,
                UserRole.deleted_at.is_(None),
                UserRole.is_primary.is_(True),
            )
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )

    def revoke(self, kind: GrantKind, grant_id: UUID, actor_id: Optional[UUID] = None) -> GrantOutcome:
        """Soft-delete a grant by id; already revoked is UNCHANGED."""
        check_kind(kind)
        row = self.get(kind, grant_id)
        if row is None:
            raise GrantNotFoundError(f"{kind.value} grant", grant_id)
        return self._revoke_row(kind, row, actor_id)

    def revoke_pair(
        self,
        kind: GrantKind,
        subject_id: UUID,
        target_id: UUID,
        actor_id: Optional[UUID] = None,
    ) -> GrantOutcome:
        """Soft-delete the live grant for a pair; no live grant is UNCHANGED."""
        check_kind(kind)
        if subject_id is None or target_id is None:
            raise ValueError("subject_id and target_id are required")

        subject_kind, object_kind = GRANT_ENDPOINTS[kind]
        if self.store.get(subject_kind, subject_id, include_deleted=True) is None:
            raise EntityNotFoundError(subject_kind.value, subject_id)
        if self.store.get(object_kind, target_id, include_deleted=True) is None:
            raise EntityNotFoundError(object_kind.value, target_id)

        row = self.find(kind, subject_id, target_id)
        if row is None:
            return GrantOutcome(kind, MutationStatus.UNCHANGED, None, subject_id, target_id)
        return self._revoke_row(kind, row, actor_id)

    def _revoke_row(self, kind: GrantKind, row, actor_id: Optional[UUID]) -> GrantOutcome:
        if row.deleted_at is not None:
            return GrantOutcome(kind, MutationStatus.UNCHANGED, row.id, row.subject_id, row.target_id)

        row.mark_deleted()
        row.updated_by = actor_id
        if kind == GrantKind.USER_ROLE:
            row.is_primary = False
        self._flush(kind, row.subject_id, row.target_id)
        logger.info(
            "Grant revoked",
            extra={"extra_data": {
                "kind": kind.value,
                "grant_id": str(row.id),
                "subject_id": str(row.subject_id),
                "target_id": str(row.target_id),
            }},
        )
        return GrantOutcome(kind, MutationStatus.REVOKED, row.id, row.subject_id, row.target_id)
