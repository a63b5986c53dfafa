"""
Hierarchy Validator - structural checks run before menus or roles are
written or re-parented.

Menu rules:
- Root placement is level 0
- Parent must exist and be live
- No cycles (walking up from the parent never reaches the node)
- ``parent level + 1 + height of the moved subtree <= MAX_MENU_LEVEL``

Checks run in that order, so a missing parent is reported before a cycle and
a cycle before a depth violation. Every walk is iterative with a visited set.

Role rules: parent must exist and no cycles. Role chains have no depth cap;
a walk ends at a root or at the first revisited node.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Set
from uuid import UUID

from .exceptions import StructuralViolationError
from .models import MAX_MENU_LEVEL, RejectionCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacementResult:
    """OK with the resulting level, or a structured rejection."""
    ok: bool
    level: Optional[int] = None
    code: Optional[RejectionCode] = None
    message: str = ""

    @classmethod
    def accept(cls, level: int) -> "PlacementResult":
        return cls(ok=True, level=level)

    @classmethod
    def reject(cls, code: RejectionCode, message: str) -> "PlacementResult":
        return cls(ok=False, code=code, message=message)

    def raise_for_rejection(self) -> "PlacementResult":
        if not self.ok:
            raise StructuralViolationError(self.code, self.message)
        return self


def _walk_up(get_node, start_id: UUID, forbidden: Optional[UUID], limit: Optional[int] = None):
    """
    Follow parent links from ``start_id`` until a root.

    Returns ``(depth, cyclic, truncated)``. ``depth`` counts edges from
    ``start_id`` to its root; ``cyclic`` is set when the walk reaches
    ``forbidden`` or revisits a node; ``truncated`` when it passed ``limit``
    edges (``None`` walks to the root).
    """
    visited: Set[UUID] = set()
    current_id = start_id
    depth = 0
    while current_id is not None:
        if current_id == forbidden or current_id in visited:
            return depth, True, False
        if limit is not None and depth > limit:
            return depth, False, True
        visited.add(current_id)
        node = get_node(current_id)
        if node is None:
            break
        current_id = node.parent_id
        if current_id is not None:
            depth += 1
    return depth, False, False


def subtree_height(store, menu_id: Optional[UUID]) -> int:
    """Edges from ``menu_id`` down to its deepest live descendant."""
    if menu_id is None:
        return 0
    height = 0
    frontier = [menu_id]
    visited: Set[UUID] = {menu_id}
    while frontier:
        children = [
            child.id for child in store.menu_children(frontier)
            if child.id not in visited
        ]
        if not children:
            break
        visited.update(children)
        frontier = children
        height += 1
        if height > MAX_MENU_LEVEL + 1:
            break
    return height


def validate_menu_placement(
    store,
    menu_id: Optional[UUID],
    proposed_parent_id: Optional[UUID],
) -> PlacementResult:
    """
    Validate placing ``menu_id`` (None for a new menu) under a parent.

    Returns the level the menu would get.
    """
    height = subtree_height(store, menu_id)

    if proposed_parent_id is None:
        if height > MAX_MENU_LEVEL:
            return PlacementResult.reject(
                RejectionCode.MAX_DEPTH_EXCEEDED,
                f"Subtree of height {height} does not fit under the level cap",
            )
        return PlacementResult.accept(0)

    parent = store.get_menu(proposed_parent_id)
    if parent is None:
        return PlacementResult.reject(
            RejectionCode.PARENT_NOT_FOUND,
            f"Parent menu not found: {proposed_parent_id}",
        )

    parent_depth, cyclic, truncated = _walk_up(
        lambda node_id: store.get_menu(node_id, include_deleted=True),
        proposed_parent_id,
        menu_id,
        MAX_MENU_LEVEL + 1,
    )
    if cyclic:
        return PlacementResult.reject(
            RejectionCode.CYCLE_DETECTED,
            "Menu cannot be placed under itself or one of its descendants",
        )

    level = parent_depth + 1
    if truncated or level + height > MAX_MENU_LEVEL:
        return PlacementResult.reject(
            RejectionCode.MAX_DEPTH_EXCEEDED,
            f"Menu hierarchy is limited to {MAX_MENU_LEVEL + 1} levels",
        )

    return PlacementResult.accept(level)


def validate_menu_integrity(store, menu_id: UUID) -> PlacementResult:
    """Re-check a stored menu's placement and that its level column agrees."""
    menu = store.get_menu(menu_id)
    if menu is None:
        return PlacementResult.reject(
            RejectionCode.PARENT_NOT_FOUND,
            f"Menu not found: {menu_id}",
        )

    result = validate_menu_placement(store, menu_id, menu.parent_id)
    if result.ok and result.level != menu.level:
        logger.warning(
            "Menu level out of sync with placement",
            extra={"extra_data": {"menu_id": str(menu_id), "stored": menu.level, "computed": result.level}},
        )
        return PlacementResult.reject(
            RejectionCode.LEVEL_MISMATCH,
            f"Menu level {menu.level} does not match its placement ({result.level})",
        )
    return result


def validate_role_parent(
    store,
    role_id: Optional[UUID],
    proposed_parent_id: Optional[UUID],
) -> PlacementResult:
    """Parent must exist and must not create a cycle. Roles have no depth cap."""
    if proposed_parent_id is None:
        return PlacementResult.accept(0)

    parent = store.get_role(proposed_parent_id)
    if parent is None:
        return PlacementResult.reject(
            RejectionCode.PARENT_NOT_FOUND,
            f"Parent role not found: {proposed_parent_id}",
        )

    parent_depth, cyclic, _ = _walk_up(
        lambda node_id: store.get_role(node_id, include_deleted=True),
        proposed_parent_id,
        role_id,
    )
    if cyclic:
        return PlacementResult.reject(
            RejectionCode.CYCLE_DETECTED,
            "Role cannot inherit from itself or one of its descendants",
        )

    return PlacementResult.accept(parent_depth + 1)
