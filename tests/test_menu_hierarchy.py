"""Tests for menu placement rules, menu moves and the visible menu tree."""

from uuid import uuid4

import pytest

from core.access_control import (
    EntityKind,
    GrantKind,
    Polarity,
    RejectionCode,
    StructuralViolationError,
    validate_menu_placement,
)
from core.access_control.hierarchy import subtree_height, validate_menu_integrity


@pytest.fixture
def chain(portal):
    """Menus A (level 0) -> B (level 1) -> C (level 2)."""
    a = portal.menu("a")
    b = portal.menu("b", parent=a)
    c = portal.menu("c", parent=b)
    return a, b, c


class TestMenuPlacement:
    """Tests for validate_menu_placement."""

    def test_levels_follow_parents(self, chain):
        """Each child sits one level below its parent."""
        assert [m.level for m in chain] == [0, 1, 2]

    def test_root_placement_is_level_zero(self, store):
        result = validate_menu_placement(store, None, None)
        assert result.ok
        assert result.level == 0

    def test_child_of_level_two_rejected(self, portal, chain):
        """A fourth level is never written."""
        _, _, c = chain
        with pytest.raises(StructuralViolationError) as exc_info:
            portal.menu("d", parent=c)
        assert exc_info.value.rejection == RejectionCode.MAX_DEPTH_EXCEEDED

    def test_child_of_level_two_rejected_without_raising(self, store, chain):
        """The validator reports the rejection as a value."""
        _, _, c = chain
        result = validate_menu_placement(store, None, c.id)
        assert not result.ok
        assert result.code == RejectionCode.MAX_DEPTH_EXCEEDED

    def test_missing_parent_rejected(self, portal):
        with pytest.raises(StructuralViolationError) as exc_info:
            portal.service.create_menu("orphan", "Orphan", parent_id=uuid4())
        assert exc_info.value.rejection == RejectionCode.PARENT_NOT_FOUND

    def test_deleted_parent_rejected(self, service, portal):
        """Soft-deleted menus cannot take children."""
        retired = portal.menu("retired")
        service.delete_entity(EntityKind.MENU, retired.id)

        with pytest.raises(StructuralViolationError) as exc_info:
            portal.menu("late", parent=retired)
        assert exc_info.value.rejection == RejectionCode.PARENT_NOT_FOUND

    def test_cycle_rejected(self, service, chain):
        """A menu cannot move under its own descendant."""
        a, _, c = chain
        with pytest.raises(StructuralViolationError) as exc_info:
            service.move_menu(a.id, c.id)
        assert exc_info.value.rejection == RejectionCode.CYCLE_DETECTED

    def test_self_parent_rejected(self, store, chain):
        a, _, _ = chain
        result = validate_menu_placement(store, a.id, a.id)
        assert result.code == RejectionCode.CYCLE_DETECTED

    def test_cycle_reported_before_depth(self, store, chain):
        """Moving a root under its level-2 grandchild is a cycle, not a depth error."""
        a, _, c = chain
        assert validate_menu_placement(store, a.id, c.id).code == RejectionCode.CYCLE_DETECTED

    def test_stored_placement_is_consistent(self, store, chain):
        _, b, _ = chain
        result = validate_menu_integrity(store, b.id)
        assert result.ok
        assert result.level == 1


class TestMoveMenu:
    """Tests for re-parenting menus."""

    def test_move_relevels_subtree(self, service, store, portal):
        """Moving a two-level subtree under a root shifts every level."""
        root = portal.menu("root")
        section = portal.menu("section")
        page = portal.menu("page", parent=section)

        moved = service.move_menu(section.id, root.id)

        assert set(moved) == {section.id, page.id}
        assert store.get_menu(section.id).level == 1
        assert store.get_menu(page.id).level == 2

    def test_subtree_that_would_overflow_rejected(self, service, store, chain, portal):
        """The moved subtree's height counts against the level cap."""
        a, b, _ = chain
        section = portal.menu("section")
        portal.menu("page", parent=section)
        assert subtree_height(store, section.id) == 1

        with pytest.raises(StructuralViolationError) as exc_info:
            service.move_menu(section.id, b.id)
        assert exc_info.value.rejection == RejectionCode.MAX_DEPTH_EXCEEDED
        assert store.get_menu(section.id).parent_id is None

    def test_move_to_root(self, service, store, chain):
        _, _, c = chain
        service.move_menu(c.id, None, sort_order=5)

        moved = store.get_menu(c.id)
        assert moved.parent_id is None
        assert moved.level == 0
        assert moved.sort_order == 5

    def test_menu_with_children_cannot_be_deleted(self, service, chain):
        a, _, _ = chain
        with pytest.raises(StructuralViolationError) as exc_info:
            service.delete_entity(EntityKind.MENU, a.id)
        assert exc_info.value.rejection == RejectionCode.ENTITY_IN_USE


@pytest.fixture
def navigator(service, portal):
    """User holding role ``navigator``; returns (user, role)."""
    role = portal.role("navigator")
    user = portal.user()
    service.assign_role(user.id, role.id)
    return user, role


class TestVisibleMenuTree:
    """Tests for visible_menu_tree and menu_breadcrumb."""

    def test_only_granted_menus_shown(self, service, portal, navigator):
        user, role = navigator
        reports = portal.menu("reports")
        portal.menu("admin")
        service.grant_menu(role.id, reports.id)

        tree = service.visible_menu_tree(user.id)

        assert [node.slug for node in tree] == ["reports"]
        assert tree[0].decision.allowed

    def test_children_of_hidden_parent_pruned(self, service, portal, navigator):
        """Granting a child alone does not surface it."""
        user, role = navigator
        admin = portal.menu("admin")
        audit_log = portal.menu("audit-log", parent=admin)
        service.grant_menu(role.id, audit_log.id)

        assert service.visible_menu_tree(user.id) == []

        service.grant_menu(role.id, admin.id)
        tree = service.visible_menu_tree(user.id)
        assert [node.slug for node in tree] == ["admin"]
        assert [child.slug for child in tree[0].children] == ["audit-log"]

    def test_siblings_ordered_by_sort_order_then_name(self, service, portal, navigator):
        user, role = navigator
        menus = [
            portal.menu("zeta", sort_order=1),
            portal.menu("beta", sort_order=2),
            portal.menu("alpha", sort_order=2),
        ]
        for menu in menus:
            service.grant_menu(role.id, menu.id)

        tree = service.visible_menu_tree(user.id)
        assert [node.slug for node in tree] == ["zeta", "alpha", "beta"]

    def test_hidden_and_inactive_menus_excluded(self, service, portal, navigator):
        user, role = navigator
        hidden = portal.menu("hidden", is_visible=False)
        inactive = portal.menu("inactive", is_active=False)
        service.grant_menu(role.id, hidden.id)
        service.grant_menu(role.id, inactive.id)

        assert service.visible_menu_tree(user.id) == []

    def test_menu_deny_overrides_lower_grant(self, service, portal, navigator):
        """Menu grants follow the same ranking as permissions."""
        user, role = navigator
        other = portal.role("restricted")
        service.assign_role(user.id, other.id)
        billing = portal.menu("billing")
        service.grant_menu(role.id, billing.id, priority=1)
        service.grant_menu(other.id, billing.id, priority=5, polarity=Polarity.DENY)

        assert service.visible_menu_tree(user.id) == []

    def test_tree_reflects_revocation(self, service, portal, navigator):
        user, role = navigator
        reports = portal.menu("reports")
        service.grant_menu(role.id, reports.id)
        assert len(service.visible_menu_tree(user.id)) == 1

        service.revoke_menu(role.id, reports.id)

        assert service.visible_menu_tree(user.id) == []

    def test_to_dict_includes_decision_source(self, service, portal, navigator):
        user, role = navigator
        reports = portal.menu("reports", url="/reports", icon="chart")
        service.grant_menu(role.id, reports.id)

        node = service.visible_menu_tree(user.id)[0].to_dict()

        assert node["id"] == str(reports.id)
        assert node["url"] == "/reports"
        assert node["source"] == "granted"
        assert node["children"] == []

    def test_breadcrumb(self, service, portal, navigator):
        """Breadcrumb lists the root-to-menu path when every step is allowed."""
        user, role = navigator
        a = portal.menu("a")
        b = portal.menu("b", parent=a)
        c = portal.menu("c", parent=b)
        for menu in (a, b, c):
            service.grant_menu(role.id, menu.id)

        assert [node.slug for node in service.menu_breadcrumb(user.id, c.id)] == ["a", "b", "c"]

        service.revoke_menu(role.id, b.id)
        assert service.menu_breadcrumb(user.id, c.id) == []

    def test_tree_requires_user(self, service):
        with pytest.raises(ValueError):
            service.visible_menu_tree(None)


class TestMenuOverrides:
    """Per-role labels, icons, URLs and ordering carried on menu grants."""

    def test_winning_grant_restyles_node(self, service, portal, navigator):
        user, role = navigator
        reports = portal.menu("reports", url="/reports", icon="chart")
        service.grant_menu(
            role.id, reports.id,
            custom_label="My Reports", custom_icon="star", custom_url="/me/reports",
        )

        node = service.visible_menu_tree(user.id)[0]

        assert node.name == "Reports"
        assert node.display_name == "My Reports"
        assert node.icon == "star"
        assert node.url == "/me/reports"
        assert node.to_dict()["name"] == "My Reports"

    def test_unset_overrides_keep_menu_values(self, service, portal, navigator):
        user, role = navigator
        reports = portal.menu("reports", url="/reports", icon="chart")
        service.grant_menu(role.id, reports.id, custom_label="Mine")

        node = service.visible_menu_tree(user.id)[0]

        assert node.display_name == "Mine"
        assert node.url == "/reports"
        assert node.icon == "chart"

    def test_custom_sort_order_reorders_siblings(self, service, portal, navigator):
        user, role = navigator
        first = portal.menu("first", sort_order=1)
        second = portal.menu("second", sort_order=2)
        service.grant_menu(role.id, first.id, custom_sort_order=10)
        service.grant_menu(role.id, second.id)

        tree = service.visible_menu_tree(user.id)

        assert [node.slug for node in tree] == ["second", "first"]
        assert tree[1].sort_order == 10

    def test_overrides_follow_winning_grant(self, service, portal, navigator):
        """Two roles grant the menu; the higher-ranked grant's label applies."""
        user, role = navigator
        analyst = portal.role("analyst")
        service.assign_role(user.id, analyst.id)
        reports = portal.menu("reports")
        service.grant_menu(role.id, reports.id, priority=1, custom_label="Navigator Reports")
        service.grant_menu(analyst.id, reports.id, priority=5, custom_label="Analyst Reports")

        assert service.visible_menu_tree(user.id)[0].display_name == "Analyst Reports"

    def test_regrant_replaces_overrides(self, service, portal, navigator):
        user, role = navigator
        reports = portal.menu("reports")
        service.grant_menu(role.id, reports.id, custom_label="Mine")
        assert service.visible_menu_tree(user.id)[0].display_name == "Mine"

        outcome = service.grant_menu(role.id, reports.id)

        assert outcome.changed
        assert service.visible_menu_tree(user.id)[0].display_name == "Reports"

    def test_breadcrumb_uses_overrides(self, service, portal, navigator):
        user, role = navigator
        home = portal.menu("home")
        reports = portal.menu("reports", parent=home)
        service.grant_menu(role.id, home.id, custom_label="Start")
        service.grant_menu(role.id, reports.id)

        crumbs = service.menu_breadcrumb(user.id, reports.id)

        assert [node.to_dict()["name"] for node in crumbs] == ["Start", "Reports"]

    def test_overrides_rejected_on_other_grants(self, service, portal):
        role = portal.role()
        permission = portal.permission()
        with pytest.raises(ValueError):
            service._grant(GrantKind.PERMISSION, role.id, permission.id, custom_label="Nope")
