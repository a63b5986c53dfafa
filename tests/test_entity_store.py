"""Tests for EntityStore and GrantRegistry."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from core.access_control import (
    ContentStatus,
    EntityKind,
    EntityNotFoundError,
    GrantConflictError,
    GrantKind,
    MutationStatus,
    RejectionCode,
    RolePermission,
    StructuralViolationError,
    SystemProtectedError,
)
from database.encrypted_fields import DecryptionError, decrypt_field, is_encrypted_value


NOW = datetime(2026, 3, 2, 12, 0, 0)


class TestNames:
    """Names, slugs and uniqueness."""

    def test_email_normalized(self, store):
        user = store.create_user("  Alice@Example.COM ")
        assert user.email == "alice@example.com"
        assert store.get_user_by_email("ALICE@example.com").id == user.id

    def test_invalid_email_rejected(self, store):
        with pytest.raises(StructuralViolationError) as exc_info:
            store.create_user("not-an-email")
        assert exc_info.value.rejection == RejectionCode.INVALID_NAME

    def test_duplicate_email_rejected(self, store):
        store.create_user("bob@example.com")
        with pytest.raises(StructuralViolationError):
            store.create_user("BOB@example.com")

    @pytest.mark.parametrize("name", ["Editor", "has space", "", "9lives"])
    def test_invalid_role_names(self, store, name):
        with pytest.raises(StructuralViolationError) as exc_info:
            store.create_role(name)
        assert exc_info.value.rejection == RejectionCode.INVALID_NAME

    @pytest.mark.parametrize("name", ["reports", "Reports.view", "reports.", "reports.view.all"])
    def test_invalid_permission_names(self, store, name):
        with pytest.raises(StructuralViolationError):
            store.create_permission(name)

    def test_permission_parts_derived_from_name(self, store):
        permission = store.create_permission("reports.export")
        assert permission.module == "reports"
        assert permission.action == "export"
        assert permission.category == "reports"
        assert permission.display_name == "reports.export"

    def test_deleted_names_stay_reserved(self, store):
        """Soft-deleted rows keep their unique names."""
        role = store.create_role("temporary")
        store.delete_entity(EntityKind.ROLE, role.id)

        with pytest.raises(StructuralViolationError):
            store.create_role("temporary")

    def test_role_display_name_default(self, store):
        assert store.create_role("data_steward").display_name == "Data Steward"


class TestSystemProtection:
    """System rows cannot be deleted or have their flag changed."""

    def test_system_role_not_deletable(self, store):
        role = store.create_role("platform_owner", is_system=True)
        with pytest.raises(SystemProtectedError):
            store.delete_entity(EntityKind.ROLE, role.id)
        assert store.get_role(role.id) is not None

    def test_system_flag_cannot_change(self, store):
        role = store.create_role("platform_owner", is_system=True)
        with pytest.raises(SystemProtectedError):
            store.update_role(role.id, is_system=False)

    def test_system_flag_cannot_be_granted(self, store):
        role = store.create_role("ordinary")
        with pytest.raises(SystemProtectedError):
            store.update_role(role.id, is_system=True)

    def test_system_permission_not_renamable(self, store):
        permission = store.create_permission("system.backup", is_system=True)
        with pytest.raises(SystemProtectedError):
            store.update_permission(permission.id, name="system.snapshot")

    def test_ordinary_permission_rename(self, store):
        permission = store.create_permission("reports.view")
        store.update_permission(permission.id, name="dashboards.view")
        assert permission.name == "dashboards.view"
        assert permission.module == "dashboards"

    def test_unknown_fields_rejected(self, store):
        role = store.create_role("ordinary")
        with pytest.raises(TypeError):
            store.update_role(role.id, colour="blue")


class TestDeletion:
    """Referential checks before soft delete."""

    def test_referenced_permission_in_use(self, store, registry):
        role = store.create_role("analyst")
        permission = store.create_permission("analytics.view")
        registry.grant(GrantKind.PERMISSION, role.id, permission.id)

        with pytest.raises(StructuralViolationError) as exc_info:
            store.delete_entity(EntityKind.PERMISSION, permission.id)
        assert exc_info.value.rejection == RejectionCode.ENTITY_IN_USE

    def test_delete_after_revoke(self, store, registry):
        role = store.create_role("analyst")
        permission = store.create_permission("analytics.view")
        registry.grant(GrantKind.PERMISSION, role.id, permission.id)
        registry.revoke_pair(GrantKind.PERMISSION, role.id, permission.id)

        store.delete_entity(EntityKind.ROLE, role.id, when=NOW)

        assert store.get_role(role.id) is None
        deleted = store.get_role(role.id, include_deleted=True)
        assert deleted.deleted_at == NOW
        assert not store.exists(EntityKind.ROLE, role.id)

    def test_role_with_children_in_use(self, store):
        parent = store.create_role("parent_role")
        store.create_role("child_role", parent_id=parent.id)
        assert store.live_references(EntityKind.ROLE, parent.id) == 1

    def test_reparenting_relevels_descendants(self, store):
        root = store.create_role("root_role")
        middle = store.create_role("middle_role")
        leaf = store.create_role("leaf_role", parent_id=middle.id)
        assert leaf.level == 1

        store.update_role(middle.id, parent_id=root.id)

        assert middle.level == 1
        assert leaf.level == 2
        assert store.role_descendants(root.id) == [middle.id, leaf.id]


class TestContentStorage:
    """Content publication windows and encryption at rest."""

    def test_encrypted_body_at_rest(self, store):
        content = store.create_content("board-pack", "Board Pack", body="Q3 revenue", is_encrypted=True)

        assert content.body != "Q3 revenue"
        assert is_encrypted_value(content.body)
        assert store.read_content_body(content) == "Q3 revenue"

    def test_ciphertext_bound_to_content_id(self, store):
        """A body copied onto another row does not decrypt."""
        content = store.create_content("board-pack", "Board Pack", body="Q3 revenue", is_encrypted=True)
        with pytest.raises(DecryptionError):
            decrypt_field(content.body, field_type="content", associated_data=str(uuid4()).encode())

    def test_toggle_encryption_off(self, store):
        content = store.create_content("board-pack", "Board Pack", body="Q3 revenue", is_encrypted=True)
        store.update_content(content.id, is_encrypted=False)
        assert content.body == "Q3 revenue"
        assert not content.is_encrypted

    def test_replace_encrypted_body(self, store):
        content = store.create_content("board-pack", "Board Pack", body="Q3 revenue", is_encrypted=True)
        store.update_content(content.id, body="Q4 revenue")
        assert content.is_encrypted
        assert store.read_content_body(content) == "Q4 revenue"

    def test_plain_body_untouched(self, store):
        content = store.create_content("faq", "FAQ", body="<p>Hello</p>")
        assert content.body == "<p>Hello</p>"
        assert content.status == ContentStatus.DRAFT

    def test_publication_window_validated(self, store):
        with pytest.raises(StructuralViolationError) as exc_info:
            store.create_content("late", "Late", published_at=NOW, expires_at=NOW - timedelta(days=1))
        assert exc_info.value.rejection == RejectionCode.INVALID_WINDOW

    def test_is_published_at(self, store):
        content = store.create_content(
            "campaign", "Campaign",
            status=ContentStatus.PUBLISHED,
            published_at=NOW,
            expires_at=NOW + timedelta(days=7),
        )
        assert not content.is_published_at(NOW - timedelta(seconds=1))
        assert content.is_published_at(NOW)
        assert not content.is_published_at(NOW + timedelta(days=7))


class TestGrantRegistry:
    """Registry behaviour below the service layer."""

    def test_grant_and_find(self, store, registry):
        role = store.create_role("analyst")
        permission = store.create_permission("analytics.view")

        outcome = registry.grant(GrantKind.PERMISSION, role.id, permission.id, priority=3)

        assert outcome.status == MutationStatus.CREATED
        row = registry.find(GrantKind.PERMISSION, role.id, permission.id)
        assert row.id == outcome.grant_id
        assert row.role_id == role.id
        assert row.permission_id == permission.id
        assert row.priority == 3

    def test_kind_must_be_enum(self, registry):
        with pytest.raises(TypeError):
            registry.find("permission", uuid4(), uuid4())

    def test_target_grants_excludes_assignments(self, registry):
        with pytest.raises(TypeError):
            registry.target_grants(GrantKind.USER_ROLE, [uuid4()])

    def test_grant_to_deleted_target_rejected(self, store, registry):
        role = store.create_role("analyst")
        menu = store.create_menu("old", "Old")
        store.delete_entity(EntityKind.MENU, menu.id)

        with pytest.raises(EntityNotFoundError) as exc_info:
            registry.grant(GrantKind.MENU, role.id, menu.id)
        assert exc_info.value.kind == "menu"

    def test_second_live_row_is_a_conflict(self, session, store, registry):
        """The partial unique index rejects a second live grant for a pair."""
        role = store.create_role("analyst")
        permission = store.create_permission("analytics.view")
        registry.grant(GrantKind.PERMISSION, role.id, permission.id)

        duplicate = RolePermission(id=uuid4(), role_id=role.id, permission_id=permission.id)
        session.add(duplicate)

        with pytest.raises(GrantConflictError):
            registry._flush(GrantKind.PERMISSION, role.id, permission.id)

    def test_revoked_rows_do_not_block_new_grants(self, session, store, registry):
        role = store.create_role("analyst")
        permission = store.create_permission("analytics.view")
        registry.grant(GrantKind.PERMISSION, role.id, permission.id)
        registry.revoke_pair(GrantKind.PERMISSION, role.id, permission.id)

        outcome = registry.grant(GrantKind.PERMISSION, role.id, permission.id)

        assert outcome.status == MutationStatus.CREATED
        assert len(registry.list_for_subject(GrantKind.PERMISSION, role.id, include_revoked=True)) == 2
