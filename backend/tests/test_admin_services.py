"""
Administrative Service Tests

Validates user, group and account administration:
1. Hierarchy invariants on user creation and update
2. Manager ownership and scope on every mutation
3. Group manager assignment moves scope
4. Account lifecycle (create, move, transfer, cascade delete)
5. Bulk import skips failed rows; export carries the latest counters
6. A failed entity write rolls back to its savepoint only
"""
from datetime import date

import pytest

from tiktok_accounts.models.analytics_snapshot import AnalyticsSnapshot
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import Role
from tiktok_accounts.services.account_service import AccountService
from tiktok_accounts.services.entity_store import EntityStore
from tiktok_accounts.services.group_service import GroupService
from tiktok_accounts.services.user_service import UserService
from tiktok_accounts.utils.errors import (
    ConflictError,
    HierarchyViolationError,
    InsufficientRoleError,
    NotFoundError,
    OutOfScopeError,
    PartialBatchFailureError,
    SelfReferenceForbiddenError,
)


@pytest.fixture
def users(db):
    return UserService(db)


@pytest.fixture
def groups(db):
    return GroupService(db)


@pytest.fixture
def accounts(db):
    return AccountService(db)


class TestUserService:
    """Test user administration."""

    def test_manager_creates_operator_managed_by_self(self, users, org):
        """Test: An Operator created by a Manager is managed by that Manager."""
        operator = users.create_user(org.m1, "op_new", "hash", Role.OPERATOR, group_id=org.g1.id)

        assert operator.managed_by == org.m1.id
        assert operator.created_by == org.m1.id
        assert operator.group_id == org.g1.id

    def test_manager_cannot_create_operator_outside_scope(self, users, org):
        """Test: m1 creating an Operator in g2 is OutOfScope."""
        with pytest.raises(OutOfScopeError):
            users.create_user(org.m1, "op_new", "hash", Role.OPERATOR, group_id=org.g2.id)

    def test_manager_cannot_create_manager(self, users, org):
        """Test: Only SuperAdmin creates Managers."""
        with pytest.raises(InsufficientRoleError):
            users.create_user(org.m1, "m_new", "hash", Role.MANAGER)

    def test_operator_needs_group_and_manager(self, users, org):
        """Test: SuperAdmin creating an Operator without manager breaks the hierarchy."""
        with pytest.raises(HierarchyViolationError) as exc_info:
            users.create_user(org.admin, "op_new", "hash", Role.OPERATOR, group_id=org.g1.id)

        assert exc_info.value.details["invariant"] == "operator_has_manager"

    def test_manager_cannot_be_managed(self, users, org):
        """Test: A Manager with managed_by is a hierarchy violation."""
        with pytest.raises(HierarchyViolationError):
            users.create_user(org.admin, "m_new", "hash", Role.MANAGER, managed_by=org.m1.id)

    def test_managed_by_must_be_a_manager(self, users, org):
        """Test: managed_by pointing at an Operator is refused."""
        with pytest.raises(HierarchyViolationError):
            users.create_user(org.admin, "op_new", "hash", Role.OPERATOR, group_id=org.g1.id, managed_by=org.op2.id)

    def test_duplicate_username(self, users, org):
        """Test: Usernames are unique."""
        with pytest.raises(ConflictError):
            users.create_user(org.admin, "m1", "hash", Role.MANAGER)

    def test_list_users_by_role(self, users, org):
        """Test: SuperAdmin lists all, Manager lists own Operators, Operator lists self."""
        assert len(users.list_users(org.root)) == 6
        assert [u.id for u in users.list_users(org.m1)] == [org.op1.id]
        assert [u.id for u in users.list_users(org.op1)] == [org.op1.id]

    def test_list_users_filters(self, users, org):
        """Test: role, group_id and managed_by narrow the visible set."""
        assert {u.id for u in users.list_users(org.root, role=Role.OPERATOR)} == {org.op1.id, org.op2.id}
        assert [u.id for u in users.list_users(org.root, group_id=org.g1.id)] == [org.op1.id]
        assert [u.id for u in users.list_users(org.root, managed_by=org.m2.id)] == [org.op2.id]
        assert {u.id for u in users.list_users(org.root, role=Role.MANAGER)} == {org.m1.id, org.m2.id}

    def test_list_users_filters_never_widen(self, users, org):
        """Test: A Manager filtering on another group sees nothing."""
        assert users.list_users(org.m1, group_id=org.g2.id) == []
        assert users.list_users(org.m1, managed_by=org.m2.id) == []
        assert users.list_users(org.op1, role=Role.MANAGER) == []

    def test_self_service_update(self, users, org):
        """Test: An Operator may rename themselves but not deactivate themselves."""
        users.update_user(org.op1, org.op1.id, username="op1_renamed")
        assert org.op1.username == "op1_renamed"

        with pytest.raises(SelfReferenceForbiddenError):
            users.update_user(org.op1, org.op1.id, is_active=False)

    def test_manager_deactivates_own_operator(self, users, org):
        """Test: m1 may deactivate op1."""
        users.update_user(org.m1, org.op1.id, is_active=False)

        assert org.op1.is_active is False

    def test_manager_cannot_touch_other_managers_operator(self, users, org):
        """Test: m1 acting on op2 is OutOfScope."""
        with pytest.raises(OutOfScopeError):
            users.update_user(org.m1, org.op2.id, is_active=False)

    def test_promotion_clears_manager_and_group(self, db, users, org):
        """Test: Promoting an Operator to Manager drops managed_by and group_id."""
        promoted = users.update_user(org.admin, org.op1.id, role=Role.MANAGER)

        db.refresh(promoted)
        assert promoted.role == Role.MANAGER
        assert promoted.managed_by is None
        assert promoted.group_id is None
        assert users.list_users(org.root, group_id=org.g1.id) == []

    def test_assign_to_group_out_of_scope(self, users, org):
        """Test: m1 cannot move their Operator into g2."""
        with pytest.raises(OutOfScopeError):
            users.assign_to_group(org.m1, org.op1.id, org.g2.id)

    def test_delete_rules(self, db, users, org):
        """Test: Self-deletion is forbidden; referenced users are kept; unreferenced ones go."""
        with pytest.raises(SelfReferenceForbiddenError):
            users.delete_user(org.admin, org.admin.id)
        with pytest.raises(ConflictError):
            users.delete_user(org.root, org.m1.id)

        users.delete_user(org.m1, org.op1.id)

        with pytest.raises(NotFoundError):
            users.get_user(org.root, org.op1.id)

    def test_unknown_field_rejected(self, users, org):
        """Test: Unknown fields raise ValueError."""
        with pytest.raises(ValueError):
            users.update_user(org.admin, org.op1.id, email="x@example.com")


class TestGroupService:
    """Test group administration."""

    def test_manager_creates_group_they_manage(self, groups, org):
        """Test: A Manager's new group is managed by them and appears in their scope."""
        group = groups.create_group(org.m1, "Delta")

        assert group.managed_by == org.m1.id
        assert group.id in [g.id for g in groups.list_groups(org.m1)]

    def test_manager_cannot_name_another_manager(self, groups, org):
        """Test: m1 cannot create a group managed by m2."""
        with pytest.raises(InsufficientRoleError):
            groups.create_group(org.m1, "Delta", managed_by=org.m2.id)

    def test_operator_cannot_create_group(self, groups, org):
        """Test: Operators do not create groups."""
        with pytest.raises(InsufficientRoleError):
            groups.create_group(org.op1, "Delta")

    def test_assign_manager_moves_scope(self, groups, accounts, org):
        """Test: Reassigning g1 to m2 revokes m1's access immediately."""
        groups.assign_manager(org.root, org.g1.id, org.m2.id)

        with pytest.raises(OutOfScopeError):
            accounts.get_account(org.m1, org.a1.id)
        assert accounts.get_account(org.m2, org.a1.id).id == org.a1.id

    def test_assign_manager_requires_active_manager(self, groups, org):
        """Test: Assigning an Operator as manager is a hierarchy violation."""
        with pytest.raises(HierarchyViolationError):
            groups.assign_manager(org.root, org.g3.id, org.op1.id)

    def test_assign_manager_super_admin_only(self, groups, org):
        """Test: Managers cannot reassign groups."""
        with pytest.raises(InsufficientRoleError):
            groups.assign_manager(org.m1, org.g3.id, org.m1.id)

    def test_list_groups_scoped(self, groups, org):
        """Test: Each role sees its own set of groups."""
        assert [g.name for g in groups.list_groups(org.admin)] == ["Alpha", "Beta", "Gamma"]
        assert [g.name for g in groups.list_groups(org.m2)] == ["Beta"]
        assert [g.name for g in groups.list_groups(org.op1)] == ["Alpha"]

    def test_update_group_requires_admin(self, groups, org):
        """Test: Managers may rename their groups; Operators may not."""
        groups.update_group(org.m1, org.g1.id, name="Alpha Prime")
        assert org.g1.name == "Alpha Prime"

        with pytest.raises(InsufficientRoleError):
            groups.update_group(org.op1, org.g1.id, name="Nope")

    def test_group_users(self, groups, org):
        """Test: Members of a group are listed for callers in scope."""
        assert [u.id for u in groups.group_users(org.m1, org.g1.id)] == [org.op1.id]

    def test_delete_group_with_members_refused(self, groups, org):
        """Test: A group with accounts cannot be deleted."""
        with pytest.raises(ConflictError):
            groups.delete_group(org.root, org.g1.id)

    def test_delete_empty_group(self, groups, org):
        """Test: An empty group is deleted by SuperAdmin."""
        groups.delete_group(org.root, org.g3.id)

        with pytest.raises(NotFoundError):
            groups.get_group(org.root, org.g3.id)


class TestAccountService:
    """Test account administration."""

    def test_create_in_scope(self, accounts, org):
        """Test: An Operator may add an account to their group."""
        account = accounts.create_account(org.op1, "@alpha_new", org.g1.id, nickname="New")

        assert account.account_name == "alpha_new"
        assert account.created_by == org.op1.id

    def test_create_out_of_scope(self, accounts, org):
        """Test: Adding to a group outside scope is refused."""
        with pytest.raises(OutOfScopeError):
            accounts.create_account(org.m1, "beta_new", org.g2.id)

    def test_create_in_missing_group(self, accounts, org):
        """Test: The group must exist."""
        from uuid import UUID

        with pytest.raises(NotFoundError):
            accounts.create_account(org.admin, "ghost", UUID(int=999))

    def test_duplicate_name(self, accounts, org):
        """Test: Account names are unique."""
        with pytest.raises(ConflictError):
            accounts.create_account(org.admin, "alpha_one", org.g3.id)

    def test_list_scoped(self, accounts, org):
        """Test: Listing only returns accounts in scope."""
        assert [a.account_name for a in accounts.list_accounts(org.m1)] == ["alpha_one", "alpha_two"]
        assert [a.account_name for a in accounts.list_accounts(org.admin, group_id=org.g2.id)] == ["beta_one"]
        with pytest.raises(OutOfScopeError):
            accounts.list_accounts(org.op1, group_id=org.g2.id)

    def test_update_profile(self, accounts, org):
        """Test: WRITE allows editing contact metadata."""
        account = accounts.update_account(org.op1, org.a1.id, notes="call weekly", tags=["food"])

        assert account.notes == "call weekly"
        assert account.tags == ["food"]

    def test_move_needs_scope_on_both_groups(self, accounts, org):
        """Test: m1 cannot move an account into g2."""
        with pytest.raises(OutOfScopeError):
            accounts.update_account(org.m1, org.a1.id, group_id=org.g2.id)

    def test_transfer_requires_admin(self, accounts, org):
        """Test: Operators cannot transfer; SuperAdmin can."""
        with pytest.raises(InsufficientRoleError):
            accounts.transfer_account(org.op1, org.a1.id, org.g1.id)

        account = accounts.transfer_account(org.admin, org.a1.id, org.g3.id)

        assert account.group_id == org.g3.id

    def test_transfer_keeps_snapshots(self, db, accounts, org, ingest):
        """Test: Snapshots follow the account to its new group."""
        ingest(org.a1, date(2024, 1, 1), followers=10)

        accounts.transfer_account(org.admin, org.a1.id, org.g2.id)

        assert db.query(AnalyticsSnapshot).filter(AnalyticsSnapshot.account_id == org.a1.id).count() == 1

    def test_delete_cascades_snapshots(self, db, accounts, org, ingest):
        """Test: Deleting an account removes its snapshots."""
        ingest(org.a1, date(2024, 1, 1), followers=10)
        ingest(org.a1, date(2024, 1, 2), followers=11)

        accounts.delete_account(org.m1, org.a1.id)

        assert db.query(AnalyticsSnapshot).count() == 0

    def test_operator_cannot_delete(self, accounts, org):
        """Test: Deletion is ADMIN and refused to Operators."""
        with pytest.raises(InsufficientRoleError):
            accounts.delete_account(org.op1, org.a1.id)

    def test_update_rejects_empty_group(self, accounts, org):
        """Test: group_id=None is a caller error, not a write."""
        with pytest.raises(ValueError):
            accounts.update_account(org.m1, org.a1.id, group_id=None)

        assert org.a1.group_id == org.g1.id

    def test_rename_normalizes_handle(self, db, accounts, org):
        """Test: Renames strip whitespace and a leading "@", like creation does."""
        account = accounts.update_account(org.m1, org.a1.id, account_name="  @alpha_renamed ")

        db.refresh(account)
        assert account.account_name == "alpha_renamed"

    def test_rename_to_taken_handle_with_at_sign(self, accounts, org):
        """Test: "@alpha_two" collides with the stored "alpha_two"."""
        with pytest.raises(ConflictError):
            accounts.update_account(org.m1, org.a1.id, account_name="@alpha_two")

    def test_rename_to_empty_handle(self, accounts, org):
        """Test: "@" alone is not a handle."""
        with pytest.raises(ValueError):
            accounts.update_account(org.m1, org.a1.id, account_name="@")


class TestAccountImportExport:
    """Test bulk import and export of accounts."""

    def test_import_skips_failed_rows(self, db, accounts, org):
        """Test: Good rows are created, bad rows are reported by name (or index) and kind."""
        result = accounts.import_accounts(org.m1, [
            {"account_name": "@alpha_new", "group_id": org.g1.id, "nickname": "New"},
            {"account_name": "alpha_one", "group_id": org.g1.id},
            {"account_name": "beta_new", "group_id": str(org.g2.id)},
            {"account_name": "", "group_id": org.g1.id},
            {"account_name": "alpha_nogroup"},
            {"account_name": "alpha_str", "group_id": str(org.g1.id), "tags": ["food"]},
        ])

        assert [a.account_name for a in result.created] == ["alpha_new", "alpha_str"]
        assert result.failures == [
            ("alpha_one", "conflict"),
            ("beta_new", "out_of_scope"),
            (3, "invalid_input"),
            ("alpha_nogroup", "invalid_input"),
        ]
        assert db.query(TikTokAccount).filter(TikTokAccount.account_name == "beta_new").count() == 0

    def test_import_raise_for_failures(self, accounts, org):
        """Test: raise_for_failures turns skipped rows into PartialBatchFailureError."""
        result = accounts.import_accounts(org.op1, [
            {"account_name": "alpha_ok", "group_id": org.g1.id},
            {"account_name": "alpha_two", "group_id": org.g1.id},
        ])

        with pytest.raises(PartialBatchFailureError) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.failed_ids == ["alpha_two"]
        assert exc_info.value.succeeded == ["alpha_ok"]

    def test_import_all_good(self, accounts, org):
        """Test: A clean import raises nothing."""
        result = accounts.import_accounts(org.admin, [{"account_name": "gamma_one", "group_id": org.g3.id}])

        assert result.succeeded
        result.raise_for_failures()

    def test_export_latest_snapshot_and_group_name(self, db, accounts, org, ingest):
        """Test: Export carries group name, contact fields and the latest day's counters."""
        accounts.update_account(org.m1, org.a1.id, contact_info="alpha@example.com", tags=["food"])
        ingest(org.a1, date(2024, 1, 1), followers=100, likes=10, videos=1, following=3)
        ingest(org.a1, date(2024, 1, 3), followers=130, likes=15, videos=2, following=4)

        exported = accounts.export_accounts(org.m1)

        assert [row.account_name for row in exported] == ["alpha_one", "alpha_two"]
        alpha_one, alpha_two = exported
        assert alpha_one.group_name == "Alpha"
        assert alpha_one.contact_info == "alpha@example.com"
        assert alpha_one.tags == ["food"]
        assert (alpha_one.follower_count, alpha_one.total_likes, alpha_one.video_count, alpha_one.following_count) == (
            130, 15, 2, 4
        )
        assert alpha_one.snapshot_date == date(2024, 1, 3)
        assert alpha_two.follower_count == 0
        assert alpha_two.snapshot_date is None
        assert alpha_one.to_dict()["snapshot_date"] == "2024-01-03"

    def test_export_is_scoped(self, accounts, org):
        """Test: Export follows list_accounts scope and group filter."""
        assert [row.account_name for row in accounts.export_accounts(org.op2)] == ["beta_one"]
        assert [row.group_name for row in accounts.export_accounts(org.admin, group_id=org.g2.id)] == ["Beta"]
        assert accounts.export_accounts(org.admin, group_id=org.g3.id) == []
        with pytest.raises(OutOfScopeError):
            accounts.export_accounts(org.op1, group_id=org.g2.id)


class TestEntityStoreSavepoints:
    """Test that a failed write only undoes itself."""

    def test_conflict_keeps_earlier_work(self, db, org):
        """Test: A duplicate insert raises ConflictError and earlier changes in the transaction survive."""
        store = EntityStore(db)
        org.a2.notes = "kept"
        store.update(org.a3, notes="also kept")

        with pytest.raises(ConflictError):
            store.create(TikTokAccount(account_name="alpha_one", group_id=org.g1.id, created_by=org.root.id))

        db.commit()
        db.refresh(org.a2)
        db.refresh(org.a3)
        assert org.a2.notes == "kept"
        assert org.a3.notes == "also kept"
        assert db.query(TikTokAccount).filter(TikTokAccount.account_name == "alpha_one").count() == 1

    def test_conflicting_update_reverts_only_itself(self, db, org):
        """Test: A rename onto a taken handle leaves the entity usable and the transaction open."""
        store = EntityStore(db)
        store.update(org.a3, notes="before")

        with pytest.raises(ConflictError):
            store.update(org.a1, account_name="alpha_two")

        db.commit()
        db.refresh(org.a1)
        db.refresh(org.a3)
        assert org.a1.account_name == "alpha_one"
        assert org.a3.notes == "before"
