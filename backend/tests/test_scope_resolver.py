"""
Scope Resolver Tests

Validates:
1. SuperAdmin resolves to AllGroups
2. Manager resolves to exactly the groups currently pointing at them
3. Operator resolves to their own group, or fails without one
4. Scope is re-read on every call (manager reassignment revokes access)
"""
from uuid import UUID

import pytest

from tiktok_accounts.models.group import Group
from tiktok_accounts.models.user import Role, User
from tiktok_accounts.services.scope_resolver import (
    AllGroups,
    ManagedGroups,
    OperationClass,
    ScopeResolver,
    SingleGroup,
)
from tiktok_accounts.utils.errors import HierarchyViolationError


@pytest.fixture
def resolver(db):
    return ScopeResolver(db)


class TestResolveScope:
    """Test scope shape per role."""

    def test_super_admin_gets_all_groups(self, resolver, org):
        """Test: SuperAdmin scope is AllGroups for every operation class."""
        for operation in OperationClass:
            scope = resolver.resolve_scope(org.admin, operation)
            assert isinstance(scope, AllGroups)
            assert scope.contains(org.g3.id)

    def test_manager_gets_managed_groups(self, resolver, org):
        """Test: Manager scope contains only the groups they manage."""
        scope = resolver.resolve_scope(org.m1, OperationClass.WRITE)

        assert scope == ManagedGroups(frozenset({org.g1.id}))
        assert scope.contains(org.g1.id)
        assert not scope.contains(org.g2.id)

    def test_manager_without_groups_matches_nothing(self, db, resolver, org):
        """Test: A Manager managing no group has an empty scope."""
        m3 = User(id=UUID(int=13), username="m3", hashed_password="x", role=Role.MANAGER, created_by=org.root.id)
        db.add(m3)
        db.commit()

        scope = resolver.resolve_scope(m3)

        assert scope == ManagedGroups(frozenset())
        assert not scope.contains(org.g3.id)
        assert resolver.group_ids_in(scope) == []

    def test_creating_a_group_grants_no_scope(self, db, resolver, org):
        """Test: created_by does not put a group in a Manager's scope."""
        group = Group(name="Created by m2", created_by=org.m2.id, managed_by=org.m1.id)
        db.add(group)
        db.commit()

        assert not resolver.resolve_scope(org.m2).contains(group.id)
        assert resolver.resolve_scope(org.m1).contains(group.id)

    def test_operator_gets_single_group(self, resolver, org):
        """Test: Operator scope is their own group."""
        scope = resolver.resolve_scope(org.op1, OperationClass.READ)

        assert scope == SingleGroup(org.g1.id)
        assert scope.contains(org.g1.id)
        assert not scope.contains(org.g2.id)

    def test_operator_without_group_has_no_scope(self, resolver):
        """Test: Operator without a group raises HierarchyViolationError."""
        orphan = User(id=UUID(int=99), username="orphan", hashed_password="x", role=Role.OPERATOR)

        with pytest.raises(HierarchyViolationError) as exc_info:
            resolver.resolve_scope(orphan)

        assert exc_info.value.identifier == orphan.id
        assert exc_info.value.details["reason"] == "no_scope"


class TestScopeFreshness:
    """Test that scope is never cached."""

    def test_manager_reassignment_revokes_access(self, db, resolver, org):
        """Test: After reassigning g1 to m2, m1 no longer has it in scope."""
        assert resolver.resolve_scope(org.m1).contains(org.g1.id)

        org.g1.managed_by = org.m2.id
        db.commit()

        assert not resolver.resolve_scope(org.m1).contains(org.g1.id)
        assert resolver.resolve_scope(org.m2).contains(org.g1.id)


class TestAccessibleGroupIds:
    """Test materialised scopes."""

    def test_super_admin_lists_every_group(self, resolver, org):
        """Test: AllGroups materialises to every group id, sorted."""
        assert resolver.accessible_group_ids(org.root) == [org.g1.id, org.g2.id, org.g3.id]

    def test_manager_lists_managed_groups(self, resolver, org):
        """Test: ManagedGroups materialises to the managed ids."""
        assert resolver.accessible_group_ids(org.m2) == [org.g2.id]

    def test_operator_lists_own_group(self, resolver, org):
        """Test: SingleGroup materialises to one id."""
        assert resolver.accessible_group_ids(org.op2) == [org.g2.id]
