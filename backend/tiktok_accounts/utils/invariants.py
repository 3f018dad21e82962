"""
Structural invariants of the user/group reference graph.

Enforces:
1. A Manager is never sub-managed (managed_by empty)
2. An Operator has a manager and a group
3. No user references itself as creator or manager
4. A manager reference points to an existing Manager
5. A group's manager is an active Manager

Fail fast with explicit errors.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.models.user import Role, User
from tiktok_accounts.utils.errors import HierarchyViolationError


def check_user_hierarchy(
    role: Role,
    group_id: Optional[UUID],
    managed_by: Optional[UUID],
    user_id: Optional[UUID] = None,
    created_by: Optional[UUID] = None,
) -> None:
    """
    Validate the reference fields of a user record.
    
    Args:
        role: Role of the user
        group_id: Group membership
        managed_by: Managing Manager
        user_id: The user's own id (None when not yet created)
        created_by: Creator reference
        
    Raises:
        HierarchyViolationError: If any invariant is broken
    """
    if role == Role.MANAGER and managed_by is not None:
        raise HierarchyViolationError(
            "Managers cannot be managed by another user",
            user_id,
            {"invariant": "manager_not_sub_managed", "managed_by": str(managed_by)}
        )
    
    if role == Role.OPERATOR:
        if managed_by is None:
            raise HierarchyViolationError(
                "Operators must have a manager",
                user_id,
                {"invariant": "operator_has_manager"}
            )
        if group_id is None:
            raise HierarchyViolationError(
                "Operators must belong to a group",
                user_id,
                {"invariant": "operator_has_group"}
            )
    
    if user_id is not None and user_id in (managed_by, created_by):
        raise HierarchyViolationError(
            "A user cannot reference itself as creator or manager",
            user_id,
            {"invariant": "no_self_reference"}
        )


def check_manager_reference(db: Session, manager_id: UUID) -> User:
    """
    Invariant: managed_by must point at an existing, active Manager.
    
    Returns:
        The referenced manager
        
    Raises:
        HierarchyViolationError: If the reference is not an active Manager
    """
    manager = db.get(User, manager_id)
    if manager is None or manager.role != Role.MANAGER or not manager.is_active:
        raise HierarchyViolationError(
            "Referenced manager is not an active Manager",
            manager_id,
            {
                "invariant": "manager_reference",
                "exists": manager is not None,
                "role": manager.role.value if manager is not None else None,
            }
        )
    return manager
