"""
Scope resolver.

Computes, for a caller and an operation class, the set of groups the
caller may act upon. Scope is resolved fresh from the store on every call;
nothing is cached, so reassigning a group's manager takes effect on the
very next authorization check.
"""
import enum
from dataclasses import dataclass, field
from typing import FrozenSet, List, Union
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.models.group import Group
from tiktok_accounts.models.user import Role, User
from tiktok_accounts.utils.errors import HierarchyViolationError


class OperationClass(str, enum.Enum):
    """Kinds of operation a caller may request."""
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


@dataclass(frozen=True)
class AllGroups:
    """Unrestricted scope (SuperAdmin)."""
    
    def contains(self, group_id: UUID) -> bool:
        return True


@dataclass(frozen=True)
class ManagedGroups:
    """Groups whose managed_by is the caller (Manager)."""
    group_ids: FrozenSet[UUID] = field(default_factory=frozenset)
    
    def contains(self, group_id: UUID) -> bool:
        return group_id in self.group_ids


@dataclass(frozen=True)
class SingleGroup:
    """The caller's own group (Operator)."""
    group_id: UUID
    
    def contains(self, group_id: UUID) -> bool:
        return group_id == self.group_id


ScopeSet = Union[AllGroups, ManagedGroups, SingleGroup]


class ScopeResolver:
    """
    Resolve caller scope.
    
    Rules:
    - SuperAdmin: AllGroups for every operation class
    - Manager: ManagedGroups, the groups currently pointing at the caller
      through managed_by (creating a group grants nothing)
    - Operator: SingleGroup of the caller's own group; an Operator without
      a group has no scope at all
    
    Role-based restrictions that do not depend on groups (e.g. Operators
    never performing ADMIN operations) are applied by the AccessGuard.
    """
    
    def __init__(self, db: Session):
        """
        Initialize scope resolver.
        
        Args:
            db: Database session
        """
        self.db = db
    
    def resolve_scope(self, caller: User, operation: OperationClass = OperationClass.READ) -> ScopeSet:
        """
        Resolve the scope of a caller for an operation class.
        
        Args:
            caller: Authenticated user
            operation: Operation class being requested
            
        Returns:
            AllGroups, ManagedGroups or SingleGroup
            
        Raises:
            HierarchyViolationError: If an Operator has no group
        """
        if caller.role == Role.SUPER_ADMIN:
            return AllGroups()
        
        if caller.role == Role.MANAGER:
            rows = self.db.query(Group.id).filter(Group.managed_by == caller.id).all()
            return ManagedGroups(frozenset(row[0] for row in rows))
        
        if caller.role == Role.OPERATOR:
            if caller.group_id is None:
                raise HierarchyViolationError(
                    "Operator has no group and therefore no scope",
                    caller.id,
                    {"reason": "no_scope", "operation": operation.value}
                )
            return SingleGroup(caller.group_id)
        
        raise ValueError(f"Unhandled role: {caller.role}")
    
    def accessible_group_ids(self, caller: User, operation: OperationClass = OperationClass.READ) -> List[UUID]:
        """
        Materialise the caller's scope into a sorted list of group ids.
        
        Used by list and dashboard paths which need concrete groups rather
        than a membership test.
        """
        scope = self.resolve_scope(caller, operation)
        return self.group_ids_in(scope)
    
    def group_ids_in(self, scope: ScopeSet) -> List[UUID]:
        """Concrete, sorted group ids covered by a scope."""
        if isinstance(scope, AllGroups):
            return sorted(row[0] for row in self.db.query(Group.id).all())
        if isinstance(scope, ManagedGroups):
            return sorted(scope.group_ids)
        if isinstance(scope, SingleGroup):
            return [scope.group_id]
        raise ValueError(f"Unhandled scope: {scope!r}")
