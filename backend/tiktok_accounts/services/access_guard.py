"""
Access guard.

Authorizes a single caller operation against a single target entity:
scope resolution first, then the role-hierarchy rules that apply to user
records regardless of group scope.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.config import get_settings
from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import Role, User
from tiktok_accounts.services.scope_resolver import OperationClass, ScopeResolver
from tiktok_accounts.utils.errors import (
    HierarchyViolationError,
    InsufficientRoleError,
    OutOfScopeError,
    SelfReferenceForbiddenError,
)


logger = logging.getLogger(__name__)


class DenyReason(str, enum.Enum):
    """Why an operation was refused."""
    INSUFFICIENT_ROLE = "insufficient_role"
    OUT_OF_SCOPE = "out_of_scope"
    SELF_REFERENCE_FORBIDDEN = "self_reference_forbidden"
    HIERARCHY_VIOLATION = "hierarchy_violation"


_ERROR_FOR_REASON = {
    DenyReason.INSUFFICIENT_ROLE: InsufficientRoleError,
    DenyReason.OUT_OF_SCOPE: OutOfScopeError,
    DenyReason.SELF_REFERENCE_FORBIDDEN: SelfReferenceForbiddenError,
    DenyReason.HIERARCHY_VIOLATION: HierarchyViolationError,
}


@dataclass(frozen=True)
class AccessDecision:
    """Allow, or Deny with a reason code and the target that was refused."""
    allowed: bool
    reason: Optional[DenyReason] = None
    target_id: Optional[UUID] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, target_id: Optional[UUID] = None) -> "AccessDecision":
        return cls(allowed=False, reason=reason, target_id=target_id)

    def __bool__(self) -> bool:
        return self.allowed


Target = Union[Group, TikTokAccount, User]


class AccessGuard:
    """
    Guard for single-entity operations.

    Group-scoped rules:
    - Group targets use their own id, accounts use their group_id, Operator
      users use their group_id
    - AllGroups matches everything, ManagedGroups/SingleGroup need exact
      membership
    - ADMIN operations are never granted to Operators

    User-record rules (on top of scope):
    - Anyone may update their own profile fields, never their own role or
      active flag
    - Managers may only manage Operators they created, inside their scope
    - Only SuperAdmin changes roles or creates Managers/SuperAdmins
    - Nobody deletes themselves; only the root SuperAdmin deletes other
      SuperAdmins
    """

    SELF_SERVICE_FIELDS = frozenset({"username", "hashed_password"})

    def __init__(self, db: Session, root_user_id: Optional[UUID] = None):
        """
        Initialize access guard.

        Args:
            db: Database session
            root_user_id: Reserved id of the root SuperAdmin (defaults to settings)
        """
        self.db = db
        self.scope_resolver = ScopeResolver(db)
        self.root_user_id = root_user_id or get_settings().root_superadmin_id

    # Generic entry points

    def authorize(self, caller: User, target: Target, operation: OperationClass) -> AccessDecision:
        """
        Decide whether caller may perform operation on target.

        Args:
            caller: Authenticated user
            target: Group, TikTokAccount or User
            operation: Operation class

        Returns:
            AccessDecision (truthy when allowed)
        """
        if isinstance(target, TikTokAccount):
            decision = self.authorize_group_id(caller, target.group_id, operation, target_id=target.id)
        elif isinstance(target, Group):
            decision = self.authorize_group_id(caller, target.id, operation)
        elif isinstance(target, User):
            decision = self._authorize_user_target(caller, target, operation)
        else:
            raise ValueError(f"Unsupported target type: {type(target).__name__}")

        self._log_decision(caller, target, operation, decision)
        return decision

    def authorize_group_id(
        self,
        caller: User,
        group_id: Optional[UUID],
        operation: OperationClass,
        target_id: Optional[UUID] = None
    ) -> AccessDecision:
        """
        Scope check against a bare group id.

        Used directly when the target does not exist yet (creating an
        account in a group) or when moving something into a group.
        """
        denied_id = target_id or group_id

        if operation == OperationClass.ADMIN and caller.role == Role.OPERATOR:
            return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, denied_id)

        try:
            scope = self.scope_resolver.resolve_scope(caller, operation)
        except HierarchyViolationError:
            return AccessDecision.deny(DenyReason.HIERARCHY_VIOLATION, caller.id)

        if group_id is not None and scope.contains(group_id):
            return AccessDecision.allow()
        return AccessDecision.deny(DenyReason.OUT_OF_SCOPE, denied_id)

    def require(self, caller: User, target: Target, operation: OperationClass) -> None:
        """
        Authorize or raise.

        Raises:
            OutOfScopeError, InsufficientRoleError, SelfReferenceForbiddenError,
            HierarchyViolationError: matching the deny reason
        """
        self.raise_for_decision(self.authorize(caller, target, operation), operation)

    def raise_for_decision(self, decision: AccessDecision, operation: Optional[OperationClass] = None) -> None:
        """Raise the typed error for a denied decision; no-op when allowed."""
        if decision.allowed:
            return
        error_class = _ERROR_FOR_REASON[decision.reason]
        raise error_class(
            f"Access denied ({decision.reason.value})",
            decision.target_id,
            {"operation": operation.value if operation else None}
        )

    def require_role(self, caller: User, *roles: Role) -> None:
        """
        Role gate independent of scope.

        Raises:
            InsufficientRoleError: If caller's role is not one of roles
        """
        if caller.role not in roles:
            raise InsufficientRoleError(
                "Role not permitted for this operation",
                caller.id,
                {"role": caller.role.value, "required": [r.value for r in roles]}
            )

    # User-record rules

    def authorize_user_create(self, caller: User, role: Role, group_id: Optional[UUID]) -> AccessDecision:
        """
        May caller create a user with this role in this group?

        SuperAdmin may create anyone. Managers may only create Operators in
        a group they manage. Operators may not create users.
        """
        if caller.role == Role.SUPER_ADMIN:
            return AccessDecision.allow()

        if caller.role == Role.MANAGER:
            if role != Role.OPERATOR:
                return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, caller.id)
            if group_id is None:
                # The missing group is reported by the hierarchy invariant check
                return AccessDecision.allow()
            return self.authorize_group_id(caller, group_id, OperationClass.WRITE)

        if caller.role == Role.OPERATOR:
            return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, caller.id)

        raise ValueError(f"Unhandled role: {caller.role}")

    def authorize_user_update(self, caller: User, target: User, changed_fields: Iterable[str]) -> AccessDecision:
        """
        May caller change these fields of target?

        Args:
            caller: Authenticated user
            target: User record being changed
            changed_fields: Names of the attributes being changed
        """
        fields = set(changed_fields)

        if "role" in fields and caller.role != Role.SUPER_ADMIN:
            return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)

        if caller.id == target.id:
            if fields & {"role", "is_active"}:
                return AccessDecision.deny(DenyReason.SELF_REFERENCE_FORBIDDEN, target.id)
            if fields <= self.SELF_SERVICE_FIELDS or caller.role == Role.SUPER_ADMIN:
                return AccessDecision.allow()
            return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)

        return self._authorize_user_management(caller, target)

    def authorize_user_delete(self, caller: User, target: User) -> AccessDecision:
        """
        May caller delete target?

        Self-deletion is always refused. A SuperAdmin may delete anyone
        except another SuperAdmin, unless the caller is the root SuperAdmin.
        """
        if caller.id == target.id:
            return AccessDecision.deny(DenyReason.SELF_REFERENCE_FORBIDDEN, target.id)

        if caller.role == Role.SUPER_ADMIN:
            if target.role == Role.SUPER_ADMIN and caller.id != self.root_user_id:
                return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)
            return AccessDecision.allow()

        return self._authorize_user_management(caller, target)

    def _authorize_user_target(self, caller: User, target: User, operation: OperationClass) -> AccessDecision:
        if operation == OperationClass.READ:
            if caller.id == target.id or caller.role == Role.SUPER_ADMIN:
                return AccessDecision.allow()
            if target.role == Role.OPERATOR:
                return self.authorize_group_id(caller, target.group_id, operation, target_id=target.id)
            # Managers and SuperAdmins are only visible on the admin path
            return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)

        if operation == OperationClass.WRITE:
            return self.authorize_user_update(caller, target, self.SELF_SERVICE_FIELDS)

        if operation == OperationClass.ADMIN:
            if caller.id == target.id:
                return AccessDecision.deny(DenyReason.SELF_REFERENCE_FORBIDDEN, target.id)
            return self._authorize_user_management(caller, target)

        raise ValueError(f"Unhandled operation: {operation}")

    def _authorize_user_management(self, caller: User, target: User) -> AccessDecision:
        """Manage another user's record (update/deactivate/delete)."""
        if caller.role == Role.SUPER_ADMIN:
            return AccessDecision.allow()

        if caller.role == Role.MANAGER:
            if target.role != Role.OPERATOR:
                return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)
            scoped = self.authorize_group_id(caller, target.group_id, OperationClass.WRITE, target_id=target.id)
            if not scoped:
                return scoped
            # Scope is necessary but not sufficient: only own Operators
            if target.created_by != caller.id:
                return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)
            return AccessDecision.allow()

        if caller.role == Role.OPERATOR:
            return AccessDecision.deny(DenyReason.INSUFFICIENT_ROLE, target.id)

        raise ValueError(f"Unhandled role: {caller.role}")

    def _log_decision(self, caller: User, target: Target, operation: OperationClass, decision: AccessDecision) -> None:
        if decision.allowed:
            logger.debug(
                "Allowed %s on %s %s for user %s",
                operation.value, type(target).__name__, target.id, caller.id
            )
        else:
            logger.info(
                "Denied %s on %s %s for user %s: %s",
                operation.value, type(target).__name__, target.id, caller.id, decision.reason.value
            )
