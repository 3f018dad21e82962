"""User administration service."""
import logging
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import Role, User
from tiktok_accounts.services.access_guard import AccessGuard
from tiktok_accounts.services.entity_store import EntityStore
from tiktok_accounts.services.scope_resolver import OperationClass
from tiktok_accounts.utils.errors import ConflictError, InsufficientRoleError
from tiktok_accounts.utils.invariants import check_manager_reference, check_user_hierarchy


logger = logging.getLogger(__name__)


class UserService:
    """
    Service for managing staff users.

    Every mutation is authorized by the AccessGuard and re-validated
    against the hierarchy invariants before it is written.
    """

    UPDATABLE_FIELDS = frozenset({
        "username",
        "hashed_password",
        "role",
        "group_id",
        "managed_by",
        "is_active",
    })

    def __init__(self, db: Session, guard: Optional[AccessGuard] = None):
        """
        Initialize user service.

        Args:
            db: Database session
            guard: Access guard (built from db when omitted)
        """
        self.db = db
        self.store = EntityStore(db)
        self.guard = guard or AccessGuard(db)

    def create_user(
        self,
        caller: User,
        username: str,
        hashed_password: str,
        role: Role,
        group_id: Optional[UUID] = None,
        managed_by: Optional[UUID] = None,
    ) -> User:
        """
        Create a user.

        A Manager may only create Operators in groups they manage; the new
        Operator is managed by that Manager.

        Args:
            caller: Authenticated user
            username: Unique login name
            hashed_password: Hash produced by the auth layer
            role: Role of the new user
            group_id: Group membership (required for Operators)
            managed_by: Managing Manager (required for Operators)

        Returns:
            Created User

        Raises:
            InsufficientRoleError: If caller may not create this role
            OutOfScopeError: If the group is outside caller's scope
            HierarchyViolationError: If the reference fields are inconsistent
            NotFoundError: If the group does not exist
            ConflictError: If the username is taken
        """
        role = Role(role)
        self.guard.raise_for_decision(
            self.guard.authorize_user_create(caller, role, group_id),
            OperationClass.ADMIN
        )

        if caller.role == Role.MANAGER:
            if managed_by is None:
                managed_by = caller.id
            elif managed_by != caller.id:
                raise InsufficientRoleError(
                    "Managers can only create Operators they manage",
                    managed_by
                )

        check_user_hierarchy(role, group_id, managed_by, created_by=caller.id)
        if managed_by is not None:
            check_manager_reference(self.db, managed_by)
        if group_id is not None:
            self.store.find(EntityStore.GROUP, group_id)
        self._ensure_username_free(username)

        user = User(
            username=username,
            hashed_password=hashed_password,
            role=role,
            group_id=group_id,
            created_by=caller.id,
            managed_by=managed_by,
            is_active=True,
        )
        self.store.create(user)
        self.db.commit()
        self.db.refresh(user)

        logger.info("User %s (%s) created by %s", user.id, role.value, caller.id)
        return user

    def get_user(self, caller: User, user_id: UUID) -> User:
        """Fetch a user the caller may see."""
        user = self.store.find(EntityStore.USER, user_id)
        self.guard.require(caller, user, OperationClass.READ)
        return user

    def list_users(
        self,
        caller: User,
        role: Optional[Role] = None,
        group_id: Optional[UUID] = None,
        managed_by: Optional[UUID] = None,
    ) -> List[User]:
        """
        List visible users, optionally filtered.

        SuperAdmin sees everyone, a Manager sees the users they created or
        manage, an Operator sees only themselves. Filters narrow that set;
        they never widen it.

        Args:
            caller: Authenticated user
            role: Only users with this role
            group_id: Only members of this group
            managed_by: Only users managed by this Manager
        """
        filters = []
        if role is not None:
            filters.append(User.role == Role(role))
        if group_id is not None:
            filters.append(User.group_id == group_id)
        if managed_by is not None:
            filters.append(User.managed_by == managed_by)

        if caller.role == Role.SUPER_ADMIN:
            return self.store.list(EntityStore.USER, *filters)
        if caller.role == Role.MANAGER:
            return self.store.list(
                EntityStore.USER,
                or_(User.created_by == caller.id, User.managed_by == caller.id),
                *filters
            )
        return self.store.list(EntityStore.USER, User.id == caller.id, *filters)

    def update_user(self, caller: User, user_id: UUID, **changes: Any) -> User:
        """
        Update fields of a user.

        Promoting an Operator drops their managed_by and group_id unless
        values are given explicitly.

        Args:
            caller: Authenticated user
            user_id: Target user
            **changes: Subset of UPDATABLE_FIELDS

        Returns:
            Updated User
        """
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {', '.join(sorted(unknown))}")

        target = self.store.find(EntityStore.USER, user_id)
        if "role" in changes:
            changes["role"] = Role(changes["role"])
        changed = {
            name: value for name, value in changes.items()
            if getattr(target, name) != value
        }
        if not changed:
            return target

        self.guard.raise_for_decision(
            self.guard.authorize_user_update(caller, target, changed.keys()),
            OperationClass.WRITE
        )
        if "managed_by" in changed:
            self.guard.require_role(caller, Role.SUPER_ADMIN)
        if "group_id" in changed and changed["group_id"] is not None:
            self.store.find(EntityStore.GROUP, changed["group_id"])
            if caller.role != Role.SUPER_ADMIN:
                self.guard.raise_for_decision(
                    self.guard.authorize_group_id(caller, changed["group_id"], OperationClass.WRITE, target.id),
                    OperationClass.WRITE
                )

        new_role = changed.get("role", target.role)
        if "role" in changed and new_role != Role.OPERATOR:
            # Promotion drops the Operator-only references
            changed.setdefault("managed_by", None)
            changed.setdefault("group_id", None)
        new_managed_by = changed.get("managed_by", target.managed_by)
        check_user_hierarchy(
            new_role,
            changed.get("group_id", target.group_id),
            new_managed_by,
            user_id=target.id,
            created_by=target.created_by,
        )
        if new_managed_by is not None and new_managed_by != target.managed_by:
            check_manager_reference(self.db, new_managed_by)
        if "username" in changed:
            self._ensure_username_free(changed["username"])

        self.store.update(target, **changed)
        self.db.commit()

        logger.info(
            "User %s updated by %s: %s",
            target.id, caller.id, ", ".join(sorted(changed))
        )
        return target

    def assign_to_group(self, caller: User, user_id: UUID, group_id: UUID) -> User:
        """Move a user into a group."""
        return self.update_user(caller, user_id, group_id=group_id)

    def delete_user(self, caller: User, user_id: UUID) -> None:
        """
        Delete a user.

        Refused with ConflictError while other records still point at the
        user; deactivate the user instead in that case.

        Raises:
            SelfReferenceForbiddenError: If caller deletes themselves
            InsufficientRoleError: If the role hierarchy forbids it
            ConflictError: If the user is still referenced
        """
        target = self.store.find(EntityStore.USER, user_id)
        self.guard.raise_for_decision(
            self.guard.authorize_user_delete(caller, target),
            OperationClass.ADMIN
        )

        references = {
            "users": self.db.query(User).filter(
                or_(User.managed_by == target.id, User.created_by == target.id)
            ).count(),
            "groups": self.db.query(Group).filter(
                or_(Group.managed_by == target.id, Group.created_by == target.id)
            ).count(),
            "accounts": self.db.query(TikTokAccount).filter(
                TikTokAccount.created_by == target.id
            ).count(),
        }
        if any(references.values()):
            raise ConflictError("User is still referenced", target.id, {"references": references})

        self.store.delete(EntityStore.USER, target.id)
        self.db.commit()
        logger.info("User %s deleted by %s", target.id, caller.id)

    def _ensure_username_free(self, username: str) -> None:
        if self.db.query(User.id).filter(User.username == username).first() is not None:
            raise ConflictError("Username already exists", username, {"field": "username"})
