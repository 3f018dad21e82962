"""Group administration service."""
import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import Role, User
from tiktok_accounts.services.access_guard import AccessGuard
from tiktok_accounts.services.entity_store import EntityStore
from tiktok_accounts.services.scope_resolver import OperationClass
from tiktok_accounts.utils.errors import ConflictError, InsufficientRoleError
from tiktok_accounts.utils.invariants import check_manager_reference


logger = logging.getLogger(__name__)


class GroupService:
    """
    Service for managing groups.

    Manager assignment is the only thing that grants a Manager scope over
    a group; creating a group does not.
    """

    UPDATABLE_FIELDS = frozenset({"name", "description", "is_active"})

    def __init__(self, db: Session, guard: Optional[AccessGuard] = None):
        """
        Initialize group service.

        Args:
            db: Database session
            guard: Access guard (built from db when omitted)
        """
        self.db = db
        self.store = EntityStore(db)
        self.guard = guard or AccessGuard(db)

    def create_group(
        self,
        caller: User,
        name: str,
        description: Optional[str] = None,
        managed_by: Optional[UUID] = None,
    ) -> Group:
        """
        Create a group.

        SuperAdmin may assign any active Manager (or none). A Manager may
        only name themselves, and is assigned by default.

        Raises:
            InsufficientRoleError: If caller is an Operator, or a Manager
                naming someone else
            HierarchyViolationError: If managed_by is not an active Manager
        """
        self.guard.require_role(caller, Role.SUPER_ADMIN, Role.MANAGER)

        if caller.role == Role.MANAGER:
            if managed_by is None:
                managed_by = caller.id
            elif managed_by != caller.id:
                raise InsufficientRoleError(
                    "Managers can only create groups they manage",
                    managed_by
                )

        if managed_by is not None:
            check_manager_reference(self.db, managed_by)

        group = Group(
            name=name,
            description=description,
            created_by=caller.id,
            managed_by=managed_by,
            is_active=True,
        )
        self.store.create(group)
        self.db.commit()
        self.db.refresh(group)

        logger.info("Group %s created by %s (manager=%s)", group.id, caller.id, managed_by)
        return group

    def get_group(self, caller: User, group_id: UUID) -> Group:
        """Fetch a group in caller's scope."""
        group = self.store.find(EntityStore.GROUP, group_id)
        self.guard.require(caller, group, OperationClass.READ)
        return group

    def list_groups(self, caller: User) -> List[Group]:
        """Groups in caller's read scope, ordered by name."""
        group_ids = self.guard.scope_resolver.accessible_group_ids(caller, OperationClass.READ)
        if not group_ids:
            return []
        return self.store.list(EntityStore.GROUP, Group.id.in_(group_ids), order_by=Group.name.asc())

    def update_group(
        self,
        caller: User,
        group_id: UUID,
        **changes
    ) -> Group:
        """
        Update name, description or active flag.

        Requires ADMIN on the group.
        """
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown group fields: {', '.join(sorted(unknown))}")

        group = self.store.find(EntityStore.GROUP, group_id)
        self.guard.require(caller, group, OperationClass.ADMIN)

        self.store.update(group, **changes)
        self.db.commit()

        logger.info("Group %s updated by %s: %s", group.id, caller.id, ", ".join(sorted(changes)))
        return group

    def assign_manager(self, caller: User, group_id: UUID, manager_id: Optional[UUID]) -> Group:
        """
        Assign (or with None, remove) the manager of a group.

        The previous manager loses access on their next request; scope is
        never cached.

        Raises:
            InsufficientRoleError: If caller is not SuperAdmin
            HierarchyViolationError: If manager_id is not an active Manager
        """
        self.guard.require_role(caller, Role.SUPER_ADMIN)
        group = self.store.find(EntityStore.GROUP, group_id)
        if manager_id is not None:
            check_manager_reference(self.db, manager_id)

        previous = group.managed_by
        self.store.update(group, managed_by=manager_id)
        self.db.commit()

        logger.info("Group %s manager changed from %s to %s by %s", group.id, previous, manager_id, caller.id)
        return group

    def group_users(self, caller: User, group_id: UUID) -> List[User]:
        """Members of a group in caller's scope."""
        group = self.get_group(caller, group_id)
        return self.store.list(EntityStore.USER, User.group_id == group.id)

    def delete_group(self, caller: User, group_id: UUID) -> None:
        """
        Delete an empty group.

        Raises:
            InsufficientRoleError: If caller is not SuperAdmin
            ConflictError: While accounts or users still belong to the group
        """
        self.guard.require_role(caller, Role.SUPER_ADMIN)
        group = self.store.find(EntityStore.GROUP, group_id)

        account_count = self.db.query(TikTokAccount).filter(TikTokAccount.group_id == group.id).count()
        user_count = self.db.query(User).filter(User.group_id == group.id).count()
        if account_count or user_count:
            raise ConflictError(
                "Group still has members",
                group.id,
                {"accounts": account_count, "users": user_count}
            )

        self.store.delete(EntityStore.GROUP, group.id)
        self.db.commit()
        logger.info("Group %s deleted by %s", group.id, caller.id)
