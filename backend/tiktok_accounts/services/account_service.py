"""TikTok account administration service."""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from tiktok_accounts.models.analytics_snapshot import AnalyticsSnapshot
from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import User
from tiktok_accounts.services.access_guard import AccessGuard
from tiktok_accounts.services.entity_store import EntityStore
from tiktok_accounts.services.scope_resolver import OperationClass
from tiktok_accounts.utils.errors import ConflictError, OutOfScopeError, PartialBatchFailureError, ServiceError


logger = logging.getLogger(__name__)


@dataclass
class AccountImportResult:
    """
    Outcome of a bulk import.

    Attributes:
        created: Accounts that were registered, in row order
        failures: (account name, or row index when the name is missing,
            error kind) pairs, in row order
    """
    created: List[TikTokAccount] = field(default_factory=list)
    failures: List[Tuple[Union[str, int], str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailureError if any row was skipped."""
        if self.failures:
            raise PartialBatchFailureError(
                self.failures,
                succeeded=[account.account_name for account in self.created]
            )


@dataclass
class AccountExport:
    """One exported account: profile, contact metadata and latest counters."""
    account_name: str
    group_name: str
    nickname: Optional[str] = None
    uid: Optional[str] = None
    location: Optional[str] = None
    registration_date: Optional[date] = None
    account_owner: Optional[str] = None
    contact_info: Optional[str] = None
    responsible_person: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    follower_count: int = 0
    following_count: int = 0
    total_likes: int = 0
    video_count: int = 0
    snapshot_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_name": self.account_name,
            "group_name": self.group_name,
            "nickname": self.nickname,
            "uid": self.uid,
            "location": self.location,
            "registration_date": self.registration_date.isoformat() if self.registration_date else None,
            "account_owner": self.account_owner,
            "contact_info": self.contact_info,
            "responsible_person": self.responsible_person,
            "notes": self.notes,
            "tags": list(self.tags),
            "follower_count": self.follower_count,
            "following_count": self.following_count,
            "total_likes": self.total_likes,
            "video_count": self.video_count,
            "snapshot_date": self.snapshot_date.isoformat() if self.snapshot_date else None,
        }


class AccountService:
    """
    Service for managing TikTok accounts.

    Rules:
    - Creating an account needs WRITE on the target group
    - Editing needs WRITE on the account (and on the new group when moved)
    - Deleting needs ADMIN and removes the account's snapshots with it
    - Transfer needs ADMIN on both groups and only changes group_id
    - Handles are stored without a leading "@" on every write path
    """

    PROFILE_FIELDS = frozenset({
        "nickname",
        "uid",
        "location",
        "registration_date",
        "account_owner",
        "contact_info",
        "responsible_person",
        "notes",
        "tags",
    })
    UPDATABLE_FIELDS = PROFILE_FIELDS | {"account_name", "group_id", "is_active"}

    def __init__(self, db: Session, guard: Optional[AccessGuard] = None):
        """
        Initialize account service.

        Args:
            db: Database session
            guard: Access guard (built from db when omitted)
        """
        self.db = db
        self.store = EntityStore(db)
        self.guard = guard or AccessGuard(db)

    @staticmethod
    def normalize_name(account_name: str) -> str:
        """Strip whitespace and a leading "@" from a handle."""
        account_name = (account_name or "").strip().lstrip("@")
        if not account_name:
            raise ValueError("account_name cannot be empty")
        return account_name

    def create_account(self, caller: User, account_name: str, group_id: UUID, **profile: Any) -> TikTokAccount:
        """
        Register an account in a group.

        Args:
            caller: Authenticated user
            account_name: TikTok handle, unique across the system
            group_id: Owning group
            **profile: Optional PROFILE_FIELDS

        Raises:
            NotFoundError: If the group does not exist
            OutOfScopeError: If the group is outside caller's scope
            ConflictError: If the handle is already registered
        """
        unknown = set(profile) - self.PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {', '.join(sorted(unknown))}")

        account_name = self.normalize_name(account_name)

        group = self.store.find(EntityStore.GROUP, group_id)
        self.guard.require(caller, group, OperationClass.WRITE)
        self._ensure_name_free(account_name)

        account = TikTokAccount(
            account_name=account_name,
            group_id=group.id,
            created_by=caller.id,
            is_active=True,
            **profile
        )
        self.store.create(account)
        self.db.commit()
        self.db.refresh(account)

        logger.info("Account %s (%s) created in group %s by %s", account.id, account_name, group.id, caller.id)
        return account

    def import_accounts(self, caller: User, rows: Iterable[Dict[str, Any]]) -> AccountImportResult:
        """
        Register many accounts, skipping the rows that fail.

        Each row holds account_name, group_id and optional PROFILE_FIELDS and
        goes through create_account, so every row is authorized on its own.

        Args:
            caller: Authenticated user
            rows: Account rows, in import order

        Returns:
            AccountImportResult; call raise_for_failures() for all-or-error
        """
        result = AccountImportResult()
        for index, row in enumerate(rows):
            profile = dict(row)
            label = profile.get("account_name") or index
            try:
                account_name = profile.pop("account_name", None)
                group_id = profile.pop("group_id", None)
                if group_id is None:
                    raise ValueError("group_id is required")
                if not isinstance(group_id, UUID):
                    group_id = UUID(str(group_id))
                result.created.append(self.create_account(caller, account_name, group_id, **profile))
            except ServiceError as e:
                result.failures.append((label, e.kind))
            except ValueError:
                result.failures.append((label, "invalid_input"))

        logger.info(
            "Account import by %s: %d created, %d skipped",
            caller.id, len(result.created), len(result.failures)
        )
        return result

    def export_accounts(self, caller: User, group_id: Optional[UUID] = None) -> List[AccountExport]:
        """
        Accounts in caller's scope with group name and latest counters.

        Counters come from each account's most recent snapshot; accounts
        without snapshots export zeros and no snapshot_date.
        """
        accounts = self.list_accounts(caller, group_id)
        if not accounts:
            return []

        account_ids = [account.id for account in accounts]
        group_names = dict(
            self.db.query(Group.id, Group.name).filter(
                Group.id.in_({account.group_id for account in accounts})
            ).all()
        )
        latest_dates = self.db.query(
            AnalyticsSnapshot.account_id,
            func.max(AnalyticsSnapshot.snapshot_date).label("snapshot_date")
        ).filter(
            AnalyticsSnapshot.account_id.in_(account_ids)
        ).group_by(AnalyticsSnapshot.account_id).subquery()
        latest = {
            snapshot.account_id: snapshot
            for snapshot in self.db.query(AnalyticsSnapshot).join(
                latest_dates,
                and_(
                    AnalyticsSnapshot.account_id == latest_dates.c.account_id,
                    AnalyticsSnapshot.snapshot_date == latest_dates.c.snapshot_date
                )
            ).all()
        }

        exported = []
        for account in accounts:
            snapshot = latest.get(account.id)
            exported.append(AccountExport(
                account_name=account.account_name,
                group_name=group_names.get(account.group_id, ""),
                nickname=account.nickname,
                uid=account.uid,
                location=account.location,
                registration_date=account.registration_date,
                account_owner=account.account_owner,
                contact_info=account.contact_info,
                responsible_person=account.responsible_person,
                notes=account.notes,
                tags=list(account.tags or []),
                follower_count=snapshot.follower_count if snapshot else 0,
                following_count=snapshot.following_count if snapshot else 0,
                total_likes=snapshot.total_likes if snapshot else 0,
                video_count=snapshot.video_count if snapshot else 0,
                snapshot_date=snapshot.snapshot_date if snapshot else None,
            ))
        return exported

    def get_account(self, caller: User, account_id: UUID) -> TikTokAccount:
        """Fetch an account in caller's scope."""
        account = self.store.find(EntityStore.ACCOUNT, account_id)
        self.guard.require(caller, account, OperationClass.READ)
        return account

    def list_accounts(self, caller: User, group_id: Optional[UUID] = None) -> List[TikTokAccount]:
        """
        Accounts in caller's scope, ordered by name.

        Args:
            caller: Authenticated user
            group_id: Optional filter; must be inside scope
        """
        group_ids = self.guard.scope_resolver.accessible_group_ids(caller, OperationClass.READ)
        if group_id is not None:
            if group_id not in group_ids:
                raise OutOfScopeError("Group outside caller scope", group_id)
            group_ids = [group_id]
        if not group_ids:
            return []
        return self.store.list(
            EntityStore.ACCOUNT,
            TikTokAccount.group_id.in_(group_ids),
            order_by=TikTokAccount.account_name.asc()
        )

    def update_account(self, caller: User, account_id: UUID, **changes: Any) -> TikTokAccount:
        """
        Update an account.

        Moving to another group through group_id needs WRITE on both
        groups; transfer_account is the ADMIN path.

        Raises:
            ValueError: Unknown field, empty handle or group_id of None
        """
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {', '.join(sorted(unknown))}")
        if "group_id" in changes and changes["group_id"] is None:
            raise ValueError("group_id cannot be empty")
        if "account_name" in changes:
            changes["account_name"] = self.normalize_name(changes["account_name"])

        account = self.store.find(EntityStore.ACCOUNT, account_id)
        self.guard.require(caller, account, OperationClass.WRITE)

        new_group_id = changes.get("group_id")
        if new_group_id is not None and new_group_id != account.group_id:
            new_group = self.store.find(EntityStore.GROUP, new_group_id)
            self.guard.require(caller, new_group, OperationClass.WRITE)
        if "account_name" in changes and changes["account_name"] != account.account_name:
            self._ensure_name_free(changes["account_name"])

        self.store.update(account, **changes)
        self.db.commit()

        logger.info("Account %s updated by %s: %s", account.id, caller.id, ", ".join(sorted(changes)))
        return account

    def transfer_account(self, caller: User, account_id: UUID, target_group_id: UUID) -> TikTokAccount:
        """
        Move an account to another group.

        Only the group pointer changes; snapshots stay attached to the
        account.

        Raises:
            InsufficientRoleError: If caller is an Operator
            OutOfScopeError: If either group is outside caller's scope
        """
        account = self.store.find(EntityStore.ACCOUNT, account_id)
        self.guard.require(caller, account, OperationClass.ADMIN)
        target_group = self.store.find(EntityStore.GROUP, target_group_id)
        self.guard.require(caller, target_group, OperationClass.ADMIN)

        previous = account.group_id
        self.store.update(account, group_id=target_group.id)
        self.db.commit()

        logger.info("Account %s transferred from %s to %s by %s", account.id, previous, target_group.id, caller.id)
        return account

    def delete_account(self, caller: User, account_id: UUID) -> None:
        """Delete an account and its snapshots."""
        account = self.store.find(EntityStore.ACCOUNT, account_id)
        self.guard.require(caller, account, OperationClass.ADMIN)

        self.store.delete(EntityStore.ACCOUNT, account.id)
        self.db.commit()
        logger.info("Account %s deleted by %s", account_id, caller.id)

    def _ensure_name_free(self, account_name: str) -> None:
        exists = self.db.query(TikTokAccount.id).filter(
            TikTokAccount.account_name == account_name
        ).first()
        if exists is not None:
            raise ConflictError("Account already registered", account_name, {"field": "account_name"})
