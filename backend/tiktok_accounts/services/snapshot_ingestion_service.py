"""Snapshot ingestion: idempotent daily upsert plus profile drift detection."""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import literal_column
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from tiktok_accounts.models.analytics_snapshot import AnalyticsSnapshot
from tiktok_accounts.models.base import utcnow
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.services.metric_source import MetricSample


logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of ingesting one sample."""
    account_id: UUID
    snapshot_id: UUID
    snapshot_date: date
    created: bool
    profile_changes: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)

    @property
    def profile_updated(self) -> bool:
        return bool(self.profile_changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "snapshot_id": str(self.snapshot_id),
            "snapshot_date": self.snapshot_date.isoformat(),
            "created": self.created,
            "profile_changes": self.profile_changes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestResult":
        return cls(
            account_id=UUID(data["account_id"]),
            snapshot_id=UUID(data["snapshot_id"]),
            snapshot_date=date.fromisoformat(data["snapshot_date"]),
            created=data["created"],
            profile_changes=data.get("profile_changes") or {},
        )


class SnapshotIngestionService:
    """
    Service writing daily snapshots.

    Rules:
    - Dedup key is (account, UTC calendar day of capture)
    - The write is one atomic insert-or-update; concurrent writers for the
      same key end with exactly one of their samples stored, never a mix
    - Re-ingesting an identical sample leaves the stored state unchanged
    - Profile drift (nickname, uid, region) is written to the account
      without a permission check; ingestion is system-driven
    - This is the only writer of AnalyticsSnapshot
    """

    METRIC_FIELDS = (
        "follower_count",
        "following_count",
        "total_likes",
        "video_count",
        "daily_uploads",
    )

    # (sample attribute, account attribute)
    PROFILE_FIELDS = (
        ("nickname", "nickname"),
        ("uid", "uid"),
        ("region", "location"),
    )

    def __init__(self, db: Session):
        """
        Initialize ingestion service.

        Args:
            db: Database session
        """
        self.db = db

    @staticmethod
    def snapshot_date_for(captured_at: datetime) -> date:
        """UTC calendar day of a capture time; naive datetimes are taken as UTC."""
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=timezone.utc)
        return captured_at.astimezone(timezone.utc).date()

    def ingest(self, account: TikTokAccount, sample: MetricSample, commit: bool = True) -> IngestResult:
        """
        Store sample as the canonical snapshot of its day.

        Steps:
        1. Compute the dedup date from the capture time
        2. Upsert the snapshot for (account, date)
        3. Write profile drift to the account

        Args:
            account: Target account (already authorized by the caller, if any)
            sample: Freshly fetched sample
            commit: Commit the transaction when done

        Returns:
            IngestResult
        """
        # Step 1: Dedup key
        snapshot_date = self.snapshot_date_for(sample.captured_at)

        daily_uploads = sample.daily_uploads
        if daily_uploads is None:
            daily_uploads = self._derive_daily_uploads(account.id, snapshot_date, sample.video_count)

        # Step 2: Atomic upsert
        now = utcnow()
        created = self._upsert({
            "id": uuid.uuid4(),
            "account_id": account.id,
            "snapshot_date": snapshot_date,
            "follower_count": sample.follower_count,
            "following_count": sample.following_count,
            "total_likes": sample.total_likes,
            "video_count": sample.video_count,
            "daily_uploads": daily_uploads,
            "captured_at": sample.captured_at,
            "created_at": now,
            "updated_at": now,
        })

        snapshot = self.db.query(AnalyticsSnapshot).populate_existing().filter(
            AnalyticsSnapshot.account_id == account.id,
            AnalyticsSnapshot.snapshot_date == snapshot_date
        ).one()

        logger.info(
            "%s snapshot for account %s on %s (followers=%s)",
            "Inserted" if created else "Updated",
            account.id, snapshot_date, sample.follower_count
        )

        # Step 3: Profile drift
        profile_changes = self._apply_profile_drift(account, sample)

        if commit:
            self.db.commit()
        else:
            self.db.flush()

        return IngestResult(
            account_id=account.id,
            snapshot_id=snapshot.id,
            snapshot_date=snapshot_date,
            created=created,
            profile_changes=profile_changes,
        )

    def _upsert(self, values: Dict[str, Any]) -> bool:
        """
        Dialect-native INSERT ... ON CONFLICT/DUPLICATE KEY UPDATE.

        Returns:
            True if the row was inserted, False if an existing row was updated.
            PostgreSQL reports it through xmax of the returned row, MySQL
            through the affected-row count (1 insert, 2 update, 0 unchanged).
            SQLite transactions hold the write lock from BEGIN IMMEDIATE, so a
            read in the same transaction cannot be raced.
        """
        table = AnalyticsSnapshot.__table__
        update_columns = self.METRIC_FIELDS + ("captured_at", "updated_at")
        dialect = self.db.get_bind().dialect.name

        if dialect == "postgresql":
            stmt = postgresql.insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.account_id, table.c.snapshot_date],
                set_={column: stmt.excluded[column] for column in update_columns}
            ).returning(literal_column("(xmax = 0)"))
            return bool(self.db.execute(stmt).scalar())

        if dialect == "sqlite":
            existed = self.db.query(AnalyticsSnapshot.id).filter(
                AnalyticsSnapshot.account_id == values["account_id"],
                AnalyticsSnapshot.snapshot_date == values["snapshot_date"]
            ).first() is not None
            stmt = sqlite.insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.account_id, table.c.snapshot_date],
                set_={column: stmt.excluded[column] for column in update_columns}
            )
            self.db.execute(stmt)
            return not existed

        if dialect in ("mysql", "mariadb"):
            stmt = mysql.insert(table).values(**values)
            stmt = stmt.on_duplicate_key_update(
                **{column: stmt.inserted[column] for column in update_columns}
            )
            return self.db.execute(stmt).rowcount == 1

        raise NotImplementedError(f"Snapshot upsert not supported on dialect {dialect}")

    def _derive_daily_uploads(self, account_id: UUID, snapshot_date: date, video_count: int) -> int:
        """Videos added since the latest earlier snapshot (0 without history)."""
        previous = self.db.query(AnalyticsSnapshot).filter(
            AnalyticsSnapshot.account_id == account_id,
            AnalyticsSnapshot.snapshot_date < snapshot_date
        ).order_by(AnalyticsSnapshot.snapshot_date.desc()).first()

        if previous is None:
            return 0
        return max(video_count - previous.video_count, 0)

    def _apply_profile_drift(self, account: TikTokAccount, sample: MetricSample) -> Dict[str, Dict[str, Optional[str]]]:
        changes = {}
        for sample_attr, account_attr in self.PROFILE_FIELDS:
            new_value = getattr(sample, sample_attr)
            if not new_value:
                continue
            old_value = getattr(account, account_attr)
            if old_value != new_value:
                changes[account_attr] = {"old": old_value, "new": new_value}
                setattr(account, account_attr, new_value)

        if changes:
            self.db.add(account)
            logger.info(
                "Profile drift for account %s: %s",
                account.id, ", ".join(sorted(changes))
            )
        return changes
