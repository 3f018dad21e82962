"""Aggregation engine for account trends, comparisons and dashboards."""
import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.config import get_settings
from tiktok_accounts.models.analytics_snapshot import AnalyticsSnapshot
from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.services.scope_resolver import AllGroups, ManagedGroups, ScopeSet, SingleGroup
from tiktok_accounts.utils.errors import NotFoundError, OutOfScopeError


logger = logging.getLogger(__name__)


# Series name -> snapshot column
TREND_METRICS = {
    "followers": "follower_count",
    "following": "following_count",
    "likes": "total_likes",
    "videos": "video_count",
    "uploads": "daily_uploads",
}

COMPARISON_METRICS = ("followers", "following", "likes", "videos")


def growth_rate(first: int, last: int) -> float:
    """(last - first) / max(first, 1)."""
    return (last - first) / max(first, 1)


@dataclass
class TrendSeries:
    """Parallel daily series for one account, ascending by date."""
    account_id: UUID
    account_name: str
    dates: List[date] = field(default_factory=list)
    followers: List[int] = field(default_factory=list)
    following: List[int] = field(default_factory=list)
    likes: List[int] = field(default_factory=list)
    videos: List[int] = field(default_factory=list)
    uploads: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.dates)

    def growth(self, metric: str) -> float:
        """Growth of a series over the window; 0.0 for an empty window."""
        values = getattr(self, metric)
        if not values:
            return 0.0
        return growth_rate(values[0], values[-1])

    def latest(self, metric: str) -> Optional[int]:
        values = getattr(self, metric)
        return values[-1] if values else None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "account_id": str(self.account_id),
            "account_name": self.account_name,
            "dates": [d.isoformat() for d in self.dates],
        }
        for metric in TREND_METRICS:
            data[metric] = list(getattr(self, metric))
        return data


@dataclass
class AccountComparison:
    """One account's side of a comparison."""
    account_id: UUID
    account_name: str
    trend: TrendSeries
    growth: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "account_name": self.account_name,
            "trend": self.trend.to_dict(),
            "growth": dict(self.growth),
        }


@dataclass
class ComparisonMetric:
    """Per-metric view: latest values and growth rates aligned with the account order."""
    metric: str
    values: List[Optional[int]]
    growth_rates: List[float]

    def to_dict(self) -> Dict[str, Any]:
        return {"values": list(self.values), "growth_rates": list(self.growth_rates)}


@dataclass
class ComparisonResult:
    """Cross-account comparison over a window."""
    window_days: int
    start_date: date
    end_date: date
    accounts: List[AccountComparison] = field(default_factory=list)
    metrics: Dict[str, ComparisonMetric] = field(default_factory=dict)

    @property
    def account_ids(self) -> List[UUID]:
        return [a.account_id for a in self.accounts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_days": self.window_days,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "accounts": [a.to_dict() for a in self.accounts],
            "metrics": {name: m.to_dict() for name, m in self.metrics.items()},
        }


@dataclass
class GroupTrendEntry:
    """One snapshot of one account inside a group trend."""
    snapshot_date: date
    account_id: UUID
    account_name: str
    followers: int
    following: int
    likes: int
    videos: int
    uploads: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.snapshot_date.isoformat(),
            "account_id": str(self.account_id),
            "account_name": self.account_name,
            "followers": self.followers,
            "following": self.following,
            "likes": self.likes,
            "videos": self.videos,
            "uploads": self.uploads,
        }


@dataclass
class DailyTotal:
    """Sum over a group's accounts for one day."""
    snapshot_date: date
    account_count: int
    followers: int
    likes: int
    videos: int
    uploads: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.snapshot_date.isoformat(),
            "account_count": self.account_count,
            "followers": self.followers,
            "likes": self.likes,
            "videos": self.videos,
            "uploads": self.uploads,
        }


@dataclass
class GroupTrend:
    """All snapshots of a group's accounts within a window."""
    group_id: UUID
    group_name: str
    window_days: int
    start_date: date
    end_date: date
    entries: List[GroupTrendEntry] = field(default_factory=list)
    totals: List[DailyTotal] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": str(self.group_id),
            "group_name": self.group_name,
            "window_days": self.window_days,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
            "totals": [t.to_dict() for t in self.totals],
        }


@dataclass
class GroupRollup:
    """Per-group dashboard figures from the latest snapshot of each account."""
    group_id: UUID
    group_name: str
    account_count: int
    total_followers: int
    total_likes: int
    total_videos: int
    growth_rate: float
    has_history: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": str(self.group_id),
            "group_name": self.group_name,
            "account_count": self.account_count,
            "total_followers": self.total_followers,
            "total_likes": self.total_likes,
            "total_videos": self.total_videos,
            "growth_rate": self.growth_rate,
            "has_history": self.has_history,
        }


@dataclass
class AccountRanking:
    """Entry of the top accounts ranking."""
    rank: int
    account_id: UUID
    account_name: str
    group_id: UUID
    follower_count: int
    total_likes: int
    video_count: int
    snapshot_date: date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "account_id": str(self.account_id),
            "account_name": self.account_name,
            "group_id": str(self.group_id),
            "follower_count": self.follower_count,
            "total_likes": self.total_likes,
            "video_count": self.video_count,
            "snapshot_date": self.snapshot_date.isoformat(),
        }


@dataclass
class DashboardSummary:
    """Caller-scoped dashboard."""
    as_of: date
    growth_days: int
    account_count: int
    total_followers: int
    total_likes: int
    total_videos: int
    growth_rate: float
    has_history: bool
    groups: List[GroupRollup] = field(default_factory=list)
    top_accounts: List[AccountRanking] = field(default_factory=list)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "growth_days": self.growth_days,
            "group_count": self.group_count,
            "account_count": self.account_count,
            "total_followers": self.total_followers,
            "total_likes": self.total_likes,
            "total_videos": self.total_videos,
            "growth_rate": self.growth_rate,
            "has_history": self.has_history,
            "groups": [g.to_dict() for g in self.groups],
            "top_accounts": [a.to_dict() for a in self.top_accounts],
        }


class AggregationEngine:
    """
    Aggregation engine over stored snapshots.

    Rules:
    - Every method receives the caller's pre-resolved ScopeSet and never
      returns data outside it
    - Windows are inclusive: window_days=N covers [as_of - (N-1), as_of]
    - Growth is (last - first) / max(first, 1); never a division error
    - Read-only: reads TikTokAccount, Group and AnalyticsSnapshot only and
      leaves the session without pending changes
    - Deterministic: same stored state and as_of give the same output
    """

    _ALLOWED_READ_MODELS = {
        'TikTokAccount',
        'Group',
        'AnalyticsSnapshot',
    }

    def __init__(self, db: Session, top_n: Optional[int] = None, growth_days: Optional[int] = None):
        """
        Initialize aggregation engine.

        Args:
            db: Database session
            top_n: Size of the dashboard ranking (defaults to settings)
            growth_days: Look-back of the dashboard growth rate (defaults to settings)
        """
        settings = get_settings()
        self.db = db
        self.top_n = top_n if top_n is not None else settings.dashboard_top_n
        self.growth_days = growth_days if growth_days is not None else settings.dashboard_growth_days
        self._read_operations: List[str] = []

    def account_trend(
        self,
        scope: ScopeSet,
        account_id: UUID,
        window_days: int,
        as_of: Optional[date] = None,
    ) -> TrendSeries:
        """
        Daily series of one account over the window.

        Args:
            scope: Caller's scope
            account_id: Account to read
            window_days: Number of days, >= 1
            as_of: Last day of the window (default: today UTC)

        Returns:
            TrendSeries ascending by date (empty if no snapshots in the window)

        Raises:
            NotFoundError: If the account does not exist
            OutOfScopeError: If the account's group is outside scope
            ValueError: If window_days < 1
        """
        start, end = self._window(window_days, as_of)
        with self._read_only("account_trend"):
            account = self._read(TikTokAccount, TikTokAccount.id == account_id).first()
            if account is None:
                raise NotFoundError("account", account_id)
            self._check_scope(scope, [account])

            series = self._trends_for([account], start, end)[account.id]

        logger.debug("Trend for account %s: %d points", account_id, len(series))
        return series

    def compare(
        self,
        scope: ScopeSet,
        account_ids: Sequence[UUID],
        window_days: int,
        as_of: Optional[date] = None,
    ) -> ComparisonResult:
        """
        Compare several accounts over the same window.

        All-or-nothing: if any requested account is outside scope, nothing
        is returned. Duplicate ids are collapsed (first occurrence wins).

        Raises:
            NotFoundError: If any account does not exist
            OutOfScopeError: If any account's group is outside scope
            ValueError: If window_days < 1
        """
        start, end = self._window(window_days, as_of)
        result = ComparisonResult(window_days=window_days, start_date=start, end_date=end)

        ordered_ids = list(dict.fromkeys(account_ids))
        if not ordered_ids:
            return result

        with self._read_only("compare"):
            found = {
                account.id: account
                for account in self._read(TikTokAccount, TikTokAccount.id.in_(ordered_ids)).all()
            }
            missing = [account_id for account_id in ordered_ids if account_id not in found]
            if missing:
                raise NotFoundError("account", missing[0], {"missing": [str(m) for m in missing]})

            accounts = [found[account_id] for account_id in ordered_ids]
            self._check_scope(scope, accounts)

            trends = self._trends_for(accounts, start, end)

        for account in accounts:
            trend = trends[account.id]
            result.accounts.append(AccountComparison(
                account_id=account.id,
                account_name=account.account_name,
                trend=trend,
                growth={metric: trend.growth(metric) for metric in COMPARISON_METRICS},
            ))

        for metric in COMPARISON_METRICS:
            result.metrics[metric] = ComparisonMetric(
                metric=metric,
                values=[entry.trend.latest(metric) for entry in result.accounts],
                growth_rates=[entry.growth[metric] for entry in result.accounts],
            )

        return result

    def group_trend(
        self,
        scope: ScopeSet,
        group_id: UUID,
        window_days: int,
        as_of: Optional[date] = None,
    ) -> GroupTrend:
        """
        Every snapshot of every account in a group within the window.

        Entries are ordered by date, then account id; totals hold one row
        per date that has at least one snapshot.

        Raises:
            NotFoundError: If the group does not exist
            OutOfScopeError: If the group is outside scope
            ValueError: If window_days < 1
        """
        start, end = self._window(window_days, as_of)
        with self._read_only("group_trend"):
            group = self._read(Group, Group.id == group_id).first()
            if group is None:
                raise NotFoundError("group", group_id)
            if not scope.contains(group.id):
                raise OutOfScopeError("Group outside caller scope", group_id)

            names = {
                account.id: account.account_name
                for account in self._read(TikTokAccount, TikTokAccount.group_id == group_id).all()
            }
            snapshots = []
            if names:
                snapshots = self._read(
                    AnalyticsSnapshot,
                    AnalyticsSnapshot.account_id.in_(list(names)),
                    AnalyticsSnapshot.snapshot_date >= start,
                    AnalyticsSnapshot.snapshot_date <= end
                ).all()

        snapshots.sort(key=lambda s: (s.snapshot_date, s.account_id))
        trend = GroupTrend(
            group_id=group.id,
            group_name=group.name,
            window_days=window_days,
            start_date=start,
            end_date=end,
        )

        by_date: Dict[date, List[AnalyticsSnapshot]] = defaultdict(list)
        for snapshot in snapshots:
            trend.entries.append(GroupTrendEntry(
                snapshot_date=snapshot.snapshot_date,
                account_id=snapshot.account_id,
                account_name=names[snapshot.account_id],
                followers=snapshot.follower_count,
                following=snapshot.following_count,
                likes=snapshot.total_likes,
                videos=snapshot.video_count,
                uploads=snapshot.daily_uploads,
            ))
            by_date[snapshot.snapshot_date].append(snapshot)

        for day in sorted(by_date):
            rows = by_date[day]
            trend.totals.append(DailyTotal(
                snapshot_date=day,
                account_count=len(rows),
                followers=sum(s.follower_count for s in rows),
                likes=sum(s.total_likes for s in rows),
                videos=sum(s.video_count for s in rows),
                uploads=sum(s.daily_uploads for s in rows),
            ))

        return trend

    def dashboard(self, scope: ScopeSet, as_of: Optional[date] = None) -> DashboardSummary:
        """
        Caller-scoped dashboard.

        Steps:
        1. Materialise the scope into groups
        2. Find the latest snapshot (on or before as_of) of every account,
           and the latest one at least growth_days older than it
        3. Roll up per group, then globally
        4. Rank accounts by latest followers

        Growth compares summed followers of the accounts that have both
        snapshots. Without any such account growth is 0.0 and has_history
        is False, so a new group is distinguishable from a flat one.

        Args:
            scope: Caller's scope
            as_of: Reference day (default: today UTC)

        Returns:
            DashboardSummary
        """
        as_of = as_of or self._today()

        with self._read_only("dashboard"):
            # Step 1: Groups in scope
            groups = self._groups_in(scope)
            group_ids = [g.id for g in groups]

            # Step 2: Latest and prior snapshot per account
            accounts = []
            history: Dict[UUID, List[AnalyticsSnapshot]] = defaultdict(list)
            if group_ids:
                accounts = self._read(TikTokAccount, TikTokAccount.group_id.in_(group_ids)).all()
            if accounts:
                snapshots = self._read(
                    AnalyticsSnapshot,
                    AnalyticsSnapshot.account_id.in_([a.id for a in accounts]),
                    AnalyticsSnapshot.snapshot_date <= as_of
                ).order_by(AnalyticsSnapshot.snapshot_date.asc()).all()
                for snapshot in snapshots:
                    history[snapshot.account_id].append(snapshot)

        latest_and_prior = {
            account.id: self._latest_and_prior(history.get(account.id, []))
            for account in accounts
        }

        # Step 3: Rollups
        accounts_by_group: Dict[UUID, List[TikTokAccount]] = defaultdict(list)
        for account in accounts:
            accounts_by_group[account.group_id].append(account)

        rollups = []
        for group in groups:
            members = accounts_by_group.get(group.id, [])
            pairs = [latest_and_prior[a.id] for a in members]
            rate, has_history = self._rollup_growth(pairs)
            rollups.append(GroupRollup(
                group_id=group.id,
                group_name=group.name,
                account_count=len(members),
                total_followers=sum(latest.follower_count for latest, _ in pairs if latest),
                total_likes=sum(latest.total_likes for latest, _ in pairs if latest),
                total_videos=sum(latest.video_count for latest, _ in pairs if latest),
                growth_rate=rate,
                has_history=has_history,
            ))

        global_rate, global_history = self._rollup_growth(list(latest_and_prior.values()))

        # Step 4: Ranking
        ranked = sorted(
            (account for account in accounts if latest_and_prior[account.id][0] is not None),
            key=lambda a: (-latest_and_prior[a.id][0].follower_count, a.id)
        )
        top_accounts = []
        for rank, account in enumerate(ranked[:self.top_n], start=1):
            latest = latest_and_prior[account.id][0]
            top_accounts.append(AccountRanking(
                rank=rank,
                account_id=account.id,
                account_name=account.account_name,
                group_id=account.group_id,
                follower_count=latest.follower_count,
                total_likes=latest.total_likes,
                video_count=latest.video_count,
                snapshot_date=latest.snapshot_date,
            ))

        summary = DashboardSummary(
            as_of=as_of,
            growth_days=self.growth_days,
            account_count=sum(r.account_count for r in rollups),
            total_followers=sum(r.total_followers for r in rollups),
            total_likes=sum(r.total_likes for r in rollups),
            total_videos=sum(r.total_videos for r in rollups),
            growth_rate=global_rate,
            has_history=global_history,
            groups=rollups,
            top_accounts=top_accounts,
        )
        logger.info(
            "Dashboard as of %s: %d groups, %d accounts, %d followers",
            as_of, summary.group_count, summary.account_count, summary.total_followers
        )
        return summary

    # Helpers

    def _window(self, window_days: int, as_of: Optional[date]) -> Tuple[date, date]:
        if window_days < 1:
            raise ValueError(f"window_days must be >= 1, got {window_days}")
        end = as_of or self._today()
        return end - timedelta(days=window_days - 1), end

    @staticmethod
    def _today() -> date:
        return datetime.now(timezone.utc).date()

    @staticmethod
    def _check_scope(scope: ScopeSet, accounts: List[TikTokAccount]) -> None:
        outside = [a.id for a in accounts if not scope.contains(a.group_id)]
        if outside:
            raise OutOfScopeError(
                "Account outside caller scope",
                outside[0],
                {"account_ids": [str(account_id) for account_id in outside]}
            )

    def _groups_in(self, scope: ScopeSet) -> List[Group]:
        if isinstance(scope, AllGroups):
            query = self._read(Group)
        elif isinstance(scope, ManagedGroups):
            if not scope.group_ids:
                return []
            query = self._read(Group, Group.id.in_(list(scope.group_ids)))
        elif isinstance(scope, SingleGroup):
            query = self._read(Group, Group.id == scope.group_id)
        else:
            raise ValueError(f"Unhandled scope: {scope!r}")
        return sorted(query.all(), key=lambda g: (g.name, g.id))

    def _trends_for(self, accounts: List[TikTokAccount], start: date, end: date) -> Dict[UUID, TrendSeries]:
        series = {
            account.id: TrendSeries(account_id=account.id, account_name=account.account_name)
            for account in accounts
        }
        snapshots = self._read(
            AnalyticsSnapshot,
            AnalyticsSnapshot.account_id.in_(list(series)),
            AnalyticsSnapshot.snapshot_date >= start,
            AnalyticsSnapshot.snapshot_date <= end
        ).order_by(AnalyticsSnapshot.snapshot_date.asc()).all()

        for snapshot in snapshots:
            trend = series[snapshot.account_id]
            trend.dates.append(snapshot.snapshot_date)
            for metric, column in TREND_METRICS.items():
                getattr(trend, metric).append(getattr(snapshot, column))
        return series

    def _latest_and_prior(
        self, history: List[AnalyticsSnapshot]
    ) -> Tuple[Optional[AnalyticsSnapshot], Optional[AnalyticsSnapshot]]:
        """history is ascending by date."""
        if not history:
            return None, None
        latest = history[-1]
        cutoff = latest.snapshot_date - timedelta(days=self.growth_days)
        prior = None
        for snapshot in history:
            if snapshot.snapshot_date > cutoff:
                break
            prior = snapshot
        return latest, prior

    @staticmethod
    def _rollup_growth(pairs) -> Tuple[float, bool]:
        comparable = [(latest, prior) for latest, prior in pairs if latest is not None and prior is not None]
        if not comparable:
            return 0.0, False
        latest_total = sum(latest.follower_count for latest, _ in comparable)
        prior_total = sum(prior.follower_count for _, prior in comparable)
        return growth_rate(prior_total, latest_total), True

    # Read-only contract

    def _read(self, model, *filters):
        """Query an allowed model, recording the read."""
        model_name = model.__name__
        if model_name not in self._ALLOWED_READ_MODELS:
            raise ReadOnlyContractError(
                f"AggregationEngine attempted to read from non-allowed model: {model_name}. "
                f"Allowed read models: {', '.join(sorted(self._ALLOWED_READ_MODELS))}"
            )
        self._read_operations.append(model_name)
        return self.db.query(model).filter(*filters)

    @contextmanager
    def _read_only(self, operation: str):
        """Fail if the session gained pending changes while aggregating."""
        self._read_operations = []
        before = self._pending_state()
        yield
        after = self._pending_state()
        if after != before:
            raise ReadOnlyContractError(
                f"AggregationEngine.{operation} left pending changes in the session"
            )

    def _pending_state(self):
        return (
            frozenset(map(id, self.db.new)),
            frozenset(map(id, self.db.dirty)),
            frozenset(map(id, self.db.deleted)),
        )


class ReadOnlyContractError(Exception):
    """
    Raised when the aggregation engine reads a non-allowed model or
    leaves pending changes in the session.
    """
    pass
