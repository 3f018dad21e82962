"""
Services package.

Services are single-responsibility units over an explicitly passed
database session: they authorize, validate and read or write one kind
of entity, and raise typed ServiceErrors.
"""

from tiktok_accounts.services.entity_store import EntityStore
from tiktok_accounts.services.scope_resolver import (
    ScopeResolver,
    OperationClass,
    AllGroups,
    ManagedGroups,
    SingleGroup,
    ScopeSet,
)
from tiktok_accounts.services.access_guard import (
    AccessGuard,
    AccessDecision,
    DenyReason,
)
from tiktok_accounts.services.metric_source import (
    MetricSource,
    MetricSample,
    HttpMetricSource,
)
from tiktok_accounts.services.snapshot_ingestion_service import (
    SnapshotIngestionService,
    IngestResult,
)
from tiktok_accounts.services.aggregation_engine import (
    AggregationEngine,
    TrendSeries,
    AccountComparison,
    ComparisonMetric,
    ComparisonResult,
    GroupTrendEntry,
    DailyTotal,
    GroupTrend,
    GroupRollup,
    AccountRanking,
    DashboardSummary,
    ReadOnlyContractError,
)
from tiktok_accounts.services.user_service import UserService
from tiktok_accounts.services.group_service import GroupService
from tiktok_accounts.services.account_service import (
    AccountService,
    AccountImportResult,
    AccountExport,
)

__all__ = [
    "EntityStore",
    "ScopeResolver",
    "OperationClass",
    "AllGroups",
    "ManagedGroups",
    "SingleGroup",
    "ScopeSet",
    "AccessGuard",
    "AccessDecision",
    "DenyReason",
    "MetricSource",
    "MetricSample",
    "HttpMetricSource",
    "SnapshotIngestionService",
    "IngestResult",
    "AggregationEngine",
    "TrendSeries",
    "AccountComparison",
    "ComparisonMetric",
    "ComparisonResult",
    "GroupTrendEntry",
    "DailyTotal",
    "GroupTrend",
    "GroupRollup",
    "AccountRanking",
    "DashboardSummary",
    "ReadOnlyContractError",
    "UserService",
    "GroupService",
    "AccountService",
    "AccountImportResult",
    "AccountExport",
]
