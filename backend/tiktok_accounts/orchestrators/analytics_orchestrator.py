"""
Analytics Orchestrator

Caller-facing read entry points. Each call resolves the caller's scope
fresh, then hands it to the AggregationEngine which refuses anything
outside it.
"""
import logging
from datetime import date
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.models.user import User
from tiktok_accounts.services.aggregation_engine import (
    AggregationEngine,
    ComparisonResult,
    DashboardSummary,
    GroupTrend,
    TrendSeries,
)
from tiktok_accounts.services.scope_resolver import OperationClass, ScopeResolver


logger = logging.getLogger(__name__)


class AnalyticsOrchestrator:
    """
    Read-only analytics for an authenticated caller.

    Steps of every call:
    1. Resolve scope for READ (no caching; a manager reassignment applies
       to the next call)
    2. Aggregate within that scope

    Scope errors (OutOfScopeError, HierarchyViolationError for an Operator
    without a group) and NotFoundError propagate unchanged.
    """

    def __init__(self, db: Session, engine: Optional[AggregationEngine] = None):
        """
        Initialize analytics orchestrator.

        Args:
            db: Database session
            engine: Aggregation engine (built from db when omitted)
        """
        self.db = db
        self.scope_resolver = ScopeResolver(db)
        self.engine = engine or AggregationEngine(db)

    def account_trend(
        self,
        caller: User,
        account_id: UUID,
        window_days: int,
        as_of: Optional[date] = None,
    ) -> TrendSeries:
        scope = self.scope_resolver.resolve_scope(caller, OperationClass.READ)
        return self.engine.account_trend(scope, account_id, window_days, as_of)

    def compare(
        self,
        caller: User,
        account_ids: Sequence[UUID],
        window_days: int,
        as_of: Optional[date] = None,
    ) -> ComparisonResult:
        scope = self.scope_resolver.resolve_scope(caller, OperationClass.READ)
        return self.engine.compare(scope, account_ids, window_days, as_of)

    def group_trend(
        self,
        caller: User,
        group_id: UUID,
        window_days: int,
        as_of: Optional[date] = None,
    ) -> GroupTrend:
        scope = self.scope_resolver.resolve_scope(caller, OperationClass.READ)
        return self.engine.group_trend(scope, group_id, window_days, as_of)

    def dashboard(self, caller: User, as_of: Optional[date] = None) -> DashboardSummary:
        """
        Dashboard of everything the caller may read.

        SuperAdmin sees all groups, a Manager the groups they manage, an
        Operator their own group.
        """
        scope = self.scope_resolver.resolve_scope(caller, OperationClass.READ)
        summary = self.engine.dashboard(scope, as_of)
        logger.debug("Dashboard for user %s (%s)", caller.id, caller.role.value)
        return summary
