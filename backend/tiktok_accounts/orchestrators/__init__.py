"""
Orchestrators package.

Orchestrators coordinate multiple services to implement workflows that
span them: refreshing metrics (metric source + access guard + ingestion)
and scoped analytics (scope resolver + aggregation engine).

Difference between Services and Orchestrators:
    - Services: Single-responsibility, focused on one domain/entity
    - Orchestrators: Multi-service coordination, idempotency and tracing
"""

from tiktok_accounts.orchestrators.base import (
    BaseOrchestrator,
    OrchestrationError,
    DuplicateRequestError,
)
from tiktok_accounts.orchestrators.refresh_orchestrator import (
    RefreshOrchestrator,
    BatchRefreshResult,
)
from tiktok_accounts.orchestrators.analytics_orchestrator import AnalyticsOrchestrator

__all__ = [
    "BaseOrchestrator",
    "OrchestrationError",
    "DuplicateRequestError",
    "RefreshOrchestrator",
    "BatchRefreshResult",
    "AnalyticsOrchestrator",
]
