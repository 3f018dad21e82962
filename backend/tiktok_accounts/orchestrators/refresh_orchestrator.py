"""
Refresh Orchestrator

Fetches fresh samples from the external metric source and ingests them,
for one account or for every active account of a group.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.config import get_settings
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import User
from tiktok_accounts.orchestrators.base import BaseOrchestrator
from tiktok_accounts.services.access_guard import AccessGuard
from tiktok_accounts.services.entity_store import EntityStore
from tiktok_accounts.services.metric_source import MetricSample, MetricSource
from tiktok_accounts.services.scope_resolver import OperationClass
from tiktok_accounts.services.snapshot_ingestion_service import IngestResult, SnapshotIngestionService
from tiktok_accounts.utils.errors import PartialBatchFailureError, ServiceError, UpstreamUnavailableError


logger = logging.getLogger(__name__)


@dataclass
class BatchRefreshResult:
    """
    Outcome of a refresh run.

    Attributes:
        refreshed: Ingest results of the accounts that went through
        failures: (account id, error kind) pairs, in account order
    """
    refreshed: List[IngestResult] = field(default_factory=list)
    failures: List[Tuple[UUID, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailureError if any account failed."""
        if self.failures:
            raise PartialBatchFailureError(
                self.failures,
                succeeded=[r.account_id for r in self.refreshed]
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refreshed": [r.to_dict() for r in self.refreshed],
            "failures": [
                {"account_id": str(account_id), "kind": kind}
                for account_id, kind in self.failures
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchRefreshResult":
        return cls(
            refreshed=[IngestResult.from_dict(item) for item in data.get("refreshed", [])],
            failures=[(UUID(item["account_id"]), item["kind"]) for item in data.get("failures", [])],
        )


class RefreshOrchestrator(BaseOrchestrator[BatchRefreshResult]):
    """
    Orchestrator for refreshing account metrics.

    Pipeline:
    1. Resolve the target accounts and authorize WRITE on the target
    2. Fetch samples concurrently (thread pool, joined before ingesting)
    3. Ingest each sample serially in the caller's session

    Rules:
    - Authorization and scope errors abort the run unchanged
    - Per-account upstream and not-found failures are recorded and the
      batch continues
    - Only UpstreamUnavailableError (timeouts included) is retried
    - Database errors abort the run
    - A request_id replays only for the same caller and target, and only
      while the caller still has WRITE access to that target
    """

    TARGET_ACCOUNT = "account"
    TARGET_GROUP = "group"

    @property
    def orchestrator_name(self) -> str:
        """Return orchestrator name."""
        return "refresh_orchestrator"

    def __init__(
        self,
        db: Session,
        caller: User,
        metric_source: MetricSource,
        max_attempts: Optional[int] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize refresh orchestrator.

        Args:
            db: Database session
            caller: User requesting the refresh
            metric_source: External metric source
            max_attempts: Fetch attempts per account (defaults to settings)
            max_workers: Concurrent fetches (defaults to settings)
        """
        super().__init__(db, caller.id)
        settings = get_settings()
        self.caller = caller
        self.metric_source = metric_source
        self.max_attempts = max_attempts or settings.refresh_max_attempts
        self.max_workers = max_workers or settings.refresh_max_workers
        self.store = EntityStore(db)
        self.guard = AccessGuard(db)
        self.ingestion = SnapshotIngestionService(db)

    def refresh_account(self, request_id: str, account_id: UUID) -> BatchRefreshResult:
        """
        Refresh one account.

        Args:
            request_id: Idempotency key, bound to this caller and account
            account_id: Account to refresh

        Returns:
            BatchRefreshResult with one refreshed entry or one failure
        """
        return self.execute(request_id, {"target": self.TARGET_ACCOUNT, "target_id": str(account_id)})

    def refresh_group(self, request_id: str, group_id: UUID) -> BatchRefreshResult:
        """
        Refresh every active account of a group.

        Args:
            request_id: Idempotency key, bound to this caller and group
            group_id: Group to refresh

        Returns:
            BatchRefreshResult; call raise_for_failures() for all-or-error
        """
        return self.execute(request_id, {"target": self.TARGET_GROUP, "target_id": str(group_id)})

    def _authorize(self, payload: Dict[str, Any]) -> None:
        self._resolve_targets(payload)

    def _run(self, payload: Dict[str, Any]) -> BatchRefreshResult:
        # Step 1: Targets
        with self.trace.step("resolve_targets") as step:
            accounts = self._resolve_targets(payload)
            step.details = {"target": payload["target"], "account_count": len(accounts)}

        result = BatchRefreshResult()
        if not accounts:
            return result

        # Step 2: Fetch
        with self.trace.step("fetch_samples") as step:
            outcomes = self._fetch_all(accounts)
            step.details = {
                "fetched": sum(1 for o in outcomes.values() if isinstance(o, MetricSample)),
                "failed": sum(1 for o in outcomes.values() if isinstance(o, ServiceError)),
            }

        # Step 3: Ingest
        with self.trace.step("ingest_samples") as step:
            for account in accounts:
                outcome = outcomes[account.id]
                if isinstance(outcome, ServiceError):
                    self._record_failure(result, account, outcome)
                    continue
                try:
                    ingest_result = self.ingestion.ingest(account, outcome, commit=False)
                except ServiceError as e:
                    self._record_failure(result, account, e)
                    continue
                result.refreshed.append(ingest_result)
                self.trace.add_evidence("ingest_result", account.id, ingest_result.to_dict())
            step.details = {"refreshed": len(result.refreshed), "failed": len(result.failures)}

        logger.info(
            "Refresh %s %s: %d refreshed, %d failed",
            payload["target"], payload["target_id"], len(result.refreshed), len(result.failures)
        )
        return result

    def _resolve_targets(self, payload: Dict[str, Any]) -> List[TikTokAccount]:
        """Load the target and authorize WRITE on it against freshly resolved scope."""
        target = payload["target"]
        target_id = UUID(payload["target_id"])

        if target == self.TARGET_ACCOUNT:
            account = self.store.find(EntityStore.ACCOUNT, target_id)
            self.guard.require(self.caller, account, OperationClass.WRITE)
            return [account]

        if target == self.TARGET_GROUP:
            group = self.store.find(EntityStore.GROUP, target_id)
            self.guard.require(self.caller, group, OperationClass.WRITE)
            return self.store.list(
                EntityStore.ACCOUNT,
                TikTokAccount.group_id == group.id,
                TikTokAccount.is_active.is_(True),
                order_by=TikTokAccount.account_name.asc()
            )

        raise ValueError(f"Unknown refresh target: {target}")

    def _fetch_all(self, accounts: List[TikTokAccount]) -> Dict[UUID, Union[MetricSample, ServiceError]]:
        """Fetch every account's sample; per-account ServiceErrors are returned, not raised."""
        names = {account.id: account.account_name for account in accounts}
        workers = min(self.max_workers, len(names))
        outcomes = {}

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                account_id: executor.submit(self._fetch_with_retry, account_name)
                for account_id, account_name in names.items()
            }
            for account_id, future in futures.items():
                try:
                    outcomes[account_id] = future.result()
                except ServiceError as e:
                    outcomes[account_id] = e

        return outcomes

    def _fetch_with_retry(self, account_name: str) -> MetricSample:
        """Runs in a worker thread; must not touch the session."""
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.metric_source.fetch_sample(account_name)
            except UpstreamUnavailableError as e:
                last_error = e
                logger.warning(
                    "Fetch for %s failed (attempt %d/%d): %s",
                    account_name, attempt, self.max_attempts, e.kind
                )
        raise last_error

    def _record_failure(self, result: BatchRefreshResult, account: TikTokAccount, error: ServiceError) -> None:
        result.failures.append((account.id, error.kind))
        self.trace.add_evidence("refresh_failure", account.id, error.to_dict())
        logger.warning("Refresh of account %s failed: %s", account.id, error.kind)

    def _load_result(self, response_data: Dict[str, Any]) -> BatchRefreshResult:
        return BatchRefreshResult.from_dict(response_data)
