"""
Base Orchestrator

Request bookkeeping for orchestrated writes (metric refreshes):

- A request_id is bound to the caller and the payload that first used it.
  Reusing it with another caller or another payload is a ConflictError.
- An identical replay of a completed request is authorized again and then
  answered from the cached response, without running anything.
- Every run leaves a DecisionTrace: its steps, per-account evidence and
  outcome.

ServiceErrors raised by a run are recorded and re-raised unchanged;
anything else is wrapped in OrchestrationError.
"""

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from tiktok_accounts.models.base import utcnow
from tiktok_accounts.models.idempotency import DecisionTrace, IdempotencyKey, RequestStatus
from tiktok_accounts.utils.errors import ConflictError, ServiceError


R = TypeVar('R')

MAX_REQUEST_ID_LENGTH = 255
DEFAULT_RESULT_TTL = timedelta(hours=24)


class OrchestrationError(Exception):
    """Unexpected (non-domain) failure of an orchestrated request"""
    pass


class DuplicateRequestError(OrchestrationError):
    """The request_id is still being processed by another run"""
    pass


def describe_error(error: Exception) -> Dict[str, Any]:
    """Structured error for traces and idempotency records."""
    if isinstance(error, ServiceError):
        return error.to_dict()
    return {"kind": type(error).__name__, "message": str(error)}


@dataclass
class TraceStep:
    """One named phase of a run."""
    action: str
    status: str = "running"
    duration_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"action": self.action, "status": self.status, "duration_ms": self.duration_ms}
        if self.details:
            data["details"] = self.details
        if self.error:
            data["error"] = self.error
        return data


class RunTrace:
    """
    Steps and per-account evidence of one run, in the order they happened.

    Evidence items are keyed by the account they concern, so a trace reads
    like the BatchRefreshResult it produced: which accounts were ingested
    and which failed with which error kind.
    """

    def __init__(self, caller_id: Optional[UUID], payload: Dict[str, Any]):
        self.caller_id = caller_id
        self.payload = payload
        self.started_at = utcnow()
        self._clock = time.monotonic()
        self.steps: List[TraceStep] = []
        self.evidence: List[Dict[str, Any]] = []

    @contextmanager
    def step(self, action: str) -> Iterator[TraceStep]:
        started = time.monotonic()
        step = TraceStep(action)
        self.steps.append(step)
        try:
            yield step
        except Exception as e:
            step.status = "failed"
            step.error = describe_error(e)
            raise
        else:
            step.status = "success"
        finally:
            step.duration_ms = int((time.monotonic() - started) * 1000)

    def add_evidence(self, evidence_type: str, account_id: UUID, data: Dict[str, Any]) -> None:
        self.evidence.append({"type": evidence_type, "account_id": str(account_id), "data": data})

    def to_json(self, error: Optional[Exception] = None) -> Dict[str, Any]:
        trace = {
            "caller_id": str(self.caller_id) if self.caller_id else None,
            "payload": self.payload,
            "started_at": self.started_at.isoformat(),
            "duration_ms": int((time.monotonic() - self._clock) * 1000),
            "steps": [step.to_dict() for step in self.steps],
            "evidence": self.evidence,
            "result": "failed" if error is not None else "success",
        }
        if error is not None:
            trace["error"] = describe_error(error)
        return trace


class BaseOrchestrator(ABC, Generic[R]):
    """
    Idempotent, traced execution of one request.

    Subclasses implement:
    - orchestrator_name
    - _authorize(payload): raise a ServiceError when the caller may not run
      the request right now; checked on every run and every cached replay
    - _run(payload) -> R: the work itself, tracing through self.trace
    - _load_result(response_data) -> R: rebuild a cached result

    Results expose to_dict() for caching.
    """

    def __init__(self, db: Session, caller_id: Optional[UUID] = None):
        """
        Initialize base orchestrator.

        Args:
            db: Database session
            caller_id: Id of the user running the request
        """
        self.db = db
        self.caller_id = caller_id
        self.trace: Optional[RunTrace] = None

    @property
    @abstractmethod
    def orchestrator_name(self) -> str:
        pass

    @abstractmethod
    def _authorize(self, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def _run(self, payload: Dict[str, Any]) -> R:
        pass

    @abstractmethod
    def _load_result(self, response_data: Dict[str, Any]) -> R:
        pass

    def execute(
        self,
        request_id: str,
        payload: Dict[str, Any],
        ttl: timedelta = DEFAULT_RESULT_TTL
    ) -> R:
        """
        Run a request at most once per request_id.

        Steps:
        1. Look up the request_id; another caller or payload is a conflict
        2. Completed and unexpired: authorize again, return the cached result
        3. Still processing: DuplicateRequestError
        4. Otherwise claim the request_id and run inside a savepoint, so a
           failed run leaves only its failure record and trace behind

        Args:
            request_id: Client-chosen idempotency key
            payload: JSON-serializable description of the request
            ttl: How long a completed response may be replayed

        Returns:
            Result of the run (or of the earlier identical run)

        Raises:
            ConflictError: request_id already used by another caller or payload
            ServiceError: Domain failure of the run, after it was recorded
            DuplicateRequestError: request_id is still being processed
            OrchestrationError: Any other failure
        """
        self._validate_request_id(request_id)

        try:
            # Step 1-3: Replay handling
            existing = self._find_request(request_id)
            if existing is not None:
                cached = self._replay(existing, payload)
                if cached is not None:
                    return cached

            # Step 4: Claim and run
            record = self._claim(request_id, payload, ttl)
            self.trace = RunTrace(self.caller_id, payload)
            try:
                with self.db.begin_nested():
                    result = self._run(payload)
            except Exception as e:
                self._finish(record, error=e)
                self.db.commit()
                raise

            self._finish(record, response=result.to_dict())
            self.db.commit()
            return result

        except ServiceError:
            raise
        except OrchestrationError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            raise OrchestrationError(f"Orchestration failed: {str(e)}") from e

    def _validate_request_id(self, request_id: str) -> None:
        if not request_id or not isinstance(request_id, str):
            raise OrchestrationError("Invalid input: request_id must be a non-empty string")
        if len(request_id) > MAX_REQUEST_ID_LENGTH:
            raise OrchestrationError(
                f"Invalid input: request_id longer than {MAX_REQUEST_ID_LENGTH} characters"
            )

    def _find_request(self, request_id: str) -> Optional[IdempotencyKey]:
        return self.db.query(IdempotencyKey).filter(
            IdempotencyKey.request_id == request_id,
            IdempotencyKey.orchestrator_name == self.orchestrator_name
        ).first()

    def _replay(self, record: IdempotencyKey, payload: Dict[str, Any]) -> Optional[R]:
        """
        Decide what an earlier record of the same request_id means now.

        Rules:
        - The record must belong to the same caller and the same payload
        - COMPLETED and unexpired: cached result, after a fresh authorization
        - PROCESSING: DuplicateRequestError
        - FAILED, PENDING or expired: the record is discarded and the request
          runs again (returns None)
        """
        if record.caller_id != self.caller_id:
            raise ConflictError(
                "request_id already used by another caller",
                record.request_id,
                {"reason": "caller_mismatch"}
            )
        if record.request_payload != payload:
            raise ConflictError(
                "request_id already used for another request",
                record.request_id,
                {"reason": "payload_mismatch"}
            )

        expired = self._is_expired(record)
        if record.status == RequestStatus.COMPLETED and not expired:
            self._authorize(payload)
            return self._load_result(record.response_data or {})

        if record.status == RequestStatus.PROCESSING and not expired:
            raise DuplicateRequestError(f"Request {record.request_id} is already being processed")

        self.db.delete(record)
        self.db.flush()
        return None

    @staticmethod
    def _is_expired(record: IdempotencyKey) -> bool:
        if record.expires_at is None:
            return False
        now = utcnow()
        if record.expires_at.tzinfo is None:
            # SQLite returns naive datetimes
            now = now.replace(tzinfo=None)
        return record.expires_at < now

    def _claim(self, request_id: str, payload: Dict[str, Any], ttl: timedelta) -> IdempotencyKey:
        now = utcnow()
        record = IdempotencyKey(
            request_id=request_id,
            orchestrator_name=self.orchestrator_name,
            caller_id=self.caller_id,
            status=RequestStatus.PROCESSING,
            request_payload=payload,
            created_at=now,
            started_at=now,
            expires_at=now + ttl,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def _finish(
        self,
        record: IdempotencyKey,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None
    ) -> None:
        """Store the outcome on the request record and persist the trace."""
        record.completed_at = utcnow()
        if error is None:
            record.status = RequestStatus.COMPLETED
            record.response_data = response
        else:
            record.status = RequestStatus.FAILED
            record.error_message = str(error)
            details = describe_error(error)
            record.error_kind = details["kind"]
            record.error_details = details

        self.db.add(DecisionTrace(
            request_id=record.request_id,
            orchestrator_name=self.orchestrator_name,
            trace_json=self.trace.to_json(error),
            created_at=utcnow(),
        ))
        self.db.flush()
