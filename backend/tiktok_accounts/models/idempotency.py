"""
Idempotency Models

Request deduplication and execution traces for orchestrated workflows
(account and group refreshes).
"""
import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, String, Text, Uuid

from tiktok_accounts.database import Base
from tiktok_accounts.models.base import utcnow


class RequestStatus(str, enum.Enum):
    """Lifecycle of an orchestrated request"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IdempotencyKey(Base):
    """
    One row per (request_id, orchestrator_name).
    
    On replay of a request_id:
    - COMPLETED: the cached response_data is returned, nothing is re-run
    - PROCESSING: the replay is rejected as a duplicate in-flight request
    - FAILED: the old row is discarded and the request runs again
    """
    __tablename__ = "idempotency_keys"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(String(255), unique=True, nullable=False, index=True)
    orchestrator_name = Column(String(100), nullable=False, index=True)
    caller_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    
    status = Column(
        SQLEnum(RequestStatus, name="request_status"),
        nullable=False,
        default=RequestStatus.PENDING,
        index=True
    )
    request_payload = Column(JSON, nullable=True)
    response_data = Column(JSON, nullable=True)
    
    # Failure details: error kind and offending identifier, no display text
    error_kind = Column(String(50), nullable=True)
    error_details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    def __repr__(self):
        return f"<IdempotencyKey(request_id='{self.request_id}', status='{self.status}')>"


class DecisionTrace(Base):
    """
    Step-by-step record of one orchestrator run.
    
    trace_json holds the ordered steps, the outcome and the evidence
    gathered while running (fetched samples, ingest results, failures).
    """
    __tablename__ = "decision_traces"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(String(255), nullable=False, index=True)
    orchestrator_name = Column(String(100), nullable=False, index=True)
    trace_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<DecisionTrace(request_id='{self.request_id}', orchestrator='{self.orchestrator_name}')>"
