"""
Error taxonomy.

Every error raised by the services and orchestrators is a ServiceError
carrying a machine-readable kind and the offending identifier, so the
request-handling layer can render its own messages and status codes.
The message passed to the exception is diagnostic only.
"""
from typing import Any, Dict, List, Optional, Tuple


class ServiceError(Exception):
    """Base exception for all domain errors."""
    
    kind = "service_error"
    
    def __init__(
        self,
        message: str,
        identifier: Any = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.identifier = identifier
        self.details = details or {}
        super().__init__(f"[{self.kind}] {message}")
    
    def to_dict(self) -> Dict[str, Any]:
        """Structured form used in decision traces and batch results."""
        return {
            "kind": self.kind,
            "identifier": str(self.identifier) if self.identifier is not None else None,
            "details": self.details,
        }


class NotFoundError(ServiceError):
    """Entity absent from the store."""
    
    kind = "not_found"
    
    def __init__(self, entity_kind: str, identifier: Any, details: Optional[Dict[str, Any]] = None):
        self.entity_kind = entity_kind
        merged = {"entity": entity_kind}
        merged.update(details or {})
        super().__init__(f"{entity_kind} {identifier} not found", identifier, merged)


class OutOfScopeError(ServiceError):
    """Caller lacks group-level access to the target."""
    
    kind = "out_of_scope"


class InsufficientRoleError(ServiceError):
    """Role hierarchy forbids the operation regardless of scope."""
    
    kind = "insufficient_role"


class HierarchyViolationError(ServiceError):
    """The user/group reference graph would be (or is) inconsistent."""
    
    kind = "hierarchy_violation"


class SelfReferenceForbiddenError(ServiceError):
    """A caller attempted a forbidden operation on their own record."""
    
    kind = "self_reference_forbidden"


class ConflictError(ServiceError):
    """Duplicate unique field or state conflict."""
    
    kind = "conflict"


class UpstreamUnavailableError(ServiceError):
    """External metric source failed or could not be reached."""
    
    kind = "upstream_unavailable"


class UpstreamTimeoutError(UpstreamUnavailableError):
    """External metric source did not answer within the timeout."""
    
    kind = "upstream_timeout"


class PartialBatchFailureError(ServiceError):
    """
    Some items of a batch operation failed.
    
    Attributes:
        failures: (item identifier, error kind) pairs in batch order
        succeeded: identifiers of the items that went through
    """
    
    kind = "partial_batch_failure"
    
    def __init__(
        self,
        failures: List[Tuple[Any, str]],
        succeeded: Optional[List[Any]] = None,
        identifier: Any = None
    ):
        self.failures = list(failures)
        self.succeeded = list(succeeded or [])
        super().__init__(
            f"{len(self.failures)} item(s) failed",
            identifier,
            {
                "failures": [
                    {"identifier": str(item_id), "kind": error_kind}
                    for item_id, error_kind in self.failures
                ],
                "succeeded": [str(item_id) for item_id in self.succeeded],
            }
        )
    
    @property
    def failed_ids(self) -> List[Any]:
        return [item_id for item_id, _ in self.failures]
