"""Error types raised by the order saga orchestrator."""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for orchestrator errors."""
    pass


class ValidationError(OrchestrationError):
    """Raised when an inbound order payload is rejected."""
    pass


class ActivityError(OrchestrationError):
    """Business-level failure reported by an activity implementation.

    Not retried; the executor records it as an ``ActivityFailed`` event and
    hands workflow code an ``ActivityFailure`` outcome.
    """

    def __init__(self, message: str, error_kind: Optional[str] = None):
        super().__init__(message)
        self.error_kind = error_kind or type(self).__name__


class ActivityFault(OrchestrationError):
    """Transient infrastructure fault raised by an activity; retried."""
    pass


class StorageUnavailable(OrchestrationError):
    """Raised when the history log cannot durably commit or read."""
    pass


class DuplicateEventError(OrchestrationError):
    """Raised when an activity event reuses a committed sequence number."""
    pass


class LeaseLost(OrchestrationError):
    """Raised when another process holds the live ownership lease of an instance."""
    pass


class NonDeterministicError(OrchestrationError):
    """Raised when replayed workflow code diverges from recorded history."""
    pass


class InstanceNotFound(OrchestrationError):
    """Raised when an unknown instance id is queried."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance {instance_id} not found")
        self.instance_id = instance_id


class WorkflowFailure(OrchestrationError):
    """Raised by workflow code to signal unrecoverable failure."""
    pass
