"""Execution module for the order saga orchestrator."""

from order_saga.execution.context import (
    ActivityFailure,
    ActivityOutcome,
    ActivitySuccess,
    OrchestrationContext,
    ReplayCursor,
)
from order_saga.execution.determinism import (
    DeterminismChecker,
    WorkflowAnalyzer,
    WorkflowFingerprint,
)
from order_saga.execution.retry import RetryPolicy

__all__ = [
    # Context
    "ActivityFailure",
    "ActivityOutcome",
    "ActivitySuccess",
    "OrchestrationContext",
    "ReplayCursor",

    # Determinism
    "DeterminismChecker",
    "WorkflowAnalyzer",
    "WorkflowFingerprint",

    "RetryPolicy",
]
