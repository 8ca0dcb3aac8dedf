"""Workflow definitions."""

from order_saga.workflows.order_processing import WORKFLOW_NAME, process_order

__all__ = ["WORKFLOW_NAME", "process_order"]
