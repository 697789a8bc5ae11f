"""
Work-items feature — durable task records and their payment-gated lifecycle.

Public API:
    from features.work_items import WorkItemLifecycle, WorkItemStore, WorkItem, WorkItemStatus
    from features.work_items.db import connect
"""

from features.work_items.db import WorkItemStore
from features.work_items.lifecycle import WorkItemLifecycle
from features.work_items.models import ExecutionResult, WorkItem, WorkItemStatus

__all__ = ["ExecutionResult", "WorkItem", "WorkItemLifecycle", "WorkItemStatus", "WorkItemStore"]
