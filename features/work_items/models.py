"""
Data models for the work-items feature.

WorkItem is the central record: one paid task submission and its full
lifecycle. PaidFields and CompletedFields are the only payloads a
transition may write.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class WorkItemStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class ExecutionResult:
    """Terminal value of a task run, stored as the item's result blob."""
    success: bool
    output: str = ""
    error: str | None = None

    def to_json(self) -> str:
        return json.dumps({"success": self.success, "output": self.output, "error": self.error})

    @classmethod
    def from_json(cls, raw: str | None) -> "ExecutionResult | None":
        if not raw:
            return None
        data = json.loads(raw)
        return cls(
            success=bool(data.get("success")),
            output=data.get("output") or "",
            error=data.get("error"),
        )


@dataclass
class PaidFields:
    tx_id: str
    amount: float
    paid_at: str = field(default_factory=utcnow_iso)


@dataclass
class CompletedFields:
    success: bool
    output: str
    error: str | None = None
    completed_at: str = field(default_factory=utcnow_iso)

    @property
    def result(self) -> ExecutionResult:
        return ExecutionResult(success=self.success, output=self.output, error=self.error)


@dataclass
class WorkItem:
    """A single task submission tracked from quote to delivery."""
    id: int
    email: str
    max_minutes: int
    task_description: str
    cost_usd: float
    payment_address: str
    created_at: str
    status: WorkItemStatus = WorkItemStatus.PENDING_PAYMENT
    user_id: int | None = None
    expected_sol: float | None = None
    transaction_signature: str | None = None
    cost_sol: float | None = None
    paid_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    result: ExecutionResult | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WorkItem":
        return cls(
            id=int(row["id"]),
            email=row["email"],
            max_minutes=int(row["max_minutes"]),
            task_description=row["task_description"],
            cost_usd=float(row["cost_usd"]),
            payment_address=row["payment_address"],
            created_at=row["created_at"],
            status=WorkItemStatus(row["status"]),
            user_id=row.get("user_id"),
            expected_sol=row.get("expected_sol"),
            transaction_signature=row.get("transaction_signature"),
            cost_sol=row.get("cost_sol"),
            paid_at=row.get("paid_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            result=ExecutionResult.from_json(row.get("result")),
        )

    @property
    def is_paid(self) -> bool:
        return self.status != WorkItemStatus.PENDING_PAYMENT

    @property
    def created_at_unix(self) -> int:
        """Creation time as a Unix timestamp, comparable with ledger block times."""
        created = datetime.fromisoformat(self.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return int(created.timestamp())

    def to_summary(self) -> dict:
        """Public status view (no contact details or task text)."""
        return {
            "id": self.id,
            "status": self.status.value,
            "maxMinutes": self.max_minutes,
            "costUsd": self.cost_usd,
            "costSol": self.cost_sol,
            "createdAt": self.created_at,
            "paidAt": self.paid_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "hasResult": self.result is not None,
        }

    def to_worker_detail(self) -> dict:
        """Full task detail handed to workers."""
        return {
            "id": self.id,
            "email": self.email,
            "maxMinutes": self.max_minutes,
            "taskDescription": self.task_description,
            "costUsd": self.cost_usd,
            "costSol": self.cost_sol,
            "status": self.status.value,
            "createdAt": self.created_at,
            "paidAt": self.paid_at,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_worker_detail(cls, data: dict) -> "WorkItem":
        """Rebuild an item from the worker API's JSON view."""
        return cls(
            id=int(data["id"]),
            email=data["email"],
            max_minutes=int(data["maxMinutes"]),
            task_description=data["taskDescription"],
            cost_usd=float(data["costUsd"]),
            payment_address="",
            created_at=data.get("createdAt") or "",
            status=WorkItemStatus(data.get("status", WorkItemStatus.PAID.value)),
            cost_sol=data.get("costSol"),
            paid_at=data.get("paidAt"),
            started_at=data.get("startedAt"),
        )
