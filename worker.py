"""
Worker — polls for paid work items, runs them one at a time, reports the
outcome and emails the requester.

Two sources of work:
  remote  — the service's worker API over HTTP (bearer WORKER_API_KEY)
  local   — the work-item store directly, for a worker on the same host

Usage:
    python worker.py
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from pathlib import Path

import config
from activities.deliver import deliver
from activities.execute_task import run_task
from features.work_items import ExecutionResult, WorkItem, WorkItemLifecycle, WorkItemStore
from features.work_items.db import connect
from features.work_items.errors import NotClaimable, NotProcessing, WorkItemError
from utils.worker_api import WorkerApiClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


# ── Work sources ──────────────────────────────────────────────────────

class WorkSource:
    """Where paid items come from and where outcomes go back to."""

    def pending(self) -> list[WorkItem]:
        raise NotImplementedError

    def claim(self, item: WorkItem) -> WorkItem | None:
        """Take ownership of ``item``; the claimed record, or None when the claim was lost."""
        raise NotImplementedError

    def complete(self, item: WorkItem, result: ExecutionResult) -> bool:
        """Record the outcome. False only when the service refused it."""
        raise NotImplementedError


class RemoteWorkSource(WorkSource):
    def __init__(self, api: WorkerApiClient):
        self.api = api

    def pending(self) -> list[WorkItem]:
        resp = self.api.pending()
        if not resp.ok:
            log.error("Failed to fetch pending tasks (%d): %s", resp.status, resp.data)
            return []
        return [WorkItem.from_worker_detail(d) for d in resp.data.get("items", [])]

    def claim(self, item: WorkItem) -> WorkItem | None:
        resp = self.api.claim(item.id)
        if not resp.ok:
            log.warning("Failed to claim task #%d (%d): %s", item.id, resp.status, resp.data)
            return None
        detail = self.api.task(item.id)
        if not detail.ok:
            log.warning("Could not re-read task #%d after claiming (%d), using queue copy", item.id, detail.status)
            return item
        return WorkItem.from_worker_detail(detail.data)

    def complete(self, item: WorkItem, result: ExecutionResult) -> bool:
        resp = self.api.complete(item.id, result)
        if resp.ok:
            return True
        log.error("Failed to report completion for task #%d (%d): %s", item.id, resp.status, resp.data)
        # Unreachable service still means the outcome is ours to deliver
        return resp.status == 0 or resp.status >= 500


class LocalWorkSource(WorkSource):
    def __init__(self, lifecycle: WorkItemLifecycle):
        self.lifecycle = lifecycle

    def pending(self) -> list[WorkItem]:
        return self.lifecycle.list_paid()

    def claim(self, item: WorkItem) -> WorkItem | None:
        try:
            return self.lifecycle.claim(item.id)
        except NotClaimable:
            return None

    def complete(self, item: WorkItem, result: ExecutionResult) -> bool:
        try:
            self.lifecycle.complete(item.id, result.success, result.output, result.error)
        except NotProcessing:
            return False
        except WorkItemError as e:
            log.error("Failed to record completion for #%d: %s", item.id, e)
            return False
        return True


def build_source(mode: str | None = None) -> WorkSource:
    mode = (mode or config.WORKER_MODE).lower()
    if mode == "local":
        store = WorkItemStore(connect())
        store.init_db()
        log.info("Local mode — reading work items from the store")
        return LocalWorkSource(WorkItemLifecycle(store))
    if mode == "remote":
        if not config.WORKER_API_KEY:
            raise SystemExit("WORKER_API_KEY environment variable is not set")
        log.info("Remote mode — API base URL %s", config.API_BASE_URL)
        return RemoteWorkSource(WorkerApiClient())
    raise SystemExit(f"Unknown WORKER_MODE: {mode!r} (expected 'remote' or 'local')")


# ── Processing ────────────────────────────────────────────────────────

def make_task_dir(item_id: int, base: Path | None = None) -> Path:
    task_dir = (base or config.TASKS_DIR) / f"task-{item_id}-{int(time.time() * 1000)}"
    task_dir.mkdir(parents=True, exist_ok=True)
    return task_dir


def process_item(source: WorkSource, item: WorkItem, tasks_dir: Path | None = None) -> ExecutionResult | None:
    """Claim, execute, report and deliver one item. None when the claim was lost."""
    log.info("=" * 50)
    log.info("Processing work item #%d (%d min): %s", item.id, item.max_minutes, item.task_description[:100])

    claimed = source.claim(item)
    if claimed is None:
        log.info("Work item #%d was taken by another worker", item.id)
        return None
    item = claimed

    task_dir = make_task_dir(item.id, tasks_dir)
    log.info("Created task directory: %s", task_dir)

    result = run_task(item.task_description, item.max_minutes, task_dir)

    if not source.complete(item, result):
        log.error("Completion of #%d was rejected — not delivering", item.id)
        return result

    if not deliver(item, result, task_dir):
        log.error("Failed to send email for work item #%d", item.id)

    log.info("Work item #%d %s", item.id, "completed" if result.success else "failed")
    return result


def process_next(source: WorkSource, tasks_dir: Path | None = None) -> bool:
    """Handle the oldest paid item, if any. True when something was picked up."""
    items = source.pending()
    if not items:
        return False
    log.info("Found %d paid item(s) in queue", len(items))
    process_item(source, items[0], tasks_dir)
    return True


def run_worker(source: WorkSource, stop: threading.Event | None = None) -> None:
    stop = stop or threading.Event()
    log.info("Worker ready — checking for paid tasks every %.0fs", config.WORKER_POLL_INTERVAL_SEC)
    while not stop.is_set():
        try:
            process_next(source)
            delay = config.WORKER_POLL_INTERVAL_SEC
        except Exception as e:
            log.exception("Worker error: %s", e)
            delay = config.WORKER_ERROR_BACKOFF_SEC
        stop.wait(delay)
    log.info("Worker stopped")


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    source = build_source(argv[0] if argv else None)
    try:
        run_worker(source)
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
