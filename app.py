"""
FastAPI application — REST API for the work broker.

Endpoints:
  POST   /api/submit                 — Create a work item and quote its SOL amount
  GET    /api/payment/{id}           — Payment quote for an item
  GET    /api/check-payment/{id}     — Scan the ledger and mark the item paid
  DELETE /api/task/{id}              — Cancel an unpaid item (owner only)
  GET    /api/task/{id}              — Public status summary
  GET    /api/tasks                  — The signed-in user's items
  GET    /api/status                 — Queue length and wallet balance
  GET    /api/worker/pending         — Paid items waiting for a worker   (bearer)
  GET    /api/worker/task/{id}       — Full task detail                  (bearer)
  POST   /api/worker/claim/{id}      — paid → processing                 (bearer)
  POST   /api/worker/complete/{id}   — processing → completed | failed   (bearer)
  GET    /health                     — Health check
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
from features.payments import PaymentMatcher, PriceOracle, SolanaLedger
from features.users import StoreSessionResolver, UserIdentity
from features.work_items import WorkItemLifecycle, WorkItemStatus, WorkItemStore
from features.work_items.db import connect
from features.work_items.errors import (
    AlreadyPaid,
    DuplicateTransaction,
    NotCancelable,
    NotClaimable,
    NotProcessing,
    WorkItemNotFound,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per process."""
    lifecycle: WorkItemLifecycle
    matcher: PaymentMatcher
    sessions: StoreSessionResolver
    worker_api_key: str = ""

    @property
    def oracle(self) -> PriceOracle:
        return self.matcher.oracle


def build_services() -> Services:
    db = connect()
    store = WorkItemStore(db)
    store.init_db()
    oracle = PriceOracle()
    matcher = PaymentMatcher(oracle, SolanaLedger())
    return Services(
        lifecycle=WorkItemLifecycle(store),
        matcher=matcher,
        sessions=StoreSessionResolver(db),
        worker_api_key=config.WORKER_API_KEY,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services()
    if not config.WORKER_API_KEY:
        log.warning("WORKER_API_KEY is not set — worker endpoints will reject every request")
    log.info("Payment wallet: %s", config.PAYMENT_WALLET)
    yield
    app.state.services.lifecycle.store.db.close()


app = FastAPI(
    title="Work Broker",
    description="Paid, time-boxed AI task execution with Solana payments",
    version="1.0.0",
    lifespan=lifespan,
)


class ApiError(Exception):
    """Ends a request with a fixed JSON body and status code."""

    def __init__(self, status_code: int, content: dict):
        self.status_code = status_code
        self.content = content
        super().__init__(content.get("error", ""))


@app.exception_handler(ApiError)
async def _api_error(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.content)


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})


@app.exception_handler(Exception)
async def _unexpected(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ── Dependencies ──────────────────────────────────────────────────────

def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(request: Request, services: Services = Depends(get_services)) -> UserIdentity | None:
    return services.sessions.resolve(request.cookies.get(config.SESSION_COOKIE))


def require_worker(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    expected = services.worker_api_key
    if not expected or not authorization:
        raise ApiError(401, {"error": "Unauthorized"})
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise ApiError(401, {"error": "Unauthorized"})


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "service": "work-broker",
        "store": services.lifecycle.store.db.name,
    }


# ── Submission & payment ──────────────────────────────────────────────

class SubmitRequest(BaseModel):
    minutes: int | None = None
    task: str | None = None


def _quote(services: Services, item_id: int, cost_usd: float) -> float:
    amount = services.matcher.compute_expected_amount(item_id, cost_usd)
    return services.lifecycle.lock_expected_amount(item_id, amount).expected_sol


@app.post("/api/submit")
def submit(
    req: SubmitRequest,
    user: UserIdentity | None = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Create a work item in pending_payment and lock its unique SOL amount."""
    if user is None:
        raise ApiError(401, {"success": False, "error": "Authentication required", "requiresAuth": True})
    task = (req.task or "").strip()
    if not req.minutes or not task:
        raise ApiError(400, {"success": False, "error": "Missing required fields"})
    if not config.MIN_MINUTES <= req.minutes <= config.MAX_MINUTES:
        raise ApiError(400, {
            "success": False,
            "error": f"Minutes must be between {config.MIN_MINUTES} and {config.MAX_MINUTES}",
        })

    cost_usd = round(req.minutes * config.RATE_PER_MINUTE_USD, 2)
    item = services.lifecycle.create(
        email=user.email,
        max_minutes=req.minutes,
        task_description=task,
        cost_usd=cost_usd,
        payment_address=config.PAYMENT_WALLET,
        user_id=user.id,
    )
    amount_sol = _quote(services, item.id, cost_usd)
    return {
        "success": True,
        "workItemId": item.id,
        "costFiat": cost_usd,
        "costUsd": cost_usd,
        "amountSol": amount_sol,
        "paymentAddress": item.payment_address,
        "message": "Task created - please complete payment",
    }


@app.get("/api/payment/{item_id}")
def payment_quote(item_id: int, services: Services = Depends(get_services)):
    item = services.lifecycle.get(item_id)
    if item is None:
        raise ApiError(404, {"error": "Task not found"})
    amount = item.expected_sol
    if amount is None and not item.is_paid:
        amount = _quote(services, item.id, item.cost_usd)
    return {
        "workItemId": item.id,
        "status": item.status.value,
        "costUsd": item.cost_usd,
        "amountSol": amount,
        "paymentAddress": item.payment_address,
    }


@app.get("/api/check-payment/{item_id}")
def check_payment(item_id: int, services: Services = Depends(get_services)):
    """Look for the item's payment on the ledger; credit it when found."""
    item = services.lifecycle.get(item_id)
    if item is None:
        raise ApiError(404, {"error": "Not found"})
    if item.is_paid:
        return {"paid": True}

    expected = item.expected_sol
    if expected is None:
        expected = _quote(services, item.id, item.cost_usd)

    match = services.matcher.find_payment(
        expected, item.created_at_unix, is_consumed=services.lifecycle.is_transaction_used,
    )
    if not match.found:
        return {"paid": False}

    try:
        services.lifecycle.mark_paid(item.id, match.tx_id, match.amount)
    except AlreadyPaid:
        return {"paid": True}
    except DuplicateTransaction:
        return {"paid": False, "error": "Transaction already used"}
    except WorkItemNotFound:
        raise ApiError(404, {"error": "Not found"})
    return {"paid": True, "signature": match.tx_id}


# ── Tasks ─────────────────────────────────────────────────────────────

@app.delete("/api/task/{item_id}")
def delete_task(
    item_id: int,
    user: UserIdentity | None = Depends(current_user),
    services: Services = Depends(get_services),
):
    if user is None:
        raise ApiError(401, {"success": False, "error": "Authentication required"})
    item = services.lifecycle.get(item_id)
    if item is None:
        raise ApiError(404, {"success": False, "error": "Task not found"})
    if item.user_id != user.id:
        raise ApiError(403, {"success": False, "error": "Not authorized"})
    try:
        services.lifecycle.cancel(item_id)
    except NotCancelable:
        raise ApiError(400, {"success": False, "error": "Can only delete tasks pending payment"})
    except WorkItemNotFound:
        raise ApiError(404, {"success": False, "error": "Task not found"})
    return {"success": True}


@app.get("/api/task/{item_id}")
def task_status(item_id: int, services: Services = Depends(get_services)):
    item = services.lifecycle.get(item_id)
    if item is None:
        raise ApiError(404, {"error": "Task not found"})
    return item.to_summary()


@app.get("/api/tasks")
def list_tasks(
    status: str | None = None,
    user: UserIdentity | None = Depends(current_user),
    services: Services = Depends(get_services),
):
    """The user's items, optionally filtered by ``status=a,b``."""
    if user is None:
        raise ApiError(401, {"success": False, "error": "Authentication required"})
    if not status:
        items = services.lifecycle.list_by_user(user.id)
    else:
        try:
            statuses = [WorkItemStatus(s.strip()) for s in status.split(",") if s.strip()]
        except ValueError:
            raise ApiError(400, {"success": False, "error": f"Unknown status filter: {status}"})
        items = services.lifecycle.list_by_user_and_statuses(user.id, statuses)
    return {"items": [i.to_summary() for i in items]}


@app.get("/api/status")
def queue_status(services: Services = Depends(get_services)):
    paid = services.lifecycle.list_paid()
    return {
        "walletBalance": services.matcher.wallet_balance(),
        "queueLength": len(paid),
        "items": [
            {"id": i.id, "status": i.status.value, "maxMinutes": i.max_minutes, "createdAt": i.created_at}
            for i in paid
        ],
    }


# ── Worker API ────────────────────────────────────────────────────────

class CompleteRequest(BaseModel):
    success: bool
    output: str = ""
    error: str | None = None


@app.get("/api/worker/pending", dependencies=[Depends(require_worker)])
def worker_pending(services: Services = Depends(get_services)):
    return {"items": [i.to_worker_detail() for i in services.lifecycle.list_paid()]}


@app.get("/api/worker/task/{item_id}", dependencies=[Depends(require_worker)])
def worker_task(item_id: int, services: Services = Depends(get_services)):
    item = services.lifecycle.get(item_id)
    if item is None:
        raise ApiError(404, {"error": "Task not found"})
    return item.to_worker_detail()


@app.post("/api/worker/claim/{item_id}", dependencies=[Depends(require_worker)])
def worker_claim(item_id: int, services: Services = Depends(get_services)):
    try:
        services.lifecycle.claim(item_id)
    except NotClaimable:
        if services.lifecycle.get(item_id) is None:
            raise ApiError(404, {"error": "Task not found"})
        raise ApiError(400, {"error": "Task is not in paid status"})
    return {"success": True, "message": "Task claimed"}


@app.post("/api/worker/complete/{item_id}", dependencies=[Depends(require_worker)])
def worker_complete(item_id: int, req: CompleteRequest, services: Services = Depends(get_services)):
    try:
        services.lifecycle.complete(item_id, req.success, req.output, req.error)
    except WorkItemNotFound:
        raise ApiError(404, {"error": "Task not found"})
    except NotProcessing:
        raise ApiError(400, {"error": "Task is not in processing status"})
    return {"success": True, "message": "Task completed"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=config.PORT)
