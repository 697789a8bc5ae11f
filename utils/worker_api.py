"""
Worker API client — the remote worker's view of the service.

Every call returns an ApiResponse; transport failures are logged and come
back as ``ok=False, status=0`` so the worker loop can carry on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

import config
from features.work_items.models import ExecutionResult

log = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    ok: bool
    status: int
    data: dict[str, Any] = field(default_factory=dict)


class WorkerApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        http: httpx.Client | None = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.api_key = config.WORKER_API_KEY if api_key is None else api_key
        self._http = http or httpx.Client(timeout=config.HTTP_TIMEOUT_SEC)

    def _request(self, method: str, path: str, body: dict | None = None) -> ApiResponse:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            resp = self._http.request(method, f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as e:
            log.error("API request failed: %s %s — %s", method, path, e)
            return ApiResponse(ok=False, status=0, data={"error": "Network error"})

        try:
            data = resp.json()
        except ValueError:
            data = {"error": resp.text[:200]}
        if not isinstance(data, dict):
            data = {"data": data}
        return ApiResponse(ok=resp.is_success, status=resp.status_code, data=data)

    def pending(self) -> ApiResponse:
        return self._request("GET", "/api/worker/pending")

    def task(self, item_id: int) -> ApiResponse:
        return self._request("GET", f"/api/worker/task/{item_id}")

    def claim(self, item_id: int) -> ApiResponse:
        return self._request("POST", f"/api/worker/claim/{item_id}")

    def complete(self, item_id: int, result: ExecutionResult) -> ApiResponse:
        return self._request(
            "POST",
            f"/api/worker/complete/{item_id}",
            {"success": result.success, "output": result.output, "error": result.error},
        )

    def close(self) -> None:
        self._http.close()
