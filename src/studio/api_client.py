"""Async client for the task/session REST service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from studio.config import DEFAULT_API_URL
from studio.errors import ApiError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def _error_message(response: httpx.Response) -> str:
    """Pull ``message`` out of a ``{"error", "message"}`` body, else use the status line."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"{response.status_code} {response.reason_phrase}".strip()


class StudioApiClient:
    """Thin wrapper over the service's ``/api/tasks`` and ``/api/sessions`` routes.

    Every method returns decoded JSON. Non-2xx answers and network failures
    raise :class:`ApiError`.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> StudioApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            log.warning("%s %s failed: %s", method, url, exc)
            raise ApiError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            message = _error_message(response)
            log.info("%s %s -> %d %s", method, url, response.status_code, message)
            raise ApiError(message, status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"{method} {path}: response is not JSON", response.status_code) from exc

    # -- Tasks ----------------------------------------------------------------

    async def list_tasks(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/tasks")

    async def get_task(self, task_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/tasks/{task_id}")

    async def create_task(self, title: str, description: str = "") -> dict[str, Any]:
        return await self._request(
            "POST", "/api/tasks", json={"title": title, "description": description}
        )

    async def update_task(self, task_id: str, **fields: Any) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/tasks/{task_id}", json=fields)

    async def transition_task(self, task_id: str, status: str) -> dict[str, Any]:
        """Ask the service to move a task; returns ``{"task", "previous_status"}``."""
        return await self._request(
            "POST", f"/api/tasks/{task_id}/transition", json={"status": status}
        )

    async def execute_task(self, task_id: str) -> dict[str, Any]:
        """Run the agent phase for the task's current status."""
        return await self._request("POST", f"/api/tasks/{task_id}/execute")

    # -- Sessions -------------------------------------------------------------

    async def list_sessions(self, task_id: str | None = None) -> list[dict[str, Any]]:
        if task_id is None:
            return await self._request("GET", "/api/sessions")
        return await self._request("GET", f"/api/tasks/{task_id}/sessions")

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/sessions/{session_id}")
