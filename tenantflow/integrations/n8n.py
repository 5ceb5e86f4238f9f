from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from tenantflow.config import RemotePlatformConfig
from tenantflow.core.exceptions import (
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteValidationError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)


class N8NClient:
    """n8n public API client with bounded retries for transient failures."""

    def __init__(
        self,
        config: RemotePlatformConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "X-N8N-API-KEY": config.api_key.get_secret_value(),
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "N8NClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def get_workflow(self, workflow_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/workflows/{workflow_id}")

    async def list_workflows(self, limit: int = 100) -> list[dict[str, Any]]:
        workflows: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": limit}
            if cursor:
                params["cursor"] = cursor
            page = await self._request("GET", "/workflows", params=params)
            workflows.extend(page.get("data", []) or [])
            cursor = page.get("nextCursor")
            if not cursor:
                return workflows

    async def create_workflow(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/workflows", json=payload)

    async def activate_workflow(self, workflow_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/workflows/{workflow_id}/activate")

    async def delete_workflow(self, workflow_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/workflows/{workflow_id}")

    async def create_credential(self, name: str, credential_type: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/credentials",
            json={"name": name, "type": credential_type, "data": data},
        )

    async def delete_credential(self, credential_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/credentials/{credential_id}")

    async def get_credential_schema(self, credential_type: str) -> dict[str, Any]:
        return await self._request("GET", f"/credentials/schema/{credential_type}")

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        attempts = self.config.max_retries + 1
        for attempt in range(attempts):
            try:
                response = await self.client.request(method, path, json=json, params=params)
                return self._parse_response(response, method, path)
            except httpx.TimeoutException as exc:
                error = TransientRemoteError(f"{method} {path} timed out: {exc}")
            except httpx.TransportError as exc:
                error = TransientRemoteError(f"{method} {path} failed: {exc}")
            except TransientRemoteError as exc:
                error = exc

            if attempt + 1 >= attempts:
                raise error
            delay = error.retry_after
            if delay is None:
                delay = self.config.backoff_seconds * (2 ** attempt)
            logger.warning(
                "n8n %s %s transient failure (attempt %s/%s), retrying in %.2fs: %s",
                method,
                path,
                attempt + 1,
                attempts,
                delay,
                error,
            )
            await asyncio.sleep(delay)
        raise TransientRemoteError(f"{method} {path} exhausted retries")

    @staticmethod
    def _parse_response(response: httpx.Response, method: str, path: str) -> Any:
        """Map status codes to typed errors; return the decoded body on success."""
        status_code = response.status_code
        if 200 <= status_code < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteValidationError(
                    f"{method} {path} -> {status_code}: response is not JSON",
                    status_code=status_code,
                    detail=response.text[:500],
                ) from exc

        detail: Any = response.text
        try:
            detail = response.json()
        except ValueError:
            pass
        message = detail.get("message") if isinstance(detail, dict) else None
        message = message or str(detail) or response.reason_phrase
        summary = f"{method} {path} -> {status_code}: {message}"

        if status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_seconds = None
            raise TransientRemoteError(
                summary,
                status_code=status_code,
                detail=detail,
                retry_after=retry_after_seconds,
            )
        if status_code >= 500:
            raise TransientRemoteError(summary, status_code=status_code, detail=detail)
        if status_code == 404:
            raise RemoteNotFoundError(summary, status_code=status_code, detail=detail)
        if status_code in (401, 403):
            raise RemoteAuthError(summary, status_code=status_code, detail=detail)
        logger.error("n8n rejected %s %s: %s", method, path, detail)
        raise RemoteValidationError(summary, status_code=status_code, detail=detail)
