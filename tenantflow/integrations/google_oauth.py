from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from tenantflow.config import OAuthProviderConfig
from tenantflow.core.exceptions import CredentialError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    refresh_token: str | None
    scope: str | None
    token_type: str
    expires_at: datetime | None


class GoogleOAuthClient:
    """Refreshes OAuth access tokens against the provider token endpoint."""

    def __init__(
        self,
        config: OAuthProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.client = httpx.AsyncClient(timeout=config.timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def refresh_access_token(
        self,
        refresh_token: str,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> RefreshedToken:
        client_id = client_id or self.config.client_id
        client_secret = client_secret or self.config.client_secret.get_secret_value()
        if not client_id or not client_secret:
            raise CredentialError("OAuth client is not configured")

        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        response = await self._post_token_request(payload)

        if response.status_code != 200:
            logger.error("Token refresh rejected (%s): %s", response.status_code, response.text)
            raise CredentialError(f"Token refresh rejected with status {response.status_code}")

        try:
            data = response.json()
            expires_in = int(data.get("expires_in") or 0)
        except (ValueError, TypeError, AttributeError) as exc:
            raise CredentialError(f"Token response is malformed: {exc}") from exc
        access_token = data.get("access_token")
        if not access_token:
            raise CredentialError("Token response missing access_token")

        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            if expires_in > 0
            else None
        )
        # Providers may omit the refresh token; keep the one we used.
        return RefreshedToken(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
            expires_at=expires_at,
        )

    async def _post_token_request(self, payload: dict[str, Any]) -> httpx.Response:
        # Only connection failures are retried: the request never reached the
        # provider, so the refresh token has not been spent.
        attempts = self.config.max_retries + 1
        for attempt in range(attempts):
            try:
                return await self.client.post(
                    self.config.token_url,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                if attempt + 1 >= attempts:
                    raise CredentialError(f"Token refresh request failed: {exc}") from exc
                delay = self.config.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Token endpoint unreachable (attempt %s/%s), retrying in %.2fs: %s",
                    attempt + 1,
                    attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
            except httpx.HTTPError as exc:
                raise CredentialError(f"Token refresh request failed: {exc}") from exc
        raise CredentialError("Token refresh request exhausted retries")
