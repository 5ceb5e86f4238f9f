"""
Per-user n8n credential provisioning.

One credential record exists per (user, service). Existing records are
reused while their token is fresh; otherwise the OAuth token is refreshed
(at most once per call) and either the local record is updated or a new
remote credential is created. Refresh, check and store run under a
per-(user, service) lock so concurrent signups never spend the same refresh
token twice.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from tenantflow.core.exceptions import AppError, CredentialError, RemoteValidationError
from tenantflow.integrations.google_oauth import GoogleOAuthClient
from tenantflow.integrations.n8n import N8NClient
from tenantflow.models import CredentialRecord
from tenantflow.schemas.provisioning import CredentialRecordSchema, OAuthGrant, ServiceFailure, SignupUser
from tenantflow.services.credential_store import CredentialStore
from tenantflow.services.service_catalog import ServiceCatalog, ServiceDefinition, default_catalog

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_WINDOW = timedelta(minutes=5)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class _WorkingToken:
    access_token: str
    refresh_token: str | None
    scope: str
    token_type: str
    expires_at: datetime | None
    refresh_attempted: bool = False

    @classmethod
    def from_grant(cls, grant: OAuthGrant) -> "_WorkingToken":
        return cls(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            scope=grant.scope,
            token_type=grant.token_type,
            expires_at=_as_utc(grant.expires_at),
        )


@dataclass
class CredentialProvisioningResult:
    records: list[CredentialRecordSchema] = field(default_factory=list)
    failures: list[ServiceFailure] = field(default_factory=list)
    created_ids: list[str] = field(default_factory=list)

    def credential_map(self) -> dict[str, str]:
        return {record.service: record.remote_credential_id for record in self.records}


class CredentialProvisioner:
    def __init__(
        self,
        client: N8NClient,
        oauth: GoogleOAuthClient,
        store: CredentialStore,
        catalog: ServiceCatalog | None = None,
        expiry_window: timedelta = DEFAULT_EXPIRY_WINDOW,
    ):
        self.client = client
        self.oauth = oauth
        self.store = store
        self.catalog = catalog or default_catalog
        self.expiry_window = expiry_window
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    async def provision(self, user: SignupUser, grant: OAuthGrant | None) -> CredentialProvisioningResult:
        result = CredentialProvisioningResult()
        services = self.catalog.granted(grant.scope) if grant and grant.access_token else []
        if grant and not services:
            logger.warning("Grant for %s covers none of the supported services", user.email)

        token = _WorkingToken.from_grant(grant) if grant else None
        for service in services:
            try:
                record = await self._provision_service(user, grant, token, service, result)
                result.records.append(record)
            except (AppError, httpx.HTTPError, SQLAlchemyError) as exc:
                logger.error("Failed to provision %s credential for %s: %s", service.display_name, user.email, exc)
                result.failures.append(ServiceFailure(service=service.key, reason=str(exc)))

        if not result.records:
            try:
                result.records.append(await self._provision_fallback(user, result))
            except (AppError, httpx.HTTPError, SQLAlchemyError) as exc:
                logger.error("Fallback credential for %s failed: %s", user.email, exc)
                result.failures.append(ServiceFailure(service=self.catalog.fallback.key, reason=str(exc)))

        logger.info(
            "Credentials for %s: %s ready, %s failed",
            user.email,
            len(result.records),
            len(result.failures),
        )
        return result

    async def describe_credential_type(self, credential_type: str) -> dict[str, Any]:
        return await self.client.get_credential_schema(credential_type)

    def is_expiring(self, expires_at: datetime | None) -> bool:
        expires_at = _as_utc(expires_at)
        if expires_at is None:
            return False
        return expires_at <= now_utc() + self.expiry_window

    def _lock_for(self, user_id: str, service: str) -> asyncio.Lock:
        key = (user_id, service)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _provision_service(
        self,
        user: SignupUser,
        grant: OAuthGrant,
        token: _WorkingToken,
        service: ServiceDefinition,
        result: CredentialProvisioningResult,
    ) -> CredentialRecordSchema:
        async with self._lock_for(user.id, service.key):
            existing = self.store.get(user.id, service.key)
            if existing is not None and not self.is_expiring(existing.expires_at):
                logger.info("Reusing %s credential %s for %s", service.display_name, existing.remote_credential_id, user.email)
                return CredentialRecordSchema.model_validate(existing)

            await self._ensure_fresh(user, grant, token)

            if existing is not None:
                # n8n keeps refreshing the remote credential itself; only our copy changes.
                row = self._store(user, service, existing.remote_credential_id, token)
                logger.info("Refreshed %s credential record for %s", service.display_name, user.email)
                return CredentialRecordSchema.model_validate(row)

            response = await self.client.create_credential(
                name=service.credential_name(user.email),
                credential_type=service.credential_type,
                data=self._oauth_payload(grant, token),
            )
            credential_id = response.get("id")
            if not credential_id:
                raise RemoteValidationError(f"n8n returned no id for {service.display_name} credential", detail=response)
            result.created_ids.append(str(credential_id))
            row = self._store(user, service, str(credential_id), token)
            logger.info("Created %s credential %s for %s", service.display_name, credential_id, user.email)
            return CredentialRecordSchema.model_validate(row)

    async def _ensure_fresh(self, user: SignupUser, grant: OAuthGrant, token: _WorkingToken) -> None:
        if token.refresh_attempted or not token.refresh_token:
            return
        if token.expires_at is not None and token.expires_at > now_utc() + self.expiry_window:
            return

        token.refresh_attempted = True
        try:
            refreshed = await self.oauth.refresh_access_token(
                token.refresh_token,
                client_id=grant.client_id or None,
                client_secret=grant.client_secret.get_secret_value() or None,
            )
        except CredentialError as exc:
            logger.warning("Token refresh for %s failed, using existing token: %s", user.email, exc)
            return

        token.access_token = refreshed.access_token
        token.refresh_token = refreshed.refresh_token
        token.token_type = refreshed.token_type
        token.expires_at = refreshed.expires_at
        # The provider may have granted less than was requested.
        if refreshed.scope:
            token.scope = refreshed.scope
        logger.info("Token refreshed for %s", user.email)

    def _oauth_payload(self, grant: OAuthGrant, token: _WorkingToken) -> dict[str, Any]:
        expires_in = 3600
        if token.expires_at is not None:
            expires_in = max(int((token.expires_at - now_utc()).total_seconds()), 0)
        return {
            "clientId": grant.client_id,
            "clientSecret": grant.client_secret.get_secret_value(),
            "sendAdditionalBodyProperties": False,
            "additionalBodyProperties": "{}",
            "oauthTokenData": {
                "access_token": token.access_token,
                "refresh_token": token.refresh_token,
                "scope": token.scope,
                "token_type": token.token_type,
                "expires_in": expires_in,
            },
        }

    def _store(
        self,
        user: SignupUser,
        service: ServiceDefinition,
        remote_credential_id: str,
        token: _WorkingToken,
    ) -> CredentialRecord:
        return self.store.save(
            user_id=user.id,
            service=service.key,
            credential_type=service.credential_type,
            remote_credential_id=remote_credential_id,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            scope=token.scope,
            expires_at=token.expires_at,
        )

    async def _provision_fallback(
        self,
        user: SignupUser,
        result: CredentialProvisioningResult,
    ) -> CredentialRecordSchema:
        service = self.catalog.fallback
        async with self._lock_for(user.id, service.key):
            existing = self.store.get(user.id, service.key)
            if existing is not None:
                return CredentialRecordSchema.model_validate(existing)

            logger.info("Creating generic %s credential for %s", service.credential_type, user.email)
            response = await self.client.create_credential(
                name=service.credential_name(user.email),
                credential_type=service.credential_type,
                data={"user": user.email, "password": secrets.token_urlsafe(24)},
            )
            credential_id = response.get("id")
            if not credential_id:
                raise RemoteValidationError("n8n returned no id for generic credential", detail=response)
            result.created_ids.append(str(credential_id))
            row = self.store.save(
                user_id=user.id,
                service=service.key,
                credential_type=service.credential_type,
                remote_credential_id=str(credential_id),
                access_token=None,
                refresh_token=None,
                scope=None,
                expires_at=None,
            )
            return CredentialRecordSchema.model_validate(row)
