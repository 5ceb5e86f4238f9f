from __future__ import annotations

import logging
from typing import Iterable

import httpx
from sqlalchemy.exc import SQLAlchemyError

from tenantflow.core.exceptions import AppError, RemoteNotFoundError
from tenantflow.integrations.n8n import N8NClient
from tenantflow.schemas.provisioning import CleanupReport, ProvisioningResult
from tenantflow.services.credential_store import CredentialStore
from tenantflow.services.provisioning_ledger import ProvisioningLedger

logger = logging.getLogger(__name__)


class ProvisioningCleanup:
    """Best-effort removal of remote resources created for an abandoned signup."""

    def __init__(
        self,
        client: N8NClient,
        ledger: ProvisioningLedger | None = None,
        credential_store: CredentialStore | None = None,
    ):
        self.client = client
        self.ledger = ledger
        self.credential_store = credential_store

    async def cleanup(
        self,
        user_id: str,
        credential_ids: Iterable[str],
        remote_workflow_ids: Iterable[str],
    ) -> CleanupReport:
        logger.info("Cleaning up provisioning for user %s", user_id)
        report = CleanupReport(user_id=user_id)

        # Workflows first: they reference the credentials.
        for workflow_id in remote_workflow_ids:
            if await self._delete(self.client.delete_workflow, "workflow", workflow_id, report):
                report.deleted_workflow_ids.append(workflow_id)

        for credential_id in credential_ids:
            if await self._delete(self.client.delete_credential, "credential", credential_id, report):
                report.deleted_credential_ids.append(credential_id)

        self._forget_local(user_id, report)
        logger.info(
            "Cleanup for user %s removed %s workflows and %s credentials (%s failures)",
            user_id,
            len(report.deleted_workflow_ids),
            len(report.deleted_credential_ids),
            len(report.failures),
        )
        return report

    async def cleanup_result(self, result: ProvisioningResult, include_credentials: bool = True) -> CleanupReport:
        credential_ids = result.credential_ids() if include_credentials else []
        return await self.cleanup(result.user_id, credential_ids, result.remote_workflow_ids())

    async def _delete(self, call, kind: str, resource_id: str, report: CleanupReport) -> bool:
        try:
            await call(resource_id)
        except RemoteNotFoundError:
            logger.info("%s %s already gone", kind.capitalize(), resource_id)
            return True
        except (AppError, httpx.HTTPError) as exc:
            logger.error("Failed to delete %s %s: %s", kind, resource_id, exc)
            report.failures.append(f"{kind} {resource_id}: {exc}")
            return False
        logger.info("Deleted %s %s", kind, resource_id)
        return True

    def _forget_local(self, user_id: str, report: CleanupReport) -> None:
        try:
            if self.ledger is not None:
                self.ledger.forget(user_id, report.deleted_workflow_ids)
            if self.credential_store is not None:
                self.credential_store.delete_by_remote_ids(user_id, report.deleted_credential_ids)
        except (AppError, SQLAlchemyError) as exc:
            logger.error("Remote cleanup for %s done but local records remain: %s", user_id, exc)
            report.failures.append(f"local records: {exc}")
