from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from tenantflow.api.dependencies import get_provisioning_services
from tenantflow.core.exceptions import CredentialError, LedgerUnavailableError
from tenantflow.schemas.provisioning import (
    CleanupReport,
    OAuthGrant,
    ProvisionedWorkflowSchema,
    ProvisioningResult,
    SignupUser,
)
from tenantflow.services import ProvisioningServices

logger = logging.getLogger(__name__)
router = APIRouter()


class ProvisionRequest(BaseModel):
    email: str
    name: str | None = None
    grant: OAuthGrant | None = None


class CleanupRequest(BaseModel):
    credential_ids: list[str] = Field(default_factory=list)
    workflow_ids: list[str] = Field(default_factory=list)


@router.get("/reconciliation/pending", response_model=list[ProvisionedWorkflowSchema])
async def list_pending_rows(
    services: ProvisioningServices = Depends(get_provisioning_services),
) -> list[ProvisionedWorkflowSchema]:
    try:
        return services.ledger.list_pending()
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/{user_id}", response_model=ProvisioningResult)
async def provision_user(
    user_id: str,
    payload: ProvisionRequest,
    services: ProvisioningServices = Depends(get_provisioning_services),
) -> ProvisioningResult:
    user = SignupUser(id=user_id, email=payload.email, name=payload.name)
    try:
        return await services.orchestrator.provision(user, payload.grant)
    except LedgerUnavailableError as exc:
        logger.error("Provisioning for %s could not start: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/{user_id}")
async def provisioning_status(
    user_id: str,
    services: ProvisioningServices = Depends(get_provisioning_services),
) -> dict[str, Any]:
    try:
        rows = services.ledger.list_for_user(user_id)
        records = services.credential_store.list_for_user(user_id)
    except (LedgerUnavailableError, CredentialError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {
        "user_id": user_id,
        "workflows": [row.model_dump(mode="json") for row in rows],
        "credentials": [
            {
                "service": record.service,
                "credential_type": record.credential_type,
                "remote_credential_id": record.remote_credential_id,
            }
            for record in records
        ],
    }


@router.post("/{user_id}/cleanup", response_model=CleanupReport)
async def cleanup_user(
    user_id: str,
    payload: CleanupRequest,
    services: ProvisioningServices = Depends(get_provisioning_services),
) -> CleanupReport:
    return await services.cleanup.cleanup(user_id, payload.credential_ids, payload.workflow_ids)
