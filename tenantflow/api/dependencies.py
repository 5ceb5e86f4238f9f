"""Shared API dependencies."""
from __future__ import annotations

from fastapi import HTTPException, Request, status

from tenantflow.core.security import get_current_admin
from tenantflow.services import ProvisioningServices


def get_provisioning_services(request: Request) -> ProvisioningServices:
    services = getattr(request.app.state, "provisioning", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provisioning services are not initialised",
        )
    return services


__all__ = ["get_current_admin", "get_provisioning_services"]
