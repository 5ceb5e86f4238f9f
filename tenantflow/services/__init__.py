"""
Service wiring for the provisioning engine.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from tenantflow.config import Settings
from tenantflow.integrations import GoogleOAuthClient, N8NClient
from tenantflow.services.cleanup import ProvisioningCleanup
from tenantflow.services.credential_provisioner import CredentialProvisioner
from tenantflow.services.credential_store import CredentialStore
from tenantflow.services.orchestrator import ProvisioningOrchestrator
from tenantflow.services.provisioning_ledger import ProvisioningLedger
from tenantflow.services.remote_registrar import RemoteRegistrar
from tenantflow.services.service_catalog import ServiceCatalog, default_catalog
from tenantflow.services.template_repository import TemplateRepository
from tenantflow.services.workflow_cloner import WorkflowCloner


@dataclass
class ProvisioningServices:
    n8n: N8NClient
    oauth: GoogleOAuthClient
    ledger: ProvisioningLedger
    credential_store: CredentialStore
    orchestrator: ProvisioningOrchestrator
    cleanup: ProvisioningCleanup

    async def aclose(self) -> None:
        await self.n8n.aclose()
        await self.oauth.aclose()


def build_provisioning_services(
    settings: Settings,
    session_factory: Callable[[], Session],
    catalog: ServiceCatalog | None = None,
    n8n_transport: httpx.AsyncBaseTransport | None = None,
    oauth_transport: httpx.AsyncBaseTransport | None = None,
) -> ProvisioningServices:
    catalog = catalog or default_catalog
    provisioning = settings.provisioning()
    n8n = N8NClient(settings.remote_platform(), transport=n8n_transport)
    oauth = GoogleOAuthClient(settings.oauth_provider(), transport=oauth_transport)
    ledger = ProvisioningLedger(session_factory)
    credential_store = CredentialStore(session_factory)
    cleanup = ProvisioningCleanup(n8n, ledger=ledger, credential_store=credential_store)
    orchestrator = ProvisioningOrchestrator(
        templates=TemplateRepository(n8n),
        credentials=CredentialProvisioner(
            n8n,
            oauth,
            credential_store,
            catalog=catalog,
            expiry_window=timedelta(seconds=provisioning.expiry_window_seconds),
        ),
        cloner=WorkflowCloner(catalog),
        registrar=RemoteRegistrar(n8n),
        ledger=ledger,
        config=provisioning,
        cleanup=cleanup,
    )
    return ProvisioningServices(
        n8n=n8n,
        oauth=oauth,
        ledger=ledger,
        credential_store=credential_store,
        orchestrator=orchestrator,
        cleanup=cleanup,
    )


__all__ = [
    "CredentialProvisioner",
    "CredentialStore",
    "ProvisioningCleanup",
    "ProvisioningLedger",
    "ProvisioningOrchestrator",
    "ProvisioningServices",
    "RemoteRegistrar",
    "TemplateRepository",
    "WorkflowCloner",
    "build_provisioning_services",
]
