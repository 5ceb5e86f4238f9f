from __future__ import annotations

import logging

from tenantflow.core.exceptions import IntegrationError, RemoteValidationError
from tenantflow.integrations.n8n import N8NClient
from tenantflow.schemas.workflow import ClonedWorkflow

logger = logging.getLogger(__name__)


class RemoteRegistrar:
    """Creates cloned workflows on n8n."""

    def __init__(self, client: N8NClient):
        self.client = client

    async def register(self, workflow: ClonedWorkflow) -> str:
        response = await self.client.create_workflow(workflow.to_payload())
        workflow_id = response.get("id") if isinstance(response, dict) else None
        if not workflow_id:
            raise RemoteValidationError(
                f"n8n returned no workflow id for '{workflow.name}'",
                detail=response,
            )
        logger.info("Registered workflow %s as %s", workflow.name, workflow_id)
        return str(workflow_id)

    async def activate(self, workflow_id: str) -> bool:
        try:
            await self.client.activate_workflow(workflow_id)
        except IntegrationError as exc:
            logger.warning("Could not activate workflow %s: %s", workflow_id, exc)
            return False
        return True
