from __future__ import annotations

import logging

from pydantic import ValidationError as SchemaValidationError

from tenantflow.core.exceptions import RemoteValidationError
from tenantflow.integrations.n8n import N8NClient
from tenantflow.schemas.workflow import WorkflowSummary, WorkflowTemplate

logger = logging.getLogger(__name__)


class TemplateRepository:
    """Read-only access to template workflows held on n8n."""

    def __init__(self, client: N8NClient):
        self.client = client
        self._cache: dict[str, WorkflowTemplate] = {}

    async def fetch(self, template_id: str) -> WorkflowTemplate:
        cached = self._cache.get(template_id)
        if cached is not None:
            return cached

        data = await self.client.get_workflow(template_id)
        if not data:
            raise RemoteValidationError(f"No workflow data returned for template {template_id}")
        try:
            template = WorkflowTemplate.model_validate(data)
        except SchemaValidationError as exc:
            raise RemoteValidationError(f"Template {template_id} is malformed: {exc}") from exc

        logger.info("Fetched template %s (%s nodes)", template_id, len(template.nodes))
        self._cache[template_id] = template
        return template

    async def list_templates(self) -> list[WorkflowSummary]:
        rows = await self.client.list_workflows()
        return [WorkflowSummary.model_validate(row) for row in rows]

    def invalidate(self, template_id: str | None = None) -> None:
        if template_id is None:
            self._cache.clear()
        else:
            self._cache.pop(template_id, None)
