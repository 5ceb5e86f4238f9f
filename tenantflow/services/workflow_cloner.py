"""
Pure template -> tenant clone transformation.

Node ids get a per-user suffix and every credential slot the catalog knows
is rebound to the user's own credential, looked up by service rather than
by slot position.
"""
from __future__ import annotations

import logging
from typing import Iterable, Mapping

from tenantflow.core.exceptions import UnboundCredentialError
from tenantflow.schemas.workflow import ClonedWorkflow, CredentialRef, WorkflowNode, WorkflowTemplate
from tenantflow.services.service_catalog import ServiceCatalog, default_catalog

logger = logging.getLogger(__name__)


class WorkflowCloner:
    def __init__(self, catalog: ServiceCatalog | None = None):
        self.catalog = catalog or default_catalog

    def clone(
        self,
        template: WorkflowTemplate,
        user_id: str,
        user_email: str,
        credentials: Mapping[str, str],
        required_services: Iterable[str] = (),
    ) -> ClonedWorkflow:
        required = set(required_services)
        source = template.model_copy(deep=True)
        nodes = [
            self._clone_node(node, user_id, user_email, credentials, required)
            for node in source.nodes
        ]
        return ClonedWorkflow(
            name=f"{template.name} - {user_email}",
            nodes=nodes,
            connections=source.connections,
            settings=source.settings,
            static_data=source.static_data,
        )

    def _clone_node(
        self,
        node: WorkflowNode,
        user_id: str,
        user_email: str,
        credentials: Mapping[str, str],
        required: set[str],
    ) -> WorkflowNode:
        base_id = node.node_id or node.name
        bound: dict[str, CredentialRef] = {}
        for slot, ref in node.credentials.items():
            service = self.catalog.for_credential_type(slot)
            if service is None:
                # Platform-wide credential, not tenant scoped.
                bound[slot] = ref
                continue
            credential_id = credentials.get(service.key)
            if credential_id is None:
                if service.key in required:
                    raise UnboundCredentialError(
                        f"Node '{node.name}' requires a {service.display_name} credential",
                        service=service.key,
                    )
                logger.info(
                    "Dropping %s slot on node '%s' for user %s: no credential",
                    slot,
                    node.name,
                    user_id,
                )
                continue
            bound[slot] = CredentialRef(id=credential_id, name=service.credential_name(user_email))

        return node.model_copy(update={"node_id": f"{base_id}-{user_id}", "credentials": bound})
