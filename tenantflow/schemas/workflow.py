from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CredentialRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None


class WorkflowNode(BaseModel):
    """An n8n node. Unknown keys such as position or typeVersion are kept as-is."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    node_id: str | None = Field(default=None, alias="id")
    name: str
    type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, CredentialRef] = Field(default_factory=dict)


class WorkflowTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    template_id: str = Field(alias="id")
    name: str
    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    static_data: dict[str, Any] | None = Field(default=None, alias="staticData")


class ClonedWorkflow(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    nodes: list[WorkflowNode]
    connections: dict[str, Any]
    settings: dict[str, Any] = Field(default_factory=dict)
    static_data: dict[str, Any] | None = Field(default=None, alias="staticData")

    def node_ids(self) -> set[str]:
        return {node.node_id for node in self.nodes if node.node_id}

    def to_payload(self) -> dict[str, Any]:
        """Body accepted by POST /workflows."""
        payload = self.model_dump(by_alias=True)
        if payload.get("staticData") is None:
            payload.pop("staticData", None)
        for node in payload["nodes"]:
            if node.get("id") is None:
                node.pop("id", None)
            if not node.get("credentials"):
                node.pop("credentials", None)
                continue
            node["credentials"] = {
                slot: {key: value for key, value in ref.items() if value is not None}
                for slot, ref in node["credentials"].items()
            }
        return payload


class WorkflowSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    active: bool = False
