from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, computed_field

from tenantflow.config import ProvisioningPolicy


class SignupUser(BaseModel):
    id: str
    email: str
    name: str | None = None


class OAuthGrant(BaseModel):
    """Tokens captured by the OAuth callback during signup."""

    access_token: str
    refresh_token: str | None = None
    client_id: str = ""
    client_secret: SecretStr = SecretStr("")
    scope: str = ""
    token_type: str = "Bearer"
    expires_at: datetime | None = None


class CredentialRecordSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    service: str
    credential_type: str
    remote_credential_id: str
    scope: str | None = None
    expires_at: datetime | None = None


class ServiceFailure(BaseModel):
    service: str
    reason: str


class ProvisionedWorkflowSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    template_id: str
    remote_workflow_id: str | None = None
    workflow_name: str | None = None
    status: str
    last_error: str | None = None
    attempts: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TemplateFailure(BaseModel):
    template_id: str
    reason: str
    error_type: str = "Exception"
    retryable: bool = False


@dataclass(frozen=True)
class Ok:
    value: ProvisionedWorkflowSchema


@dataclass(frozen=True)
class Err:
    error: TemplateFailure


@dataclass(frozen=True)
class Skipped:
    """Template found active once its lock was held."""

    value: ProvisionedWorkflowSchema


TemplateOutcome = Union[Ok, Err, Skipped]


class ProvisioningResult(BaseModel):
    """Outcome of one provisioning attempt for one user."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    policy: ProvisioningPolicy = ProvisioningPolicy.BEST_EFFORT
    succeeded: tuple[ProvisionedWorkflowSchema, ...] = ()
    failed: tuple[TemplateFailure, ...] = ()
    skipped: tuple[ProvisionedWorkflowSchema, ...] = ()
    credentials: tuple[CredentialRecordSchema, ...] = ()
    credential_failures: tuple[ServiceFailure, ...] = ()
    orphaned_workflow_ids: tuple[str, ...] = ()
    cancelled: bool = False

    @computed_field
    @property
    def success(self) -> bool:
        if self.cancelled:
            return False
        if self.policy == ProvisioningPolicy.ALL_OR_NOTHING and self.failed:
            return False
        return bool(self.succeeded or self.skipped)

    def remote_workflow_ids(self) -> list[str]:
        return [row.remote_workflow_id for row in self.succeeded if row.remote_workflow_id]

    def credential_ids(self) -> list[str]:
        return [record.remote_credential_id for record in self.credentials]


class CleanupReport(BaseModel):
    user_id: str
    deleted_workflow_ids: list[str] = Field(default_factory=list)
    deleted_credential_ids: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def complete(self) -> bool:
        return not self.failures
