"""
Provisioning orchestrator.

Runs once per signup attempt. Templates already active in the ledger are
skipped before any remote call; the rest are processed one at a time:
fetch -> clone -> register -> record. A failing template becomes an
``Err`` outcome and never stops the batch. Only an unreadable ledger is
raised to the caller.

Each template runs under a per-(user, template) lock and the ledger row is
re-read inside it, so concurrent runs for one user never create the same
workflow twice.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field

from tenantflow.config import ProvisioningConfig, ProvisioningPolicy, TemplateSpec
from tenantflow.core.exceptions import AppError, CredentialError, LedgerError
from tenantflow.models import ProvisioningStatus
from tenantflow.schemas.provisioning import (
    CleanupReport,
    Err,
    OAuthGrant,
    Ok,
    ProvisionedWorkflowSchema,
    ProvisioningResult,
    SignupUser,
    Skipped,
    TemplateFailure,
    TemplateOutcome,
)
from tenantflow.schemas.workflow import ClonedWorkflow
from tenantflow.services.cleanup import ProvisioningCleanup
from tenantflow.services.credential_provisioner import CredentialProvisioner
from tenantflow.services.provisioning_ledger import ProvisioningLedger
from tenantflow.services.remote_registrar import RemoteRegistrar
from tenantflow.services.template_repository import TemplateRepository
from tenantflow.services.workflow_cloner import WorkflowCloner

logger = logging.getLogger(__name__)


@dataclass
class _Attempt:
    succeeded: list[ProvisionedWorkflowSchema] = field(default_factory=list)
    failed: list[TemplateFailure] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    created_workflow_ids: list[str] = field(default_factory=list)


class ProvisioningOrchestrator:
    def __init__(
        self,
        templates: TemplateRepository,
        credentials: CredentialProvisioner,
        cloner: WorkflowCloner,
        registrar: RemoteRegistrar,
        ledger: ProvisioningLedger,
        config: ProvisioningConfig | None = None,
        cleanup: ProvisioningCleanup | None = None,
    ):
        self.templates = templates
        self.credentials = credentials
        self.cloner = cloner
        self.registrar = registrar
        self.ledger = ledger
        self.config = config or ProvisioningConfig()
        self.cleanup = cleanup
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    async def provision(
        self,
        user: SignupUser,
        grant: OAuthGrant | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ProvisioningResult:
        logger.info("Starting workflow provisioning for %s (%s)", user.email, user.id)

        # Raises LedgerUnavailableError: the one hard failure.
        existing = {row.template_id: row for row in self.ledger.list_for_user(user.id)}
        skipped = [
            existing[spec.template_id]
            for spec in self.config.templates
            if spec.template_id in existing and existing[spec.template_id].status == ProvisioningStatus.ACTIVE
        ]
        todo = [spec for spec in self.config.templates if spec.template_id not in {row.template_id for row in skipped}]
        if not todo:
            logger.info("All %s templates already active for %s", len(skipped), user.email)
            return ProvisioningResult(user_id=user.id, policy=self.config.policy, skipped=tuple(skipped))

        credentials = await self.credentials.provision(user, grant)
        credential_map = credentials.credential_map()
        attempt = _Attempt()
        cancelled = False

        try:
            for spec in todo:
                if cancel_event is not None and cancel_event.is_set():
                    break
                outcome = await self._provision_template(user, spec, credential_map, attempt)
                if isinstance(outcome, Ok):
                    attempt.succeeded.append(outcome.value)
                elif isinstance(outcome, Skipped):
                    skipped.append(outcome.value)
                else:
                    attempt.failed.append(outcome.error)
        except asyncio.CancelledError:
            logger.warning("Provisioning task for %s cancelled; compensating", user.email)
            await self._compensate(user, attempt.created_workflow_ids, credentials.created_ids)
            raise

        removed_credentials: set[str] = set()
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            logger.warning("Provisioning for %s cancelled; removing resources from this attempt", user.email)
            report = await self._compensate(user, attempt.created_workflow_ids, credentials.created_ids)
            removed_credentials = set(credentials.created_ids)
            self._drop_deleted_orphans(attempt, report)
            attempt.failed.extend(
                TemplateFailure(template_id=row.template_id, reason="cancelled", error_type="Cancelled")
                for row in attempt.succeeded
            )
            attempt.succeeded = []
        elif (
            self.config.policy == ProvisioningPolicy.ALL_OR_NOTHING
            and attempt.failed
            and attempt.created_workflow_ids
        ):
            logger.warning(
                "%s of %s templates failed for %s; rolling back under all_or_nothing",
                len(attempt.failed),
                len(todo),
                user.email,
            )
            # Unrecorded (orphaned) workflows of this attempt go too.
            report = await self._compensate(user, attempt.created_workflow_ids, [])
            self._drop_deleted_orphans(attempt, report)
            attempt.failed.extend(
                TemplateFailure(
                    template_id=row.template_id,
                    reason="rolled back: another template failed",
                    error_type="RolledBack",
                    retryable=True,
                )
                for row in attempt.succeeded
            )
            attempt.succeeded = []

        result = ProvisioningResult(
            user_id=user.id,
            policy=self.config.policy,
            succeeded=tuple(attempt.succeeded),
            failed=tuple(attempt.failed),
            skipped=tuple(skipped),
            credentials=tuple(
                record for record in credentials.records if record.remote_credential_id not in removed_credentials
            ),
            credential_failures=tuple(credentials.failures),
            orphaned_workflow_ids=tuple(attempt.orphaned),
            cancelled=cancelled,
        )
        logger.info(
            "Provisioning for %s finished: %s created, %s skipped, %s failed (success=%s)",
            user.email,
            len(result.succeeded),
            len(result.skipped),
            len(result.failed),
            result.success,
        )
        return result

    async def _provision_template(
        self,
        user: SignupUser,
        spec: TemplateSpec,
        credential_map: dict[str, str],
        attempt: _Attempt,
    ) -> TemplateOutcome:
        template_id = spec.template_id
        async with self._lock_for(user.id, template_id):
            return await self._provision_locked(user, spec, credential_map, attempt)

    def _lock_for(self, user_id: str, template_id: str) -> asyncio.Lock:
        key = (user_id, template_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _provision_locked(
        self,
        user: SignupUser,
        spec: TemplateSpec,
        credential_map: dict[str, str],
        attempt: _Attempt,
    ) -> TemplateOutcome:
        template_id = spec.template_id
        try:
            current = self.ledger.get(user.id, template_id)
            if current is not None and current.status == ProvisioningStatus.ACTIVE:
                logger.info("Template %s already active for %s; skipping", template_id, user.email)
                return Skipped(current)
            self.ledger.mark_pending(user.id, template_id)
            missing = [service for service in spec.required_services if service not in credential_map]
            if missing:
                raise CredentialError(f"Missing required credentials: {', '.join(missing)}", service=missing[0])
            template = await self.templates.fetch(template_id)
            clone = self.cloner.clone(
                template,
                user.id,
                user.email,
                credential_map,
                required_services=spec.required_services,
            )
            remote_id = await self._register(user, template_id, clone, attempt)
        except Exception as exc:
            return self._fail(user, template_id, exc)

        if self.config.activate_workflows:
            await self.registrar.activate(remote_id)

        try:
            row = await self._record_active(user, template_id, remote_id, clone.name)
        except LedgerError as exc:
            # Remote resource exists but is unrecorded; a retry could duplicate it.
            logger.error(
                "ORPHANED remote workflow %s (user=%s template=%s) needs reconciliation: %s",
                remote_id,
                user.id,
                template_id,
                exc,
            )
            attempt.orphaned.append(remote_id)
            return Err(
                TemplateFailure(
                    template_id=template_id,
                    reason=f"workflow {remote_id} created but not recorded: {exc}",
                    error_type=type(exc).__name__,
                )
            )

        logger.info("Template %s provisioned for %s as %s", template_id, user.email, remote_id)
        return Ok(row)

    async def _register(
        self,
        user: SignupUser,
        template_id: str,
        clone: ClonedWorkflow,
        attempt: _Attempt,
    ) -> str:
        create = asyncio.ensure_future(self.registrar.register(clone))
        try:
            remote_id = await asyncio.shield(create)
        except asyncio.CancelledError:
            # Let the in-flight create land so it can be cleaned up rather than orphaned.
            try:
                attempt.created_workflow_ids.append(await create)
            except Exception as exc:
                logger.warning("In-flight create for %s/%s failed after cancel: %s", user.id, template_id, exc)
            self._mark_failed_quietly(user, template_id, "cancelled")
            raise
        attempt.created_workflow_ids.append(remote_id)
        return remote_id

    async def _record_active(
        self,
        user: SignupUser,
        template_id: str,
        remote_id: str,
        workflow_name: str,
    ) -> ProvisionedWorkflowSchema:
        retries = max(self.config.ledger_write_retries, 1)
        for number in range(1, retries + 1):
            try:
                return self.ledger.mark_active(user.id, template_id, remote_id, workflow_name)
            except LedgerError as exc:
                if number >= retries:
                    raise
                logger.warning(
                    "Ledger write for %s/%s failed (attempt %s/%s): %s",
                    user.id,
                    template_id,
                    number,
                    retries,
                    exc,
                )
                await asyncio.sleep(self.config.ledger_retry_delay_seconds * number)
        raise LedgerError(f"Ledger write for {user.id}/{template_id} not attempted")

    def _fail(self, user: SignupUser, template_id: str, exc: Exception) -> Err:
        reason = str(exc) or type(exc).__name__
        if isinstance(exc, AppError):
            logger.error("Template %s failed for %s: %s", template_id, user.email, reason)
        else:
            logger.exception("Unexpected error provisioning template %s for %s", template_id, user.email)
        self._mark_failed_quietly(user, template_id, reason)
        return Err(
            TemplateFailure(
                template_id=template_id,
                reason=reason,
                error_type=type(exc).__name__,
                retryable=bool(getattr(exc, "retryable", False)),
            )
        )

    def _mark_failed_quietly(self, user: SignupUser, template_id: str, reason: str) -> None:
        try:
            self.ledger.mark_failed(user.id, template_id, reason)
        except LedgerError as exc:
            logger.warning("Could not mark %s/%s failed: %s", user.id, template_id, exc)

    async def _compensate(
        self,
        user: SignupUser,
        workflow_ids: list[str],
        credential_ids: list[str],
    ) -> CleanupReport | None:
        if not workflow_ids and not credential_ids:
            return None
        if self.cleanup is None:
            logger.error(
                "No cleanup configured; leaving workflows %s and credentials %s for %s",
                workflow_ids,
                credential_ids,
                user.id,
            )
            return None
        report = await self.cleanup.cleanup(user.id, list(credential_ids), list(workflow_ids))
        if report.failures:
            logger.error("Compensation for %s incomplete: %s", user.id, report.failures)
        return report

    @staticmethod
    def _drop_deleted_orphans(attempt: _Attempt, report: CleanupReport | None) -> None:
        if report is None:
            return
        deleted = set(report.deleted_workflow_ids)
        attempt.orphaned = [remote_id for remote_id in attempt.orphaned if remote_id not in deleted]
