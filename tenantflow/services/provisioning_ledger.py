from __future__ import annotations

import logging
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tenantflow.core.exceptions import InvalidTransitionError, LedgerUnavailableError, LedgerWriteError
from tenantflow.models import ProvisionedWorkflow, ProvisioningStatus
from tenantflow.schemas.provisioning import ProvisionedWorkflowSchema

logger = logging.getLogger(__name__)

# Active is terminal; failed rows may be re-attempted.
ALLOWED_TRANSITIONS: dict[str | None, set[str]] = {
    None: {ProvisioningStatus.PENDING},
    ProvisioningStatus.PENDING: {
        ProvisioningStatus.PENDING,
        ProvisioningStatus.ACTIVE,
        ProvisioningStatus.FAILED,
    },
    ProvisioningStatus.FAILED: {ProvisioningStatus.PENDING, ProvisioningStatus.FAILED},
    ProvisioningStatus.ACTIVE: set(),
}


class ProvisioningLedger:
    """Durable (user_id, template_id) -> provisioned workflow mapping."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def active_template_ids(self, user_id: str) -> set[str]:
        return {row.template_id for row in self.list_for_user(user_id) if row.status == ProvisioningStatus.ACTIVE}

    def list_for_user(self, user_id: str) -> list[ProvisionedWorkflowSchema]:
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(ProvisionedWorkflow)
                    .filter(ProvisionedWorkflow.user_id == user_id)
                    .order_by(ProvisionedWorkflow.created_at.asc())
                    .all()
                )
                return [ProvisionedWorkflowSchema.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Ledger read failed for user {user_id}: {exc}") from exc

    def get(self, user_id: str, template_id: str) -> ProvisionedWorkflowSchema | None:
        try:
            with self.session_factory() as db:
                row = self._find(db, user_id, template_id)
                return ProvisionedWorkflowSchema.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Ledger read failed for user {user_id}: {exc}") from exc

    def list_pending(self, user_id: str | None = None) -> list[ProvisionedWorkflowSchema]:
        """Rows stuck in pending, i.e. candidates for reconciliation."""
        try:
            with self.session_factory() as db:
                query = db.query(ProvisionedWorkflow).filter(
                    ProvisionedWorkflow.status == ProvisioningStatus.PENDING
                )
                if user_id is not None:
                    query = query.filter(ProvisionedWorkflow.user_id == user_id)
                return [ProvisionedWorkflowSchema.model_validate(row) for row in query.all()]
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Ledger read failed: {exc}") from exc

    def mark_pending(self, user_id: str, template_id: str) -> ProvisionedWorkflowSchema:
        return self._transition(user_id, template_id, ProvisioningStatus.PENDING, count_attempt=True)

    def mark_active(
        self,
        user_id: str,
        template_id: str,
        remote_workflow_id: str,
        workflow_name: str | None = None,
    ) -> ProvisionedWorkflowSchema:
        return self._transition(
            user_id,
            template_id,
            ProvisioningStatus.ACTIVE,
            remote_workflow_id=remote_workflow_id,
            workflow_name=workflow_name,
            last_error=None,
        )

    def mark_failed(self, user_id: str, template_id: str, reason: str) -> ProvisionedWorkflowSchema:
        return self._transition(user_id, template_id, ProvisioningStatus.FAILED, last_error=reason)

    def forget(self, user_id: str, remote_workflow_ids: Iterable[str]) -> int:
        ids = list(remote_workflow_ids)
        if not ids:
            return 0
        try:
            with self.session_factory() as db:
                deleted = (
                    db.query(ProvisionedWorkflow)
                    .filter(
                        ProvisionedWorkflow.user_id == user_id,
                        ProvisionedWorkflow.remote_workflow_id.in_(ids),
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
                return int(deleted)
        except SQLAlchemyError as exc:
            raise LedgerWriteError(f"Ledger delete failed for user {user_id}: {exc}") from exc

    def _transition(
        self,
        user_id: str,
        template_id: str,
        status: str,
        count_attempt: bool = False,
        **fields: object,
    ) -> ProvisionedWorkflowSchema:
        try:
            with self.session_factory() as db:
                row = self._find(db, user_id, template_id)
                current = row.status if row else None
                if status not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"{user_id}/{template_id}: {current} -> {status} is not allowed"
                    )
                if row is None:
                    row = ProvisionedWorkflow(user_id=user_id, template_id=template_id, attempts=0)
                    db.add(row)
                row.status = status
                for key, value in fields.items():
                    setattr(row, key, value)
                if count_attempt:
                    row.attempts = (row.attempts or 0) + 1
                db.commit()
                db.refresh(row)
                return ProvisionedWorkflowSchema.model_validate(row)
        except SQLAlchemyError as exc:
            raise LedgerWriteError(
                f"Ledger write failed for {user_id}/{template_id} ({status}): {exc}"
            ) from exc

    @staticmethod
    def _find(db: Session, user_id: str, template_id: str) -> ProvisionedWorkflow | None:
        return (
            db.query(ProvisionedWorkflow)
            .filter(
                ProvisionedWorkflow.user_id == user_id,
                ProvisionedWorkflow.template_id == template_id,
            )
            .first()
        )
