from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tenantflow.core.exceptions import CredentialError
from tenantflow.models import CredentialRecord


class CredentialStore:
    """Credential records keyed by (user_id, service)."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get(self, user_id: str, service: str) -> CredentialRecord | None:
        try:
            with self.session_factory() as db:
                return self._find(db, user_id, service)
        except SQLAlchemyError as exc:
            raise CredentialError(f"Could not read {service} credential for {user_id}: {exc}", service=service) from exc

    def list_for_user(self, user_id: str) -> list[CredentialRecord]:
        try:
            with self.session_factory() as db:
                return db.query(CredentialRecord).filter(CredentialRecord.user_id == user_id).all()
        except SQLAlchemyError as exc:
            raise CredentialError(f"Could not read credentials for {user_id}: {exc}") from exc

    def save(
        self,
        user_id: str,
        service: str,
        credential_type: str,
        remote_credential_id: str,
        access_token: str | None,
        refresh_token: str | None,
        scope: str | None,
        expires_at: datetime | None,
    ) -> CredentialRecord:
        try:
            with self.session_factory() as db:
                row = self._find(db, user_id, service)
                if row is None:
                    row = CredentialRecord(user_id=user_id, service=service)
                    db.add(row)
                row.credential_type = credential_type
                row.remote_credential_id = remote_credential_id
                row.access_token = access_token
                if refresh_token:
                    row.refresh_token = refresh_token
                row.scope = scope
                row.expires_at = expires_at
                db.commit()
                db.refresh(row)
                return row
        except SQLAlchemyError as exc:
            raise CredentialError(f"Could not store {service} credential for {user_id}: {exc}", service=service) from exc

    def delete_by_remote_ids(self, user_id: str, remote_credential_ids: Iterable[str]) -> int:
        ids = list(remote_credential_ids)
        if not ids:
            return 0
        try:
            with self.session_factory() as db:
                deleted = (
                    db.query(CredentialRecord)
                    .filter(
                        CredentialRecord.user_id == user_id,
                        CredentialRecord.remote_credential_id.in_(ids),
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
                return int(deleted)
        except SQLAlchemyError as exc:
            raise CredentialError(f"Could not delete credential records for {user_id}: {exc}") from exc

    @staticmethod
    def _find(db: Session, user_id: str, service: str) -> CredentialRecord | None:
        return (
            db.query(CredentialRecord)
            .filter(CredentialRecord.user_id == user_id, CredentialRecord.service == service)
            .first()
        )
