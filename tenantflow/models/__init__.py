"""
SQLAlchemy models for the provisioning ledger and credential records.
"""
from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class ProvisioningStatus:
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


class ProvisionedWorkflow(Base):
    __tablename__ = "provisioned_workflows"
    __table_args__ = (UniqueConstraint("user_id", "template_id", name="uq_provisioned_user_template"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    template_id = Column(Text, nullable=False)
    remote_workflow_id = Column(Text)
    workflow_name = Column(Text)
    status = Column(Text, nullable=False, default=ProvisioningStatus.PENDING)
    last_error = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CredentialRecord(Base):
    __tablename__ = "credential_records"
    __table_args__ = (UniqueConstraint("user_id", "service", name="uq_credential_user_service"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    service = Column(Text, nullable=False)
    credential_type = Column(Text, nullable=False)
    remote_credential_id = Column(Text, nullable=False)
    scope = Column(Text)
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
