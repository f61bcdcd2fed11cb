from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    ADMIN = "admin"
    ISSUER = "issuer"
    VERIFIER = "verifier"
    HOLDER = "holder"


class DIDStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ANCHORED = "anchored"
    FAILED = "failed"


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DEACTIVATE = "deactivate"
    RECOVER = "recover"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Profile(TimestampMixin, Base):
    __tablename__ = "profiles"
    # Matches the identity provider's user id.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default=Role.HOLDER.value)
    api_token_hash: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)

    did: Mapped[Optional[DidRecord]] = relationship("DidRecord", back_populates="owner", uselist=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class DidRecord(TimestampMixin, Base):
    __tablename__ = "dids"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_dids_user_id"),
        UniqueConstraint("did_identifier", name="uq_dids_identifier"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    did_identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    did_document: Mapped[dict] = mapped_column(JSON, nullable=False)
    public_key: Mapped[str] = mapped_column(String(128), nullable=False)
    private_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=DIDStatus.PENDING.value, index=True)
    service_endpoints: Mapped[list] = mapped_column(JSON, default=list)

    owner: Mapped[Profile] = relationship("Profile", back_populates="did")
    pins: Mapped[list[PinRecord]] = relationship(
        "PinRecord", back_populates="did", cascade="all, delete-orphan", order_by="PinRecord.created_at"
    )
    operations: Mapped[list[AnchoringOperation]] = relationship(
        "AnchoringOperation", back_populates="did", cascade="all, delete-orphan",
        order_by="AnchoringOperation.created_at"
    )
    verifications: Mapped[list[VerificationRecord]] = relationship(
        "VerificationRecord", back_populates="did", cascade="all, delete-orphan",
        order_by="VerificationRecord.created_at"
    )
    jobs: Mapped[list[AnchoringJob]] = relationship(
        "AnchoringJob", back_populates="did", cascade="all, delete-orphan"
    )

    def to_dict(self, include_children: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "did_identifier": self.did_identifier,
            "did_document": self.did_document,
            "public_key": self.public_key,
            "status": self.status,
            "service_endpoints": self.service_endpoints or [],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            data["ipfs_pins"] = [p.to_dict() for p in self.pins]
            data["ion_operations"] = [o.to_dict() for o in self.operations]
            data["verifications"] = [v.to_dict() for v in self.verifications]
        return data


class AnchoringJob(TimestampMixin, Base):
    __tablename__ = "anchoring_jobs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    did_id: Mapped[str] = mapped_column(ForeignKey("dids.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.QUEUED.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    did: Mapped[DidRecord] = relationship("DidRecord", back_populates="jobs")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "did_id": self.did_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


class AnchoringOperation(TimestampMixin, Base):
    __tablename__ = "ion_operations"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    did_id: Mapped[str] = mapped_column(ForeignKey("dids.id"), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), unique=True, nullable=True)
    operation_type: Mapped[str] = mapped_column(String(16), default=OperationType.CREATE.value)
    operation_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=DIDStatus.PENDING.value, index=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    block_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    did: Mapped[DidRecord] = relationship("DidRecord", back_populates="operations")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "did_id": self.did_id,
            "operation_type": self.operation_type,
            "operation_data": self.operation_data,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "block_height": self.block_height,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PinRecord(TimestampMixin, Base):
    __tablename__ = "ipfs_pins"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    did_id: Mapped[str] = mapped_column(ForeignKey("dids.id"), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), unique=True, nullable=True)
    content: Mapped[dict] = mapped_column(JSON, nullable=False)
    ipfs_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    pin_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    gateway_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    did: Mapped[DidRecord] = relationship("DidRecord", back_populates="pins")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "did_id": self.did_id,
            "ipfs_hash": self.ipfs_hash,
            "pin_status": self.pin_status,
            "gateway_url": self.gateway_url,
            "created_at": _iso(self.created_at),
        }


class VerificationRecord(TimestampMixin, Base):
    __tablename__ = "verifications"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    did_id: Mapped[str] = mapped_column(ForeignKey("dids.id"), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), unique=True, nullable=True)
    verification_method: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=VerificationStatus.PENDING.value, index=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    did: Mapped[DidRecord] = relationship("DidRecord", back_populates="verifications")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "did_id": self.did_id,
            "verification_method": self.verification_method,
            "status": self.status,
            "result": self.result,
            "verified_at": _iso(self.verified_at),
            "expires_at": _iso(self.expires_at),
        }


class IssuerApplication(TimestampMixin, Base):
    __tablename__ = "issuer_applications"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)  # organization name
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    website_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dns_verification: Mapped[bool] = mapped_column(Boolean, default=False)
    email_verification: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(16), default=ApplicationStatus.PENDING.value, index=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(ForeignKey("profiles.id"), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    applicant: Mapped[Profile] = relationship("Profile", foreign_keys=[user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "full_name": self.full_name,
            "email": self.email,
            "website_url": self.website_url,
            "dns_verification": self.dns_verification,
            "email_verification": self.email_verification,
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "created_at": _iso(self.created_at),
        }


class CredentialRecord(TimestampMixin, Base):
    __tablename__ = "verifiable_credentials"
    __table_args__ = (UniqueConstraint("credential_id", name="uq_vc_credential_id"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    holder_user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    issuer_user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    credential_id: Mapped[str] = mapped_column(String(128), nullable=False)
    credential_type: Mapped[str] = mapped_column(String(128), nullable=False)
    credential_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=CredentialStatus.ACTIVE.value, index=True)
    revoked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "holder_user_id": self.holder_user_id,
            "issuer_user_id": self.issuer_user_id,
            "credential_id": self.credential_id,
            "credential_type": self.credential_type,
            "credential_data": self.credential_data,
            "status": self.status,
            "revoked_reason": self.revoked_reason,
            "revoked_at": _iso(self.revoked_at),
            "issued_at": _iso(self.issued_at),
            "expires_at": _iso(self.expires_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"
