"""
Verifiable Credentials Issuer
=============================

Issues W3C Verifiable Credentials (Data Model 1.1) from issuer accounts and
keeps their lifecycle: active -> revoked | expired.

Reference: https://www.w3.org/TR/vc-data-model/
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import select

from .auth import CurrentUser
from .db import session_scope
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .logger import get_logger
from .models import (
    ApplicationStatus,
    CredentialRecord,
    CredentialStatus,
    IssuerApplication,
    Profile,
    Role,
    utcnow,
)
from .store import IdentityStore

log = get_logger("did_wallet.issuer")

DEFAULT_CREDENTIAL_TYPE = "EducationCredential"


@dataclass
class VerifiableCredential:
    """
    W3C Verifiable Credential

    A credential containing claims about a subject, issued by an issuer.
    The proof is a placeholder; nothing is signed.
    """
    context: List[str] = field(default_factory=lambda: [
        "https://www.w3.org/2018/credentials/v1",
        "https://www.w3.org/2018/credentials/examples/v1"
    ])
    id: str = ""
    type: List[str] = field(default_factory=lambda: ["VerifiableCredential"])
    issuer: Union[str, Dict[str, Any]] = ""
    issuance_date: str = ""
    expiration_date: Optional[str] = None
    credential_subject: Dict[str, Any] = field(default_factory=dict)
    proof: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"vc:{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        if not self.issuance_date:
            self.issuance_date = utcnow().isoformat() + "Z"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C VC JSON format"""
        vc = {
            "@context": self.context,
            "id": self.id,
            "type": self.type,
            "issuer": self.issuer,
            "issuanceDate": self.issuance_date,
            "credentialSubject": self.credential_subject
        }
        if self.expiration_date:
            vc["expirationDate"] = self.expiration_date
        if self.proof:
            vc["proof"] = self.proof
        return vc


class CredentialIssuer:
    """
    Issues and manages Verifiable Credentials

    Features:
    - Issue credentials to registered recipients
    - Revoke credentials
    - Expire overdue credentials
    - List issued and held credentials
    """

    def __init__(self, Session):
        self.Session = Session

    # ==================== CREDENTIAL ISSUANCE ====================

    def issue_credential(
        self,
        issuer: CurrentUser,
        recipient_email: str,
        credential_subject: Dict[str, Any],
        credential_type: str = DEFAULT_CREDENTIAL_TYPE,
        recipient_did: Optional[str] = None,
        validity_days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Issue a credential to the profile registered under ``recipient_email``

        Args:
            issuer: calling issuer (or admin)
            recipient_email: email of the holder's profile
            credential_subject: claims; ``name`` is required
            credential_type: second entry of the credential ``type`` list
            recipient_did: explicit subject DID
            validity_days: sets ``expirationDate`` when given

        Returns:
            The stored credential record
        """
        issuer.require(Role.ISSUER, Role.ADMIN)

        recipient_email = (recipient_email or "").strip()
        subject = dict(credential_subject or {})
        if not recipient_email or not str(subject.get("name", "")).strip():
            raise ValidationError("Please fill in all required fields")
        if validity_days is not None and validity_days <= 0:
            raise ValidationError("validity_days must be positive")

        with session_scope(self.Session) as session:
            recipient = session.scalars(
                select(Profile).where(Profile.email == recipient_email)
            ).first()
            if recipient is None:
                raise NotFoundError("Recipient not found")

            store = IdentityStore(session)
            issuer_did = store.did_for_user(issuer.id)
            holder_did = store.did_for_user(recipient.id)

            subject_id = (
                (recipient_did or "").strip()
                or (holder_did.did_identifier if holder_did else "")
                or f"did:ion:holder:{recipient_email}"
            )
            issuer_ref = issuer_did.did_identifier if issuer_did else f"did:ion:issuer:{issuer.id}"

            issued_at = utcnow()
            expires_at = issued_at + timedelta(days=validity_days) if validity_days else None

            vc = VerifiableCredential(
                type=["VerifiableCredential", credential_type or DEFAULT_CREDENTIAL_TYPE],
                issuer={"id": issuer_ref, "name": self._organization_name(session, issuer)},
                issuance_date=issued_at.isoformat() + "Z",
                expiration_date=expires_at.isoformat() + "Z" if expires_at else None,
                credential_subject={"id": subject_id, **{k: v for k, v in subject.items() if k != "id"}},
            )
            vc.proof = {
                "type": "Ed25519Signature2020",
                "created": vc.issuance_date,
                "verificationMethod": f"{issuer_ref}#key-1",
                "signatureValue": "placeholder-signature"
            }

            record = CredentialRecord(
                holder_user_id=recipient.id,
                issuer_user_id=issuer.id,
                credential_id=vc.id,
                credential_type=vc.type[-1],
                credential_data=vc.to_dict(),
                status=CredentialStatus.ACTIVE.value,
                issued_at=issued_at,
                expires_at=expires_at,
            )
            session.add(record)
            session.flush()
            log.info(f"Credential {vc.id} issued by {issuer.id} to {recipient.id}")
            return record.to_dict()

    @staticmethod
    def _organization_name(session, issuer: CurrentUser) -> str:
        application = session.scalars(
            select(IssuerApplication).where(
                IssuerApplication.user_id == issuer.id,
                IssuerApplication.status == ApplicationStatus.APPROVED.value,
            )
        ).first()
        if application is not None:
            return application.full_name
        profile = session.get(Profile, issuer.id)
        return (profile.full_name if profile and profile.full_name else issuer.email)

    # ==================== REVOCATION ====================

    def revoke_credential(self, issuer: CurrentUser, credential_id: str, reason: str = "") -> Dict[str, Any]:
        """
        Revoke a credential

        Only the issuing account or an admin may revoke.
        """
        with session_scope(self.Session) as session:
            record = session.scalars(
                select(CredentialRecord).where(CredentialRecord.credential_id == credential_id)
            ).first()
            if record is None:
                raise NotFoundError("Credential not found")
            if record.issuer_user_id != issuer.id and not issuer.is_admin:
                raise PermissionDeniedError("Only the issuer can revoke this credential")

            if record.status != CredentialStatus.REVOKED.value:
                record.status = CredentialStatus.REVOKED.value
                record.revoked_reason = reason or None
                record.revoked_at = utcnow()
                log.info(f"Credential {credential_id} revoked by {issuer.id}")
            return record.to_dict()

    def expire_credentials(self, now: Optional[datetime] = None) -> int:
        """Flip overdue active credentials to expired; returns the count"""
        now = now or utcnow()
        with session_scope(self.Session) as session:
            overdue = session.scalars(
                select(CredentialRecord).where(
                    CredentialRecord.status == CredentialStatus.ACTIVE.value,
                    CredentialRecord.expires_at.is_not(None),
                    CredentialRecord.expires_at < now,
                )
            ).all()
            for record in overdue:
                record.status = CredentialStatus.EXPIRED.value
        if overdue:
            log.info(f"Expired {len(overdue)} credential(s)")
        return len(overdue)

    # ==================== UTILITIES ====================

    def list_issued(self, issuer: CurrentUser) -> List[Dict[str, Any]]:
        issuer.require(Role.ISSUER, Role.ADMIN)
        with session_scope(self.Session) as session:
            records = session.scalars(
                select(CredentialRecord)
                .where(CredentialRecord.issuer_user_id == issuer.id)
                .order_by(CredentialRecord.issued_at.desc())
            )
            return [r.to_dict() for r in records]

    def list_held(self, holder: CurrentUser, include_revoked: bool = True) -> List[Dict[str, Any]]:
        """Credentials held by ``holder``, oldest first"""
        with session_scope(self.Session) as session:
            query = select(CredentialRecord).where(CredentialRecord.holder_user_id == holder.id)
            if not include_revoked:
                query = query.where(CredentialRecord.status != CredentialStatus.REVOKED.value)
            records = session.scalars(query.order_by(CredentialRecord.issued_at, CredentialRecord.created_at))
            return [r.to_dict() for r in records]
