"""
DID Service
===========

Main entry point for DID operations used by the HTTP layer:
- DID issuance (returns immediately, anchoring is scheduled separately)
- DID lookups, search and statistics
- On-demand re-verification
"""

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any, List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .auth import CurrentUser
from .db import session_scope
from .did_manager import DIDManager, DIDMethod, content_hash
from .errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
)
from .key_manager import KeyManager
from .logger import get_logger
from .models import (
    AnchoringJob,
    DIDStatus,
    DidRecord,
    VerificationRecord,
    VerificationStatus,
    utcnow,
)
from .store import IdentityStore

log = get_logger("did_wallet.did_service")


@dataclass
class IssuedDID:
    """Synchronous answer of the issuance endpoint"""
    did_id: str
    did: str
    public_key: str
    private_key: Optional[str]
    did_document: Dict[str, Any]
    job_id: str
    status: str = DIDStatus.PENDING.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "didId": self.did_id,
            "did": self.did,
            "publicKey": self.public_key,
            "privateKey": self.private_key,
            "didDocument": self.did_document,
            "ipfsHash": "pending",
            "status": self.status,
        }


class DIDService:
    """
    Main service class for DID operations

    Args:
        Session: session factory bound to the identity store
        key_manager: key generation and sealing
        method: DID method used for new identifiers
        return_private_key: include the private key in the issuance answer
        verification_ttl_days: lifetime of on-demand verification records
    """

    def __init__(
        self,
        Session,
        key_manager: KeyManager,
        method: DIDMethod = DIDMethod.ION,
        return_private_key: bool = True,
        verification_ttl_days: int = 365,
    ):
        self.Session = Session
        self.key_manager = key_manager
        self.did_manager = DIDManager(key_manager, method)
        self.return_private_key = return_private_key
        self.verification_ttl_days = verification_ttl_days

    # ==================== ISSUANCE ====================

    def issue_did(
        self,
        user: Optional[CurrentUser],
        include_service: bool = False,
        service_endpoint: Optional[str] = None
    ) -> IssuedDID:
        """
        Create a DID for the caller and queue its anchoring job

        The returned ``job_id`` must be handed to the anchoring worker; the
        answer never reflects the anchoring outcome.

        Raises:
            AuthenticationError: no caller
            ConflictError: caller already owns a DID
            StorageError: the store could not be read or written
        """
        if user is None:
            raise AuthenticationError("Unauthorized")

        did, did_doc, signing_key = self.did_manager.create_did(include_service, service_endpoint)
        document = did_doc.to_dict()

        try:
            with session_scope(self.Session) as session:
                try:
                    existing = IdentityStore(session).did_for_user(user.id)
                except SQLAlchemyError as e:
                    log.error(f"Error checking existing DIDs: {e}")
                    raise StorageError("Database error") from e
                if existing is not None:
                    raise ConflictError("User already has a DID")

                record = DidRecord(
                    user_id=user.id,
                    did_identifier=did,
                    did_document=document,
                    public_key=signing_key.public_key,
                    private_key_encrypted=self.key_manager.seal_private_key(signing_key.private_key),
                    status=DIDStatus.PENDING.value,
                    service_endpoints=document.get("service", []),
                )
                session.add(record)
                session.flush()
                job = AnchoringJob(did_id=record.id)
                session.add(job)
                session.flush()
                did_id, job_id = record.id, job.id
        except IntegrityError as e:
            # Lost the race against a concurrent issuance for the same user.
            raise ConflictError("User already has a DID") from e
        except SQLAlchemyError as e:
            log.error(f"Error saving DID: {e}")
            raise StorageError("Failed to save DID") from e

        log.info(f"Created {did} for user {user.id}, anchoring job {job_id} queued")
        return IssuedDID(
            did_id=did_id,
            did=did,
            public_key=signing_key.public_key,
            private_key=signing_key.private_key if self.return_private_key else None,
            did_document=document,
            job_id=job_id,
        )

    def delete_failed_did(self, user: CurrentUser) -> None:
        """Remove the caller's failed DID so a new one can be issued"""
        with session_scope(self.Session) as session:
            record = IdentityStore(session).did_for_user(user.id)
            if record is None:
                raise NotFoundError("No DID found")
            if record.status != DIDStatus.FAILED.value:
                raise ConflictError("Only failed DIDs can be replaced")
            session.delete(record)
        log.info(f"Deleted failed DID of user {user.id}")

    # ==================== LOOKUPS ====================

    def get_user_did(self, user: CurrentUser) -> Optional[Dict[str, Any]]:
        with session_scope(self.Session) as session:
            record = IdentityStore(session).did_for_user(user.id)
            return record.to_dict() if record else None

    def get_did(self, did_id: str) -> Dict[str, Any]:
        with session_scope(self.Session) as session:
            record = IdentityStore(session).did_by_id(did_id, with_children=True)
            if record is None:
                raise NotFoundError("DID not found")
            return record.to_dict(include_children=True)

    def resolve(self, identifier: str) -> Dict[str, Any]:
        """Resolve a DID to its document and metadata"""
        with session_scope(self.Session) as session:
            record = IdentityStore(session).did_by_identifier(identifier)
            if record is None:
                raise NotFoundError("DID not found")
            return {
                "didDocument": record.did_document,
                "didDocumentMetadata": {
                    "status": record.status,
                    "created": record.created_at.isoformat() + "Z",
                    "updated": record.updated_at.isoformat() + "Z",
                },
            }

    def search(self, query: str) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            return []
        with session_scope(self.Session) as session:
            return [r.to_dict() for r in IdentityStore(session).search(query)]

    def user_statistics(self, user: CurrentUser) -> Dict[str, int]:
        with session_scope(self.Session) as session:
            return IdentityStore(session).user_statistics(user.id)

    def network_statistics(self) -> Dict[str, int]:
        with session_scope(self.Session) as session:
            return IdentityStore(session).network_statistics()

    # ==================== VERIFICATION ====================

    def reverify_did(self, user: CurrentUser, did_id: str) -> Dict[str, Any]:
        """
        Re-check a DID against its stored satellites and record the outcome

        Returns:
            The new verification record
        """
        with session_scope(self.Session) as session:
            record = IdentityStore(session).did_by_id(did_id, with_children=True)
            if record is None:
                raise NotFoundError("DID not found")
            if record.user_id != user.id and not user.is_admin:
                raise PermissionDeniedError("Only the owner can verify this DID")

            checks = self._run_checks(record)
            passed = all(c["status"] == "passed" for c in checks.values())
            now = utcnow()
            verification = VerificationRecord(
                did_id=record.id,
                verification_method="re-verification",
                status=(VerificationStatus.VERIFIED if passed else VerificationStatus.FAILED).value,
                result=checks,
                verified_at=now,
                expires_at=now + timedelta(days=self.verification_ttl_days),
            )
            session.add(verification)
            session.flush()
            log.info(f"Re-verified {record.did_identifier}: {verification.status}")
            return verification.to_dict()

    def _run_checks(self, record: DidRecord) -> Dict[str, Dict[str, str]]:
        def check(ok: bool, passed: str, failed: str) -> Dict[str, str]:
            return {"status": "passed" if ok else "failed", "message": passed if ok else failed}

        document = record.did_document or {}
        pin = record.pins[-1] if record.pins else None
        anchored = [op for op in record.operations if op.status == DIDStatus.ANCHORED.value]

        return {
            "didResolution": check(
                document.get("id") == record.did_identifier,
                "DID resolved successfully",
                "Document id does not match the DID",
            ),
            "documentIntegrity": check(
                pin is not None and pin.ipfs_hash == content_hash(document),
                "Document integrity verified",
                "Pinned copy missing or differs from the document",
            ),
            "keyGeneration": check(
                self._key_matches(record),
                "Signing key matches the verification method",
                "Signing key does not match the verification method",
            ),
            "ipfsStorage": check(
                pin is not None and pin.pin_status == "pinned",
                "Document found on IPFS",
                "Document is not pinned",
            ),
            "ionAnchoring": check(
                bool(anchored),
                f"Anchored to Bitcoin block #{anchored[-1].block_height}" if anchored else "",
                "No anchored operation",
            ),
        }

    def _key_matches(self, record: DidRecord) -> bool:
        methods = (record.did_document or {}).get("verificationMethod") or []
        if not methods:
            return False
        public_key = methods[0].get("publicKeyMultibase", "")
        if public_key.startswith("z"):
            public_key = public_key[1:]
        if public_key != record.public_key:
            return False
        private_key = self.key_manager.open_private_key(record.private_key_encrypted)
        challenge = secrets.token_bytes(32)
        signature = KeyManager.sign_ed25519(private_key, challenge)
        return KeyManager.verify_ed25519(public_key, challenge, signature)
