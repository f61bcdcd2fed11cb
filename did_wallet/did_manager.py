"""
DID Manager - Builds DID identifiers and DID Documents (W3C DID Core 1.0)

DID Format: did:<method>:<32 lowercase hex chars>

Reference: https://www.w3.org/TR/did-core/
"""

import hashlib
import json
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from .key_manager import KeyManager, KeyPair


class DIDMethod(Enum):
    """Supported DID methods"""
    ION = "ion"
    KEY = "key"


@dataclass
class ServiceEndpoint:
    """Service endpoint in DID Document"""
    id: str
    type: str
    service_endpoint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "serviceEndpoint": self.service_endpoint
        }


@dataclass
class DIDDocument:
    """
    W3C DID Document

    Reference: https://www.w3.org/TR/did-core/#core-properties
    """
    id: str
    verification_method: List[Dict] = field(default_factory=list)
    authentication: List[str] = field(default_factory=list)
    assertion_method: List[str] = field(default_factory=list)
    service: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C DID Document JSON format"""
        doc = {
            "@context": ["https://www.w3.org/ns/did/v1"],
            "id": self.id,
            "verificationMethod": self.verification_method,
            "authentication": self.authentication,
            "assertionMethod": self.assertion_method,
        }
        # An empty service list is never emitted.
        if self.service:
            doc["service"] = self.service
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DIDDocument":
        return cls(
            id=data["id"],
            verification_method=data.get("verificationMethod", []),
            authentication=data.get("authentication", []),
            assertion_method=data.get("assertionMethod", []),
            service=data.get("service", []),
        )


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def content_hash(data: Any) -> str:
    """Content identifier of a JSON document (CIDv0-style ``Qm`` prefix)"""
    return "Qm" + hashlib.sha256(canonical_json(data).encode()).hexdigest()[:44]


class DIDManager:
    """
    Creates DIDs and their documents

    Features:
    - Generate DID identifiers from random bytes
    - Assemble DID Documents with verification methods and services
    - Build ION create operations for anchoring
    """

    def __init__(self, key_manager: KeyManager, method: DIDMethod = DIDMethod.ION):
        self.key_manager = key_manager
        self.method = method

    # ==================== DID CREATION ====================

    def new_identifier(self) -> Tuple[str, str]:
        """Returns (did, suffix) for a fresh random identifier"""
        suffix = secrets.token_hex(16)
        return f"did:{self.method.value}:{suffix}", suffix

    def create_did(
        self,
        include_service: bool = False,
        service_endpoint: Optional[str] = None
    ) -> Tuple[str, DIDDocument, KeyPair]:
        """
        Create a new DID with its signing key

        Args:
            include_service: Whether to publish a LinkedDomains service
            service_endpoint: URL of the service; blank values are ignored

        Returns:
            Tuple of (did, did_document, signing_key)
        """
        did, _ = self.new_identifier()
        signing_key = self.key_manager.generate_ed25519_keypair(did)

        services = []
        endpoint = (service_endpoint or "").strip()
        if include_service and endpoint:
            services.append(ServiceEndpoint(
                id=f"{did}#service-1",
                type="LinkedDomains",
                service_endpoint=endpoint
            ).to_dict())

        did_doc = DIDDocument(
            id=did,
            verification_method=[signing_key.to_verification_method()],
            authentication=[signing_key.key_id],
            assertion_method=[signing_key.key_id],
            service=services
        )
        return did, did_doc, signing_key

    # ==================== ION OPERATIONS ====================

    def build_create_operation(self, did_document: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build an ION create operation for a DID Document

        Update and recovery keys are generated for the commitments only;
        they are not persisted.
        """
        did = did_document["id"]
        update_key = self.key_manager.generate_secp256k1_keypair(did, "update")
        recovery_key = self.key_manager.generate_secp256k1_keypair(did, "recovery")

        delta = {
            "updateCommitment": KeyManager.commitment(update_key),
            "patches": [{
                "action": "replace",
                "document": did_document
            }]
        }
        return {
            "type": "create",
            "suffixData": {
                "deltaHash": hashlib.sha256(canonical_json(delta).encode()).hexdigest(),
                "recoveryCommitment": KeyManager.commitment(recovery_key)
            },
            "delta": delta
        }
