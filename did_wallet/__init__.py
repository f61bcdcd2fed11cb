"""
Decentralized Identity (DID) Wallet
===================================

Backend for an identity dashboard following W3C DID Core 1.0 and the
Verifiable Credentials Data Model.

Components:
- DIDService: DID issuance, lookups and re-verification
- AnchoringWorker: background pinning and ION anchoring jobs
- CredentialIssuer: issue, revoke and expire Verifiable Credentials
- PresentationBuilder: assemble Verifiable Presentations (JSON / QR)
- CredentialVerifier: read presentations back
- IssuerApplicationService: issuer applications and roles
- KeyManager / DIDManager: keys and DID Documents

Standards:
- W3C DID Core 1.0: https://www.w3.org/TR/did-core/
- W3C Verifiable Credentials: https://www.w3.org/TR/vc-data-model/
"""

from .anchoring import AnchoringWorker, submit_operation
from .auth import CurrentUser, authenticate, ensure_profile, issue_api_token, sign_in
from .config import Settings
from .credential_issuer import CredentialIssuer, VerifiableCredential
from .credential_verifier import CredentialVerifier, PresentationVerification, CredentialSummary
from .did_manager import DIDManager, DIDDocument, DIDMethod, ServiceEndpoint
from .did_service import DIDService, IssuedDID
from .ion_client import IonClient, IonLedger, SimulatedLedger
from .issuer_applications import IssuerApplicationService
from .key_manager import KeyManager, KeyPair
from .presentation import Presentation, PresentationBuilder

__version__ = "1.0.0"
__all__ = [
    # Core DID
    "DIDManager",
    "DIDDocument",
    "DIDMethod",
    "ServiceEndpoint",
    "DIDService",
    "IssuedDID",

    # Keys
    "KeyManager",
    "KeyPair",

    # Anchoring
    "AnchoringWorker",
    "submit_operation",
    "IonClient",
    "IonLedger",
    "SimulatedLedger",

    # Credentials
    "CredentialIssuer",
    "VerifiableCredential",
    "CredentialVerifier",
    "PresentationVerification",
    "CredentialSummary",
    "Presentation",
    "PresentationBuilder",

    # Accounts
    "CurrentUser",
    "authenticate",
    "ensure_profile",
    "issue_api_token",
    "sign_in",
    "IssuerApplicationService",

    "Settings",
]
