"""
Verifiable Presentation Verifier
================================

Reads a scanned or pasted presentation and reports the credentials it
carries. No signature or revocation check is performed: every credential
found is reported as verified.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .models import utcnow

UNKNOWN_ISSUER = "Unknown Issuer"
UNKNOWN_HOLDER = "unknown"


@dataclass
class CredentialSummary:
    id: str
    issuer: str
    type: List[str]
    issuance_date: Optional[str]
    credential_subject: Dict[str, Any]
    verified: bool = True
    revoked: bool = False
    expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "issuer": self.issuer,
            "type": self.type,
            "issuanceDate": self.issuance_date,
            "credentialSubject": self.credential_subject,
            "verified": self.verified,
            "revoked": self.revoked,
            "expired": self.expired,
        }


@dataclass
class PresentationVerification:
    holder: str
    valid_vp: bool
    credentials: List[CredentialSummary] = field(default_factory=list)
    verified_at: str = ""

    def __post_init__(self):
        if not self.verified_at:
            self.verified_at = utcnow().isoformat() + "Z"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder": self.holder,
            "validVP": self.valid_vp,
            "credentials": [c.to_dict() for c in self.credentials],
            "verifiedAt": self.verified_at,
        }


def issuer_name(issuer: Any) -> str:
    """Issuer may be a DID string or an object carrying a ``name``"""
    if isinstance(issuer, str) and issuer:
        return issuer
    if isinstance(issuer, dict) and issuer.get("name"):
        return str(issuer["name"])
    return UNKNOWN_ISSUER


def _is_expired(expiration_date: Any, now: datetime) -> bool:
    if not isinstance(expiration_date, str) or not expiration_date:
        return False
    try:
        expiration = datetime.fromisoformat(expiration_date.replace("Z", "+00:00"))
    except ValueError:
        return False
    if expiration.tzinfo is not None:
        expiration = expiration.astimezone(timezone.utc).replace(tzinfo=None)
    return now > expiration


class CredentialVerifier:
    """Extracts credential summaries from presentations"""

    def verify_presentation(self, raw: str) -> PresentationVerification:
        """
        Args:
            raw: presentation JSON; anything that does not parse to an object
                is taken as an opaque holder identifier

        Returns:
            PresentationVerification with one summary per embedded credential
        """
        try:
            vp = json.loads(raw)
        except (TypeError, ValueError):
            vp = None

        if not isinstance(vp, dict):
            holder = (raw or "").strip() if isinstance(raw, str) else ""
            return PresentationVerification(holder=holder or UNKNOWN_HOLDER, valid_vp=True)

        embedded = vp.get("verifiableCredential") or []
        if not isinstance(embedded, list):
            embedded = [embedded]

        now = utcnow()
        summaries = []
        for index, vc in enumerate(embedded):
            if not isinstance(vc, dict):
                vc = {}
            vc_type = vc.get("type") or ["VerifiableCredential"]
            summaries.append(CredentialSummary(
                id=vc.get("id") or f"credential-{index}",
                issuer=issuer_name(vc.get("issuer")),
                type=vc_type if isinstance(vc_type, list) else [vc_type],
                issuance_date=vc.get("issuanceDate") or now.isoformat() + "Z",
                credential_subject=vc.get("credentialSubject") or {},
                expired=_is_expired(vc.get("expirationDate"), now),
            ))

        return PresentationVerification(
            holder=vp.get("holder") or UNKNOWN_HOLDER,
            valid_vp=True,
            credentials=summaries,
        )
