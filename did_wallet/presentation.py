"""
Verifiable Presentations
========================

Assembles a holder-side presentation from stored credentials and renders it
as JSON or as a QR code. The proof block is a placeholder.
"""

import base64
import io
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import qrcode
from qrcode.exceptions import DataOverflowError

from .errors import EmptySelection, ValidationError
from .models import utcnow


@dataclass
class Presentation:
    holder: str
    credentials: List[Dict[str, Any]]
    proof: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "@context": ["https://www.w3.org/2018/credentials/v1"],
            "type": ["VerifiablePresentation"],
            "verifiableCredential": self.credentials,
            "holder": self.holder,
            "proof": self.proof,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def qr_payload(self) -> str:
        """Compact JSON, as encoded in the QR code"""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def qr_data_uri(self) -> str:
        """PNG QR code as a ``data:`` URI"""
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(self.qr_payload())
        try:
            qr.make(fit=True)
        except (DataOverflowError, ValueError) as e:
            raise ValidationError("Presentation is too large for a QR code; select fewer credentials") from e

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class PresentationBuilder:
    """Builds presentations from a holder's credentials"""

    def build(
        self,
        holder_did: str,
        credentials: Sequence[Dict[str, Any]],
        selection: Sequence[int]
    ) -> Presentation:
        """
        Args:
            holder_did: DID of the presenting holder
            credentials: the holder's credential payloads
            selection: indices into ``credentials``, kept in the given order

        Raises:
            EmptySelection: nothing selected
            ValidationError: unknown or repeated index, missing holder
        """
        if not selection:
            raise EmptySelection()
        if not holder_did:
            raise ValidationError("Holder DID is required")
        if len(set(selection)) != len(selection):
            raise ValidationError("Each credential can only be selected once")
        for index in selection:
            if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(credentials):
                raise ValidationError(f"Invalid credential index: {index}")

        return Presentation(
            holder=holder_did,
            credentials=[credentials[i] for i in selection],
            proof={
                "type": "Ed25519Signature2020",
                "created": utcnow().isoformat() + "Z",
                "verificationMethod": f"{holder_did}#key-1",
                "proofPurpose": "authentication",
                "jws": f"placeholder_signature_{int(time.time() * 1000)}",
            },
        )
