"""
Key Manager - Cryptographic keys for the DID wallet

Supports:
- Ed25519: DID signing key (W3C recommended), hex encoded
- secp256k1: ION update / recovery keys, Ethereum compatible
- Sealing of private keys at rest with a server secret
"""

import base64
import hashlib
import os
from dataclasses import dataclass
from typing import Dict, Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from eth_account import Account

from .errors import StorageError
from .models import utcnow


ED25519_KEY_TYPE = "Ed25519VerificationKey2020"
SECP256K1_KEY_TYPE = "EcdsaSecp256k1VerificationKey2019"

_SALT_BYTES = 16
_KDF_ITERATIONS = 200_000


@dataclass
class KeyPair:
    """Represents a cryptographic key pair"""
    key_id: str
    key_type: str
    public_key: str  # lowercase hex (Ed25519) or checksum address (secp256k1)
    private_key: Optional[str] = None  # lowercase hex
    created_at: str = ""
    controller: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utcnow().isoformat() + "Z"

    def to_verification_method(self) -> Dict[str, Any]:
        """Convert to W3C Verification Method format"""
        return {
            "id": self.key_id,
            "type": self.key_type,
            "controller": self.controller,
            "publicKeyMultibase": f"z{self.public_key}"
        }


class KeyManager:
    """
    Manages cryptographic keys for DID operations

    Features:
    - Generate Ed25519 key pairs from the OS CSPRNG
    - Generate secp256k1 key pairs for update / recovery commitments
    - Sign and verify messages
    - Seal and open private keys stored in the database
    """

    def __init__(self, server_secret: str, kdf_iterations: int = _KDF_ITERATIONS):
        self._server_secret = server_secret
        self._kdf_iterations = kdf_iterations

    # ==================== KEY GENERATION ====================

    def generate_ed25519_keypair(self, did: str, fragment: str = "key-1") -> KeyPair:
        """
        Generate Ed25519 key pair

        Args:
            did: The DID that will control this key
            fragment: Fragment used for the verification method id

        Returns:
            KeyPair with hex encoded raw keys
        """
        private_key = ed25519.Ed25519PrivateKey.generate()

        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

        return KeyPair(
            key_id=f"{did}#{fragment}",
            key_type=ED25519_KEY_TYPE,
            public_key=public_bytes.hex(),
            private_key=private_bytes.hex(),
            controller=did
        )

    def generate_secp256k1_keypair(self, did: str, purpose: str) -> KeyPair:
        """
        Generate secp256k1 key pair (Ethereum compatible)

        Args:
            did: The DID that will control this key
            purpose: "update" or "recovery"
        """
        account = Account.create()
        private_hex = account.key.hex()
        if private_hex.startswith("0x"):
            private_hex = private_hex[2:]

        return KeyPair(
            key_id=f"{did}#{purpose}-key",
            key_type=SECP256K1_KEY_TYPE,
            public_key=account.address,
            private_key=private_hex.lower(),
            controller=did
        )

    @staticmethod
    def commitment(keypair: KeyPair) -> str:
        """Hash commitment to a key, revealed on the next update or recovery"""
        return hashlib.sha256(keypair.public_key.lower().encode()).hexdigest()

    # ==================== SIGNING ====================

    @staticmethod
    def sign_ed25519(private_key_hex: str, message: bytes) -> str:
        """
        Sign message with an Ed25519 key

        Returns:
            Hex encoded signature
        """
        private_key = ed25519.Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex))
        return private_key.sign(message).hex()

    @staticmethod
    def verify_ed25519(public_key_hex: str, message: bytes, signature_hex: str) -> bool:
        """
        Verify Ed25519 signature

        Args:
            public_key_hex: Hex encoded raw public key
            message: Original message bytes
            signature_hex: Hex encoded signature

        Returns:
            True if signature is valid
        """
        try:
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
            public_key.verify(bytes.fromhex(signature_hex), message)
            return True
        except (ValueError, InvalidSignature):
            return False

    # ==================== SEALING ====================

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(self._server_secret.encode()))

    def seal_private_key(self, private_key_hex: str) -> str:
        """Encrypt a private key for storage"""
        salt = os.urandom(_SALT_BYTES)
        token = Fernet(self._derive_key(salt)).encrypt(private_key_hex.encode())
        return base64.urlsafe_b64encode(salt + token).decode()

    def open_private_key(self, sealed: str) -> str:
        """Decrypt a private key sealed with :meth:`seal_private_key`"""
        data = base64.urlsafe_b64decode(sealed.encode())
        salt, token = data[:_SALT_BYTES], data[_SALT_BYTES:]
        try:
            return Fernet(self._derive_key(salt)).decrypt(token).decode()
        except InvalidToken as e:
            raise StorageError("Stored key material cannot be decrypted") from e
