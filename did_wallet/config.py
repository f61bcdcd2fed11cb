"""
config.py - Centralized settings for the wallet backend

Values come from environment variables (case-insensitive) or a local .env file.
"""
from typing import Annotated, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Storage
    database_url: str = "sqlite:///did_wallet.db"
    # Seals private keys at rest. Change in production.
    server_secret: str = "dev-secret-change-me"
    kdf_iterations: int = 200_000

    # DID issuance
    did_method: str = "ion"
    return_private_key: bool = True
    verification_ttl_days: int = 365

    # Anchoring
    ipfs_gateway: str = "https://ipfs.io/ipfs"
    ion_node_url: str = "https://ion.tbd.network"
    anchoring_ledger: str = "simulated"  # "simulated" or "ion"
    ion_timeout_seconds: float = 10.0
    anchor_max_attempts: int = 3
    anchor_backoff_seconds: float = 1.0

    # Accounts & HTTP
    # Shared with the identity provider; required on sign-in when set.
    identity_provider_key: str = ""
    admin_emails: Annotated[List[str], NoDecode] = []
    cors_origins: Annotated[List[str], NoDecode] = ["*"]
    log_level: str = "INFO"

    @field_validator("admin_emails", "cors_origins", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("admin_emails")
    @classmethod
    def _lower_emails(cls, value: List[str]) -> List[str]:
        return [email.lower() for email in value]

    @field_validator("ipfs_gateway", "ion_node_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("anchoring_ledger")
    @classmethod
    def _check_ledger(cls, value: str) -> str:
        value = value.lower()
        if value not in ("simulated", "ion"):
            raise ValueError("anchoring_ledger must be 'simulated' or 'ion'")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()
