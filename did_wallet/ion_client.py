"""
Anchoring network access
========================

- IonClient: submits operations to an ION node over HTTP
- SimulatedLedger: local stand-in that fabricates Bitcoin anchors
- IonLedger: ledger backed by an IonClient
"""

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .errors import ExternalServiceError
from .logger import get_logger

log = get_logger("did_wallet.ion")

# Simulated anchors land in this block range.
_BLOCK_HEIGHT_BASE = 800_000
_BLOCK_HEIGHT_SPAN = 100_000


@dataclass
class AnchorReceipt:
    transaction_id: Optional[str]
    block_height: Optional[int]
    raw: Dict[str, Any]


class IonClient:
    """HTTP client for an ION node's ``/operations`` endpoint"""

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def submit(self, operation_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST an operation to the node

        Returns:
            The node's JSON answer

        Raises:
            ExternalServiceError: network failure, non-2xx answer or a
                JSON body that is not an object
        """
        url = f"{self.base_url}/operations"
        log.info(f"Submitting ION operation to {url}")
        try:
            response = self.http.post(
                url,
                json=operation_data,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error(f"ION submission failed: {e}")
            raise ExternalServiceError(f"ION submission failed: {e}") from e

        if not response.ok:
            log.error(f"ION submission failed: {response.status_code} {response.text}")
            raise ExternalServiceError(f"ION submission failed: {response.text}")

        try:
            result = response.json()
        except ValueError:
            return {}
        if not isinstance(result, dict):
            log.error(f"ION submission failed: unexpected response {result!r}")
            raise ExternalServiceError("ION submission failed: unexpected response")
        return result


class SimulatedLedger:
    """Fabricates anchors without touching any network"""

    def anchor(self, operation_data: Dict[str, Any]) -> AnchorReceipt:
        tx_id = f"btc_tx_{secrets.token_hex(16)}"
        height = _BLOCK_HEIGHT_BASE + secrets.randbelow(_BLOCK_HEIGHT_SPAN)
        return AnchorReceipt(transaction_id=tx_id, block_height=height, raw={"transactionId": tx_id})


class IonLedger:
    """Anchors through a real ION node"""

    def __init__(self, client: IonClient):
        self.client = client

    def anchor(self, operation_data: Dict[str, Any]) -> AnchorReceipt:
        result = self.client.submit(operation_data)
        return AnchorReceipt(
            transaction_id=result.get("transactionId"),
            block_height=result.get("blockHeight"),
            raw=result,
        )
