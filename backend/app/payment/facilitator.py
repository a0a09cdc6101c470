"""
Facilitator Client - verification and settlement boundary for x402 payments.

The facilitator is an external, untrusted service that:
1. Verifies EIP-3009 payment signatures against payment requirements
2. Settles verified payments on-chain

Expected validation failures come back as VerifyResponse/SettleResponse
values. Only transport problems (timeouts, connection errors, 5xx) raise
FacilitatorTransportError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

import httpx

from app.payment.errors import FacilitatorTransportError

logger = logging.getLogger(__name__)

# Accepted network aliases and their EVM chain ids
NETWORK_CHAIN_IDS = {
    "eip155:8453": 8453,
    "eip155:84532": 84532,
    "base": 8453,
    "base-sepolia": 84532,
}


def chain_id_for_network(network: str) -> Optional[int]:
    """Resolve the EVM chain id for a CAIP-2 id or a legacy network name."""
    if network in NETWORK_CHAIN_IDS:
        return NETWORK_CHAIN_IDS[network]
    if network.startswith("eip155:"):
        try:
            return int(network.split(":", 1)[1])
        except ValueError:
            return None
    return None


@dataclass
class PaymentRequirements:
    """Payment requirements that must be satisfied by a payment payload."""
    scheme: str
    network: str  # CAIP-2 id, e.g. "eip155:8453"
    asset: str  # ERC20 contract address
    amount: str  # Amount in atomic units
    pay_to: str
    max_timeout_seconds: int = 300
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "asset": self.asset,
            "amount": self.amount,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRequirements":
        return cls(
            scheme=data.get("scheme", "exact"),
            network=data["network"],
            asset=data["asset"],
            amount=str(data.get("amount") or data.get("maxAmountRequired") or "0"),
            pay_to=data["payTo"],
            max_timeout_seconds=int(data.get("maxTimeoutSeconds", 300)),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class VerifyResponse:
    """Result of payment verification."""
    is_valid: bool
    payer: Optional[str] = None
    invalid_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifyResponse":
        return cls(
            is_valid=bool(data.get("isValid", False)),
            payer=data.get("payer"),
            invalid_reason=data.get("invalidReason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"isValid": self.is_valid, "payer": self.payer, "invalidReason": self.invalid_reason}


@dataclass
class SettleResponse:
    """Result of payment settlement."""
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettleResponse":
        return cls(
            success=bool(data.get("success", False)),
            transaction=data.get("transaction") or data.get("txHash"),
            network=data.get("network"),
            payer=data.get("payer"),
            error_reason=data.get("errorReason") or data.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
            "payer": self.payer,
            "errorReason": self.error_reason,
        }


class FacilitatorClient(ABC):
    """Interface to a payment facilitator."""

    @abstractmethod
    async def verify(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> VerifyResponse:
        """Check that the payload is a valid payment for the requirements."""

    @abstractmethod
    async def settle(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> SettleResponse:
        """Move the authorized funds on-chain."""


class HTTPFacilitatorClient(FacilitatorClient):
    """Facilitator reached over HTTP (e.g. Coinbase CDP or x402.org)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the facilitator client.

        Args:
            base_url: Facilitator base URL; /verify and /settle are appended
            api_key: Optional bearer token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def verify(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> VerifyResponse:
        data = await self._post("verify", payment_payload, requirements)
        return VerifyResponse.from_dict(data)

    async def settle(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> SettleResponse:
        data = await self._post("settle", payment_payload, requirements)
        return SettleResponse.from_dict(data)

    async def supported(self) -> Dict[str, Any]:
        """Get supported schemes and networks from the facilitator."""
        async with self._client() as client:
            try:
                response = await client.get(f"{self.base_url}/supported")
            except httpx.TimeoutException as e:
                raise FacilitatorTransportError(f"Facilitator timed out: {e}", code="timeout") from e
            except httpx.TransportError as e:
                raise FacilitatorTransportError(f"Facilitator unreachable: {e}") from e
        if response.status_code != 200:
            raise FacilitatorTransportError(
                f"Facilitator returned HTTP {response.status_code}",
                code=f"http_{response.status_code}",
            )
        return response.json()

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(headers=headers, timeout=self.timeout, transport=self._transport)

    async def _post(
        self,
        action: str,
        payment_payload: Dict[str, Any],
        requirements: PaymentRequirements,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{action}"
        body = {
            "x402Version": payment_payload.get("x402Version", 2),
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements.to_dict(),
        }

        async with self._client() as client:
            try:
                response = await client.post(url, json=body)
            except httpx.TimeoutException as e:
                logger.warning(f"[x402] Facilitator {action} timed out: {e}")
                raise FacilitatorTransportError(
                    f"Facilitator {action} timed out", code="timeout"
                ) from e
            except httpx.TransportError as e:
                logger.warning(f"[x402] Facilitator {action} unreachable: {e}")
                raise FacilitatorTransportError(
                    f"Facilitator {action} unreachable: {e}", code="connection_error"
                ) from e

        status = response.status_code
        if status >= 500 or status in (401, 403):
            raise FacilitatorTransportError(
                f"Facilitator {action} returned HTTP {status}", code=f"http_{status}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FacilitatorTransportError(
                f"Facilitator {action} returned a non-JSON body (HTTP {status})",
                code="invalid_response",
            ) from e

        if not isinstance(data, dict):
            raise FacilitatorTransportError(
                f"Facilitator {action} returned an unexpected body", code="invalid_response"
            )
        return data
