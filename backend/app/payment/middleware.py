"""
Payment Verification Middleware for the x402 Gate.

Intercepts requests to paywalled paths, decodes the X-PAYMENT header and asks
the facilitator to verify it. The outcome is attached to
``request.state.x402``; the route decides what to do with it. This
middleware never rejects a request and never touches the payment ledger.
Settlement happens after successful execution, not here.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Optional, Callable, Any, Dict, Iterable, Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.payment.errors import FacilitatorTransportError, MalformedPaymentError
from app.payment.facilitator import FacilitatorClient, PaymentRequirements
from app.payment.ledger import compute_signature_hash

logger = logging.getLogger(__name__)

PAYMENT_HEADERS = ("x-payment", "x-payment-signature")
AUTHORIZATION_FIELDS = ("from", "to", "value", "validAfter", "validBefore", "nonce")

MALFORMED_PAYMENT = "MALFORMED_PAYMENT"
FACILITATOR_UNAVAILABLE = "FACILITATOR_UNAVAILABLE"


@dataclass
class PaymentContext:
    """Verification outcome attached to a request."""
    verified: bool
    payer: Optional[str] = None
    amount: int = 0  # Signed authorization value, atomic units
    asset: Optional[str] = None
    network: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    requirements: Optional[PaymentRequirements] = None
    signature_hash: Optional[str] = None
    error: Optional[str] = None  # MALFORMED_PAYMENT, FACILITATOR_UNAVAILABLE or PAYMENT_INVALID
    reason: Optional[str] = None  # Facilitator's invalidReason / decode detail


def decode_payment_header(header: str) -> Dict[str, Any]:
    """Decode a base64-encoded x402 payment payload.

    Raises:
        MalformedPaymentError: If the header is not base64 JSON with an
            EIP-3009 authorization and signature
    """
    value = header.strip()
    padded = value + "=" * (-len(value) % 4)
    try:
        try:
            raw = base64.b64decode(padded, validate=True)
        except binascii.Error:
            raw = base64.urlsafe_b64decode(padded)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise MalformedPaymentError(f"Failed to decode payment header: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPaymentError("Payment header must encode a JSON object")

    inner = data.get("payload")
    if not isinstance(inner, dict):
        raise MalformedPaymentError("Payment header is missing 'payload'")

    signature = inner.get("signature")
    if not isinstance(signature, str) or not signature:
        raise MalformedPaymentError("Payment payload is missing 'signature'")

    authorization = inner.get("authorization")
    if not isinstance(authorization, dict):
        raise MalformedPaymentError("Payment payload is missing 'authorization'")

    missing = [name for name in AUTHORIZATION_FIELDS if name not in authorization]
    if missing:
        raise MalformedPaymentError(f"Authorization is missing fields: {', '.join(missing)}")

    try:
        int(authorization["value"])
    except (TypeError, ValueError) as e:
        raise MalformedPaymentError("Authorization value must be an integer") from e

    return data


def encode_payment_header(data: Mapping[str, Any]) -> str:
    """Base64-encode a JSON object for an x402 header."""
    return base64.b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8")).decode("ascii")


class PaymentVerificationMiddleware(BaseHTTPMiddleware):
    """Middleware that verifies x402 payments on protected paths."""

    def __init__(
        self,
        app,
        facilitator: FacilitatorClient,
        pay_to: str,
        network: str,
        asset: str,
        asset_extra: Optional[Dict[str, Any]] = None,
        max_timeout_seconds: int = 300,
        protected_paths: Iterable[str] = ("/api/x402/generate",),
        enabled: bool = True,
        verify_timeout_seconds: float = 15.0,
    ):
        """Initialize payment middleware.

        Args:
            app: The ASGI application
            facilitator: FacilitatorClient used for verification
            pay_to: Receiver address payments must go to
            network: CAIP-2 network id payments must use
            asset: Token contract payments must use
            asset_extra: EIP-712 domain info (name, version) for the asset
            max_timeout_seconds: maxTimeoutSeconds sent to the facilitator
            protected_paths: Path prefixes that carry payments
            enabled: Feature flag; when False no request is verified
            verify_timeout_seconds: Budget for the facilitator verify call
        """
        super().__init__(app)
        self.facilitator = facilitator
        self.pay_to = pay_to
        self.network = network
        self.asset = asset
        self.asset_extra = dict(asset_extra or {})
        self.max_timeout_seconds = max_timeout_seconds
        self.protected_paths = tuple(protected_paths)
        self.enabled = enabled
        self.verify_timeout_seconds = verify_timeout_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Attach payment verification to protected requests.

        Args:
            request: The incoming request
            call_next: The next middleware/handler

        Returns:
            Response from the next handler
        """
        if self._is_protected(request.url.path):
            request.state.x402 = await self.verify_headers(request.headers)
        return await call_next(request)

    async def verify_headers(self, headers: Mapping[str, str]) -> Optional[PaymentContext]:
        """Verify the payment carried by a set of request headers.

        Returns:
            None when no payment is attached (or x402 is disabled), otherwise
            a PaymentContext describing the verification outcome
        """
        if not self.enabled:
            return None

        header = None
        for name in PAYMENT_HEADERS:
            header = headers.get(name)
            if header:
                break
        if not header:
            return None

        try:
            payload = decode_payment_header(header)
        except MalformedPaymentError as e:
            logger.warning(f"[x402] Malformed payment header: {e}")
            return PaymentContext(verified=False, error=MALFORMED_PAYMENT, reason=str(e))

        authorization = payload["payload"]["authorization"]
        signature_hash = compute_signature_hash(payload["payload"]["signature"])
        amount = int(authorization["value"])
        requirements = self.build_requirements(payload)

        logger.debug(
            f"[x402] Payment header decoded: version={payload.get('x402Version')} "
            f"network={requirements.network}"
        )

        context = PaymentContext(
            verified=False,
            payer=str(authorization["from"]).lower(),
            amount=amount,
            asset=requirements.asset,
            network=requirements.network,
            payload=payload,
            requirements=requirements,
            signature_hash=signature_hash,
        )

        try:
            result = await asyncio.wait_for(
                self.facilitator.verify(payload, requirements),
                timeout=self.verify_timeout_seconds,
            )
        except (FacilitatorTransportError, asyncio.TimeoutError) as e:
            logger.error(f"[x402] Facilitator verify unavailable: {e!r}")
            context.error = FACILITATOR_UNAVAILABLE
            context.reason = getattr(e, "code", "timeout")
            return context

        if not result.is_valid:
            logger.warning(
                f"[x402] Payment verification failed: reason={result.invalid_reason} "
                f"payer={result.payer}"
            )
            context.error = "PAYMENT_INVALID"
            context.reason = result.invalid_reason or "invalid_payment"
            return context

        context.verified = True
        if result.payer:
            context.payer = result.payer.lower()
        logger.info(
            f"[x402] Payment verified: payer={context.payer} amount={amount} "
            f"network={requirements.network}"
        )
        return context

    def build_requirements(self, payload: Dict[str, Any]) -> PaymentRequirements:
        """Requirements the payment must satisfy: server terms plus the claimed amount."""
        accepted = payload.get("accepted") or {}
        amount = accepted.get("amount") or payload["payload"]["authorization"]["value"]
        extra = dict(accepted.get("extra") or {})
        extra.update(self.asset_extra)
        return PaymentRequirements(
            scheme=accepted.get("scheme", "exact"),
            network=self.network,
            asset=self.asset,
            amount=str(amount),
            pay_to=self.pay_to,
            max_timeout_seconds=int(accepted.get("maxTimeoutSeconds") or self.max_timeout_seconds),
            extra=extra,
        )

    def _is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.protected_paths)
