"""
Payment Module - x402 Payment Gate

Verifies EIP-3009 USDC payments, records them in a replay-protected ledger
and settles them only after the paid tool execution succeeds.
"""

from app.payment.facilitator import (
    FacilitatorClient,
    HTTPFacilitatorClient,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
)
from app.payment.config import X402Settings, x402_settings
from app.payment.ledger import PaymentLedger, compute_signature_hash
from app.payment.models import PaymentRecord, PaymentStatus
from app.payment.pricing import PricingCalculator, Quote
from app.payment.gate import DeliveryOptions, GateOutcome, PaymentGate
from app.payment.routes import router

__all__ = [
    "FacilitatorClient",
    "HTTPFacilitatorClient",
    "PaymentRequirements",
    "SettleResponse",
    "VerifyResponse",
    "X402Settings",
    "x402_settings",
    "PaymentLedger",
    "compute_signature_hash",
    "PaymentRecord",
    "PaymentStatus",
    "PricingCalculator",
    "Quote",
    "DeliveryOptions",
    "GateOutcome",
    "PaymentGate",
    "router",
]
