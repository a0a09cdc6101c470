"""
Exceptions raised by the x402 payment gate.

Expected validation failures (bad signature, insufficient amount, replayed
payment) are reported as return values; the classes below cover transport
faults and broken invariants.
"""

from typing import Optional


class X402Error(Exception):
    """Base exception for the x402 payment system."""


class MalformedPaymentError(X402Error):
    """Raised when an X-PAYMENT header cannot be decoded."""


class FacilitatorError(X402Error):
    """Raised when the facilitator returns something we cannot interpret."""


class FacilitatorTransportError(FacilitatorError):
    """Raised when the facilitator cannot be reached or times out."""

    def __init__(self, message: str, code: str = "connection_error"):
        super().__init__(message)
        self.code = code


class LedgerError(X402Error):
    """Base exception for payment ledger failures."""


class DuplicatePaymentError(LedgerError):
    """Raised when a signature hash is already present in the ledger."""

    def __init__(self, signature_hash: str):
        super().__init__(f"Payment signature already recorded: {signature_hash}")
        self.signature_hash = signature_hash


class RecordNotFoundError(LedgerError):
    """Raised when no payment record matches the given key."""


class InvalidTransitionError(LedgerError):
    """Raised when a status change is not allowed from the record's current status."""

    def __init__(self, signature_hash: str, target: str, current: Optional[str] = None):
        super().__init__(
            f"Cannot move payment {signature_hash} to {target} "
            f"(current status: {current or 'unknown'})"
        )
        self.signature_hash = signature_hash
        self.target = target
        self.current = current


class PricingError(X402Error):
    """Raised when a price cannot be computed."""


class ToolNotFoundError(PricingError):
    """Raised when a tool id is not in the registry."""

    def __init__(self, tool_id: str):
        super().__init__(f"Tool not found: {tool_id}")
        self.tool_id = tool_id


class ExecutionError(X402Error):
    """Raised by executors when the downstream engine reports a failure."""


class WebhookValidationError(X402Error):
    """Raised when a webhook URL is not acceptable."""


class WebhookDeliveryError(X402Error):
    """Raised after the final webhook delivery attempt fails."""
