"""
PaymentRecord model - lifecycle record of one x402 payment attempt.

Each record is keyed by the hash of the payment signature. The unique
constraint on signature_hash is the replay-protection point: a signature can
be recorded once and therefore authorize at most one execution.
"""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for payment ledger models."""


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment record."""
    VERIFIED = "VERIFIED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    # Execution succeeded but settlement did not go through; needs reconciliation
    UNSETTLED = "UNSETTLED"


TERMINAL_STATUSES = (PaymentStatus.SETTLED, PaymentStatus.FAILED)


class PaymentRecord(Base):
    """One payment attempt, created VERIFIED and moved exactly once to an outcome."""
    __tablename__ = "x402_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature_hash = Column(String(64), nullable=False, unique=True, index=True)

    payer_address = Column(String(64), nullable=False, index=True)  # lowercase
    amount_atomic = Column(String(78), nullable=False)  # uint256 as decimal string
    asset_id = Column(String(128), nullable=False)
    network_id = Column(String(64), nullable=False)
    pay_to_address = Column(String(64), nullable=False)

    tool_id = Column(String(128), nullable=False)
    linked_operation_id = Column(String(64), nullable=True, index=True)

    cost_usd = Column(String(32), nullable=False)
    paid_usd = Column(String(32), nullable=False)

    status = Column(String(16), nullable=False, default=PaymentStatus.VERIFIED.value)
    failure_reason = Column(Text, nullable=True)
    settlement_tx_hash = Column(String(128), nullable=True)
    settlement_error = Column(Text, nullable=True)
    settlement_attempts = Column(Integer, nullable=False, default=0)

    # Needed to settle after deferred completion or during reconciliation
    payment_payload = Column(JSON, nullable=False)
    payment_requirements = Column(JSON, nullable=False)

    delivery_mode = Column(String(16), nullable=False, default="immediate")
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(String(256), nullable=True)

    verified_at = Column(DateTime(timezone=True), nullable=False)
    # Set once, by whoever claims the execution outcome (see PaymentLedger.claim_completion)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_x402_payments_status_created_at", "status", "created_at"),
    )

    def to_dict(self) -> dict:
        """Audit view of the record (secrets and raw payload excluded)."""
        return {
            "signatureHash": self.signature_hash,
            "payerAddress": self.payer_address,
            "amountAtomic": self.amount_atomic,
            "assetId": self.asset_id,
            "networkId": self.network_id,
            "payToAddress": self.pay_to_address,
            "toolId": self.tool_id,
            "linkedOperationId": self.linked_operation_id,
            "costUsd": self.cost_usd,
            "paidUsd": self.paid_usd,
            "status": self.status,
            "failureReason": self.failure_reason,
            "settlementTxHash": self.settlement_tx_hash,
            "settlementError": self.settlement_error,
            "settlementAttempts": self.settlement_attempts,
            "deliveryMode": self.delivery_mode,
            "verifiedAt": _iso(self.verified_at),
            "executedAt": _iso(self.executed_at),
            "settledAt": _iso(self.settled_at),
            "failedAt": _iso(self.failed_at),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return (
            f"<PaymentRecord(signature_hash={self.signature_hash[:16]}..., "
            f"status={self.status}, tool_id={self.tool_id})>"
        )


def _iso(value):
    return value.isoformat() if value is not None else None
