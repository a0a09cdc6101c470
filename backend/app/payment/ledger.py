"""
Payment Ledger - durable, uniquely keyed store of x402 payment records.

All mutations go through the methods below. Inserts rely on the unique index
on signature_hash (never on a prior existence check) and every status change
is a single conditional UPDATE guarded by the allowed source statuses, so two
handlers racing on the same signature cannot both win.

Usage:
    ledger = PaymentLedger.from_url("sqlite:///./x402_payments.db")
    ledger.init_db()
"""

import hashlib
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterable, List, Optional

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.payment.errors import (
    DuplicatePaymentError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from app.payment.models import Base, PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)


def compute_signature_hash(signature: str) -> str:
    """Derive the replay-protection key from a payment signature.

    Hex signatures are hashed as bytes so that case and the 0x prefix do not
    produce distinct keys for the same signature.
    """
    if not signature:
        raise ValueError("Signature must not be empty")

    raw = signature.strip()
    hex_part = raw[2:] if raw.lower().startswith("0x") else raw
    try:
        data = bytes.fromhex(hex_part)
    except ValueError:
        data = raw.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def create_ledger_engine(database_url: str, echo: bool = False) -> Engine:
    """Create the SQLAlchemy engine for the ledger.

    In-memory SQLite databases share a single connection so every session
    sees the same tables.
    """
    kwargs: Dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentLedger:
    """Repository for PaymentRecord with atomic, status-guarded operations."""

    def __init__(self, session_factory: sessionmaker, engine: Optional[Engine] = None):
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "PaymentLedger":
        engine = create_ledger_engine(database_url, echo=echo)
        factory = sessionmaker(
            bind=engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
        return cls(factory, engine=engine)

    def init_db(self) -> None:
        """Create the ledger tables if they don't exist."""
        if self._engine is None:
            raise RuntimeError("PaymentLedger was created without an engine")
        Base.metadata.create_all(bind=self._engine)

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Queries ---------------------------------------------------------

    def is_signature_used(self, signature_hash: str) -> bool:
        """Cheap replay pre-check. The insert in record_verified is authoritative."""
        with self._session() as session:
            found = session.execute(
                select(PaymentRecord.id).where(PaymentRecord.signature_hash == signature_hash)
            ).first()
            return found is not None

    def find_by_signature(self, signature_hash: str) -> Optional[PaymentRecord]:
        with self._session() as session:
            return session.execute(
                select(PaymentRecord).where(PaymentRecord.signature_hash == signature_hash)
            ).scalar_one_or_none()

    def find_by_operation(self, operation_id: str) -> Optional[PaymentRecord]:
        with self._session() as session:
            return session.execute(
                select(PaymentRecord).where(PaymentRecord.linked_operation_id == operation_id)
            ).scalar_one_or_none()

    def list_by_payer(self, payer_address: str, limit: int = 100) -> List[PaymentRecord]:
        with self._session() as session:
            rows = session.execute(
                select(PaymentRecord)
                .where(PaymentRecord.payer_address == payer_address.lower())
                .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
                .limit(limit)
            ).scalars()
            return list(rows)

    def list_by_status(self, status: PaymentStatus, limit: int = 100) -> List[PaymentRecord]:
        with self._session() as session:
            rows = session.execute(
                select(PaymentRecord)
                .where(PaymentRecord.status == PaymentStatus(status).value)
                .order_by(PaymentRecord.created_at.asc(), PaymentRecord.id.asc())
                .limit(limit)
            ).scalars()
            return list(rows)

    # --- Mutations -------------------------------------------------------

    def record_verified(
        self,
        *,
        signature_hash: str,
        payer_address: str,
        amount_atomic: int,
        asset_id: str,
        network_id: str,
        pay_to_address: str,
        tool_id: str,
        cost_usd: str,
        paid_usd: str,
        payment_payload: Dict[str, Any],
        payment_requirements: Dict[str, Any],
        delivery_mode: str = "immediate",
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ) -> PaymentRecord:
        """Insert a VERIFIED record.

        Raises:
            DuplicatePaymentError: If the signature hash is already recorded
        """
        now = _utcnow()
        record = PaymentRecord(
            signature_hash=signature_hash,
            payer_address=payer_address.lower(),
            amount_atomic=str(int(amount_atomic)),
            asset_id=asset_id,
            network_id=network_id,
            pay_to_address=pay_to_address.lower(),
            tool_id=tool_id,
            cost_usd=cost_usd,
            paid_usd=paid_usd,
            status=PaymentStatus.VERIFIED.value,
            settlement_attempts=0,
            payment_payload=payment_payload,
            payment_requirements=payment_requirements,
            delivery_mode=delivery_mode,
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
            verified_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session:
                session.add(record)
        except IntegrityError as exc:
            if self.find_by_signature(signature_hash) is not None:
                raise DuplicatePaymentError(signature_hash) from exc
            raise

        logger.info(f"[x402] Payment recorded as VERIFIED: {signature_hash[:16]}...")
        return record

    def link_operation(self, signature_hash: str, operation_id: str) -> None:
        """Attach the downstream execution id while the record is VERIFIED."""
        with self._session() as session:
            result = session.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.signature_hash == signature_hash,
                    PaymentRecord.status == PaymentStatus.VERIFIED.value,
                )
                .values(linked_operation_id=operation_id, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._raise_for_missing(session, signature_hash, "LINKED")

    def claim_completion(self, signature_hash: str) -> bool:
        """Claim the right to record the execution outcome.

        Only one caller can claim a VERIFIED record; a callback and a status
        poll arriving together cannot both settle the same payment.
        """
        with self._session() as session:
            result = session.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.signature_hash == signature_hash,
                    PaymentRecord.status == PaymentStatus.VERIFIED.value,
                    PaymentRecord.executed_at.is_(None),
                )
                .values(executed_at=_utcnow(), updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def mark_settled(self, signature_hash: str, transaction_hash: str, attempts: int = 1) -> None:
        """VERIFIED|UNSETTLED -> SETTLED."""
        now = _utcnow()
        self._transition(
            signature_hash,
            PaymentStatus.SETTLED,
            allowed=(PaymentStatus.VERIFIED, PaymentStatus.UNSETTLED),
            values={
                "settlement_tx_hash": transaction_hash,
                "settlement_error": None,
                "settlement_attempts": PaymentRecord.settlement_attempts + attempts,
                "settled_at": now,
            },
        )
        logger.info(f"[x402] Payment SETTLED: {signature_hash[:16]}... tx={transaction_hash}")

    def mark_failed(self, signature_hash: str, reason: str) -> None:
        """VERIFIED -> FAILED. Never reachable once execution has succeeded."""
        self._transition(
            signature_hash,
            PaymentStatus.FAILED,
            allowed=(PaymentStatus.VERIFIED,),
            values={"failure_reason": reason, "failed_at": _utcnow()},
        )
        logger.info(f"[x402] Payment FAILED: {signature_hash[:16]}... reason={reason}")

    def mark_unsettled(self, signature_hash: str, error: str, attempts: int = 1) -> None:
        """VERIFIED|UNSETTLED -> UNSETTLED, keeping the latest settlement error."""
        self._transition(
            signature_hash,
            PaymentStatus.UNSETTLED,
            allowed=(PaymentStatus.VERIFIED, PaymentStatus.UNSETTLED),
            values={
                "settlement_error": error,
                "settlement_attempts": PaymentRecord.settlement_attempts + attempts,
            },
        )
        logger.warning(
            f"[x402] Payment executed but UNSETTLED: {signature_hash[:16]}... error={error}"
        )

    def _transition(
        self,
        signature_hash: str,
        target: PaymentStatus,
        allowed: Iterable[PaymentStatus],
        values: Dict[str, Any],
    ) -> None:
        with self._session() as session:
            result = session.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.signature_hash == signature_hash,
                    PaymentRecord.status.in_([status.value for status in allowed]),
                )
                .values(status=target.value, updated_at=_utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._raise_for_missing(session, signature_hash, target.value)

    @staticmethod
    def _raise_for_missing(session: Session, signature_hash: str, target: str) -> None:
        current = session.execute(
            select(PaymentRecord.status).where(PaymentRecord.signature_hash == signature_hash)
        ).scalar_one_or_none()
        if current is None:
            raise RecordNotFoundError(f"No payment record for signature {signature_hash}")
        raise InvalidTransitionError(signature_hash, target, current)
