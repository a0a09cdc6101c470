"""
Execution Gate / Settlement Orchestrator for x402 payments.

State machine per request:

    NO_PAYMENT -> 402 challenge
    VERIFYING  -> REJECTED (malformed, invalid, insufficient, already used)
    VERIFYING  -> VERIFIED (ledger insert; the unique index decides races)
    VERIFIED   -> EXECUTING -> SETTLED | UNSETTLED | FAILED
                            -> pending (deferred; finished by complete())

Settlement is only ever attempted after the executor has reported success.
An execution failure marks the payment FAILED and the payer is not charged.
A settlement failure after a successful execution does not undo the result:
the payment is recorded UNSETTLED for reconciliation.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app.payment.errors import (
    DuplicatePaymentError,
    ExecutionError,
    FacilitatorTransportError,
    InvalidTransitionError,
    RecordNotFoundError,
    WebhookDeliveryError,
)
from app.payment.executor import (
    CallerContext,
    ExecutionMode,
    ExecutionResult,
    ExecutionStatus,
    ToolExecutor,
)
from app.payment.facilitator import FacilitatorClient, PaymentRequirements, SettleResponse
from app.payment.ledger import PaymentLedger
from app.payment.middleware import (
    FACILITATOR_UNAVAILABLE,
    MALFORMED_PAYMENT,
    PaymentContext,
    encode_payment_header,
)
from app.payment.models import PaymentRecord, PaymentStatus
from app.payment.pricing import PricingCalculator, Quote, atomic_to_usd, build_payment_required
from app.payment.webhook import WebhookNotifier

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_HEADER = "X-PAYMENT-REQUIRED"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


@dataclass
class DeliveryOptions:
    """How the caller wants the result delivered."""
    mode: ExecutionMode = ExecutionMode.IMMEDIATE
    url: Optional[str] = None
    secret: Optional[str] = None


@dataclass
class GateOutcome:
    """HTTP-shaped result of a gate decision."""
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    state: str = ""


@dataclass
class _Payment:
    """What the orchestrator needs to finish a payment, from a request or a record."""
    signature_hash: str
    payer: str
    network: str
    tool_id: str
    cost_usd: float
    payload: Dict[str, Any]
    requirements: PaymentRequirements
    delivery: DeliveryOptions

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "_Payment":
        return cls(
            signature_hash=record.signature_hash,
            payer=record.payer_address,
            network=record.network_id,
            tool_id=record.tool_id,
            cost_usd=float(record.cost_usd),
            payload=record.payment_payload,
            requirements=PaymentRequirements.from_dict(record.payment_requirements),
            delivery=DeliveryOptions(
                mode=ExecutionMode(record.delivery_mode),
                url=record.webhook_url,
                secret=record.webhook_secret,
            ),
        )


def _new_operation_id() -> str:
    return uuid.uuid4().hex


class PaymentGate:
    """Orchestrates verify -> record -> execute -> settle for one paid request."""

    def __init__(
        self,
        ledger: PaymentLedger,
        facilitator: FacilitatorClient,
        pricing: PricingCalculator,
        executor: ToolExecutor,
        *,
        pay_to: str,
        network: str,
        asset: str,
        asset_extra: Optional[Dict[str, Any]] = None,
        max_timeout_seconds: int = 300,
        execution_timeout_seconds: float = 120.0,
        settle_timeout_seconds: float = 30.0,
        settle_max_attempts: int = 3,
        settle_backoff_seconds: float = 1.0,
        notifier: Optional[WebhookNotifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        operation_id_factory: Callable[[], str] = _new_operation_id,
    ):
        self.ledger = ledger
        self.facilitator = facilitator
        self.pricing = pricing
        self.executor = executor
        self.pay_to = pay_to
        self.network = network
        self.asset = asset
        self.asset_extra = dict(asset_extra or {})
        self.max_timeout_seconds = max_timeout_seconds
        self.execution_timeout_seconds = execution_timeout_seconds
        self.settle_timeout_seconds = settle_timeout_seconds
        self.settle_max_attempts = max(1, settle_max_attempts)
        self.settle_backoff_seconds = settle_backoff_seconds
        self.notifier = notifier
        self._sleep = sleep
        self._new_operation_id = operation_id_factory
        self._background: Set[asyncio.Task] = set()

    # --- Challenge -------------------------------------------------------

    def quote(self, tool_id: str, inputs: Optional[Dict[str, Any]] = None) -> Quote:
        return self.pricing.calculate(tool_id, inputs or {})

    def payment_required(self, quote: Quote, resource_url: str) -> Dict[str, Any]:
        tool = self.pricing.registry.get(quote.tool_id)
        return build_payment_required(
            quote,
            pay_to=self.pay_to,
            network=self.network,
            asset=self.asset,
            resource_url=resource_url,
            description=tool.description if tool else "",
            max_timeout_seconds=self.max_timeout_seconds,
            extra=self.asset_extra,
        )

    def _challenge(
        self,
        quote: Quote,
        resource_url: str,
        *,
        status_code: int = 402,
        error: str = "PAYMENT_REQUIRED",
        message: str = "Payment required to execute this tool",
        **extra: Any,
    ) -> GateOutcome:
        payment_required = self.payment_required(quote, resource_url)
        body = {"error": error, "message": message, **extra, "paymentRequired": payment_required}
        if error == "PAYMENT_REQUIRED":
            body["quote"] = quote.to_dict()
        return GateOutcome(
            status_code=status_code,
            body=body,
            headers={PAYMENT_REQUIRED_HEADER: encode_payment_header(payment_required)},
            state="REJECTED" if error != "PAYMENT_REQUIRED" or extra else "NO_PAYMENT",
        )

    # --- Main flow -------------------------------------------------------

    async def process(
        self,
        context: Optional[PaymentContext],
        tool_id: str,
        inputs: Optional[Dict[str, Any]],
        *,
        resource_url: str,
        delivery: Optional[DeliveryOptions] = None,
    ) -> GateOutcome:
        """Run one paid request through the gate.

        Raises:
            ToolNotFoundError / PricingError: If the tool cannot be priced
        """
        inputs = inputs or {}
        delivery = delivery or DeliveryOptions()
        quote = self.quote(tool_id, inputs)

        if context is None:
            logger.info(
                f"[x402] No payment provided, returning 402: tool={tool_id} "
                f"cost={quote.total_cost_usd}"
            )
            return self._challenge(quote, resource_url)

        rejection = self._check_payment(context, quote, resource_url)
        if rejection is not None:
            return rejection

        payment = _Payment(
            signature_hash=context.signature_hash,
            payer=context.payer,
            network=context.network or self.network,
            tool_id=tool_id,
            cost_usd=float(quote.total_cost_usd),
            payload=context.payload,
            requirements=context.requirements,
            delivery=delivery,
        )

        try:
            self.ledger.record_verified(
                signature_hash=context.signature_hash,
                payer_address=context.payer,
                amount_atomic=context.amount,
                asset_id=context.asset or self.asset,
                network_id=payment.network,
                pay_to_address=context.requirements.pay_to,
                tool_id=tool_id,
                cost_usd=str(quote.total_cost_usd),
                paid_usd=str(atomic_to_usd(context.amount)),
                payment_payload=context.payload,
                payment_requirements=context.requirements.to_dict(),
                delivery_mode=delivery.mode.value,
                webhook_url=delivery.url,
                webhook_secret=delivery.secret,
            )
        except DuplicatePaymentError:
            logger.warning(
                f"[x402] Lost insert race for signature {context.signature_hash[:16]}..."
            )
            return self._already_used(quote, resource_url)
        except SQLAlchemyError:
            logger.exception("[x402] Failed to record payment")
            return self._internal_error("Failed to record payment")

        operation_id = self._new_operation_id()
        try:
            self.ledger.link_operation(payment.signature_hash, operation_id)
        except SQLAlchemyError:
            logger.exception(f"[x402] Failed to link operation {operation_id}")
            try:
                self.ledger.mark_failed(
                    payment.signature_hash, "LedgerError: failed to link operation"
                )
            except SQLAlchemyError:
                logger.exception(
                    f"[x402] Could not mark payment failed: {payment.signature_hash[:16]}..."
                )
            return self._internal_error("Failed to record payment")

        caller = CallerContext(
            payer_address=payment.payer,
            signature_hash=payment.signature_hash,
            delivery_mode=delivery.mode,
        )

        logger.info(
            f"[x402] Executing generation: tool={tool_id} payer={payment.payer} "
            f"cost={quote.total_cost_usd} operation={operation_id}"
        )
        try:
            result = await asyncio.wait_for(
                self.executor.execute(operation_id, tool_id, inputs, caller),
                timeout=self.execution_timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"TimeoutError: execution exceeded {self.execution_timeout_seconds}s"
            result = ExecutionResult(ExecutionStatus.FAILED, operation_id, error=reason)
        except Exception as e:
            logger.error(f"[x402] Execution failed: tool={tool_id} error={e!r}", exc_info=True)
            result = ExecutionResult(
                ExecutionStatus.FAILED, operation_id, error=f"{type(e).__name__}: {e}"
            )

        if result.status == ExecutionStatus.PENDING:
            logger.info(f"[x402] Execution pending: operation={operation_id}")
            return self._pending(payment, operation_id)

        if not self.ledger.claim_completion(payment.signature_hash):
            # A callback or poll finished this operation while execute() was running
            logger.info(f"[x402] Operation {operation_id} already completed elsewhere")
            return self._recorded_outcome(payment, operation_id, result)

        outcome = await self._finish(payment, operation_id, result)
        if payment.delivery.mode == ExecutionMode.WEBHOOK:
            self._spawn(self._notify(payment, operation_id, result, outcome))
        return outcome

    def _check_payment(
        self, context: PaymentContext, quote: Quote, resource_url: str
    ) -> Optional[GateOutcome]:
        if context.error == MALFORMED_PAYMENT:
            return GateOutcome(
                400,
                {"error": MALFORMED_PAYMENT, "message": "Payment header could not be decoded"},
                state="REJECTED",
            )

        if context.error == FACILITATOR_UNAVAILABLE:
            return GateOutcome(
                503,
                {
                    "error": FACILITATOR_UNAVAILABLE,
                    "message": "Payment could not be verified right now, try again",
                },
                state="REJECTED",
            )

        if not context.verified:
            return self._challenge(
                quote,
                resource_url,
                message="Payment verification failed",
                reason=context.reason or context.error,
            )

        # Exact integer comparison in atomic units
        if context.amount < quote.total_cost_atomic:
            required = atomic_to_usd(quote.total_cost_atomic)
            provided = atomic_to_usd(context.amount)
            logger.warning(
                f"[x402] Insufficient payment: required={quote.total_cost_atomic} "
                f"provided={context.amount}"
            )
            return self._challenge(
                quote,
                resource_url,
                error="INSUFFICIENT_PAYMENT",
                message=f"Payment of ${provided} is less than required ${required}",
                required=required,
                provided=provided,
            )

        if self.ledger.is_signature_used(context.signature_hash):
            logger.warning(f"[x402] Replayed payment signature {context.signature_hash[:16]}...")
            return self._already_used(quote, resource_url)

        return None

    def _already_used(self, quote: Quote, resource_url: str) -> GateOutcome:
        return self._challenge(
            quote,
            resource_url,
            status_code=400,
            error="PAYMENT_ALREADY_USED",
            message="This payment signature has already been used",
        )

    def _pending(self, payment: _Payment, operation_id: str) -> GateOutcome:
        return GateOutcome(
            202,
            {
                "generationId": operation_id,
                "status": "pending",
                "toolId": payment.tool_id,
                "statusUrl": f"/api/x402/status/{operation_id}",
                "x402": {
                    "settled": False,
                    "pending": True,
                    "payer": payment.payer,
                    "costUsd": payment.cost_usd,
                },
            },
            state="PENDING",
        )

    # --- Outcome ---------------------------------------------------------

    async def _finish(
        self, payment: _Payment, operation_id: str, result: ExecutionResult
    ) -> GateOutcome:
        if result.status != ExecutionStatus.COMPLETED:
            reason = result.error or "Execution failed"
            if not reason.split(":", 1)[0].endswith("Error"):
                reason = f"ExecutionError: {reason}"
            self.ledger.mark_failed(payment.signature_hash, reason)
            return self._execution_failed(operation_id)

        logger.info(
            f"[x402] Execution succeeded, settling payment: {payment.signature_hash[:16]}..."
        )
        settlement, error, attempts = await self._settle(payment)
        body = {
            "generationId": operation_id,
            "status": "completed",
            "toolId": payment.tool_id,
            "outputs": result.outputs,
        }

        if error is None:
            self.ledger.mark_settled(payment.signature_hash, settlement.transaction, attempts)
            logger.info(
                f"[x402] Generation complete with settlement: tx={settlement.transaction} "
                f"payer={settlement.payer or payment.payer} cost={payment.cost_usd}"
            )
            return self._settled(
                payment,
                body,
                settlement.transaction,
                network=settlement.network,
                payer=settlement.payer,
            )

        # The caller already has the result; flag the payment for reconciliation
        self.ledger.mark_unsettled(payment.signature_hash, error, attempts)
        logger.error(
            f"[x402] Settlement failed after successful execution: "
            f"signature={payment.signature_hash[:16]}... error={error}"
        )
        return self._unsettled(payment, body, error)

    def _settled(
        self,
        payment: _Payment,
        body: Dict[str, Any],
        transaction: str,
        network: Optional[str] = None,
        payer: Optional[str] = None,
    ) -> GateOutcome:
        summary = {
            "settled": True,
            "transaction": transaction,
            "network": network or payment.network,
            "payer": payer or payment.payer,
            "costUsd": payment.cost_usd,
        }
        header = encode_payment_header(
            {
                "success": True,
                "transaction": summary["transaction"],
                "network": summary["network"],
                "payer": summary["payer"],
            }
        )
        body["x402"] = summary
        return GateOutcome(200, body, {PAYMENT_RESPONSE_HEADER: header}, state="SETTLED")

    def _unsettled(self, payment: _Payment, body: Dict[str, Any], error: str) -> GateOutcome:
        body["x402"] = {
            "settled": False,
            "settlementError": error,
            "network": payment.network,
            "payer": payment.payer,
            "costUsd": payment.cost_usd,
        }
        return GateOutcome(200, body, state="UNSETTLED")

    def _recorded_outcome(
        self, payment: _Payment, operation_id: str, result: ExecutionResult
    ) -> GateOutcome:
        """Response for an operation whose outcome another path already recorded."""
        record = self.ledger.find_by_signature(payment.signature_hash)
        if record is None or record.status == PaymentStatus.VERIFIED.value:
            return self._pending(payment, operation_id)

        if record.status == PaymentStatus.FAILED.value:
            return self._execution_failed(operation_id)

        body = {
            "generationId": operation_id,
            "status": "completed",
            "toolId": payment.tool_id,
            "outputs": result.outputs,
        }
        if record.status == PaymentStatus.SETTLED.value:
            return self._settled(payment, body, record.settlement_tx_hash)
        return self._unsettled(payment, body, record.settlement_error or "settlement_failed")

    def _execution_failed(self, operation_id: str) -> GateOutcome:
        return GateOutcome(
            500,
            {
                "error": "EXECUTION_FAILED",
                "message": "Generation failed. Payment was not charged.",
                "generationId": operation_id,
            },
            state="FAILED",
        )

    def _internal_error(self, message: str) -> GateOutcome:
        return GateOutcome(
            500, {"error": "INTERNAL_ERROR", "message": message}, state="REJECTED"
        )

    async def _settle(self, payment: _Payment) -> Tuple[Optional[SettleResponse], Optional[str], int]:
        """Settle with bounded retries on transport errors.

        Returns:
            (response, error code or None, attempts made)
        """
        last_error = "settlement_failed"
        for attempt in range(1, self.settle_max_attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self.facilitator.settle(payment.payload, payment.requirements),
                    timeout=self.settle_timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = "timeout"
            except FacilitatorTransportError as e:
                last_error = e.code
            except Exception as e:
                logger.error(f"[x402] Unexpected settlement error: {e!r}", exc_info=True)
                last_error = "settlement_error"
            else:
                if response.success and response.transaction:
                    return response, None, attempt
                # A definitive answer from the facilitator; retrying will not change it
                return response, response.error_reason or "settlement_failed", attempt

            if attempt < self.settle_max_attempts:
                delay = self.settle_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"[x402] Settlement attempt {attempt}/{self.settle_max_attempts} "
                    f"failed ({last_error}), retrying in {delay}s"
                )
                await self._sleep(delay)

        return None, last_error, self.settle_max_attempts

    # --- Deferred completion --------------------------------------------

    async def complete(self, operation_id: str, result: ExecutionResult) -> GateOutcome:
        """Finish a deferred execution (callback or poll).

        Raises:
            RecordNotFoundError: If no payment is linked to the operation
            InvalidTransitionError: If the outcome was already recorded
        """
        record = self.ledger.find_by_operation(operation_id)
        if record is None:
            raise RecordNotFoundError(f"No payment linked to operation {operation_id}")

        payment = _Payment.from_record(record)
        if not result.is_terminal:
            return self._pending(payment, operation_id)

        if not self.ledger.claim_completion(record.signature_hash):
            current = self.ledger.find_by_signature(record.signature_hash)
            raise InvalidTransitionError(
                record.signature_hash, "COMPLETED", current.status if current else None
            )

        outcome = await self._finish(payment, operation_id, result)
        if payment.delivery.mode == ExecutionMode.WEBHOOK:
            await self._notify(payment, operation_id, result, outcome)
        return outcome

    async def poll(self, operation_id: str) -> Dict[str, Any]:
        """Status of a generation; a finished executor job re-enters the gate."""
        record = self.ledger.find_by_operation(operation_id)
        if record is None:
            raise RecordNotFoundError(f"No payment linked to operation {operation_id}")

        if record.status == PaymentStatus.VERIFIED.value and record.executed_at is None:
            try:
                result = await self.executor.get_status(operation_id)
            except ExecutionError as e:
                logger.warning(f"[x402] Status lookup failed for {operation_id}: {e}")
                result = None
            if result is not None and result.is_terminal:
                try:
                    outcome = await self.complete(operation_id, result)
                except InvalidTransitionError:
                    pass  # a concurrent callback recorded it first
                else:
                    return {**outcome.body, "paymentStatus": self._payment_status(operation_id)}

        record = self.ledger.find_by_operation(operation_id)
        status = {
            PaymentStatus.VERIFIED.value: "pending",
            PaymentStatus.FAILED.value: "failed",
        }.get(record.status, "completed")
        body: Dict[str, Any] = {
            "generationId": operation_id,
            "status": status,
            "toolId": record.tool_id,
            "paymentStatus": record.status,
        }
        if record.status == PaymentStatus.FAILED.value:
            body["error"] = {"message": "Generation failed. Payment was not charged."}
        return body

    def _payment_status(self, operation_id: str) -> Optional[str]:
        record = self.ledger.find_by_operation(operation_id)
        return record.status if record else None

    # --- Reconciliation --------------------------------------------------

    async def reconcile(self, signature_hash: str) -> Dict[str, Any]:
        """Retry settlement for an executed-but-unsettled payment.

        Raises:
            RecordNotFoundError: If the signature is unknown
            InvalidTransitionError: If the payment is not UNSETTLED
        """
        record = self.ledger.find_by_signature(signature_hash)
        if record is None:
            raise RecordNotFoundError(f"No payment record for signature {signature_hash}")
        if record.status != PaymentStatus.UNSETTLED.value:
            raise InvalidTransitionError(signature_hash, PaymentStatus.SETTLED.value, record.status)

        payment = _Payment.from_record(record)
        settlement, error, attempts = await self._settle(payment)
        if error is None:
            self.ledger.mark_settled(signature_hash, settlement.transaction, attempts)
            logger.info(f"[x402] Reconciled payment {signature_hash[:16]}...")
        else:
            self.ledger.mark_unsettled(signature_hash, error, attempts)

        return self.ledger.find_by_signature(signature_hash).to_dict()

    # --- Webhooks --------------------------------------------------------

    async def _notify(
        self,
        payment: _Payment,
        operation_id: str,
        result: ExecutionResult,
        outcome: GateOutcome,
    ) -> None:
        if self.notifier is None or not payment.delivery.url:
            return

        completed = result.status == ExecutionStatus.COMPLETED
        payload: Dict[str, Any] = {
            "event": "generation.completed" if completed else "generation.failed",
            "generationId": operation_id,
            "toolId": payment.tool_id,
            "status": "completed" if completed else "failed",
            "outputs": result.outputs if completed else None,
            "costUsd": payment.cost_usd,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if completed:
            payload["x402"] = outcome.body.get("x402")
        else:
            payload["error"] = {
                "code": "GENERATION_FAILED",
                "message": "Generation failed. Payment was not charged.",
            }

        try:
            await self.notifier.send(payment.delivery.url, payload, payment.delivery.secret)
        except WebhookDeliveryError as e:
            logger.error(f"[x402] Webhook for operation {operation_id} not delivered: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background webhook deliveries (used at shutdown and in tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
