import asyncio
import secrets
import time

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from app.facilitator.service import build_authorization_typed_data
from app.payment.config import BASE_SEPOLIA, BASE_SEPOLIA_USDC_ADDRESS, X402Settings
from app.payment.executor import ExecutionResult, ExecutionStatus, ToolExecutor
from app.payment.facilitator import (
    FacilitatorClient,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
)
from app.payment.gate import PaymentGate
from app.payment.ledger import PaymentLedger, compute_signature_hash
from app.payment.middleware import PaymentContext
from app.payment.pricing import PricingCalculator
from app.payment.tools import ToolRegistry

# Well-known test keys, never used outside tests
PAYER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
PAYER = Account.from_key(PAYER_KEY)
PAYER_ADDRESS = PAYER.address
OTHER_KEY = "0x" + "22" * 32
RECEIVER = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"

NETWORK = BASE_SEPOLIA
ASSET = BASE_SEPOLIA_USDC_ADDRESS
ASSET_EXTRA = {"name": "USDC", "version": "2"}
TX_HASH = "0x" + "ab" * 32


def random_nonce() -> str:
    return "0x" + secrets.token_hex(32)


def make_payment(
    value=12000,
    *,
    key=PAYER_KEY,
    from_address=None,
    to=RECEIVER,
    valid_after=0,
    valid_before=None,
    nonce=None,
    accepted=None,
    sign=True,
):
    """Build an x402 payment payload, signed for real unless sign=False."""
    authorization = {
        "from": from_address or Account.from_key(key).address,
        "to": to,
        "value": str(value),
        "validAfter": str(valid_after),
        "validBefore": str(valid_before if valid_before is not None else int(time.time()) + 600),
        "nonce": nonce or random_nonce(),
    }
    if sign:
        typed_data = build_authorization_typed_data(
            authorization,
            chain_id=84532,
            asset=ASSET,
            token_name=ASSET_EXTRA["name"],
            token_version=ASSET_EXTRA["version"],
        )
        signed = Account.sign_message(encode_typed_data(full_message=typed_data), private_key=key)
        signature = Web3.to_hex(signed.signature)
    else:
        signature = "0x" + secrets.token_hex(65)

    payload = {
        "x402Version": 2,
        "payload": {"authorization": authorization, "signature": signature},
        "resource": {"url": "http://testserver/api/x402/generate"},
    }
    payload["accepted"] = accepted or {
        "scheme": "exact",
        "network": NETWORK,
        "asset": ASSET,
        "amount": str(value),
        "payTo": to,
        "maxTimeoutSeconds": 300,
        "extra": ASSET_EXTRA,
    }
    return payload


def make_requirements(amount="12000", pay_to=RECEIVER, network=NETWORK):
    return PaymentRequirements(
        scheme="exact",
        network=network,
        asset=ASSET,
        amount=str(amount),
        pay_to=pay_to,
        extra=dict(ASSET_EXTRA),
    )


def make_context(amount=12000, verified=True, error=None, reason=None, payload=None):
    """A PaymentContext as the middleware would attach it."""
    payload = payload or make_payment(amount, sign=False)
    return PaymentContext(
        verified=verified,
        payer=PAYER_ADDRESS.lower(),
        amount=amount,
        asset=ASSET,
        network=NETWORK,
        payload=payload,
        requirements=make_requirements(amount),
        signature_hash=compute_signature_hash(payload["payload"]["signature"]),
        error=error,
        reason=reason,
    )


class ProviderError(Exception):
    pass


class FakeFacilitator(FacilitatorClient):
    """Scripted facilitator; settle_results items are SettleResponse or exceptions."""

    def __init__(self, verify_result=None, settle_results=None, verify_delay=0.0):
        self.verify_result = verify_result or VerifyResponse(True, payer=PAYER_ADDRESS)
        self.settle_results = list(settle_results or [])
        self.verify_delay = verify_delay
        self.verify_calls = []
        self.settle_calls = []

    async def verify(self, payment_payload, requirements):
        self.verify_calls.append((payment_payload, requirements))
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        if isinstance(self.verify_result, BaseException):
            raise self.verify_result
        return self.verify_result

    async def settle(self, payment_payload, requirements):
        self.settle_calls.append((payment_payload, requirements))
        result = self.settle_results.pop(0) if self.settle_results else None
        if isinstance(result, BaseException):
            raise result
        return result or SettleResponse(True, TX_HASH, requirements.network, PAYER_ADDRESS)


class FakeExecutor(ToolExecutor):
    def __init__(self, outputs=None, error=None, pending=False, delay=0.0, status=None):
        self.outputs = outputs if outputs is not None else {"text": "hello back"}
        self.error = error
        self.pending = pending
        self.delay = delay
        self.statuses = status or {}
        self.calls = []

    async def execute(self, operation_id, tool_id, inputs, caller):
        self.calls.append((operation_id, tool_id, inputs, caller))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.pending:
            return ExecutionResult(ExecutionStatus.PENDING, operation_id)
        return ExecutionResult(ExecutionStatus.COMPLETED, operation_id, outputs=self.outputs)

    async def get_status(self, operation_id):
        return self.statuses.get(operation_id)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, url, payload, secret=None):
        self.sent.append((url, payload, secret))
        return 200


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def ledger():
    ledger = PaymentLedger.from_url("sqlite://")
    ledger.init_db()
    return ledger


@pytest.fixture
def pricing():
    return PricingCalculator(ToolRegistry.default(), markup_percent=50, minimum_charge_usd=0.01)


@pytest.fixture
def facilitator():
    return FakeFacilitator()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_gate(ledger, pricing, facilitator, executor, notifier, sleep):
    def factory(**overrides):
        kwargs = dict(
            pay_to=RECEIVER,
            network=NETWORK,
            asset=ASSET,
            asset_extra=ASSET_EXTRA,
            settle_max_attempts=3,
            settle_backoff_seconds=1.0,
            notifier=notifier,
            sleep=sleep,
        )
        kwargs.update(overrides)
        return PaymentGate(
            kwargs.pop("ledger", ledger),
            kwargs.pop("facilitator", facilitator),
            pricing,
            kwargs.pop("executor", executor),
            **kwargs,
        )

    return factory


@pytest.fixture
def settings():
    return X402Settings(
        _env_file=None,
        x402_enabled=True,
        x402_receiver_address=RECEIVER,
        x402_network=NETWORK,
        x402_asset_name=ASSET_EXTRA["name"],
        x402_database_url="sqlite://",
        x402_internal_api_key="internal-key",
        x402_admin_token="admin-token",
        x402_settle_backoff_seconds=0.0,
    )
