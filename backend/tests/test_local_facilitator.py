import asyncio
import time

import pytest
from eth_account import Account
from fastapi import FastAPI
from web3 import Web3

from app.facilitator.service import LocalFacilitator, split_signature
from app.payment.errors import FacilitatorTransportError
from app.payment.middleware import (
    FACILITATOR_UNAVAILABLE,
    PaymentVerificationMiddleware,
    encode_payment_header,
)

from conftest import (
    ASSET,
    ASSET_EXTRA,
    NETWORK,
    OTHER_KEY,
    PAYER_ADDRESS,
    RECEIVER,
    make_payment,
    make_requirements,
)

NOW = 1_700_000_000


@pytest.fixture
def facilitator():
    return LocalFacilitator(clock=lambda: NOW)


def verify(facilitator, payment, requirements=None):
    return asyncio.run(facilitator.verify(payment, requirements or make_requirements()))


def valid_payment(**kwargs):
    kwargs.setdefault("valid_after", NOW - 60)
    kwargs.setdefault("valid_before", NOW + 600)
    return make_payment(**kwargs)


def test_valid_signature(facilitator):
    result = verify(facilitator, valid_payment())

    assert result.is_valid is True
    assert result.payer == PAYER_ADDRESS
    assert result.invalid_reason is None


def test_signature_from_someone_else(facilitator):
    # Signed by OTHER_KEY but claims to come from the payer
    payment = valid_payment(key=OTHER_KEY, from_address=PAYER_ADDRESS)
    result = verify(facilitator, payment)

    assert result.is_valid is False
    assert result.invalid_reason == "invalid_signature"


def test_tampered_value_breaks_signature(facilitator):
    payment = valid_payment(value=12000)
    payment["payload"]["authorization"]["value"] = "1200000"

    assert verify(facilitator, payment).invalid_reason == "invalid_signature"


def test_wrong_recipient(facilitator):
    other = Account.from_key(OTHER_KEY).address
    payment = valid_payment(to=other)

    assert verify(facilitator, payment).invalid_reason == "recipient_mismatch"


def test_self_payment_rejected_unless_allowed():
    payment = valid_payment(to=PAYER_ADDRESS)
    requirements = make_requirements(pay_to=PAYER_ADDRESS)

    strict = LocalFacilitator(clock=lambda: NOW)
    assert verify(strict, payment, requirements).invalid_reason == "self_payment"

    lenient = LocalFacilitator(clock=lambda: NOW, allow_self_payment=True)
    assert verify(lenient, payment, requirements).is_valid is True


def test_amount_below_requirement(facilitator):
    payment = valid_payment(value=10000)

    assert verify(facilitator, payment, make_requirements("12000")).invalid_reason == "insufficient_amount"


def test_time_window(facilitator):
    early = valid_payment(valid_after=NOW + 10)
    expired = valid_payment(valid_before=NOW - 1)

    assert verify(facilitator, early).invalid_reason == "authorization_not_yet_valid"
    assert verify(facilitator, expired).invalid_reason == "authorization_expired"


def test_network_mismatch(facilitator):
    payment = valid_payment()
    payment["accepted"]["network"] = "eip155:8453"

    assert verify(facilitator, payment).invalid_reason == "network_mismatch"


def test_unsupported_network(facilitator):
    payment = valid_payment()
    payment["accepted"]["network"] = "solana"

    assert verify(facilitator, payment, make_requirements(network="solana")).invalid_reason == "unsupported_network"


def test_missing_signature(facilitator):
    payment = valid_payment()
    del payment["payload"]["signature"]

    assert verify(facilitator, payment).invalid_reason == "invalid_payload"


def test_test_mode_settlement_consumes_nonce(facilitator):
    payment = valid_payment()
    requirements = make_requirements()

    settlement = asyncio.run(facilitator.settle(payment, requirements))

    assert settlement.success is True
    assert settlement.transaction.startswith("0x")
    assert len(settlement.transaction) == 66
    assert settlement.payer == PAYER_ADDRESS
    assert verify(facilitator, payment, requirements).invalid_reason == "nonce_already_used"

    again = asyncio.run(facilitator.settle(payment, requirements))
    assert again.success is False
    assert again.error_reason == "nonce_already_used"


def test_settle_invalid_payment_does_not_consume_nonce(facilitator):
    payment = valid_payment(valid_before=NOW - 1)

    settlement = asyncio.run(facilitator.settle(payment, make_requirements()))

    assert settlement.success is False
    assert settlement.error_reason == "authorization_expired"


def test_split_signature():
    signature = Web3.to_hex(bytes(range(64)) + bytes([1]))
    v, r, s = split_signature(signature)

    assert v == 28
    assert r == bytes(range(32))
    assert s == bytes(range(32, 64))

    with pytest.raises(ValueError):
        split_signature("0x1234")


def test_real_clock_is_default():
    facilitator = LocalFacilitator()
    payment = make_payment(valid_after=int(time.time()) - 5, valid_before=int(time.time()) + 300)

    assert verify(facilitator, payment).is_valid is True


class UnreachableRPC:
    """Web3 stand-in whose contract calls fail like a dropped RPC connection."""

    def __init__(self):
        self.eth = self
        self.functions = self
        self.calls = 0

    def contract(self, address, abi):
        return self

    def authorizationState(self, payer, nonce):
        return self

    def call(self):
        self.calls += 1
        raise ConnectionError("rpc down")


def test_rpc_failure_during_nonce_check_is_transport_error():
    rpc = UnreachableRPC()
    facilitator = LocalFacilitator(clock=lambda: NOW, web3=rpc)

    with pytest.raises(FacilitatorTransportError) as excinfo:
        verify(facilitator, valid_payment())

    assert excinfo.value.code == "rpc_unavailable"
    assert rpc.calls == 1


def test_rpc_failure_reaches_middleware_as_unavailable():
    facilitator = LocalFacilitator(clock=lambda: NOW, web3=UnreachableRPC())
    middleware = PaymentVerificationMiddleware(
        FastAPI(),
        facilitator=facilitator,
        pay_to=RECEIVER,
        network=NETWORK,
        asset=ASSET,
        asset_extra=ASSET_EXTRA,
    )
    header = encode_payment_header(valid_payment())

    context = asyncio.run(middleware.verify_headers({"x-payment": header}))

    assert context.verified is False
    assert context.error == FACILITATOR_UNAVAILABLE
