"""
Local Facilitator for the x402 Payment Protocol (EIP-3009 / USDC)

Verifies and settles `transferWithAuthorization` payments without a remote
facilitator. Verification covers everything a remote facilitator would
check, including the validAfter/validBefore window, because nothing else in
the gate looks at timestamps.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from app.payment.errors import FacilitatorTransportError
from app.payment.facilitator import (
    FacilitatorClient,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
    chain_id_for_network,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_NAME = "USD Coin"
DEFAULT_TOKEN_VERSION = "2"
RECEIPT_TIMEOUT_SECONDS = 120

EIP3009_ABI = [
    {
        "name": "transferWithAuthorization",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "authorizationState",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def build_authorization_typed_data(
    authorization: Dict[str, Any],
    *,
    chain_id: int,
    asset: str,
    token_name: str = DEFAULT_TOKEN_NAME,
    token_version: str = DEFAULT_TOKEN_VERSION,
) -> Dict[str, Any]:
    """Build the EIP-712 document a payer signs for transferWithAuthorization."""
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": token_name,
            "version": token_version,
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(asset),
        },
        "message": {
            "from": Web3.to_checksum_address(authorization["from"]),
            "to": Web3.to_checksum_address(authorization["to"]),
            "value": int(authorization["value"]),
            "validAfter": int(authorization["validAfter"]),
            "validBefore": int(authorization["validBefore"]),
            "nonce": _hex_to_bytes(authorization["nonce"]),
        },
    }


def recover_authorization_signer(typed_data: Dict[str, Any], signature: str) -> str:
    """Recover the address that signed the typed data."""
    signable = encode_typed_data(full_message=typed_data)
    return Account.recover_message(signable, signature=_hex_to_bytes(signature))


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """Split a 65-byte signature into (v, r, s)."""
    raw = _hex_to_bytes(signature)
    if len(raw) != 65:
        raise ValueError(f"Invalid signature length: {len(raw)}")
    v = raw[64]
    if v < 27:
        v += 27
    return v, raw[:32], raw[32:64]


class LocalFacilitator(FacilitatorClient):
    """In-process facilitator for EIP-3009 USDC payments."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        settlement_key: Optional[str] = None,
        allow_self_payment: bool = False,
        clock: Callable[[], float] = time.time,
        web3: Optional[Web3] = None,
    ):
        """Initialize the local facilitator.

        Args:
            rpc_url: RPC endpoint for nonce checks and settlement
            settlement_key: Private key that submits settlements (test mode if None)
            allow_self_payment: Accept payments where payer == receiver
            clock: Time source in unix seconds
            web3: Prebuilt Web3 instance (overrides rpc_url)
        """
        if web3 is not None:
            self.w3 = web3
        elif rpc_url:
            self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        else:
            self.w3 = None
        self.settlement_key = settlement_key
        self.allow_self_payment = allow_self_payment
        self._clock = clock
        self._used_nonces: Set[Tuple[str, str]] = set()

    async def verify(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> VerifyResponse:
        return await asyncio.to_thread(self._verify, payment_payload, requirements)

    async def settle(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> SettleResponse:
        return await asyncio.to_thread(self._settle, payment_payload, requirements)

    def _verify(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> VerifyResponse:
        inner = payment_payload.get("payload") or {}
        authorization = inner.get("authorization")
        signature = inner.get("signature")
        if not isinstance(authorization, dict) or not signature:
            return VerifyResponse(False, invalid_reason="invalid_payload")

        payer = str(authorization.get("from", ""))
        accepted = payment_payload.get("accepted") or {}

        if requirements.scheme != "exact" or accepted.get("scheme", "exact") != "exact":
            return VerifyResponse(False, payer, "unsupported_scheme")

        if accepted.get("network", requirements.network) != requirements.network:
            return VerifyResponse(False, payer, "network_mismatch")

        if str(accepted.get("asset", requirements.asset)).lower() != requirements.asset.lower():
            return VerifyResponse(False, payer, "asset_mismatch")

        chain_id = chain_id_for_network(requirements.network)
        if chain_id is None:
            return VerifyResponse(False, payer, "unsupported_network")

        try:
            typed_data = build_authorization_typed_data(
                authorization,
                chain_id=chain_id,
                asset=requirements.asset,
                token_name=requirements.extra.get("name", DEFAULT_TOKEN_NAME),
                token_version=requirements.extra.get("version", DEFAULT_TOKEN_VERSION),
            )
            signer = recover_authorization_signer(typed_data, signature)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[x402] Could not recover payment signer: {e}")
            return VerifyResponse(False, payer, "invalid_signature")

        if signer.lower() != payer.lower():
            return VerifyResponse(False, payer, "invalid_signature")

        recipient = str(authorization["to"]).lower()
        if payer.lower() == recipient and not self.allow_self_payment:
            return VerifyResponse(False, payer, "self_payment")

        if recipient != requirements.pay_to.lower():
            return VerifyResponse(False, payer, "recipient_mismatch")

        if int(authorization["value"]) < int(requirements.amount):
            return VerifyResponse(False, payer, "insufficient_amount")

        now = int(self._clock())
        if now < int(authorization["validAfter"]):
            return VerifyResponse(False, payer, "authorization_not_yet_valid")
        if now > int(authorization["validBefore"]):
            return VerifyResponse(False, payer, "authorization_expired")

        if self._nonce_used(payer, authorization["nonce"], requirements.asset):
            return VerifyResponse(False, payer, "nonce_already_used")

        return VerifyResponse(True, payer=Web3.to_checksum_address(payer))

    def _nonce_used(self, payer: str, nonce: str, asset: str) -> bool:
        if (payer.lower(), nonce.lower()) in self._used_nonces:
            return True
        if self.w3 is None:
            return False
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(asset), abi=EIP3009_ABI)
        try:
            used = contract.functions.authorizationState(
                Web3.to_checksum_address(payer), _hex_to_bytes(nonce)
            ).call()
        except Exception as e:
            logger.warning(f"[x402] authorizationState lookup failed: {e!r}")
            raise FacilitatorTransportError(
                f"RPC unavailable for nonce check: {e}", code="rpc_unavailable"
            ) from e
        return bool(used)

    def _settle(
        self, payment_payload: Dict[str, Any], requirements: PaymentRequirements
    ) -> SettleResponse:
        verification = self._verify(payment_payload, requirements)
        if not verification.is_valid:
            return SettleResponse(
                success=False,
                network=requirements.network,
                payer=verification.payer,
                error_reason=verification.invalid_reason,
            )

        inner = payment_payload["payload"]
        authorization = inner["authorization"]
        signature = inner["signature"]
        payer = verification.payer

        # In test mode (no settlement key), accept without broadcasting
        if not self.settlement_key:
            self._used_nonces.add((payer.lower(), authorization["nonce"].lower()))
            tx_hash = Web3.to_hex(Web3.keccak(text=f"test-mode:{signature}"))
            logger.warning(f"[x402] Test mode settlement (no broadcast): {tx_hash}")
            return SettleResponse(True, tx_hash, requirements.network, payer)

        if self.w3 is None:
            return SettleResponse(
                False, network=requirements.network, payer=payer,
                error_reason="settlement_unavailable",
            )

        try:
            tx_hash = self._submit_transfer(authorization, signature, requirements)
        except Exception as e:
            logger.error(f"[x402] Settlement failed: {e}")
            return SettleResponse(
                False, network=requirements.network, payer=payer,
                error_reason=f"settlement_error: {e}",
            )

        self._used_nonces.add((payer.lower(), authorization["nonce"].lower()))
        return SettleResponse(True, tx_hash, requirements.network, payer)

    def _submit_transfer(
        self,
        authorization: Dict[str, Any],
        signature: str,
        requirements: PaymentRequirements,
    ) -> str:
        account = Account.from_key(self.settlement_key)
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(requirements.asset), abi=EIP3009_ABI
        )
        v, r, s = split_signature(signature)
        tx = contract.functions.transferWithAuthorization(
            Web3.to_checksum_address(authorization["from"]),
            Web3.to_checksum_address(authorization["to"]),
            int(authorization["value"]),
            int(authorization["validAfter"]),
            int(authorization["validBefore"]),
            _hex_to_bytes(authorization["nonce"]),
            v,
            r,
            s,
        ).build_transaction(
            {
                "from": account.address,
                "nonce": self.w3.eth.get_transaction_count(account.address),
                "chainId": chain_id_for_network(requirements.network),
            }
        )
        signed = account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)
        tx_hash_hex = Web3.to_hex(tx_hash)
        if receipt.status != 1:
            raise RuntimeError(f"transferWithAuthorization reverted: {tx_hash_hex}")

        logger.info(f"[x402] Settlement transaction confirmed: {tx_hash_hex}")
        return tx_hash_hex

    def get_supported_networks(self) -> Dict[str, Any]:
        """Get supported networks and schemes."""
        return {
            "kinds": [
                {"x402Version": 2, "scheme": "exact", "network": network}
                for network in ("eip155:8453", "eip155:84532")
            ]
        }
