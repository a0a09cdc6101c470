"""
In-process x402 facilitator for EIP-3009 USDC payments.
"""

from app.facilitator.service import LocalFacilitator

__all__ = ["LocalFacilitator"]
