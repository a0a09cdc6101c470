"""
Pricing for x402 tool executions.

Quotes are computed with Decimal arithmetic and converted to USDC atomic
units (6 decimals) by rounding up, so the amount a payer must authorize is
always an exact integer.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from app.payment.errors import PricingError, ToolNotFoundError
from app.payment.tools import ToolDefinition, ToolRegistry

USDC_DECIMALS = 6
X402_VERSION = 2

_ATOMIC_FACTOR = Decimal(10) ** USDC_DECIMALS
_USD_QUANT = Decimal("0.000001")


def usd_to_atomic(amount_usd: Decimal) -> int:
    """Convert a USD amount to USDC atomic units, rounding up."""
    return int((Decimal(amount_usd) * _ATOMIC_FACTOR).to_integral_value(rounding=ROUND_CEILING))


def atomic_to_usd(amount_atomic: int) -> float:
    """Convert USDC atomic units to a USD float for display."""
    return float(Decimal(int(amount_atomic)) / _ATOMIC_FACTOR)


@dataclass(frozen=True)
class Quote:
    """Price of one tool execution."""
    tool_id: str
    base_cost_usd: Decimal
    markup_usd: Decimal
    markup_percent: Decimal
    total_cost_usd: Decimal
    total_cost_atomic: int
    units: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "toolId": self.tool_id,
            "baseCostUsd": float(self.base_cost_usd),
            "markupUsd": float(self.markup_usd),
            "markupPercent": float(self.markup_percent),
            "totalCostUsd": float(self.total_cost_usd),
            "totalCostAtomic": str(self.total_cost_atomic),
            "units": self.units,
        }


class PricingCalculator:
    """Computes quotes from the tool registry's cost table."""

    def __init__(
        self,
        registry: ToolRegistry,
        markup_percent: float = 50.0,
        minimum_charge_usd: float = 0.01,
    ):
        self.registry = registry
        self.markup_percent = Decimal(str(markup_percent))
        self.minimum_charge_usd = Decimal(str(minimum_charge_usd))

    def calculate(self, tool_id: str, inputs: Optional[Dict[str, Any]] = None) -> Quote:
        """Quote a tool execution.

        Raises:
            ToolNotFoundError: If the tool is not registered
            PricingError: If a unit input is not a usable number
        """
        tool = self.registry.get(tool_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)

        units = self._units(tool, inputs or {})
        base = tool.cost_usd + tool.unit_cost_usd * units
        markup = base * self.markup_percent / Decimal(100)
        total = base + markup
        if total < self.minimum_charge_usd:
            total = self.minimum_charge_usd

        return Quote(
            tool_id=tool_id,
            base_cost_usd=base.quantize(_USD_QUANT),
            markup_usd=markup.quantize(_USD_QUANT),
            markup_percent=self.markup_percent,
            total_cost_usd=total.quantize(_USD_QUANT, rounding=ROUND_CEILING),
            total_cost_atomic=usd_to_atomic(total),
            units=units,
        )

    @staticmethod
    def _units(tool: ToolDefinition, inputs: Dict[str, Any]) -> int:
        if not tool.unit_input or tool.unit_cost_usd == 0:
            return 1
        raw = inputs.get(tool.unit_input, 1)
        try:
            units = int(Decimal(str(raw)))
        except (InvalidOperation, ValueError) as e:
            raise PricingError(f"Input '{tool.unit_input}' must be a number, got {raw!r}") from e
        if units < 1 or units > tool.max_units:
            raise PricingError(
                f"Input '{tool.unit_input}' must be between 1 and {tool.max_units}, got {units}"
            )
        return units


def build_payment_required(
    quote: Quote,
    *,
    pay_to: str,
    network: str,
    asset: str,
    resource_url: str,
    description: str = "",
    max_timeout_seconds: int = 300,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the PaymentRequired object returned with a 402 challenge."""
    return {
        "x402Version": X402_VERSION,
        "resource": {
            "url": resource_url,
            "description": description,
            "mimeType": "application/json",
        },
        "accepts": [
            {
                "scheme": "exact",
                "network": network,
                "asset": asset,
                "amount": str(quote.total_cost_atomic),
                "payTo": pay_to,
                "maxTimeoutSeconds": max_timeout_seconds,
                "extra": dict(extra or {}),
            }
        ],
    }
