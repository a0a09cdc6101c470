import json
from decimal import Decimal

import pytest

from app.payment.errors import PricingError, ToolNotFoundError
from app.payment.pricing import (
    PricingCalculator,
    atomic_to_usd,
    build_payment_required,
    usd_to_atomic,
)
from app.payment.tools import ToolDefinition, ToolRegistry


def test_chatgpt_quote_includes_markup(pricing):
    quote = pricing.calculate("chatgpt-free", {"prompt": "hello"})

    assert quote.base_cost_usd == Decimal("0.008")
    assert quote.markup_usd == Decimal("0.004")
    assert quote.total_cost_usd == Decimal("0.012")
    assert quote.total_cost_atomic == 12000
    assert isinstance(quote.total_cost_atomic, int)


def test_unit_priced_tool(pricing):
    quote = pricing.calculate("dalle-image", {"prompt": "a cat", "n": 2})

    assert quote.units == 2
    assert quote.base_cost_usd == Decimal("0.08")
    assert quote.total_cost_atomic == 120000


@pytest.mark.parametrize("units", [0, 5, "lots"])
def test_unit_input_out_of_range(pricing, units):
    with pytest.raises(PricingError):
        pricing.calculate("dalle-image", {"n": units})


def test_unknown_tool(pricing):
    with pytest.raises(ToolNotFoundError) as exc_info:
        pricing.calculate("no-such-tool")
    assert exc_info.value.tool_id == "no-such-tool"


def test_minimum_charge_applies():
    registry = ToolRegistry()
    registry.register(ToolDefinition(tool_id="cheap", display_name="Cheap", cost_usd="0.001"))
    calculator = PricingCalculator(registry, markup_percent=50, minimum_charge_usd=0.01)

    assert calculator.calculate("cheap").total_cost_atomic == 10000


def test_atomic_amount_rounds_up():
    assert usd_to_atomic(Decimal("0.0000011")) == 2
    assert usd_to_atomic(Decimal("0.012")) == 12000

    registry = ToolRegistry()
    registry.register(ToolDefinition(tool_id="odd", display_name="Odd", cost_usd="0.0000011"))
    calculator = PricingCalculator(registry, markup_percent=0, minimum_charge_usd=0)
    assert calculator.calculate("odd").total_cost_atomic == 2


def test_atomic_to_usd():
    assert atomic_to_usd(12000) == 0.012
    assert atomic_to_usd(10000) == 0.01


def test_quote_is_deterministic(pricing):
    first = pricing.calculate("flux-schnell", {"prompt": "x"})
    second = pricing.calculate("flux-schnell", {"prompt": "x"})
    assert first == second


def test_build_payment_required(pricing):
    quote = pricing.calculate("chatgpt-free")
    required = build_payment_required(
        quote,
        pay_to="0xreceiver",
        network="eip155:8453",
        asset="0xusdc",
        resource_url="https://api.example.com/api/x402/generate",
        description="Text completion",
        extra={"name": "USD Coin", "version": "2"},
    )

    assert required["x402Version"] == 2
    assert required["resource"]["url"] == "https://api.example.com/api/x402/generate"
    assert required["accepts"] == [
        {
            "scheme": "exact",
            "network": "eip155:8453",
            "asset": "0xusdc",
            "amount": "12000",
            "payTo": "0xreceiver",
            "maxTimeoutSeconds": 300,
            "extra": {"name": "USD Coin", "version": "2"},
        }
    ]


def test_registry_lists_public_tools_only():
    registry = ToolRegistry.default()

    public_ids = {tool.tool_id for tool in registry.list_public()}
    assert "upscale-internal" not in public_ids
    assert "chatgpt-free" in public_ids
    assert registry.get("upscale-internal") is not None


def test_registry_from_file(tmp_path):
    path = tmp_path / "tools.json"
    path.write_text(
        json.dumps(
            [
                {"tool_id": "echo", "display_name": "Echo", "cost_usd": "0.02"},
                {"tool_id": "hidden", "display_name": "Hidden", "visibility": "private"},
            ]
        )
    )

    registry = ToolRegistry.from_file(str(path))

    assert registry.get("echo").cost_usd == Decimal("0.02")
    assert [tool.tool_id for tool in registry.list_public()] == ["echo"]
