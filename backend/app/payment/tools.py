"""
Tool Registry for x402 Generation.

Defines the tools that can be bought through the x402 gate and their cost
table entries.
"""

import json
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from pathlib import Path
from typing import Optional, Dict, Any, List


@dataclass
class ToolDefinition:
    """A purchasable tool and its cost table entry."""

    # Tool identity
    tool_id: str
    display_name: str
    description: str = ""
    category: str = "generation"
    visibility: str = "public"  # "public" or "private"

    # Cost table (USD, before markup)
    cost_usd: Decimal = Decimal("0")  # Flat cost per execution
    unit_cost_usd: Decimal = Decimal("0")  # Cost per unit of `unit_input`
    unit_input: Optional[str] = None  # Input that counts units (e.g. "n" images)
    max_units: int = 1
    execution_mode: str = "immediate"  # "immediate" or "async" (finished by callback/poll)

    # Extra metadata passed through to listings
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.cost_usd = Decimal(str(self.cost_usd))
        self.unit_cost_usd = Decimal(str(self.unit_cost_usd))

    def is_public(self) -> bool:
        """Check if this tool is listed publicly."""
        return self.visibility == "public"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cost_usd"] = str(self.cost_usd)
        data["unit_cost_usd"] = str(self.unit_cost_usd)
        return data


class ToolRegistry:
    """Registry of all tools and their cost table entries."""

    def __init__(self):
        """Initialize empty registry."""
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool definition.

        Args:
            tool: ToolDefinition instance
        """
        self._tools[tool.tool_id] = tool

    def register_batch(self, tools: List[ToolDefinition]) -> None:
        """Register multiple tool definitions.

        Args:
            tools: List of ToolDefinition instances
        """
        for tool in tools:
            self.register(tool)

    def get(self, tool_id: str) -> Optional[ToolDefinition]:
        """Get a tool definition.

        Args:
            tool_id: Tool identifier

        Returns:
            ToolDefinition or None if not found
        """
        return self._tools.get(tool_id)

    def list_all(self) -> List[ToolDefinition]:
        """Get all registered tools."""
        return list(self._tools.values())

    def list_public(self) -> List[ToolDefinition]:
        """Get all publicly listed tools."""
        return [tool for tool in self._tools.values() if tool.is_public()]

    @classmethod
    def from_file(cls, path: str) -> "ToolRegistry":
        """Load a registry from a JSON file.

        The file holds a list of objects with ToolDefinition field names.
        """
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        registry = cls()
        registry.register_batch([ToolDefinition(**entry) for entry in entries])
        return registry

    @classmethod
    def default(cls) -> "ToolRegistry":
        """Registry with the built-in tool catalogue."""
        registry = cls()
        registry.register_batch(DEFAULT_TOOLS)
        return registry


# Built-in catalogue, used when X402_TOOLS_FILE is not set
DEFAULT_TOOLS = [
    ToolDefinition(
        tool_id="chatgpt-free",
        display_name="ChatGPT",
        description="Text completion",
        category="text",
        cost_usd=Decimal("0.008"),
    ),
    ToolDefinition(
        tool_id="dalle-image",
        display_name="DALL-E Image",
        description="Image generation with DALL-E 3",
        category="image",
        unit_cost_usd=Decimal("0.04"),
        unit_input="n",
        max_units=4,
    ),
    ToolDefinition(
        tool_id="flux-schnell",
        display_name="Flux Schnell",
        description="Fast ComfyUI image workflow",
        category="image",
        cost_usd=Decimal("0.02"),
        execution_mode="async",
    ),
    ToolDefinition(
        tool_id="upscale-internal",
        display_name="Upscaler",
        description="Internal upscaling workflow",
        category="image",
        visibility="private",
        cost_usd=Decimal("0.01"),
    ),
]
