"""
Tool Executor boundary - the seam to the generation engine.

The gate hands every paid execution to a ToolExecutor. An executor either
finishes synchronously (COMPLETED / FAILED) or hands back a job that is still
running (PENDING); pending jobs are finished later through
``PaymentGate.complete`` from a callback or a status poll.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from app.payment.errors import ExecutionError

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    """How the caller receives the result."""
    IMMEDIATE = "immediate"  # Result in the HTTP response
    POLL = "poll"  # Caller polls /status/{generationId}
    WEBHOOK = "webhook"  # Result POSTed to the caller's webhook


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """Outcome reported by an executor."""
    status: ExecutionStatus
    operation_id: str
    outputs: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


@dataclass
class CallerContext:
    """Who is paying for the execution."""
    payer_address: str
    signature_hash: str
    delivery_mode: ExecutionMode = ExecutionMode.IMMEDIATE
    platform: str = "x402"

    @property
    def master_account_id(self) -> str:
        # Synthetic account id; x402 callers have no account
        return f"x402:{self.payer_address}"


class ToolExecutor(ABC):
    """Interface to the generation engine."""

    @abstractmethod
    async def execute(
        self,
        operation_id: str,
        tool_id: str,
        inputs: Dict[str, Any],
        caller: CallerContext,
    ) -> ExecutionResult:
        """Run a tool. Raise or return FAILED on failure."""

    @abstractmethod
    async def get_status(self, operation_id: str) -> Optional[ExecutionResult]:
        """Current state of an operation, or None if unknown."""


def parse_generation(operation_id: str, data: Dict[str, Any]) -> ExecutionResult:
    status = str(data.get("status", "pending")).lower()
    if status in ("completed", "success", "succeeded"):
        return ExecutionResult(
            ExecutionStatus.COMPLETED,
            operation_id,
            outputs=data.get("outputs", data.get("responsePayload")),
        )
    if status in ("failed", "error", "cancelled"):
        return ExecutionResult(
            ExecutionStatus.FAILED,
            operation_id,
            error=data.get("errorMessage") or data.get("error") or "Generation failed",
        )
    return ExecutionResult(ExecutionStatus.PENDING, operation_id)


class HTTPToolExecutor(ToolExecutor):
    """Executor backed by the internal generation API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {}
        if self.api_key:
            headers["X-Internal-Client-Key"] = self.api_key
        return httpx.AsyncClient(headers=headers, timeout=self.timeout, transport=self._transport)

    async def execute(
        self,
        operation_id: str,
        tool_id: str,
        inputs: Dict[str, Any],
        caller: CallerContext,
    ) -> ExecutionResult:
        payload = {
            "toolId": tool_id,
            "inputs": inputs,
            "generationId": operation_id,
            "user": {
                "masterAccountId": caller.master_account_id,
                "platform": "webhook" if caller.delivery_mode == ExecutionMode.WEBHOOK else caller.platform,
                "isX402": True,
                "payerAddress": caller.payer_address,
            },
            "metadata": {
                "x402": True,
                "payer": caller.payer_address,
                "signatureHash": caller.signature_hash,
            },
        }
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/internal/v1/data/execute", json=payload)

        if response.status_code >= 400:
            raise ExecutionError(
                f"Generation API returned HTTP {response.status_code}: {response.text[:200]}"
            )
        return parse_generation(operation_id, response.json())

    async def get_status(self, operation_id: str) -> Optional[ExecutionResult]:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/internal/v1/data/generations/{operation_id}"
                )
        except httpx.HTTPError as e:
            raise ExecutionError(f"Generation API unreachable: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ExecutionError(f"Generation API returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise ExecutionError("Generation API returned a non-JSON body") from e
        return parse_generation(operation_id, data)
