import asyncio
import json

import httpx
import pytest

from app.payment.errors import ExecutionError
from app.payment.executor import (
    CallerContext,
    ExecutionMode,
    ExecutionStatus,
    HTTPToolExecutor,
    parse_generation,
)

PAYER = "0x2c7536e3605d9c16a7a3d7b1898e529396a65c23"


def executor_for(handler):
    return HTTPToolExecutor(
        "http://engine.internal/", api_key="internal-key", transport=httpx.MockTransport(handler)
    )


@pytest.mark.parametrize(
    "data, status",
    [
        ({"status": "completed", "outputs": {"text": "hi"}}, ExecutionStatus.COMPLETED),
        ({"status": "success", "responsePayload": {"text": "hi"}}, ExecutionStatus.COMPLETED),
        ({"status": "failed", "errorMessage": "boom"}, ExecutionStatus.FAILED),
        ({"status": "processing"}, ExecutionStatus.PENDING),
        ({}, ExecutionStatus.PENDING),
    ],
)
def test_parse_generation(data, status):
    result = parse_generation("op-1", data)
    assert result.status == status
    assert result.operation_id == "op-1"
    assert result.is_terminal == (status != ExecutionStatus.PENDING)


def test_execute_posts_caller_context():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-internal-client-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "completed", "outputs": {"text": "hi"}})

    caller = CallerContext(PAYER, "a" * 64, ExecutionMode.WEBHOOK)
    result = asyncio.run(
        executor_for(handler).execute("op-1", "chatgpt-free", {"prompt": "hello"}, caller)
    )

    assert result.status == ExecutionStatus.COMPLETED
    assert result.outputs == {"text": "hi"}
    assert seen["url"] == "http://engine.internal/internal/v1/data/execute"
    assert seen["key"] == "internal-key"
    assert seen["body"]["generationId"] == "op-1"
    assert seen["body"]["user"]["masterAccountId"] == f"x402:{PAYER}"
    assert seen["body"]["user"]["platform"] == "webhook"
    assert seen["body"]["metadata"]["signatureHash"] == "a" * 64


def test_execute_error_status_raises():
    def handler(request):
        return httpx.Response(500, text="engine down")

    caller = CallerContext(PAYER, "a" * 64)
    with pytest.raises(ExecutionError):
        asyncio.run(executor_for(handler).execute("op-1", "chatgpt-free", {}, caller))


def test_get_status():
    def handler(request):
        if request.url.path.endswith("/op-1"):
            return httpx.Response(200, json={"status": "completed", "outputs": [1]})
        return httpx.Response(404)

    executor = executor_for(handler)

    assert asyncio.run(executor.get_status("op-1")).outputs == [1]
    assert asyncio.run(executor.get_status("missing")) is None


def test_get_status_network_failure_raises_execution_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(ExecutionError):
        asyncio.run(executor_for(handler).get_status("op-1"))
