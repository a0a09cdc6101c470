"""
x402 API Routes.

Endpoints:
- POST /api/x402/generate - Paid tool execution (402 challenge without payment)
- GET /api/x402/status/{generation_id} - Generation and payment status
- POST /api/x402/callback/{generation_id} - Completion callback from the generation engine
- GET /api/x402/quote - Price of a tool in USD and USDC atomic units
- GET /api/x402/tools - Public tool catalogue with prices
- GET /api/x402/payments - Ledger audit query (admin)
- GET /api/x402/payments/{signature_hash} - One payment record (admin)
- POST /api/x402/payments/{signature_hash}/reconcile - Retry settlement (admin)
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.payment.config import X402Settings
from app.payment.errors import (
    InvalidTransitionError,
    PricingError,
    RecordNotFoundError,
    ToolNotFoundError,
    WebhookValidationError,
)
from app.payment.executor import ExecutionMode, parse_generation
from app.payment.gate import DeliveryOptions, PaymentGate
from app.payment.models import PaymentStatus
from app.payment.webhook import validate_webhook_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/x402", tags=["x402"])


# --- Request Models ---

class DeliveryModel(BaseModel):
    """Result delivery preferences."""
    mode: ExecutionMode = Field(default=ExecutionMode.IMMEDIATE, description="immediate, poll or webhook")
    url: Optional[str] = Field(None, description="Webhook URL (webhook mode)")
    secret: Optional[str] = Field(None, description="Shared secret for X-Webhook-Signature")


class GenerateRequestModel(BaseModel):
    """API request for a paid generation."""
    model_config = ConfigDict(populate_by_name=True)

    tool_id: Optional[str] = Field(None, alias="toolId", description="Tool to execute")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Tool inputs")
    delivery: Optional[DeliveryModel] = None


class CallbackRequestModel(BaseModel):
    """Completion notice from the generation engine."""
    status: str = Field(..., description="completed, failed or pending")
    outputs: Optional[Any] = None
    error: Optional[str] = None


# --- Helpers ---

def _gate(request: Request) -> PaymentGate:
    return request.app.state.x402_gate


def _settings(request: Request) -> X402Settings:
    return request.app.state.x402_settings


def _require_bearer(authorization: Optional[str], expected: Optional[str]) -> None:
    """Check an `Authorization: Bearer <token>` header against a configured token."""
    if not expected:
        raise HTTPException(status_code=503, detail="Endpoint is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid or missing bearer token")


def _delivery_options(body: GenerateRequestModel, settings: X402Settings) -> DeliveryOptions:
    if body.delivery is None:
        return DeliveryOptions()

    delivery = DeliveryOptions(
        mode=body.delivery.mode, url=body.delivery.url, secret=body.delivery.secret
    )
    if delivery.mode == ExecutionMode.WEBHOOK:
        try:
            validate_webhook_url(delivery.url, allow_insecure=settings.x402_allow_insecure_webhooks)
        except WebhookValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return delivery


# --- Generation ---

@router.post("/generate")
async def generate(body: GenerateRequestModel, request: Request) -> JSONResponse:
    """Execute a tool, paid with an X-PAYMENT header.

    Without a payment the response is a 402 challenge carrying the
    payment requirements.
    """
    if not body.tool_id:
        raise HTTPException(status_code=400, detail="toolId is required")

    delivery = _delivery_options(body, _settings(request))
    context = getattr(request.state, "x402", None)

    try:
        outcome = await _gate(request).process(
            context,
            body.tool_id,
            body.inputs,
            resource_url=str(request.url),
            delivery=delivery,
        )
    except ToolNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PricingError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JSONResponse(
        content=outcome.body, status_code=outcome.status_code, headers=outcome.headers
    )


@router.get("/status/{generation_id}")
async def generation_status(generation_id: str, request: Request) -> Dict[str, Any]:
    """Status of a generation; a finished job is settled on the way out."""
    try:
        return await _gate(request).poll(generation_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")


@router.post("/callback/{generation_id}")
async def generation_callback(
    generation_id: str,
    body: CallbackRequestModel,
    request: Request,
    authorization: Optional[str] = Header(None),
) -> JSONResponse:
    """Record the outcome of a deferred generation."""
    _require_bearer(authorization, _settings(request).x402_internal_api_key)

    result = parse_generation(generation_id, body.model_dump())
    try:
        outcome = await _gate(request).complete(generation_id, result)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return JSONResponse(content=outcome.body, status_code=outcome.status_code, headers=outcome.headers)


# --- Pricing ---

@router.get("/quote")
async def quote(request: Request, tool_id: str = Query(..., alias="toolId")) -> Dict[str, Any]:
    """Price of one execution of a tool."""
    gate = _gate(request)
    try:
        tool_quote = gate.quote(tool_id)
    except ToolNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    resource_url = str(request.url_for("generate"))
    return {
        "quote": tool_quote.to_dict(),
        "paymentRequired": gate.payment_required(tool_quote, resource_url),
    }


@router.get("/tools")
async def list_tools(request: Request) -> Dict[str, Any]:
    """Public tool catalogue."""
    gate = _gate(request)
    tools = []
    for tool in gate.pricing.registry.list_public():
        tool_quote = gate.quote(tool.tool_id)
        tools.append(
            {
                "toolId": tool.tool_id,
                "displayName": tool.display_name,
                "description": tool.description,
                "category": tool.category,
                "executionMode": tool.execution_mode,
                "unitInput": tool.unit_input,
                "maxUnits": tool.max_units,
                "price": tool_quote.to_dict(),
            }
        )
    return {"tools": tools, "network": gate.network, "asset": gate.asset}


# --- Operator endpoints ---

@router.get("/payments")
async def list_payments(
    request: Request,
    status: Optional[str] = None,
    payer: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Audit query over the ledger by status or payer."""
    _require_bearer(authorization, _settings(request).x402_admin_token)
    ledger = _gate(request).ledger

    if status:
        try:
            payment_status = PaymentStatus(status.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        records = ledger.list_by_status(payment_status, limit=limit)
        if payer:
            records = [record for record in records if record.payer_address == payer.lower()]
    elif payer:
        records = ledger.list_by_payer(payer, limit=limit)
    else:
        raise HTTPException(status_code=400, detail="Either status or payer is required")

    return {"payments": [record.to_dict() for record in records], "count": len(records)}


@router.get("/payments/{signature_hash}")
async def get_payment(
    signature_hash: str,
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """One payment record."""
    _require_bearer(authorization, _settings(request).x402_admin_token)
    record = _gate(request).ledger.find_by_signature(signature_hash)
    if record is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return record.to_dict()


@router.post("/payments/{signature_hash}/reconcile")
async def reconcile_payment(
    signature_hash: str,
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Retry settlement of an executed-but-unsettled payment."""
    _require_bearer(authorization, _settings(request).x402_admin_token)
    try:
        return await _gate(request).reconcile(signature_hash)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
