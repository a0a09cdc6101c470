"""
Main FastAPI application entry point.

This module creates and configures the x402 payment gate application: the
payment ledger, facilitator, pricing, generation executor and the middleware
that verifies X-PAYMENT headers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

# Load environment variables from .env file
load_dotenv()
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.facilitator.service import LocalFacilitator
from app.payment.config import X402Settings
from app.payment.executor import HTTPToolExecutor, ToolExecutor
from app.payment.facilitator import FacilitatorClient, HTTPFacilitatorClient
from app.payment.gate import PaymentGate
from app.payment.ledger import PaymentLedger
from app.payment.middleware import PaymentVerificationMiddleware
from app.payment.pricing import PricingCalculator
from app.payment.routes import router as x402_router
from app.payment.tools import ToolRegistry
from app.payment.webhook import WebhookNotifier

logger = logging.getLogger(__name__)

# Configuration constants
API_VERSION = "0.1.0"
SERVICE_NAME = "x402-gate"

PROTECTED_PATHS = ("/api/x402/generate",)


def build_facilitator(settings: X402Settings) -> FacilitatorClient:
    """Create the facilitator for the configured mode."""
    if settings.x402_facilitator_mode == "local":
        return LocalFacilitator(
            rpc_url=settings.x402_rpc_url,
            settlement_key=settings.x402_settlement_private_key,
        )
    return HTTPFacilitatorClient(
        base_url=settings.x402_facilitator_url,
        api_key=settings.x402_facilitator_api_key,
        timeout=settings.x402_facilitator_timeout_seconds,
    )


def build_registry(settings: X402Settings) -> ToolRegistry:
    """Tool catalogue from X402_TOOLS_FILE, or the built-in one."""
    if settings.x402_tools_file:
        return ToolRegistry.from_file(settings.x402_tools_file)
    return ToolRegistry.default()


def build_gate(
    settings: X402Settings,
    *,
    ledger: Optional[PaymentLedger] = None,
    facilitator: Optional[FacilitatorClient] = None,
    executor: Optional[ToolExecutor] = None,
    registry: Optional[ToolRegistry] = None,
    notifier: Optional[WebhookNotifier] = None,
) -> PaymentGate:
    """Wire the payment gate from settings; any collaborator can be supplied."""
    if ledger is None:
        ledger = PaymentLedger.from_url(settings.x402_database_url)
        ledger.init_db()

    pricing = PricingCalculator(
        registry or build_registry(settings),
        markup_percent=settings.x402_markup_percent,
        minimum_charge_usd=settings.x402_minimum_charge_usd,
    )

    return PaymentGate(
        ledger,
        facilitator or build_facilitator(settings),
        pricing,
        executor
        or HTTPToolExecutor(
            settings.x402_internal_api_url,
            api_key=settings.x402_internal_api_key,
            timeout=settings.x402_execution_timeout_seconds,
        ),
        pay_to=settings.x402_receiver_address,
        network=settings.x402_network,
        asset=settings.asset_address,
        asset_extra=_asset_extra(settings),
        max_timeout_seconds=settings.x402_max_timeout_seconds,
        execution_timeout_seconds=settings.x402_execution_timeout_seconds,
        settle_timeout_seconds=settings.x402_settle_timeout_seconds,
        settle_max_attempts=settings.x402_settle_max_attempts,
        settle_backoff_seconds=settings.x402_settle_backoff_seconds,
        notifier=notifier
        or WebhookNotifier(
            retry_delays=settings.x402_webhook_retry_delays,
            timeout=settings.x402_webhook_timeout_seconds,
        ),
    )


def _asset_extra(settings: X402Settings) -> dict:
    # EIP-712 domain of the token, needed to check the signature
    return {"name": settings.x402_asset_name, "version": settings.x402_asset_version}


def create_app(
    settings: Optional[X402Settings] = None,
    *,
    ledger: Optional[PaymentLedger] = None,
    facilitator: Optional[FacilitatorClient] = None,
    executor: Optional[ToolExecutor] = None,
    registry: Optional[ToolRegistry] = None,
    notifier: Optional[WebhookNotifier] = None,
) -> FastAPI:
    """Create and configure the main FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or X402Settings()
    enabled = settings.x402_enabled
    try:
        settings.validate_settings()
    except ValueError as e:
        enabled = False
        logger.error(f"[x402] Payment config validation failed, x402 disabled: {e}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        gate = getattr(app.state, "x402_gate", None)
        if gate is not None:
            await gate.drain()

    app = FastAPI(
        title="x402 Payment Gate",
        description="Pay-per-use tool execution with x402 USDC payments",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.x402_settings = settings

    # x402 payment middleware for the generation route (ADD FIRST - executes last)
    if enabled:
        facilitator = facilitator or build_facilitator(settings)
        gate = build_gate(
            settings,
            ledger=ledger,
            facilitator=facilitator,
            executor=executor,
            registry=registry,
            notifier=notifier,
        )
        app.state.x402_gate = gate
        app.add_middleware(
            PaymentVerificationMiddleware,
            facilitator=facilitator,
            pay_to=settings.x402_receiver_address,
            network=settings.x402_network,
            asset=settings.asset_address,
            asset_extra=_asset_extra(settings),
            max_timeout_seconds=settings.x402_max_timeout_seconds,
            protected_paths=PROTECTED_PATHS,
            enabled=True,
            verify_timeout_seconds=settings.x402_verify_timeout_seconds,
        )
        app.include_router(x402_router)
        logger.info(
            f"[x402] Payment gate enabled (payment to: {settings.x402_receiver_address}, "
            f"network: {settings.x402_network}, facilitator: {settings.x402_facilitator_mode})"
        )
    else:
        logger.warning("[x402] Payment gate disabled: set X402_ENABLED and X402_RECEIVER_ADDRESS")

    # Add CORS middleware (ADD LAST - executes first to handle OPTIONS)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-PAYMENT-REQUIRED", "X-PAYMENT-RESPONSE"],
    )

    # Register health check endpoint
    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint for monitoring and load balancers."""
        return JSONResponse(
            content={
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": API_VERSION,
                "x402Enabled": enabled,
            }
        )

    return app


# Create the application instance
app = create_app()


def run() -> None:
    """Run the application with uvicorn."""
    settings = X402Settings()
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.agents_port)


if __name__ == "__main__":
    run()
