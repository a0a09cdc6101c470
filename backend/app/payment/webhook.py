"""
Webhook delivery for x402 generations.

Completion notifications are POSTed to the caller's URL with an HMAC-SHA256
signature of the exact body bytes in ``X-Webhook-Signature: sha256=<hex>``.
Delivery is retried a bounded number of times with growing delays.
"""

import asyncio
import hashlib
import hmac
import ipaddress
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence
from urllib.parse import urlparse

import httpx

from app.payment.errors import WebhookDeliveryError, WebhookValidationError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS = (1.0, 5.0, 30.0)
DEFAULT_TIMEOUT_SECONDS = 10.0
USER_AGENT = "x402-gate-webhook/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "0.0.0.0"}


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    """Canonical JSON body: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign_webhook(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, secret: str, header_value: str) -> bool:
    """Check an ``X-Webhook-Signature`` header against a body."""
    expected = f"sha256={sign_webhook(body, secret)}"
    return hmac.compare_digest(expected, header_value or "")


def validate_webhook_url(url: str, allow_insecure: bool = False) -> str:
    """Validate a caller-supplied webhook URL.

    Raises:
        WebhookValidationError: If the URL is unusable or points at a
            local/private host (unless insecure URLs are allowed)
    """
    if not url or not isinstance(url, str):
        raise WebhookValidationError("Webhook URL is required")

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise WebhookValidationError("Webhook URL must use http or https")
    if not parsed.hostname:
        raise WebhookValidationError("Webhook URL must include a host")
    if allow_insecure:
        return url

    if parsed.scheme != "https":
        raise WebhookValidationError("Webhook URL must use https")

    host = parsed.hostname.lower()
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost") or host.endswith(".local"):
        raise WebhookValidationError("Webhook URL must not point at a local host")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return url
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    ):
        raise WebhookValidationError("Webhook URL must not point at a private address")
    return url


class WebhookNotifier:
    """Sends signed webhook notifications with retry."""

    def __init__(
        self,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not retry_delays:
            raise ValueError("retry_delays must contain at least one entry")
        self.retry_delays = tuple(retry_delays)
        self.max_attempts = len(self.retry_delays)
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    async def send(self, url: str, payload: Dict[str, Any], secret: Optional[str] = None) -> int:
        """POST the payload, retrying on network errors and non-2xx replies.

        Returns:
            HTTP status code of the successful delivery

        Raises:
            WebhookDeliveryError: After the final attempt fails
        """
        body = serialize_payload(payload)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if secret:
            headers[SIGNATURE_HEADER] = f"sha256={sign_webhook(body, secret)}"

        last_error = ""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_attempts):
                try:
                    response = await client.post(url, content=body, headers=headers)
                    if response.is_success:
                        logger.info(
                            f"[x402] Webhook delivered to {url} (status: {response.status_code})"
                        )
                        return response.status_code
                    last_error = f"Webhook returned {response.status_code}: {response.text[:200]}"
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"

                if attempt < self.max_attempts - 1:
                    logger.warning(
                        f"[x402] Webhook delivery failed "
                        f"(attempt {attempt + 1}/{self.max_attempts}): {last_error}"
                    )
                    await self._sleep(self.retry_delays[attempt])

        logger.error(f"[x402] Webhook delivery to {url} gave up: {last_error}")
        raise WebhookDeliveryError(last_error)
