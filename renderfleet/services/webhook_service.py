"""Signed completion webhooks.

The signature is an HMAC-SHA512 over the canonical JSON form of the payload
(sorted keys, no whitespace) with the ``signature`` field left out. It is
sent both inside the body and as the ``X-Renderfleet-Signature`` header.
Without a configured secret nothing is sent.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from renderfleet.config import Settings, get_settings
from renderfleet.render.orchestrator import RenderResult
from renderfleet.schemas.render import WebhookPayload

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Renderfleet-Signature"
SIGNATURE_PREFIX = "sha512="


def canonical_json(payload: dict[str, Any]) -> bytes:
    body = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode()


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode(), canonical_json(payload), hashlib.sha512).hexdigest()


def verify_signature(payload: dict[str, Any], secret: str, signature: str | None = None) -> bool:
    """Check a received payload. ``signature`` defaults to the one in the body.

    Accepts both the bare hex digest and the ``sha512=`` header form.
    """
    received = signature if signature is not None else payload.get("signature")
    if not received:
        return False
    received = received.removeprefix(SIGNATURE_PREFIX)
    return hmac.compare_digest(received, sign_payload(payload, secret))


def build_payload(result: RenderResult, custom_data: dict[str, Any] | None = None) -> WebhookPayload:
    return WebhookPayload(
        job_id=result.job_id,
        state="completed" if result.succeeded else "failed",
        output_ref=result.output_ref,
        error_kind=result.error.code if result.error else None,
        error_message=result.error.message if result.error else None,
        unresolved_chunks=[] if result.succeeded else result.unresolved_chunks,
        custom_data=custom_data,
    )


@dataclass
class WebhookDelivery:
    delivered: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class WebhookReporter:
    """Deliver completion notices. Never raises and never alters the job result."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep

    def signed_body(self, payload: WebhookPayload) -> dict[str, Any]:
        body = payload.model_dump(mode="json")
        body["signature"] = sign_payload(body, self.settings.webhook_secret)
        return body

    async def notify(
        self,
        url: str,
        result: RenderResult,
        custom_data: dict[str, Any] | None = None,
    ) -> WebhookDelivery:
        if not self.settings.webhook_secret:
            logger.error(f"[WEBHOOK] Not notifying {url} for {result.job_id}: webhook_secret is not configured")
            return WebhookDelivery(delivered=False, attempts=0, error="webhook_secret is not configured")

        body = self.signed_body(build_payload(result, custom_data))
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: f"{SIGNATURE_PREFIX}{body['signature']}",
        }

        max_attempts = max(1, self.settings.webhook_max_attempts)
        delay = self.settings.webhook_backoff_s
        last = WebhookDelivery(delivered=False, attempts=0)

        async with httpx.AsyncClient(timeout=self.settings.webhook_timeout_s, transport=self._transport) as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    response = await client.post(url, content=json.dumps(body), headers=headers)
                except (httpx.HTTPError, httpx.InvalidURL) as e:
                    last = WebhookDelivery(delivered=False, attempts=attempt, error=str(e))
                else:
                    if response.is_success:
                        logger.info(f"[WEBHOOK] Delivered {result.job_id} to {url}")
                        return WebhookDelivery(delivered=True, attempts=attempt, status_code=response.status_code)
                    last = WebhookDelivery(
                        delivered=False,
                        attempts=attempt,
                        status_code=response.status_code,
                        error=response.text[:500],
                    )
                    if response.status_code < 500 and response.status_code != 429:
                        break

                if attempt < max_attempts:
                    logger.warning(
                        f"[WEBHOOK] Delivery attempt {attempt} for {result.job_id} failed "
                        f"({last.status_code or last.error}). Retrying in {delay:.1f} seconds..."
                    )
                    await self._sleep(delay)
                    delay *= 2

        logger.error(f"[WEBHOOK] Giving up on {result.job_id} after {last.attempts} attempt(s): {last.error}")
        return last
