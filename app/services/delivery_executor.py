"""
Delivery Executor

Performs one signed HTTP attempt for a delivery and classifies it.

Network and HTTP failures are normal operational results and are returned
as AttemptResult values. Only StoreFailure (the attempt could not be
recorded) and programming errors propagate.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Union

import httpx

from app.config import settings
from app.exceptions import SignatureSetupError
from app.logging_config import get_logger
from app.models.delivery import AttemptOutcome, WebhookDelivery
from app.models.webhook import Webhook
from app.routes.metrics import track_attempt
from app.services import signer
from app.services.delivery_store import AttemptRecord, DeliveryStore


SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"


# ============================================
# Attempt results
# ============================================

@dataclass(frozen=True)
class Success:
    """The endpoint answered with a 2xx status."""
    attempt_number: int
    duration_ms: int
    status_code: int
    body: str | None = None

    outcome = AttemptOutcome.SUCCESS
    success = True
    retryable = False
    error = None


@dataclass(frozen=True)
class HTTPFailure:
    """The endpoint answered with a non-2xx status."""
    attempt_number: int
    duration_ms: int
    status_code: int
    body: str | None = None

    outcome = AttemptOutcome.HTTP_FAILURE
    success = False
    retryable = True

    @property
    def error(self) -> str:
        return f"HTTP {self.status_code}"


@dataclass(frozen=True)
class NetworkFailure:
    """No response was obtained: refused, DNS failure, timeout."""
    attempt_number: int
    duration_ms: int
    error: str

    outcome = AttemptOutcome.NETWORK_FAILURE
    success = False
    retryable = True
    status_code = None
    body = None


@dataclass(frozen=True)
class SignatureSetupFailure:
    """The payload could not be signed; no request was sent."""
    attempt_number: int
    duration_ms: int
    error: str

    outcome = AttemptOutcome.SIGNATURE_SETUP_FAILURE
    success = False
    retryable = False
    status_code = None
    body = None


AttemptResult = Union[Success, HTTPFailure, NetworkFailure, SignatureSetupFailure]


@dataclass
class _Response:
    outcome: AttemptOutcome
    status_code: int | None = None
    body: str | None = None
    error: str | None = None


def _result_for(response: _Response, attempt_number: int, duration_ms: int) -> AttemptResult:
    if response.outcome == AttemptOutcome.SUCCESS:
        return Success(attempt_number, duration_ms, response.status_code, response.body)
    if response.outcome == AttemptOutcome.HTTP_FAILURE:
        return HTTPFailure(attempt_number, duration_ms, response.status_code, response.body)
    if response.outcome == AttemptOutcome.NETWORK_FAILURE:
        return NetworkFailure(attempt_number, duration_ms, response.error)
    return SignatureSetupFailure(attempt_number, duration_ms, response.error)


def build_http_client(max_connections: int | None = None) -> httpx.AsyncClient:
    """Shared outbound client sized to the delivery concurrency cap."""
    limit = max_connections or settings.WEBHOOK_MAX_CONCURRENCY
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.WEBHOOK_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_connections=limit, max_keepalive_connections=limit),
        follow_redirects=False,
    )


class DeliveryExecutor:
    """Sends a single attempt for a delivery and records it."""

    def __init__(
        self,
        store: DeliveryStore,
        http_client: httpx.AsyncClient,
        timeout_seconds: float | None = None,
        user_agent: str | None = None,
        body_limit: int | None = None,
    ):
        self.store = store
        self.http_client = http_client
        self.timeout_seconds = timeout_seconds or settings.WEBHOOK_TIMEOUT_SECONDS
        self.user_agent = user_agent or settings.WEBHOOK_USER_AGENT
        self.body_limit = body_limit or settings.WEBHOOK_RESPONSE_BODY_LIMIT

    async def attempt(self, delivery: WebhookDelivery, webhook: Webhook) -> AttemptResult:
        """
        Make one attempt and append it to the delivery's history.

        Exactly one attempt record is appended whatever the outcome. The
        caller decides what happens next (retry, terminate).

        Raises:
            StoreFailure: if the attempt could not be recorded
        """
        log = get_logger(
            delivery_id=delivery.id,
            webhook_id=webhook.id,
            event_type=delivery.event_type,
        )

        started = time.monotonic()
        response = await self._send(delivery, webhook)
        duration_ms = int((time.monotonic() - started) * 1000)

        attempt_number = await self.store.append_attempt(delivery.id, AttemptRecord(
            outcome=response.outcome,
            success=response.outcome == AttemptOutcome.SUCCESS,
            status_code=response.status_code,
            error=response.error,
            response_body=response.body,
            duration_ms=duration_ms,
        ))
        result = _result_for(response, attempt_number, duration_ms)

        track_attempt(delivery.event_type, result.outcome.value, duration_ms)
        if result.success:
            log.info(
                "webhook_delivered",
                attempt=attempt_number,
                status_code=result.status_code,
                duration_ms=duration_ms,
            )
        else:
            log.warning(
                "webhook_attempt_failed",
                attempt=attempt_number,
                outcome=result.outcome.value,
                status_code=result.status_code,
                error=result.error,
                duration_ms=duration_ms,
            )
        return result

    def build_headers(self, delivery: WebhookDelivery, webhook: Webhook, signature: str) -> httpx.Headers:
        """Custom webhook headers first; the signing and content headers always win."""
        headers = httpx.Headers({str(k): str(v) for k, v in (webhook.headers or {}).items()})
        headers["Content-Type"] = "application/json"
        headers["User-Agent"] = self.user_agent
        headers[SIGNATURE_HEADER] = signature
        headers[EVENT_HEADER] = delivery.event_type
        headers[DELIVERY_HEADER] = delivery.id
        return headers

    async def _send(self, delivery: WebhookDelivery, webhook: Webhook) -> _Response:
        body = signer.canonical_body(delivery.payload)
        try:
            signature = signer.sign(webhook.secret, body)
        except SignatureSetupError as e:
            return _Response(AttemptOutcome.SIGNATURE_SETUP_FAILURE, error=str(e))

        headers = self.build_headers(delivery, webhook, signature)
        try:
            status_code, text = await asyncio.wait_for(
                self._post(webhook.url, body, headers),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return _Response(
                AttemptOutcome.NETWORK_FAILURE,
                error=f"Request timed out after {self.timeout_seconds:g}s",
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return _Response(
                AttemptOutcome.NETWORK_FAILURE,
                error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
            )

        if 200 <= status_code < 300:
            return _Response(AttemptOutcome.SUCCESS, status_code=status_code, body=text)
        return _Response(
            AttemptOutcome.HTTP_FAILURE,
            status_code=status_code,
            body=text,
            error=f"HTTP {status_code}",
        )

    async def _post(self, url: str, body: bytes, headers: httpx.Headers) -> tuple[int, str]:
        """POST the body and read at most body_limit bytes of the response."""
        async with self.http_client.stream("POST", url, content=body, headers=headers) as response:
            captured = bytearray()
            async for chunk in response.aiter_bytes():
                captured.extend(chunk[: self.body_limit - len(captured)])
                if len(captured) >= self.body_limit:
                    break
            return response.status_code, captured.decode("utf-8", errors="replace")
