"""
Retry Scheduler

Decides what happens after a failed attempt and drives re-attempts.

Nothing here sleeps: a retry is a persisted next_attempt_at, and an
external periodic driver (the ARQ cron job in app.worker) calls
run_sweep to re-submit whatever has become due. A delivery left pending
or attempting by a worker that died mid-attempt becomes due again once it
has been untouched for DELIVERY_LEASE_SECONDS.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.config import settings
from app.exceptions import StoreFailure, WebhookInactive, WebhookNotFound
from app.logging_config import get_logger
from app.models.base import utcnow
from app.models.delivery import DeliveryStatus, WebhookDelivery
from app.models.webhook import RetryPolicy, Webhook
from app.routes.metrics import track_retry_scheduled, track_terminated, update_sweep_due
from app.sentry_config import capture_exception
from app.services.concurrency import run_bounded
from app.services.delivery_executor import AttemptResult, DeliveryExecutor
from app.services.delivery_store import DeliveryStore


logger = get_logger(component="retry_scheduler")


def compute_retry_delay_ms(attempt_count: int, policy: RetryPolicy) -> int:
    """
    Delay before the next attempt after `attempt_count` attempts have failed.

    Pure exponential backoff without jitter:
        min(initial_delay * multiplier ** (attempt_count - 1), max_delay)
    """
    exponent = max(attempt_count - 1, 0)
    try:
        delay = policy.initial_delay_ms * policy.backoff_multiplier ** exponent
    except OverflowError:
        return policy.max_delay_ms
    return int(min(delay, policy.max_delay_ms))


@dataclass
class SweepReport:
    """What one sweep pass did."""
    due: int = 0
    claimed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    exhausted: int = 0
    skipped: int = 0
    errors: int = 0


class RetryScheduler:
    """Backoff scheduling, due-delivery sweep and manual replay."""

    def __init__(
        self,
        store: DeliveryStore,
        executor: DeliveryExecutor,
        max_concurrency: int | None = None,
        batch_size: int | None = None,
        lease_seconds: float | None = None,
    ):
        self.store = store
        self.executor = executor
        self.max_concurrency = max_concurrency or settings.WEBHOOK_MAX_CONCURRENCY
        self.batch_size = batch_size or settings.RETRY_SWEEP_BATCH_SIZE
        self.lease_seconds = lease_seconds or settings.DELIVERY_LEASE_SECONDS

    async def on_attempt_failed(
        self,
        delivery: WebhookDelivery,
        webhook: Webhook,
        result: AttemptResult | None = None,
        now: datetime | None = None,
    ) -> DeliveryStatus:
        """
        Terminate the delivery or persist its next attempt time.

        attempt_count is taken from the result when given, since the
        delivery snapshot predates the attempt that just failed.

        Returns:
            The status the delivery was moved to
        """
        log = logger.bind(delivery_id=delivery.id, webhook_id=webhook.id)
        attempt_count = result.attempt_number if result is not None else delivery.attempt_count

        if result is not None and not result.retryable:
            await self.store.mark_terminal(delivery.id, success=False, status=DeliveryStatus.FAILED)
            track_terminated(DeliveryStatus.FAILED.value)
            log.warning("delivery_failed_not_retryable", outcome=result.outcome.value, error=result.error)
            return DeliveryStatus.FAILED

        if attempt_count >= delivery.max_attempts:
            await self.store.mark_terminal(delivery.id, success=False, status=DeliveryStatus.EXHAUSTED)
            track_terminated(DeliveryStatus.EXHAUSTED.value)
            log.warning("delivery_exhausted", attempts=attempt_count, max_attempts=delivery.max_attempts)
            return DeliveryStatus.EXHAUSTED

        delay_ms = compute_retry_delay_ms(attempt_count, webhook.retry_policy)
        next_attempt_at = (now or utcnow()) + timedelta(milliseconds=delay_ms)
        if not await self.store.schedule_retry(delivery.id, next_attempt_at):
            # Another attempt succeeded in the meantime
            return DeliveryStatus.SUCCEEDED

        track_retry_scheduled(delivery.event_type)
        log.info(
            "delivery_retry_scheduled",
            attempts=attempt_count,
            delay_ms=delay_ms,
            next_attempt_at=next_attempt_at.isoformat(),
        )
        return DeliveryStatus.SCHEDULED

    def stale_before(self) -> datetime:
        """In-flight deliveries last touched before this have lost their worker."""
        return utcnow() - timedelta(seconds=self.lease_seconds)

    async def release(self, delivery_id: str) -> None:
        """
        Put a delivery whose attempt was interrupted back on the schedule, due now.

        If the store is still unreachable the delivery stays in flight and
        is taken over by a sweep once its lease expires.
        """
        try:
            released = await self.store.release(delivery_id, utcnow())
        except StoreFailure as e:
            logger.error("delivery_release_failed", delivery_id=delivery_id, error=str(e))
            return
        if released:
            logger.warning("delivery_released", delivery_id=delivery_id)

    async def due_deliveries(self, now: datetime | None = None, limit: int | None = None) -> list[WebhookDelivery]:
        """
        Non-terminal deliveries whose next attempt time is at or before now,
        plus in-flight ones whose lease has expired. Read-only.
        """
        return await self.store.due(now or utcnow(), limit=limit, stale_before=self.stale_before())

    async def run_sweep(self, now: datetime | None = None) -> SweepReport:
        """
        Re-submit every due delivery once.

        Each delivery is claimed before it is attempted so concurrent
        sweepers never both re-send it. Deliveries whose webhook has been
        disabled or deleted are exhausted without an attempt. If handling a
        claimed delivery raises, it is released so the next sweep retries it.
        """
        now = now or utcnow()
        due = await self.due_deliveries(now, limit=self.batch_size)
        report = SweepReport(due=len(due))
        update_sweep_due(len(due))
        if not due:
            return report

        async def _process(delivery: WebhookDelivery) -> str:
            if not await self.store.claim(delivery.id, now, self.stale_before()):
                return "skipped"
            report.claimed += 1
            try:
                return await self._attempt_claimed(delivery)
            except Exception:
                await self.release(delivery.id)
                raise

        outcomes = await run_bounded(due, _process, self.max_concurrency)
        for delivery, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                report.errors += 1
                logger.error("sweep_delivery_error", delivery_id=delivery.id, error=str(outcome),
                             exc_info=outcome)
                capture_exception(outcome)
            else:
                setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info("retry_sweep_completed", **report.__dict__)
        return report

    async def _attempt_claimed(self, delivery: WebhookDelivery) -> str:
        webhook = await self.store.get_webhook(delivery.webhook_id)
        if webhook is None or not webhook.active:
            reason = "Webhook deleted" if webhook is None else "Webhook disabled"
            await self.store.mark_terminal(
                delivery.id, success=False, status=DeliveryStatus.EXHAUSTED, error=reason
            )
            track_terminated(DeliveryStatus.EXHAUSTED.value)
            logger.info("delivery_dropped_inactive_webhook", delivery_id=delivery.id,
                        webhook_id=delivery.webhook_id, reason=reason)
            return "exhausted"

        if delivery.attempt_count >= delivery.max_attempts:
            # Taken over after its last attempt was already recorded
            await self.store.mark_terminal(delivery.id, success=False, status=DeliveryStatus.EXHAUSTED)
            track_terminated(DeliveryStatus.EXHAUSTED.value)
            logger.warning("delivery_exhausted", delivery_id=delivery.id,
                           attempts=delivery.attempt_count, max_attempts=delivery.max_attempts)
            return "exhausted"

        result = await self.executor.attempt(delivery, webhook)
        if result.success:
            track_terminated(DeliveryStatus.SUCCEEDED.value)
            return "succeeded"
        status = await self.on_attempt_failed(delivery, webhook, result)
        if status == DeliveryStatus.SCHEDULED:
            return "rescheduled"
        if status == DeliveryStatus.SUCCEEDED:
            return "succeeded"
        return "exhausted"

    async def retry_now(self, delivery_id: str) -> WebhookDelivery:
        """
        Manually replay a delivery.

        Creates a NEW delivery linked to the original via
        previous_delivery_id and attempts it immediately; the original
        record is left untouched. The new delivery then follows its
        webhook's automatic retry policy.

        Raises:
            DeliveryNotFound: if the original delivery does not exist
            WebhookNotFound: if its webhook no longer exists
            WebhookInactive: if its webhook has been disabled
        """
        original = await self.store.get(delivery_id)
        webhook = await self.store.get_webhook(original.webhook_id)
        if webhook is None:
            raise WebhookNotFound(original.webhook_id)
        if not webhook.active:
            raise WebhookInactive(webhook.id)

        replay = await self.store.create(WebhookDelivery(
            webhook_id=webhook.id,
            project_id=original.project_id,
            event_type=original.event_type,
            payload=original.payload,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            max_attempts=webhook.max_attempts,
            previous_delivery_id=original.id,
        ))
        logger.info("delivery_replayed", delivery_id=replay.id, previous_delivery_id=original.id,
                    webhook_id=webhook.id)

        try:
            result = await self.executor.attempt(replay, webhook)
            if result.success:
                track_terminated(DeliveryStatus.SUCCEEDED.value)
            else:
                await self.on_attempt_failed(replay, webhook, result)
        except Exception:
            await self.release(replay.id)
            raise
        return await self.store.get(replay.id)
