"""
Event Dispatcher

Fans a fired domain event out to every active webhook subscribed to it.
"""
from dataclasses import dataclass
from typing import Any

from app.config import settings
from app.logging_config import get_logger
from app.models.base import utcnow
from app.models.delivery import DeliveryStatus, WebhookDelivery
from app.models.webhook import Webhook
from app.routes.metrics import track_event_dispatched, track_terminated
from app.sentry_config import capture_exception
from app.services.concurrency import run_bounded
from app.services.delivery_executor import AttemptResult, DeliveryExecutor
from app.services.delivery_store import DeliveryStore
from app.services.retry_scheduler import RetryScheduler


logger = get_logger(component="event_dispatcher")

TEST_EVENT_TYPE = "test"


@dataclass
class DispatchResult:
    """Outcome of the first attempt for one webhook."""
    webhook_id: str
    delivery_id: str | None
    success: bool
    error: str | None = None


class EventDispatcher:
    """Creates one delivery per matching webhook and makes its first attempt."""

    def __init__(
        self,
        store: DeliveryStore,
        executor: DeliveryExecutor,
        scheduler: RetryScheduler,
        max_concurrency: int | None = None,
    ):
        self.store = store
        self.executor = executor
        self.scheduler = scheduler
        self.max_concurrency = max_concurrency or settings.WEBHOOK_MAX_CONCURRENCY

    async def dispatch(self, project_id: str, event_type: str, payload: Any) -> list[DispatchResult]:
        """
        Deliver an event to all active subscribed webhooks of a project.

        Each webhook is handled independently: a failure for one (including
        a store failure while handling it) is reported in its result and
        never stops the others. Failing to look up the webhooks at all
        propagates as StoreFailure.

        Returns:
            One DispatchResult per matching webhook
        """
        log = logger.bind(project_id=project_id, event_type=event_type)
        track_event_dispatched(event_type)

        webhooks = await self.store.active_webhooks_for_event(project_id, event_type)
        if not webhooks:
            log.info("no_webhooks_subscribed")
            return []

        outcomes = await run_bounded(
            webhooks,
            lambda webhook: self._deliver(webhook, project_id, event_type, payload),
            self.max_concurrency,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        results = list(outcomes)

        log.info(
            "event_dispatched",
            webhooks=len(results),
            succeeded=sum(1 for r in results if r.success),
        )
        return results

    async def send_test(self, webhook: Webhook, payload: Any = None) -> WebhookDelivery:
        """
        Send a "test" event to one webhook, whatever events it subscribes to.

        The delivery is recorded, signed and retried like any other. Store
        errors propagate to the caller.

        Returns:
            The delivery after its first attempt
        """
        if payload is None:
            payload = {
                "message": "Test delivery from HookRelay",
                "webhook_id": webhook.id,
                "timestamp": utcnow().isoformat() + "Z",
            }
        track_event_dispatched(TEST_EVENT_TYPE)
        delivery = await self._create(webhook, webhook.project_id, TEST_EVENT_TYPE, payload)
        logger.info("test_delivery_sent", delivery_id=delivery.id, webhook_id=webhook.id)
        await self._attempt(delivery, webhook)
        return await self.store.get(delivery.id)

    async def _create(self, webhook: Webhook, project_id: str, event_type: str, payload: Any) -> WebhookDelivery:
        return await self.store.create(WebhookDelivery(
            webhook_id=webhook.id,
            project_id=project_id,
            event_type=event_type,
            payload=payload,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            # Snapshot so later policy edits don't affect this delivery
            max_attempts=webhook.max_attempts,
        ))

    async def _attempt(self, delivery: WebhookDelivery, webhook: Webhook) -> AttemptResult:
        """First attempt; an interrupted one leaves the delivery due for the sweep."""
        try:
            result = await self.executor.attempt(delivery, webhook)
            if result.success:
                track_terminated(DeliveryStatus.SUCCEEDED.value)
            else:
                await self.scheduler.on_attempt_failed(delivery, webhook, result)
        except Exception:
            await self.scheduler.release(delivery.id)
            raise
        return result

    async def _deliver(self, webhook: Webhook, project_id: str, event_type: str, payload: Any) -> DispatchResult:
        log = logger.bind(project_id=project_id, event_type=event_type, webhook_id=webhook.id)
        delivery_id = None
        try:
            delivery = await self._create(webhook, project_id, event_type, payload)
            delivery_id = delivery.id
            result = await self._attempt(delivery, webhook)
        except Exception as e:
            log.error("dispatch_failed", delivery_id=delivery_id, error=str(e), exc_info=True)
            capture_exception(e, webhook_id=webhook.id)
            return DispatchResult(
                webhook_id=webhook.id,
                delivery_id=delivery_id,
                success=False,
                error=str(e),
            )

        return DispatchResult(
            webhook_id=webhook.id,
            delivery_id=delivery.id,
            success=result.success,
            error=result.error,
        )
