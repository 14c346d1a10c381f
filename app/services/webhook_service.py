"""
Webhook Service

Wires the delivery components together and exposes the operations used
by the management API, the event trigger and the worker.
"""
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import WebhookInactive, WebhookNotFound
from app.logging_config import get_logger
from app.models.base import utcnow
from app.models.delivery import WebhookDelivery
from app.routes.metrics import track_purged
from app.services.delivery_executor import DeliveryExecutor, build_http_client
from app.services.delivery_store import DeliveryFilters, DeliveryPage, DeliveryStore
from app.services.event_dispatcher import DispatchResult, EventDispatcher
from app.services.retry_scheduler import RetryScheduler, SweepReport
from app.services.statistics import DeliveryStats, StatisticsAggregator


logger = get_logger(component="webhook_service")


class WebhookDeliveryService:
    """Facade over store, executor, scheduler, dispatcher and statistics."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = http_client is None
        self.http_client = http_client or build_http_client()
        self.store = DeliveryStore(session_factory)
        self.executor = DeliveryExecutor(self.store, self.http_client)
        self.scheduler = RetryScheduler(self.store, self.executor)
        self.dispatcher = EventDispatcher(self.store, self.executor, self.scheduler)
        self.statistics = StatisticsAggregator(self.store)

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def _require_webhook(self, webhook_id: str):
        webhook = await self.store.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFound(webhook_id)
        return webhook

    # Inbound trigger

    async def dispatch_event(self, project_id: str, event_type: str, payload: Any) -> list[DispatchResult]:
        return await self.dispatcher.dispatch(project_id, event_type, payload)

    # Management API

    async def list_deliveries(
        self,
        webhook_id: str,
        page: int = 1,
        page_size: int = 50,
        filters: DeliveryFilters | None = None,
    ) -> DeliveryPage:
        await self._require_webhook(webhook_id)
        return await self.store.list_deliveries(webhook_id, filters, page, page_size)

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery:
        return await self.store.get(delivery_id)

    async def retry_delivery(self, delivery_id: str) -> WebhookDelivery:
        return await self.scheduler.retry_now(delivery_id)

    async def send_test(self, webhook_id: str, payload: Any = None) -> WebhookDelivery:
        """Send a test event to one webhook and return the resulting delivery."""
        webhook = await self._require_webhook(webhook_id)
        if not webhook.active:
            raise WebhookInactive(webhook_id)
        return await self.dispatcher.send_test(webhook, payload)

    async def get_stats(self, webhook_id: str, window_hours: int = 24) -> DeliveryStats:
        await self._require_webhook(webhook_id)
        return await self.statistics.stats(webhook_id, window_hours)

    async def get_stats_by_event(self, webhook_id: str, window_hours: int = 24) -> dict[str, DeliveryStats]:
        await self._require_webhook(webhook_id)
        return await self.statistics.stats_by_event_type(webhook_id, window_hours)

    async def get_project_stats(self, project_id: str, window_hours: int = 24 * 7) -> DeliveryStats:
        return await self.statistics.stats_for_project(project_id, window_hours)

    async def export_deliveries(self, webhook_id: str, status_filter: str | None = None) -> AsyncIterator[bytes]:
        await self._require_webhook(webhook_id)
        return self.store.export_csv(webhook_id, status_filter)

    async def clear_old_deliveries(self, webhook_id: str, days_old: int = 30) -> int:
        await self._require_webhook(webhook_id)
        cutoff = utcnow() - timedelta(days=days_old)
        deleted = await self.store.purge_older_than(cutoff, webhook_id=webhook_id)
        track_purged(deleted)
        logger.info("deliveries_cleared", webhook_id=webhook_id, days_old=days_old, deleted=deleted)
        return deleted

    # Worker

    async def run_retry_sweep(self, now: datetime | None = None) -> SweepReport:
        return await self.scheduler.run_sweep(now)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Retention cleanup across all webhooks."""
        cutoff = (now or utcnow()) - timedelta(days=settings.DELIVERY_RETENTION_DAYS)
        deleted = await self.store.purge_older_than(cutoff)
        track_purged(deleted)
        logger.info("expired_deliveries_purged", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted
