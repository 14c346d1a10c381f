"""
ARQ Background Worker for HookRelay.

Drives the retry sweep and retention cleanup on a schedule, and processes
events enqueued by other services.

Run with: arq app.worker.WorkerSettings
"""
import asyncio
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from app.config import settings
from app.database import AsyncSessionLocal
from app.logging_config import configure_logging, get_logger
from app.sentry_config import capture_exception, capture_message, configure_sentry
from app.services.webhook_service import WebhookDeliveryService


logger = get_logger(component="worker")


def sweep_schedule(interval_seconds: int) -> dict[str, set[int]]:
    """
    Cron fields that fire the sweep every interval_seconds.

    Sub-minute intervals fire on a grid of seconds; longer ones fire at
    second 0 on a grid of minutes.
    """
    if interval_seconds < 60:
        return {"second": set(range(0, 60, interval_seconds))}
    return {"second": {0}, "minute": set(range(0, 60, interval_seconds // 60))}


SWEEP_SCHEDULE = sweep_schedule(settings.RETRY_SWEEP_INTERVAL_SECONDS)


async def startup(ctx: dict):
    """Create the shared delivery service for this worker process."""
    configure_logging()
    configure_sentry()
    ctx["webhook_service"] = WebhookDeliveryService(AsyncSessionLocal)
    logger.info("worker_started", sweep_interval_seconds=settings.RETRY_SWEEP_INTERVAL_SECONDS)


async def shutdown(ctx: dict):
    service = ctx.get("webhook_service")
    if service is not None:
        await service.aclose()
    logger.info("worker_stopped")


async def sweep_due_deliveries(ctx: dict) -> dict:
    """Re-submit every delivery whose next attempt time has arrived."""
    service: WebhookDeliveryService = ctx["webhook_service"]
    try:
        report = await service.run_retry_sweep()
    except Exception as e:
        logger.error("retry_sweep_failed", error=str(e), exc_info=True)
        capture_exception(e)
        raise
    if report.errors:
        capture_message(f"Retry sweep hit {report.errors} delivery errors", level="warning")
    return report.__dict__


async def purge_expired_deliveries(ctx: dict) -> int:
    """Delete deliveries older than the retention window."""
    service: WebhookDeliveryService = ctx["webhook_service"]
    return await service.purge_expired()


async def dispatch_event_job(ctx: dict, project_id: str, event_type: str, payload: Any) -> list[dict]:
    """Dispatch an event enqueued by another service."""
    service: WebhookDeliveryService = ctx["webhook_service"]
    results = await service.dispatch_event(project_id, event_type, payload)
    return [r.__dict__ for r in results]


async def enqueue_event(project_id: str, event_type: str, payload: Any) -> bool:
    """Enqueue an event for background dispatch using ARQ."""
    from arq import create_pool

    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        await redis.enqueue_job("dispatch_event_job", project_id, event_type, payload)
        await redis.close()
    except Exception as e:
        logger.error("enqueue_event_failed", event_type=event_type, project_id=project_id, error=str(e))
        capture_exception(e)
        return False

    logger.info("event_enqueued", event_type=event_type, project_id=project_id)
    return True


async def main():
    """Run the worker using arq cli."""
    print("Use: arq app.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq app.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    on_startup = startup
    on_shutdown = shutdown
    functions = [dispatch_event_job]
    cron_jobs = [
        cron(sweep_due_deliveries, **SWEEP_SCHEDULE, run_at_startup=True, unique=True),
        cron(purge_expired_deliveries, hour={3}, minute={0}, unique=True),
    ]
    # A sweep may wait on up to WEBHOOK_MAX_CONCURRENCY slow endpoints per batch
    job_timeout = 300
    max_tries = 1


if __name__ == "__main__":
    asyncio.run(main())
