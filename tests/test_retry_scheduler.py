"""Tests for backoff, exhaustion, the due-delivery sweep and manual replay."""
import asyncio
from datetime import timedelta

import httpx
import pytest

from app.config import settings
from app.exceptions import DeliveryNotFound, StoreFailure, WebhookInactive
from app.models.base import utcnow
from app.models.delivery import AttemptOutcome, DeliveryStatus, WebhookDelivery
from app.models.webhook import RetryPolicy
from app.services.delivery_executor import HTTPFailure, SignatureSetupFailure
from app.services.delivery_store import AttemptRecord
from app.services.retry_scheduler import compute_retry_delay_ms


URL = "https://receiver.example.com/hook"


@pytest.mark.parametrize("attempts, expected", [(1, 1000), (2, 2000), (3, 4000), (4, 8000)])
def test_backoff_doubles(attempts, expected):
    policy = RetryPolicy(max_attempts=10, initial_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=1_800_000)
    assert compute_retry_delay_ms(attempts, policy) == expected


def test_backoff_is_capped():
    policy = RetryPolicy(max_attempts=50, initial_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=60_000)
    assert compute_retry_delay_ms(7, policy) == 60_000
    assert compute_retry_delay_ms(40, policy) == 60_000


def test_backoff_overflow_saturates():
    policy = RetryPolicy(max_attempts=5, initial_delay_ms=1000, backoff_multiplier=10.0, max_delay_ms=1_800_000)
    assert compute_retry_delay_ms(10_000, policy) == 1_800_000


def test_backoff_is_non_decreasing():
    policy = RetryPolicy(max_attempts=20, initial_delay_ms=250, backoff_multiplier=1.5, max_delay_ms=30_000)
    delays = [compute_retry_delay_ms(n, policy) for n in range(1, 20)]
    assert delays == sorted(delays)
    assert max(delays) == 30_000


@pytest.fixture
def pending(store):
    async def _pending(webhook) -> WebhookDelivery:
        return await store.create(WebhookDelivery(
            webhook_id=webhook.id,
            project_id=webhook.project_id,
            event_type="order.created",
            payload={"order_id": 1},
            max_attempts=webhook.max_attempts,
        ))

    return _pending


async def test_failure_schedules_next_attempt(service, store, make_webhook, pending):
    webhook = await make_webhook(url=URL)
    delivery = await pending(webhook)
    now = utcnow()

    status = await service.scheduler.on_attempt_failed(
        delivery, webhook, HTTPFailure(attempt_number=1, duration_ms=5, status_code=500), now=now
    )

    assert status == DeliveryStatus.SCHEDULED
    stored = await store.get(delivery.id)
    assert stored.status == DeliveryStatus.SCHEDULED
    assert stored.next_attempt_at == now + timedelta(milliseconds=1000)


async def test_second_failure_waits_longer(service, store, make_webhook, pending):
    webhook = await make_webhook(url=URL)
    delivery = await pending(webhook)
    now = utcnow()

    await service.scheduler.on_attempt_failed(
        delivery, webhook, HTTPFailure(attempt_number=2, duration_ms=5, status_code=500), now=now
    )

    stored = await store.get(delivery.id)
    assert stored.next_attempt_at == now + timedelta(milliseconds=2000)


async def test_last_allowed_failure_exhausts(service, store, make_webhook, pending):
    webhook = await make_webhook(url=URL, max_attempts=3)
    delivery = await pending(webhook)

    status = await service.scheduler.on_attempt_failed(
        delivery, webhook, HTTPFailure(attempt_number=3, duration_ms=5, status_code=500)
    )

    assert status == DeliveryStatus.EXHAUSTED
    stored = await store.get(delivery.id)
    assert stored.status == DeliveryStatus.EXHAUSTED
    assert stored.next_attempt_at is None
    assert stored.is_terminal


async def test_signature_failure_is_terminal(service, store, make_webhook, pending):
    webhook = await make_webhook(url=URL, secret=None)
    delivery = await pending(webhook)

    status = await service.scheduler.on_attempt_failed(
        delivery, webhook, SignatureSetupFailure(attempt_number=1, duration_ms=0, error="Webhook secret is missing")
    )

    assert status == DeliveryStatus.FAILED
    stored = await store.get(delivery.id)
    assert stored.next_attempt_at is None


async def test_max_attempts_is_snapshotted_at_creation(service, store, make_webhook, pending):
    webhook = await make_webhook(url=URL, max_attempts=2)
    delivery = await pending(webhook)
    webhook.max_attempts = 10

    status = await service.scheduler.on_attempt_failed(
        delivery, webhook, HTTPFailure(attempt_number=2, duration_ms=5, status_code=500)
    )

    assert status == DeliveryStatus.EXHAUSTED


async def test_due_deliveries_is_read_only(service, store, make_webhook, receiver):
    receiver.script(URL, 500)
    await make_webhook(url=URL)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})
    later = utcnow() + timedelta(hours=1)

    first = await service.scheduler.due_deliveries(later)
    second = await service.scheduler.due_deliveries(later)

    assert [d.id for d in first] == [d.id for d in second] == [result.delivery_id]
    assert (await store.get(result.delivery_id)).attempt_count == 1
    assert await service.scheduler.due_deliveries(utcnow() - timedelta(hours=1)) == []


async def test_exhausts_after_max_attempts_without_a_fourth(service, store, make_webhook, receiver):
    receiver.default = 500
    await make_webhook(url=URL, max_attempts=3)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})
    now = utcnow()

    reports = [await service.run_retry_sweep(now + timedelta(hours=h)) for h in (1, 2, 3)]

    assert [r.rescheduled for r in reports] == [1, 0, 0]
    assert [r.exhausted for r in reports] == [0, 1, 0]
    assert reports[2].due == 0
    assert len(receiver.calls_to(URL)) == 3

    stored = await store.get(result.delivery_id)
    assert stored.status == DeliveryStatus.EXHAUSTED
    assert stored.success is False
    assert stored.attempt_count == 3
    assert stored.next_attempt_at is None


async def test_eventual_success_records_every_attempt(service, store, make_webhook, receiver):
    receiver.script(URL, 500, 500, 200)
    await make_webhook(url=URL, max_attempts=3)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})
    now = utcnow()

    await service.run_retry_sweep(now + timedelta(hours=1))
    report = await service.run_retry_sweep(now + timedelta(hours=2))

    assert report.succeeded == 1
    stored = await store.get(result.delivery_id)
    assert stored.success is True
    assert stored.status == DeliveryStatus.SUCCEEDED
    assert stored.attempt_count == 3
    assert [a.status_code for a in stored.attempts] == [500, 500, 200]
    assert stored.retry_count == 2


async def test_concurrent_sweeps_attempt_each_delivery_once(service, store, make_webhook, receiver):
    receiver.script(URL, 500)
    await make_webhook(url=URL, max_attempts=5)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})
    later = utcnow() + timedelta(hours=1)

    first, second = await asyncio.gather(service.run_retry_sweep(later), service.run_retry_sweep(later))

    assert first.claimed + second.claimed == 1
    assert len(receiver.calls_to(URL)) == 2
    assert (await store.get(result.delivery_id)).attempt_count == 2


async def test_sweep_drops_deliveries_of_disabled_webhooks(
    service, store, make_webhook, receiver, set_webhook_active
):
    receiver.script(URL, 500)
    webhook = await make_webhook(url=URL)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})
    await set_webhook_active(webhook.id, False)

    report = await service.run_retry_sweep(utcnow() + timedelta(hours=1))

    assert report.exhausted == 1
    assert len(receiver.calls_to(URL)) == 1
    stored = await store.get(result.delivery_id)
    assert stored.status == DeliveryStatus.EXHAUSTED
    assert stored.last_error == "Webhook disabled"
    assert stored.attempt_count == 1


async def test_sweep_with_nothing_due(service):
    report = await service.run_retry_sweep()
    assert report.due == 0
    assert report.claimed == 0


async def test_retry_now_creates_linked_delivery(service, store, make_webhook, receiver):
    receiver.script(URL, httpx.ConnectError)
    await make_webhook(url=URL, max_attempts=1)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 7})
    original = await store.get(result.delivery_id)
    assert original.status == DeliveryStatus.EXHAUSTED

    replay = await service.retry_delivery(original.id)

    assert replay.id != original.id
    assert replay.previous_delivery_id == original.id
    assert replay.payload == {"id": 7}
    assert replay.success is True
    assert replay.attempt_count == 1

    untouched = await store.get(original.id)
    assert untouched.status == DeliveryStatus.EXHAUSTED
    assert untouched.attempt_count == 1


async def test_failed_replay_follows_retry_policy(service, store, make_webhook, receiver):
    receiver.default = 503
    await make_webhook(url=URL, max_attempts=3)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 7})

    replay = await service.retry_delivery(result.delivery_id)

    assert replay.status == DeliveryStatus.SCHEDULED
    assert replay.next_attempt_at is not None
    assert replay.attempt_count == 1


async def test_retry_unknown_delivery_raises(service):
    with pytest.raises(DeliveryNotFound):
        await service.retry_delivery("missing")


async def test_retry_now_rejects_disabled_webhook(service, store, make_webhook, receiver, set_webhook_active):
    receiver.script(URL, 500)
    webhook = await make_webhook(url=URL, max_attempts=1)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 7})
    await set_webhook_active(webhook.id, False)

    with pytest.raises(WebhookInactive):
        await service.retry_delivery(result.delivery_id)

    assert len(receiver.calls_to(URL)) == 1
    page = await store.list_deliveries(webhook.id)
    assert [d.id for d in page.items] == [result.delivery_id]


async def test_sweep_releases_delivery_when_recording_fails(service, store, make_webhook, receiver, monkeypatch):
    receiver.script(URL, 500)
    await make_webhook(url=URL, max_attempts=5)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})
    append_attempt = service.store.append_attempt

    async def unavailable(delivery_id, record):
        raise StoreFailure("Delivery store unavailable: connection reset")

    monkeypatch.setattr(service.store, "append_attempt", unavailable)
    report = await service.run_retry_sweep(utcnow() + timedelta(hours=1))

    assert report.claimed == 1
    assert report.errors == 1
    stored = await store.get(result.delivery_id)
    assert stored.status == DeliveryStatus.SCHEDULED
    assert stored.next_attempt_at <= utcnow()
    assert stored.attempt_count == 1

    monkeypatch.setattr(service.store, "append_attempt", append_attempt)
    report = await service.run_retry_sweep()

    assert report.succeeded == 1
    assert (await store.get(result.delivery_id)).status == DeliveryStatus.SUCCEEDED


async def test_sweep_takes_over_delivery_whose_lease_expired(service, store, make_webhook, receiver, pending, backdate):
    webhook = await make_webhook(url=URL)
    delivery = await pending(webhook)
    assert await service.scheduler.due_deliveries() == []

    await backdate(delivery.id, settings.DELIVERY_LEASE_SECONDS + 1)
    report = await service.run_retry_sweep()

    assert report.due == 1
    assert report.succeeded == 1
    assert len(receiver.calls_to(URL)) == 1
    stored = await store.get(delivery.id)
    assert stored.status == DeliveryStatus.SUCCEEDED
    assert stored.attempt_count == 1


async def test_sweep_leaves_attempts_within_their_lease_alone(service, store, make_webhook, pending):
    webhook = await make_webhook(url=URL)
    delivery = await pending(webhook)
    await store.schedule_retry(delivery.id, utcnow() - timedelta(seconds=1))
    assert await store.claim(delivery.id, utcnow())

    report = await service.run_retry_sweep(utcnow() + timedelta(hours=1))

    assert report.due == 0
    assert (await store.get(delivery.id)).status == DeliveryStatus.ATTEMPTING


async def test_taken_over_delivery_with_no_attempts_left_is_exhausted(
    service, store, make_webhook, receiver, pending, backdate
):
    webhook = await make_webhook(url=URL, max_attempts=1)
    delivery = await pending(webhook)
    await store.append_attempt(delivery.id, AttemptRecord(
        outcome=AttemptOutcome.HTTP_FAILURE, success=False, status_code=500, error="HTTP 500",
    ))
    await backdate(delivery.id, settings.DELIVERY_LEASE_SECONDS + 1)

    report = await service.run_retry_sweep()

    assert report.exhausted == 1
    assert receiver.requests == []
    stored = await store.get(delivery.id)
    assert stored.status == DeliveryStatus.EXHAUSTED
    assert stored.attempt_count == 1
