"""Tests for fanning events out to subscribed webhooks."""
import httpx
import pytest

from app.exceptions import StoreFailure, WebhookInactive, WebhookNotFound
from app.models.base import utcnow
from app.models.delivery import DeliveryStatus
from app.services import signer
from app.services.delivery_executor import EVENT_HEADER, SIGNATURE_HEADER
from app.services.event_dispatcher import TEST_EVENT_TYPE


async def test_no_subscribers_returns_empty(service, receiver):
    results = await service.dispatch_event("project-1", "order.created", {"id": 1})

    assert results == []
    assert receiver.requests == []


async def test_one_delivery_per_matching_webhook(service, store, make_webhook, receiver):
    a = await make_webhook(url="https://a.example.com/hook", events=["order.created"])
    b = await make_webhook(url="https://b.example.com/hook", events=["*"])
    await make_webhook(url="https://c.example.com/hook", events=["user.signup"])
    await make_webhook(url="https://d.example.com/hook", events=["order.created"], active=False)

    results = await service.dispatch_event("project-1", "order.created", {"id": 1})

    assert {r.webhook_id for r in results} == {a.id, b.id}
    assert all(r.success for r in results)
    assert len({r.delivery_id for r in results}) == 2
    assert {str(r.url) for r in receiver.requests} == {
        "https://a.example.com/hook",
        "https://b.example.com/hook",
    }
    for r in results:
        delivery = await store.get(r.delivery_id)
        assert delivery.event_type == "order.created"
        assert delivery.project_id == "project-1"
        assert delivery.max_attempts == 3


async def test_each_webhook_gets_its_own_signature(service, make_webhook, receiver):
    await make_webhook(url="https://a.example.com/hook", secret="alpha")
    await make_webhook(url="https://b.example.com/hook", secret="beta")

    await service.dispatch_event("project-1", "order.created", {"id": 1})

    secrets = {"https://a.example.com/hook": "alpha", "https://b.example.com/hook": "beta"}
    for request in receiver.requests:
        secret = secrets[str(request.url)]
        assert signer.verify(request.headers[SIGNATURE_HEADER], secret, request.content)


async def test_unreachable_webhook_does_not_block_others(service, store, make_webhook, receiver):
    await make_webhook(url="https://a.example.com/hook")
    down = await make_webhook(url="https://down.example.com/hook")
    await make_webhook(url="https://c.example.com/hook")
    receiver.script("https://down.example.com/hook", httpx.ConnectError)

    results = await service.dispatch_event("project-1", "order.created", {"id": 1})

    assert len(results) == 3
    assert sum(r.success for r in results) == 2
    [failed] = [r for r in results if not r.success]
    assert failed.webhook_id == down.id
    assert "ConnectError" in failed.error

    delivery = await store.get(failed.delivery_id)
    assert delivery.status == DeliveryStatus.SCHEDULED
    assert delivery.next_attempt_at is not None


async def test_missing_secret_fails_without_retry(service, store, make_webhook, receiver):
    await make_webhook(url="https://a.example.com/hook", secret=None)

    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})

    assert not result.success
    assert receiver.requests == []
    delivery = await store.get(result.delivery_id)
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.next_attempt_at is None


async def test_webhook_lookup_failure_propagates(service, monkeypatch):
    async def unavailable(project_id, event_type):
        raise StoreFailure("Delivery store unavailable: connection refused")

    monkeypatch.setattr(service.store, "active_webhooks_for_event", unavailable)

    with pytest.raises(StoreFailure):
        await service.dispatch_event("project-1", "order.created", {"id": 1})


async def test_store_failure_for_one_webhook_is_reported(service, make_webhook, receiver, monkeypatch):
    ok = await make_webhook(url="https://a.example.com/hook")
    broken = await make_webhook(url="https://b.example.com/hook")
    create = service.store.create

    async def flaky_create(delivery):
        if delivery.webhook_id == broken.id:
            raise StoreFailure("Delivery store unavailable: disk full")
        return await create(delivery)

    monkeypatch.setattr(service.store, "create", flaky_create)

    results = await service.dispatch_event("project-1", "order.created", {"id": 1})

    by_webhook = {r.webhook_id: r for r in results}
    assert by_webhook[ok.id].success
    assert not by_webhook[broken.id].success
    assert by_webhook[broken.id].delivery_id is None
    assert "disk full" in by_webhook[broken.id].error


async def test_interrupted_first_attempt_is_left_for_the_sweep(service, store, make_webhook, receiver, monkeypatch):
    await make_webhook(url="https://a.example.com/hook")
    append_attempt = service.store.append_attempt

    async def unavailable(delivery_id, record):
        raise StoreFailure("Delivery store unavailable: connection reset")

    monkeypatch.setattr(service.store, "append_attempt", unavailable)
    [result] = await service.dispatch_event("project-1", "order.created", {"id": 1})

    assert not result.success
    assert "connection reset" in result.error
    assert len(receiver.requests) == 1
    delivery = await store.get(result.delivery_id)
    assert delivery.status == DeliveryStatus.SCHEDULED
    assert delivery.attempt_count == 0
    assert delivery.next_attempt_at <= utcnow()

    monkeypatch.setattr(service.store, "append_attempt", append_attempt)
    report = await service.run_retry_sweep()

    assert report.succeeded == 1
    assert len(receiver.requests) == 2
    assert (await store.get(result.delivery_id)).status == DeliveryStatus.SUCCEEDED


async def test_send_test_ignores_event_subscriptions(service, make_webhook, receiver):
    webhook = await make_webhook(url="https://a.example.com/hook", events=["user.signup"])

    delivery = await service.send_test(webhook.id)

    assert delivery.event_type == TEST_EVENT_TYPE
    assert delivery.project_id == webhook.project_id
    assert delivery.success is True
    assert delivery.payload["webhook_id"] == webhook.id
    [request] = receiver.requests
    assert request.headers[EVENT_HEADER] == "test"
    assert signer.verify(request.headers[SIGNATURE_HEADER], "whsec_test", request.content)


async def test_failed_send_test_is_retried(service, make_webhook, receiver):
    webhook = await make_webhook(url="https://a.example.com/hook")
    receiver.script("https://a.example.com/hook", 502)

    delivery = await service.send_test(webhook.id, {"ping": True})

    assert delivery.payload == {"ping": True}
    assert delivery.status == DeliveryStatus.SCHEDULED
    assert delivery.last_status_code == 502


async def test_send_test_checks_the_webhook(service, make_webhook, receiver):
    disabled = await make_webhook(url="https://a.example.com/hook", active=False)

    with pytest.raises(WebhookNotFound):
        await service.send_test("missing")
    with pytest.raises(WebhookInactive):
        await service.send_test(disabled.id)
    assert receiver.requests == []
