"""Pytest configuration and fixtures for HookRelay tests."""
from datetime import timedelta
from typing import AsyncGenerator

import httpx
import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.models.base import Base, utcnow
from app.models.delivery import DeliveryAttempt, WebhookDelivery  # noqa: F401
from app.models.webhook import Webhook
from app.services.delivery_store import DeliveryStore
from app.services.webhook_service import WebhookDeliveryService


PROJECT_ID = "project-1"


class Receiver:
    """
    Scripted stand-in for subscriber endpoints, mounted as an httpx MockTransport.

    Outcomes are queued per URL: an int is a status code, an exception
    class is raised as a transport error. Once a queue is empty the URL
    answers with `default`.
    """

    def __init__(self, default: int = 200):
        self.default = default
        self.requests: list[httpx.Request] = []
        self.queues: dict[str, list] = {}
        self.body = "ok"

    def script(self, url: str, *outcomes):
        self.queues.setdefault(url, []).extend(outcomes)

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.queues.get(str(request.url))
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("connection failed", request=request)
        return httpx.Response(outcome, text=self.body)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's writes."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'hookrelay.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> DeliveryStore:
    return DeliveryStore(session_factory)


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
async def http_client(receiver) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as client:
        yield client


@pytest.fixture
async def service(session_factory, http_client) -> AsyncGenerator[WebhookDeliveryService, None]:
    service = WebhookDeliveryService(session_factory, http_client=http_client)
    yield service
    await service.aclose()


@pytest.fixture
def make_webhook(session_factory):
    """Insert a webhook row the way the registration service would."""

    async def _make(
        url: str = "https://receiver.example.com/hook",
        events: list | None = None,
        secret: str | None = "whsec_test",
        active: bool = True,
        project_id: str = PROJECT_ID,
        headers: dict | None = None,
        **policy,
    ) -> Webhook:
        webhook = Webhook(
            project_id=project_id,
            url=url,
            secret=secret,
            events=events if events is not None else ["order.created"],
            headers=headers,
            active=active,
            **policy,
        )
        async with session_factory() as session:
            session.add(webhook)
            await session.commit()
        return webhook

    return _make


@pytest.fixture
def set_webhook_active(session_factory):
    async def _set(webhook_id: str, active: bool):
        async with session_factory() as session:
            await session.execute(
                update(Webhook).where(Webhook.id == webhook_id).values(active=active)
            )
            await session.commit()

    return _set


@pytest.fixture
def backdate(session_factory):
    """Make a delivery look untouched for the last `seconds` seconds."""

    async def _backdate(delivery_id: str, seconds: float):
        async with session_factory() as session:
            await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(updated_at=utcnow() - timedelta(seconds=seconds))
            )
            await session.commit()

    return _backdate
