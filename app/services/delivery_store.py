"""
Delivery Store

Durable record of every delivery and every attempt made for it.

Each operation opens its own short-lived session from the factory, so
concurrent attempts never share a session and no transaction is held open
across an outbound HTTP call. Database errors surface as StoreFailure.
"""
import csv
import io
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import DeliveryNotFound, StoreFailure
from app.models.base import utcnow
from app.models.delivery import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryStatus,
    WebhookDelivery,
)
from app.models.webhook import Webhook


CSV_COLUMNS = ["id", "event_type", "result", "status_code", "duration_ms", "retry_count", "timestamp"]
EXPORT_BATCH_SIZE = 500


@dataclass
class AttemptRecord:
    """Outcome of one attempt, as handed to append_attempt."""
    outcome: AttemptOutcome
    success: bool
    status_code: int | None = None
    error: str | None = None
    response_body: str | None = None
    duration_ms: int = 0


@dataclass
class DeliveryFilters:
    """
    Filters for listing deliveries.

    status accepts a lifecycle state ("scheduled", "exhausted", ...) or
    "success" / "failed" to filter on the success flag.
    """
    status: str | None = None
    event_type: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


@dataclass
class DeliveryPage:
    items: list[WebhookDelivery]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass
class OutcomeAggregate:
    """Raw counts for one group of deliveries."""
    event_type: str | None
    total: int
    success_count: int
    avg_duration_ms: float | None


IN_FLIGHT = (DeliveryStatus.PENDING, DeliveryStatus.ATTEMPTING)


def status_condition(status: str):
    """Translate a status filter into a WHERE clause."""
    if status == "success":
        return WebhookDelivery.success.is_(True)
    if status == "failed":
        return WebhookDelivery.success.is_(False)
    return WebhookDelivery.status == DeliveryStatus(status)


def claimable_condition(now: datetime, stale_before: datetime | None = None):
    """
    WHERE clause for deliveries a sweeper may take.

    A scheduled delivery is claimable once its next attempt time has passed.
    With stale_before given, a pending or attempting delivery whose row has
    not been touched since then is claimable too: its worker died or lost
    the store mid-attempt.
    """
    due_now = and_(
        WebhookDelivery.status == DeliveryStatus.SCHEDULED,
        WebhookDelivery.next_attempt_at.is_not(None),
        WebhookDelivery.next_attempt_at <= now,
    )
    if stale_before is None:
        condition = due_now
    else:
        condition = or_(
            due_now,
            and_(
                WebhookDelivery.status.in_(IN_FLIGHT),
                WebhookDelivery.updated_at < stale_before,
            ),
        )
    return and_(WebhookDelivery.success.is_(False), condition)


class DeliveryStore:
    """Persistence for webhook deliveries and their attempts."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreFailure(f"Delivery store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Persist a new delivery and return it with its (empty) attempts loaded."""
        async with self._session() as session:
            session.add(delivery)
            await session.commit()
        return await self.get(delivery.id)

    async def append_attempt(self, delivery_id: str, record: AttemptRecord) -> int:
        """
        Atomically increment the attempt counter and append the attempt row.

        The counter increment is a single UPDATE ... RETURNING, so two
        concurrent callers always get distinct attempt numbers and neither
        record is lost. A successful attempt also marks the delivery
        succeeded and clears its next attempt time in the same statement.

        Returns:
            The attempt number assigned (1-based)
        """
        values = {
            "attempt_count": WebhookDelivery.attempt_count + 1,
            "last_status_code": record.status_code,
            "last_error": record.error,
            "last_response_body": record.response_body,
            "duration_ms": record.duration_ms,
            "updated_at": utcnow(),
        }
        if record.success:
            values.update(
                success=True,
                status=DeliveryStatus.SUCCEEDED,
                next_attempt_at=None,
            )

        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookDelivery)
                    .where(WebhookDelivery.id == delivery_id)
                    .values(**values)
                    .returning(WebhookDelivery.attempt_count)
                    .execution_options(synchronize_session=False)
                )
                attempt_number = result.scalar_one_or_none()
                if attempt_number is None:
                    raise DeliveryNotFound(delivery_id)

                # Stamped while the row lock is held so timestamps follow attempt order
                session.add(DeliveryAttempt(
                    delivery_id=delivery_id,
                    attempt_number=attempt_number,
                    timestamp=utcnow(),
                    outcome=record.outcome,
                    status_code=record.status_code,
                    success=record.success,
                    error=record.error,
                    response_body=record.response_body,
                    duration_ms=record.duration_ms,
                ))
        return attempt_number

    async def mark_terminal(
        self,
        delivery_id: str,
        success: bool,
        status: DeliveryStatus | None = None,
        error: str | None = None,
    ) -> None:
        """
        Move a delivery to a terminal state and clear its next attempt time.

        A delivery that already succeeded is never downgraded to a failure.
        """
        if status is None:
            status = DeliveryStatus.SUCCEEDED if success else DeliveryStatus.EXHAUSTED
        values = {
            "status": status,
            "success": success,
            "next_attempt_at": None,
            "updated_at": utcnow(),
        }
        if error is not None:
            values["last_error"] = error

        conditions = [WebhookDelivery.id == delivery_id]
        if not success:
            conditions.append(WebhookDelivery.success.is_(False))

        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookDelivery)
                    .where(*conditions)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0 and await session.get(WebhookDelivery, delivery_id) is None:
                    raise DeliveryNotFound(delivery_id)

    async def schedule_retry(self, delivery_id: str, next_attempt_at: datetime) -> bool:
        """
        Persist the next attempt time.

        Returns False if the delivery has already succeeded.
        """
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookDelivery)
                    .where(
                        WebhookDelivery.id == delivery_id,
                        WebhookDelivery.success.is_(False),
                    )
                    .values(
                        status=DeliveryStatus.SCHEDULED,
                        next_attempt_at=next_attempt_at,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def claim(
        self,
        delivery_id: str,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        """
        Take a due delivery for re-attempt.

        Compare-and-set to ATTEMPTING; only one caller wins when several
        sweepers race on the same delivery. Claiming refreshes updated_at,
        which starts a new lease, so a stale in-flight delivery is taken
        over by exactly one sweeper as well.
        """
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookDelivery)
                    .where(
                        WebhookDelivery.id == delivery_id,
                        claimable_condition(now, stale_before),
                    )
                    .values(status=DeliveryStatus.ATTEMPTING, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def release(self, delivery_id: str, next_attempt_at: datetime) -> bool:
        """
        Hand an interrupted in-flight delivery back to the sweep.

        Returns False if the delivery is no longer pending or attempting,
        i.e. the attempt was already recorded as a success or a retry.
        """
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookDelivery)
                    .where(
                        WebhookDelivery.id == delivery_id,
                        WebhookDelivery.success.is_(False),
                        WebhookDelivery.status.in_(IN_FLIGHT),
                    )
                    .values(
                        status=DeliveryStatus.SCHEDULED,
                        next_attempt_at=next_attempt_at,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def purge_older_than(self, cutoff: datetime, webhook_id: str | None = None) -> int:
        """
        Delete deliveries created before cutoff, whatever their state.

        Returns:
            Number of deliveries deleted
        """
        conditions = [WebhookDelivery.created_at < cutoff]
        if webhook_id is not None:
            conditions.append(WebhookDelivery.webhook_id == webhook_id)
        doomed = select(WebhookDelivery.id).where(*conditions)

        async with self._session() as session:
            async with session.begin():
                await session.execute(
                    delete(DeliveryAttempt)
                    .where(DeliveryAttempt.delivery_id.in_(doomed))
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(
                    delete(WebhookDelivery)
                    .where(*conditions)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, delivery_id: str) -> WebhookDelivery:
        """Get a delivery with all its attempts, or raise DeliveryNotFound."""
        async with self._session() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)
        return delivery

    async def list_deliveries(
        self,
        webhook_id: str,
        filters: DeliveryFilters | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> DeliveryPage:
        """List deliveries for a webhook, newest first."""
        filters = filters or DeliveryFilters()
        page = max(page, 1)

        conditions = [WebhookDelivery.webhook_id == webhook_id]
        if filters.status:
            conditions.append(status_condition(filters.status))
        if filters.event_type:
            conditions.append(WebhookDelivery.event_type == filters.event_type)
        if filters.date_from:
            conditions.append(WebhookDelivery.created_at >= filters.date_from)
        if filters.date_to:
            conditions.append(WebhookDelivery.created_at <= filters.date_to)

        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(WebhookDelivery).where(*conditions)
            )
            result = await session.execute(
                select(WebhookDelivery)
                .where(*conditions)
                .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = list(result.scalars().all())

        return DeliveryPage(items=items, total=total or 0, page=page, page_size=page_size)

    async def due(
        self,
        now: datetime,
        limit: int | None = None,
        stale_before: datetime | None = None,
    ) -> list[WebhookDelivery]:
        """
        Unsucceeded deliveries ready for another attempt.

        That is scheduled deliveries whose next attempt time has passed and,
        when stale_before is given, in-flight deliveries whose lease expired.
        """
        stmt = (
            select(WebhookDelivery)
            .where(claimable_condition(now, stale_before))
            .order_by(
                func.coalesce(WebhookDelivery.next_attempt_at, WebhookDelivery.updated_at),
                WebhookDelivery.id,
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def aggregate_outcomes(
        self,
        webhook_id: str,
        since: datetime,
        by_event_type: bool = False,
    ) -> list[OutcomeAggregate]:
        """Count deliveries and successes created since a point in time."""
        return await self._aggregate(
            [WebhookDelivery.webhook_id == webhook_id, WebhookDelivery.created_at >= since],
            by_event_type=by_event_type,
        )

    async def aggregate_project_outcomes(self, project_id: str, since: datetime) -> OutcomeAggregate:
        """Same counts across every webhook of a project."""
        [aggregate] = await self._aggregate(
            [WebhookDelivery.project_id == project_id, WebhookDelivery.created_at >= since],
        )
        return aggregate

    async def _aggregate(self, conditions: list, by_event_type: bool = False) -> list[OutcomeAggregate]:
        columns = [
            func.count(WebhookDelivery.id),
            func.sum(case((WebhookDelivery.success.is_(True), 1), else_=0)),
            func.avg(WebhookDelivery.duration_ms),
        ]
        if by_event_type:
            columns.insert(0, WebhookDelivery.event_type)

        stmt = select(*columns).where(*conditions)
        if by_event_type:
            stmt = stmt.group_by(WebhookDelivery.event_type).order_by(WebhookDelivery.event_type)

        async with self._session() as session:
            rows = (await session.execute(stmt)).all()

        aggregates = []
        for row in rows:
            event_type = row[0] if by_event_type else None
            total, successes, avg_duration = row[-3:]
            aggregates.append(OutcomeAggregate(
                event_type=event_type,
                total=int(total or 0),
                success_count=int(successes or 0),
                avg_duration_ms=float(avg_duration) if avg_duration is not None else None,
            ))
        return aggregates

    async def export_csv(
        self,
        webhook_id: str,
        status_filter: str | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Stream deliveries as CSV, one row per attempt.

        A delivery with no attempts yet is written as a single row with the
        attempt columns left empty.
        """
        conditions = [WebhookDelivery.webhook_id == webhook_id]
        if status_filter:
            conditions.append(status_condition(status_filter))

        yield _csv_line(CSV_COLUMNS)

        offset = 0
        while True:
            async with self._session() as session:
                result = await session.execute(
                    select(WebhookDelivery)
                    .where(*conditions)
                    .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
                    .offset(offset)
                    .limit(EXPORT_BATCH_SIZE)
                )
                batch = list(result.scalars().all())
            if not batch:
                break

            chunk = io.StringIO()
            writer = csv.writer(chunk, lineterminator="\n")
            for delivery in batch:
                for row in _export_rows(delivery):
                    writer.writerow(row)
            yield chunk.getvalue().encode("utf-8")

            offset += len(batch)
            if len(batch) < EXPORT_BATCH_SIZE:
                break

    # ------------------------------------------------------------------
    # Webhook lookups
    # ------------------------------------------------------------------

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        async with self._session() as session:
            return await session.get(Webhook, webhook_id)

    async def active_webhooks_for_event(self, project_id: str, event_type: str) -> list[Webhook]:
        """Active webhooks of a project subscribed to an event type."""
        async with self._session() as session:
            result = await session.execute(
                select(Webhook)
                .where(Webhook.project_id == project_id, Webhook.active.is_(True))
                .order_by(Webhook.created_at, Webhook.id)
            )
            webhooks = result.scalars().all()
        return [w for w in webhooks if w.subscribes_to(event_type)]


def _csv_line(values: list) -> bytes:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerow(values)
    return buf.getvalue().encode("utf-8")


def _export_rows(delivery: WebhookDelivery):
    if not delivery.attempts:
        yield [
            delivery.id,
            delivery.event_type,
            "Success" if delivery.success else "Failed",
            "",
            "",
            0,
            delivery.created_at.isoformat(),
        ]
        return
    for attempt in delivery.attempts:
        yield [
            delivery.id,
            delivery.event_type,
            "Success" if attempt.success else "Failed",
            attempt.status_code if attempt.status_code is not None else "",
            attempt.duration_ms,
            attempt.attempt_number - 1,
            attempt.timestamp.isoformat(),
        ]
