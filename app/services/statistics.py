"""
Delivery statistics over a time window.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from app.models.base import utcnow
from app.services.delivery_store import DeliveryStore, OutcomeAggregate


@dataclass
class DeliveryStats:
    total: int
    success_count: int
    failure_count: int
    success_rate: float
    avg_duration_ms: float

    def to_dict(self) -> dict:
        return asdict(self)


def _to_stats(aggregate: OutcomeAggregate | None) -> DeliveryStats:
    if aggregate is None or aggregate.total == 0:
        return DeliveryStats(total=0, success_count=0, failure_count=0,
                             success_rate=0.0, avg_duration_ms=0.0)
    return DeliveryStats(
        total=aggregate.total,
        success_count=aggregate.success_count,
        failure_count=aggregate.total - aggregate.success_count,
        success_rate=round(aggregate.success_count / aggregate.total * 100, 2),
        avg_duration_ms=round(aggregate.avg_duration_ms or 0.0, 2),
    )


class StatisticsAggregator:
    """
    Read-only success/failure aggregation over DeliveryStore contents.

    failure_count counts every delivery that has not succeeded (including
    ones still scheduled for retry). success_rate is a percentage and is
    0.0 for an empty window.
    """

    def __init__(self, store: DeliveryStore):
        self.store = store

    async def stats(self, webhook_id: str, window_hours: int = 24, now: datetime | None = None) -> DeliveryStats:
        since = (now or utcnow()) - timedelta(hours=window_hours)
        aggregates = await self.store.aggregate_outcomes(webhook_id, since)
        return _to_stats(aggregates[0] if aggregates else None)

    async def stats_by_event_type(
        self,
        webhook_id: str,
        window_hours: int = 24,
        now: datetime | None = None,
    ) -> dict[str, DeliveryStats]:
        since = (now or utcnow()) - timedelta(hours=window_hours)
        aggregates = await self.store.aggregate_outcomes(webhook_id, since, by_event_type=True)
        return {a.event_type: _to_stats(a) for a in aggregates}

    async def stats_for_project(
        self,
        project_id: str,
        window_hours: int = 24 * 7,
        now: datetime | None = None,
    ) -> DeliveryStats:
        """Totals across every webhook of a project."""
        since = (now or utcnow()) - timedelta(hours=window_hours)
        return _to_stats(await self.store.aggregate_project_outcomes(project_id, since))
