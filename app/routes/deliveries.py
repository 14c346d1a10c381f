"""
Delivery management API routes.

History, manual replay, test sends, statistics, CSV export and cleanup
for webhook deliveries. Webhook registration itself lives in the CRUD service.
"""
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.dependencies.auth import require_service_token
from app.dependencies.services import get_webhook_service
from app.models.delivery import DeliveryAttempt, DeliveryStatus, WebhookDelivery
from app.services.delivery_store import DeliveryFilters
from app.services.webhook_service import WebhookDeliveryService


router = APIRouter(
    prefix="/api/deliveries",
    tags=["deliveries"],
    dependencies=[Depends(require_service_token)],
)

STATUS_FILTERS = {"success", "failed"} | {s.value for s in DeliveryStatus}


# Pydantic models for request/response
class AttemptResponse(BaseModel):
    """One HTTP attempt of a delivery."""
    attempt_number: int
    timestamp: str
    outcome: str
    success: bool
    status_code: int | None = None
    error: str | None = None
    response_body: str | None = None
    duration_ms: int


class DeliveryResponse(BaseModel):
    """A delivery with its attempt history."""
    id: str
    webhook_id: str
    project_id: str
    event_type: str
    payload: Any = None
    status: str
    success: bool
    attempt_count: int
    max_attempts: int
    retry_count: int
    next_attempt_at: str | None = None
    last_status_code: int | None = None
    last_error: str | None = None
    duration_ms: int | None = None
    previous_delivery_id: str | None = None
    created_at: str
    attempts: list[AttemptResponse] = []


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DeliveryListResponse(BaseModel):
    deliveries: list[DeliveryResponse]
    pagination: PaginationResponse


class StatsResponse(BaseModel):
    total: int
    success_count: int
    failure_count: int
    success_rate: float
    avg_duration_ms: float


class SendTestRequest(BaseModel):
    """Optional custom payload for a test delivery."""
    payload: Any = None


class ClearDeliveriesRequest(BaseModel):
    """Request model for clearing old deliveries."""
    days_old: int = Field(default=30, ge=0)


def attempt_to_response(attempt: DeliveryAttempt) -> AttemptResponse:
    return AttemptResponse(
        attempt_number=attempt.attempt_number,
        timestamp=attempt.timestamp.isoformat(),
        outcome=getattr(attempt.outcome, "value", attempt.outcome),
        success=attempt.success,
        status_code=attempt.status_code,
        error=attempt.error,
        response_body=attempt.response_body,
        duration_ms=attempt.duration_ms,
    )


def delivery_to_response(delivery: WebhookDelivery) -> DeliveryResponse:
    """Convert WebhookDelivery model to DeliveryResponse."""
    return DeliveryResponse(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        project_id=delivery.project_id,
        event_type=delivery.event_type,
        payload=delivery.payload,
        status=getattr(delivery.status, "value", delivery.status),
        success=delivery.success,
        attempt_count=delivery.attempt_count,
        max_attempts=delivery.max_attempts,
        retry_count=delivery.retry_count,
        next_attempt_at=delivery.next_attempt_at.isoformat() if delivery.next_attempt_at else None,
        last_status_code=delivery.last_status_code,
        last_error=delivery.last_error,
        duration_ms=delivery.duration_ms,
        previous_delivery_id=delivery.previous_delivery_id,
        created_at=delivery.created_at.isoformat(),
        attempts=[attempt_to_response(a) for a in delivery.attempts],
    )


def _validate_status(value: str | None) -> str | None:
    if value is not None and value not in STATUS_FILTERS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown status filter: {value}"
        )
    return value


def _as_utc_naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/webhook/{webhook_id}", response_model=DeliveryListResponse)
async def list_deliveries(
    webhook_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status_filter: str | None = Query(None, alias="status"),
    event: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """List deliveries for a webhook, newest first."""
    filters = DeliveryFilters(
        status=_validate_status(status_filter),
        event_type=event,
        date_from=_as_utc_naive(date_from),
        date_to=_as_utc_naive(date_to),
    )
    result = await service.list_deliveries(webhook_id, page=page, page_size=limit, filters=filters)
    return DeliveryListResponse(
        deliveries=[delivery_to_response(d) for d in result.items],
        pagination=PaginationResponse(
            page=result.page,
            limit=result.page_size,
            total=result.total,
            pages=result.pages,
        ),
    )


@router.get("/webhook/{webhook_id}/stats", response_model=StatsResponse)
async def get_stats(
    webhook_id: str,
    hours: int = Query(24, ge=1, le=24 * 90),
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Success/failure statistics over the last `hours` hours."""
    stats = await service.get_stats(webhook_id, hours)
    return StatsResponse(**stats.to_dict())


@router.get("/webhook/{webhook_id}/stats/by-event", response_model=dict[str, StatsResponse])
async def get_stats_by_event(
    webhook_id: str,
    hours: int = Query(24, ge=1, le=24 * 90),
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Statistics per event type over the last `hours` hours."""
    by_event = await service.get_stats_by_event(webhook_id, hours)
    return {event_type: StatsResponse(**s.to_dict()) for event_type, s in by_event.items()}


@router.get("/project/{project_id}/stats", response_model=StatsResponse)
async def get_project_stats(
    project_id: str,
    days: int = Query(7, ge=1, le=90),
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Statistics across all webhooks of a project over the last `days` days."""
    stats = await service.get_project_stats(project_id, days * 24)
    return StatsResponse(**stats.to_dict())


@router.post("/webhook/{webhook_id}/test", response_model=DeliveryResponse, status_code=status.HTTP_201_CREATED)
async def send_test_delivery(
    webhook_id: str,
    request: SendTestRequest | None = None,
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Send a `test` event to this webhook and return the recorded delivery."""
    delivery = await service.send_test(webhook_id, request.payload if request else None)
    return delivery_to_response(delivery)


@router.get("/webhook/{webhook_id}/export")
async def export_deliveries(
    webhook_id: str,
    status_filter: str | None = Query(None, alias="status"),
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Export deliveries as CSV, one row per attempt."""
    stream = await service.export_deliveries(webhook_id, _validate_status(status_filter))
    return StreamingResponse(
        stream,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="webhook-deliveries-{webhook_id}.csv"'
        },
    )


@router.post("/webhook/{webhook_id}/clear", response_model=dict)
async def clear_old_deliveries(
    webhook_id: str,
    request: ClearDeliveriesRequest | None = None,
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Delete this webhook's deliveries older than `days_old` days (default 30)."""
    days_old = request.days_old if request else 30
    deleted = await service.clear_old_deliveries(webhook_id, days_old)
    return {
        "message": f"Deleted {deleted} deliveries older than {days_old} days",
        "deleted_count": deleted,
    }


@router.get("/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: str,
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """Get a single delivery with every attempt."""
    delivery = await service.get_delivery(delivery_id)
    return delivery_to_response(delivery)


@router.post("/{delivery_id}/retry", response_model=DeliveryResponse, status_code=status.HTTP_201_CREATED)
async def retry_delivery(
    delivery_id: str,
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """
    Replay a delivery now.

    Creates a new delivery linked to the original through
    previous_delivery_id; the original record is not modified.
    """
    delivery = await service.retry_delivery(delivery_id)
    return delivery_to_response(delivery)
