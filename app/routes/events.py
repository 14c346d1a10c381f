"""
Event trigger API route.

Other platform services post domain events here; each one is fanned out
to the project's subscribed webhooks and given its first attempt.
"""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.dependencies.auth import require_service_token
from app.dependencies.services import get_webhook_service
from app.services.webhook_service import WebhookDeliveryService


router = APIRouter(
    prefix="/api/events",
    tags=["events"],
    dependencies=[Depends(require_service_token)],
)


class DispatchEventRequest(BaseModel):
    """Request model for firing a domain event."""
    project_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1, max_length=100)
    payload: Any = Field(default_factory=dict)


class DispatchResultResponse(BaseModel):
    webhook_id: str
    delivery_id: str | None = None
    success: bool
    error: str | None = None


class DispatchEventResponse(BaseModel):
    dispatched: int
    succeeded: int
    failed: int
    results: list[DispatchResultResponse]


@router.post("", response_model=DispatchEventResponse)
async def dispatch_event(
    request: DispatchEventRequest,
    service: WebhookDeliveryService = Depends(get_webhook_service),
):
    """
    Dispatch an event to every active webhook subscribed to it.

    Partial failure is normal: each webhook's outcome is reported
    separately and failed deliveries are retried automatically.
    """
    results = await service.dispatch_event(request.project_id, request.event_type, request.payload)
    succeeded = sum(1 for r in results if r.success)
    return DispatchEventResponse(
        dispatched=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=[
            DispatchResultResponse(
                webhook_id=r.webhook_id,
                delivery_id=r.delivery_id,
                success=r.success,
                error=r.error,
            )
            for r in results
        ],
    )
