"""
Service dependency for FastAPI routes.
"""
from fastapi import Request

from app.services.webhook_service import WebhookDeliveryService


def get_webhook_service(request: Request) -> WebhookDeliveryService:
    """Return the process-wide delivery service created at startup."""
    return request.app.state.webhook_service
