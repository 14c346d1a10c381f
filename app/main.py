"""
HookRelay - webhook delivery and retry service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

# Import observability modules
from app.config import settings
from app.logging_config import configure_logging, get_logger
from app.sentry_config import configure_sentry
from app.middleware.logging import LoggingMiddleware
from app.routes.metrics import router as metrics_router

# Import route modules
from app.routes.deliveries import router as deliveries_router
from app.routes.events import router as events_router

from app.database import AsyncSessionLocal
from app.exceptions import DeliveryNotFound, StoreFailure, WebhookInactive, WebhookNotFound
from app.services.webhook_service import WebhookDeliveryService

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared delivery service (and its HTTP client) for the process."""
    if getattr(app.state, "webhook_service", None) is None:
        app.state.webhook_service = WebhookDeliveryService(AsyncSessionLocal)
    yield
    await app.state.webhook_service.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Signed webhook delivery with persisted retries, history and statistics",
    lifespan=lifespan,
)

# Add logging middleware
app.add_middleware(LoggingMiddleware)


@app.exception_handler(DeliveryNotFound)
@app.exception_handler(WebhookNotFound)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(WebhookInactive)
async def inactive_webhook_handler(request: Request, exc: WebhookInactive):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(StoreFailure)
async def store_failure_handler(request: Request, exc: StoreFailure):
    logger.error("store_failure", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Delivery store unavailable"},
    )


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include delivery management routes
app.include_router(deliveries_router)

# Include event trigger route
app.include_router(events_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
    }
