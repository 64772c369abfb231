"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from casechat.core.config import settings
from casechat.core.errors import AppError, InvalidArgument
from casechat.db.session import engine

logging.basicConfig(
    level=logging.DEBUG if settings.ENV == "dev" else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Don't send phone numbers or message bodies
    )
    logger.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from casechat.core.rate_limit import limiter


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="CaseChat API",
    description="Case conversations, real-time events and WhatsApp bridge",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["Content-Disposition"],
)

# ============================================================================
# Error Handlers
# ============================================================================


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(include_detail=not settings.is_production),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = InvalidArgument("Request validation failed", detail=str(exc.errors()))
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(include_detail=not settings.is_production),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = AppError(detail=repr(exc))
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(include_detail=not settings.is_production),
    )


# ============================================================================
# Routers
# ============================================================================

from casechat.routers import admin, conversations, webhooks, whatsapp

# Conversations and messages
app.include_router(conversations.router, prefix="/conversations", tags=["conversations"])

# Management views (router already has /admin/conversations prefix)
app.include_router(admin.router)

# WhatsApp mappings and outbound sends
app.include_router(whatsapp.router)

# Webhooks (Twilio inbound, unauthenticated)
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# WebSocket for real-time conversation events
from casechat.routers import websocket as ws_router
app.include_router(ws_router.router)

# Uploaded attachments (local backend only; S3 serves its own URLs)
if settings.STORAGE_BACKEND == "local":
    from casechat.services.file_storage import get_local_storage_path

    app.mount(
        settings.LOCAL_STORAGE_URL_PREFIX,
        StaticFiles(directory=get_local_storage_path(), check_dir=False),
        name="uploads",
    )


# ============================================================================
# Lifecycle
# ============================================================================

from casechat.core.redis_client import close_async_redis_client
from casechat.core.websocket import (
    manager,
    start_websocket_event_listener,
    stop_websocket_event_listener,
)


@app.on_event("startup")
async def _startup() -> None:
    # Request threads publish onto this loop
    manager.bind_loop()
    await start_websocket_event_listener()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await stop_websocket_event_listener()
    await close_async_redis_client()


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
