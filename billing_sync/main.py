import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from billing_sync.api.router import api_router, webhook_router
from billing_sync.config import settings
from billing_sync.core.database import init_db

# Background webhook tasks get this long to finish on shutdown; leftovers are
# replayed from the inbox by the next instance
SHUTDOWN_DRAIN_SECONDS = 10.0


def setup_logging() -> None:
    """Configure application logging."""
    # Format: timestamp - level - logger name - message
    log_format = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    date_format = "%H:%M:%S"

    # Configure root logger
    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        datefmt=date_format,
        stream=sys.stdout,
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    # Quieten uvicorn access logs (we'll log requests ourselves)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    from billing_sync.billing.gateway import drain_inflight
    from billing_sync.services.scheduler import scheduler

    # Startup
    setup_logging()
    logger.info("Billing sync starting up")
    if not settings.webhook_secret_configured:
        logger.warning("PAYMENT_WEBHOOK_SECRET is not set; every webhook will be rejected")
    if settings.debug:
        await init_db()
    scheduler.start()
    yield
    # Shutdown
    scheduler.stop()
    pending = await drain_inflight(SHUTDOWN_DRAIN_SECONDS)
    if pending:
        logger.warning(f"{pending} webhook tasks still running at shutdown")
    logger.info("Billing sync shutting down")


app = FastAPI(
    title="Billing Sync",
    description="Payment webhook reconciliation API",
    version="0.1.0",
    lifespan=lifespan,
)

# Proxy headers middleware - trust X-Forwarded-Proto from reverse proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests, skipping OPTIONS preflight."""
    # Skip OPTIONS (CORS preflight) and health checks
    if request.method == "OPTIONS" or request.url.path == "/health":
        return await call_next(request)

    response = await call_next(request)

    # Only log failures and admin calls
    path = request.url.path
    if response.status_code >= 400 or "/admin/" in path:
        logger.info(f"{request.method} {path} -> {response.status_code}")

    return response


# Include API routes
app.include_router(webhook_router)
app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
