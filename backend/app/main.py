# backend/app/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import DomainException
from .routes.v1 import booking_payments as booking_payments_v1, prometheus as prometheus_v1

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

API_TITLE = "Booking Payments API"
API_VERSION = "0.1.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info(f"{API_TITLE} starting up...")
    logger.info(
        f"Environment: {settings.environment} "
        f"(accept policy={settings.accept_charge_policy}, cutoff={settings.refund_cutoff_hours}h)"
    )
    if not settings.stripe_secret_key.get_secret_value():
        logger.warning("STRIPE_SECRET_KEY is not set; gateway calls will fail")
    yield
    logger.info(f"{API_TITLE} shutting down...")


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    http_exc = exc.to_http_exception()
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
        headers=http_exc.headers,
    )


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(booking_payments_v1.router, prefix="/bookings")
app.include_router(api_v1)

# Prometheus scrape endpoint (unversioned, public)
app.include_router(prometheus_v1.router, prefix="/metrics")


@app.get("/health", include_in_schema=False)
def health_check() -> Dict[str, str]:
    return {"status": "healthy", "environment": settings.environment}
