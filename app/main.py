from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.api.v1.router import api_router
from app.core.clock import utc_now
from app.core.exceptions import OrderEngineError
from app.database import init_db, async_session_factory
from app.jobs.order_jobs import order_status_scheduler
from app.jobs.scheduler import start_scheduler, shutdown_scheduler


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables and seed the order number sequence
    - Start the order status scheduler
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    # Start background job scheduler
    start_scheduler()

    yield

    # Shutdown
    await shutdown_scheduler()
    logger.info("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Orders", "description": "Checkout, payment, status transitions and audit history"},
    {"name": "Stock", "description": "Stock levels, low-stock reports, validation and manual adjustments"},
]

API_DESCRIPTION = """
## Storefront Order Engine

Order lifecycle and stock consistency for the storefront.

### Order lifecycle

pending -> processing -> delivering -> delivered -> refunded, with
cancelled reachable from pending, processing and delivering.
pending -> processing and processing -> delivering happen automatically;
non-COD orders must be paid before they are handed to the courier.

### Authentication

Requests arrive through the gateway with `X-User-Id` and `X-User-Role`
(`admin` or `user`) headers.

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation failed |
| 401 | Unauthorized - Missing identity |
| 403 | Forbidden - Admin only / not your order |
| 404 | Not Found - Order or product doesn't exist |
| 409 | Conflict - Insufficient stock or invalid status transition |
| 422 | Unprocessable Entity - Malformed request body |
| 500 | Internal Server Error - Order could not be written (stock restored) |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(OrderEngineError)
async def order_engine_exception_handler(request: Request, exc: OrderEngineError):
    """Translate domain errors into HTTP responses."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler for anything the domain handlers don't cover
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors; include the traceback only in debug mode."""
    logger.error(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}")

    error_detail = {
        "detail": "Internal server error",
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    if settings.DEBUG:
        error_detail["error"] = str(exc)
        error_detail["traceback"] = traceback.format_exc()

    return JSONResponse(status_code=500, content=error_detail)


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness plus database and order scheduler state."""
    checks = {"database": "connected", "order_scheduler": "stopped"}
    healthy = True

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        checks["database"] = f"error: {e}"
        healthy = False

    if order_status_scheduler.is_running:
        checks["order_scheduler"] = "running"

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": utc_now().isoformat(),
        "checks": checks,
    }
    if not healthy:
        return JSONResponse(status_code=503, content=body)
    return body
