from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Orders & automatic transitions
    orders,
    # Stock ledger
    stock,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Orders ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

# ==================== Stock ====================
api_router.include_router(
    stock.router,
    prefix="/stock",
    tags=["Stock"]
)
