"""
Shared fixtures: a fresh file-backed SQLite database per test, a seeded
catalog, a frozen clock and an HTTP client wired to the test database.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
import uuid

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select

from app.core.actor import Actor
from app.database import build_engine, build_session_factory, init_db, get_db, get_session_factory
from app.models.order import PaymentMethod
from app.models.order_audit_log import ActorRole, OrderAuditLog
from app.models.product import Product, ProductVariant
from app.schemas.order import OrderCreate
from app.services.order_service import OrderService


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def catalog(session_factory):
    """
    phone   10 in stock, threshold 3
    case     1 in stock, threshold 3
    shirt    variants M (5) and L (2), no main stock
    hidden   unpublished, 5 in stock
    """
    phone = Product(
        id=uuid.uuid4(), name="Phone X", sku="PHONE-X", image="phone.jpg",
        price=Decimal("150000.00"), is_published=True,
        stock_quantity=10, sales_count=0, low_stock_threshold=3,
    )
    case = Product(
        id=uuid.uuid4(), name="Phone Case", sku="CASE-1", image="case.jpg",
        price=Decimal("50000.00"), is_published=True,
        stock_quantity=1, sales_count=0, low_stock_threshold=3,
    )
    shirt = Product(
        id=uuid.uuid4(), name="T-Shirt", sku="TSHIRT", image="shirt.jpg",
        price=Decimal("120000.00"), is_published=True,
        stock_quantity=0, sales_count=0, low_stock_threshold=3,
        variants=[
            ProductVariant(id=uuid.uuid4(), sku="TS-M", name="Size", value="M", stock_quantity=5),
            ProductVariant(id=uuid.uuid4(), sku="TS-L", name="Size", value="L", stock_quantity=2),
        ],
    )
    hidden = Product(
        id=uuid.uuid4(), name="Prototype", sku="PROTO", image=None,
        price=Decimal("999000.00"), is_published=False,
        stock_quantity=5, sales_count=0, low_stock_threshold=3,
    )

    async with session_factory() as session:
        session.add_all([phone, case, shirt, hidden])
        await session.commit()

    return {"phone": phone.id, "case": case.id, "shirt": shirt.id, "hidden": hidden.id}


@pytest.fixture
def read_stock(session_factory):
    """Read committed stock from a fresh session: (stock_quantity, sales_count)."""

    async def _read(product_id: uuid.UUID, variant_sku: Optional[str] = None):
        async with session_factory() as session:
            product = (
                await session.execute(select(Product).where(Product.id == product_id))
            ).scalar_one()
            if variant_sku:
                variant = product.find_variant(variant_sku)
                return variant.stock_quantity, product.sales_count
            return product.stock_quantity, product.sales_count

    return _read


@pytest.fixture
def read_audit(session_factory):
    """All audit entries for an order, oldest first."""

    async def _read(order_id: uuid.UUID):
        async with session_factory() as session:
            result = await session.execute(
                select(OrderAuditLog)
                .where(OrderAuditLog.order_id == order_id)
                .order_by(OrderAuditLog.created_at.asc())
            )
            return list(result.scalars().all())

    return _read


@pytest.fixture
def buyer():
    return Actor(id="user-1", role=ActorRole.USER.value, ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN.value, ip_address="10.0.0.2", user_agent="pytest")


def build_order_data(lines, payment_method: PaymentMethod = PaymentMethod.COD, **totals) -> OrderCreate:
    return OrderCreate(
        items=[
            {"product_id": product_id, "quantity": quantity, "variant_id": variant_id}
            for product_id, quantity, variant_id in lines
        ],
        shipping_address={
            "full_name": "Nguyen Van An",
            "address": "12 Le Loi, District 1",
            "city": "Ho Chi Minh City",
            "phone": "0901234567",
        },
        payment_method=payment_method,
        **totals,
    )


@pytest.fixture
def order_data():
    """Builder for OrderCreate: order_data([(product_id, qty, variant_sku), ...])."""
    return build_order_data


@pytest.fixture
def place_order(session_factory, clock, buyer):
    """Create an order through OrderService in its own session."""

    async def _place(lines, payment_method: PaymentMethod = PaymentMethod.COD, actor: Actor = None, **totals):
        async with session_factory() as session:
            service = OrderService(session, session_factory, clock)
            return await service.create_order(
                build_order_data(lines, payment_method, **totals),
                actor or buyer,
            )

    return _place


# ==================== HTTP ====================

@pytest.fixture
def admin_headers():
    return {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def user_headers():
    return {"X-User-Id": "user-1", "X-User-Role": "user"}


@pytest.fixture
def api_order_scheduler(session_factory, clock):
    from app.jobs.order_jobs import OrderStatusScheduler
    from app.jobs.scheduler import build_scheduler

    return OrderStatusScheduler(
        session_factory=session_factory,
        clock=clock,
        scheduler=build_scheduler(),
        interval_seconds=3600,
    )


@pytest.fixture
async def client(session_factory, clock, api_order_scheduler):
    from app.api.deps import get_clock, get_order_scheduler
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_order_scheduler] = lambda: api_order_scheduler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
