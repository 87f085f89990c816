from typing import List, Optional, Tuple
from datetime import timedelta
from decimal import Decimal
import uuid
import logging

from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.core.actor import Actor
from app.core.clock import Clock, utc_now
from app.core.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    OrderEngineError,
    PersistenceError,
    ValidationError,
)
from app.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory
from app.models.product import Product
from app.schemas.order import OrderCreate
from app.services.audit_service import AuditService
from app.services.delivery_estimate import calculate_delivery_estimate
from app.services.order_pricing import calculate_order_totals
from app.services.order_sequence_service import OrderSequenceService
from app.services.order_state_machine import apply_transition, restores_stock
from app.services.stock_service import StockLineItem, StockService

logger = logging.getLogger(__name__)


class OrderService:
    """Service for creating orders and moving them through their lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            db: Request session; every order write commits on it
            session_factory: Factory for audit writes (default: app session factory)
            clock: Returns the current UTC time
        """
        if session_factory is None:
            from app.database import async_session_factory
            session_factory = async_session_factory

        self.db = db
        self.clock = clock or utc_now
        self.stock = StockService(db)
        self.audit = AuditService(session_factory)

    # ==================== READS ====================

    def _order_query(self):
        return select(Order).options(
            selectinload(Order.items),
            selectinload(Order.status_history),
        )

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """Get order by ID with items and status history."""
        result = await self.db.execute(self._order_query().where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_order_by_number(self, order_number: str) -> Optional[Order]:
        """Get order by order number."""
        result = await self.db.execute(self._order_query().where(Order.order_number == order_number))
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Order], int]:
        """Get paginated orders, newest first."""
        filters = []
        if status:
            filters.append(Order.order_status == OrderStatus(status).value)
        if user_id:
            filters.append(Order.user_id == user_id)

        count_stmt = select(func.count(Order.id))
        stmt = self._order_query().order_by(Order.created_at.desc(), Order.order_number.desc())
        if filters:
            count_stmt = count_stmt.where(*filters)
            stmt = stmt.where(*filters)

        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = stmt.offset((page - 1) * size).limit(size)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def _lock_order(self, order_id: uuid.UUID) -> Order:
        """Load the order with a row lock, refreshing any stale identity-map copy."""
        stmt = (
            self._order_query()
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = (await self.db.execute(stmt)).scalar_one_or_none()
        if not order:
            raise NotFoundError("Order not found")
        return order

    # ==================== CHECKOUT ====================

    @staticmethod
    def _validate_order_input(data: OrderCreate) -> None:
        if not data.items:
            raise ValidationError("Order must contain at least one item")

        for item in data.items:
            if item.quantity is None or item.quantity <= 0:
                raise ValidationError(f"Quantity must be positive for product {item.product_id}")

        address = data.shipping_address
        missing = [
            name for name in ("address", "phone")
            if not address or not (getattr(address, name, None) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Shipping address is missing: {', '.join(missing)}")

    async def _snapshot_items(self, data: OrderCreate, now) -> List[OrderItem]:
        """Copy name, image and price from the catalog as they are right now."""
        items = []
        for item in data.items:
            result = await self.db.execute(select(Product).where(Product.id == item.product_id))
            product = result.scalar_one_or_none()
            if not product:
                raise NotFoundError(f"Product not found: {item.product_id}")

            items.append(OrderItem(
                id=uuid.uuid4(),
                product_id=product.id,
                variant_id=item.variant_id,
                product_name=product.name,
                image=product.image,
                price=item.price if item.price is not None else product.price,
                quantity=item.quantity,
                created_at=now,
            ))
        return items

    @staticmethod
    def _resolve_totals(data: OrderCreate, items: List[OrderItem]) -> dict:
        """Caller totals are stored verbatim; missing ones are computed once here."""
        computed = calculate_order_totals((item.price, item.quantity) for item in items)
        if data.total_price is None:
            return {
                "items_price": computed.items_price,
                "tax_price": computed.tax_price,
                "shipping_price": computed.shipping_price,
                "total_price": computed.total_price,
            }
        return {
            "items_price": data.items_price if data.items_price is not None else computed.items_price,
            "tax_price": data.tax_price if data.tax_price is not None else Decimal("0"),
            "shipping_price": data.shipping_price if data.shipping_price is not None else Decimal("0"),
            "total_price": data.total_price,
        }

    async def _persist_order(self, data: OrderCreate, actor: Actor) -> Order:
        now = self.clock()
        order_number = await OrderSequenceService(self.db).get_next_number()
        items = await self._snapshot_items(data, now)
        delivery = calculate_delivery_estimate(now)

        order = Order(
            id=uuid.uuid4(),
            order_number=order_number,
            user_id=None if actor.is_system else actor.id,
            order_status=OrderStatus.PENDING.value,
            payment_method=data.payment_method.value,
            shipping_address=data.shipping_address.model_dump(exclude_none=True),
            notes=data.notes,
            is_paid=False,
            is_delivered=False,
            pending_to_processing_scheduled_at=now + timedelta(
                minutes=settings.ORDER_PENDING_TO_PROCESSING_MINUTES
            ),
            processing_to_delivering_scheduled_at=now + timedelta(
                minutes=settings.ORDER_PROCESSING_TO_DELIVERING_MINUTES
            ),
            estimated_delivery_date=delivery.estimated,
            estimated_delivery_start=delivery.start,
            estimated_delivery_end=delivery.end,
            created_at=now,
            updated_at=now,
            **self._resolve_totals(data, items),
        )
        order.items = items
        order.status_history = [
            OrderStatusHistory(
                id=uuid.uuid4(),
                from_status=None,
                to_status=OrderStatus.PENDING.value,
                changed_by=actor.id,
                notes="Order created",
                is_automatic=False,
                created_at=now,
            )
        ]
        self.db.add(order)
        await self.db.flush()
        return order

    async def create_order(self, data: OrderCreate, actor: Actor) -> Order:
        """
        Create an order: validate stock, reserve it, persist the order.

        If anything fails after the reservation, the reserved stock is
        restored before the error propagates.

        Raises:
            ValidationError: Malformed input or unknown product/variant
            InsufficientStockError: One or more lines exceed available stock
            PersistenceError: The order could not be written
        """
        self._validate_order_input(data)

        lines = [
            StockLineItem(product_id=item.product_id, variant_id=item.variant_id, quantity=item.quantity)
            for item in data.items
        ]

        validation = await self.stock.validate_availability(lines)
        if not validation.ok:
            await self.db.rollback()
            if validation.shortages:
                raise InsufficientStockError(validation.shortages, "; ".join(validation.errors))
            raise ValidationError("; ".join(validation.errors))

        async with self.stock.with_reserved_stock(lines):
            try:
                order = await self._persist_order(data, actor)
                await self.db.commit()
            except OrderEngineError:
                raise
            except SQLAlchemyError as e:
                logger.error(f"Database error creating order: {e}")
                raise PersistenceError("Order creation failed: Database error") from e

        await self.audit.log_order_created(order, actor)

        logger.info(
            f"Order {order.order_number} created: {len(order.items)} item(s), "
            f"total {order.total_price}, payment {order.payment_method}"
        )
        return order

    # ==================== MANUAL TRANSITIONS ====================

    async def mark_paid(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        payment_result: Optional[dict] = None,
    ) -> Order:
        """
        Record a successful payment.

        Paying an already-paid order is a no-op.
        """
        try:
            order = await self._lock_order(order_id)

            if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                raise InvalidTransitionError(
                    order.order_status,
                    "paid",
                    f"Cannot mark a {order.order_status} order as paid",
                )

            if order.is_paid:
                await self.db.commit()
                logger.info(f"Order {order.order_number} is already paid")
                return order

            now = self.clock()
            order.is_paid = True
            order.paid_at = now
            order.payment_result = payment_result or {}
            order.updated_at = now
            await self.db.commit()

        except OrderEngineError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Database error marking order {order_id} paid: {e}")
            raise PersistenceError("Payment update failed: Database error") from e

        await self.audit.log_payment_status_change(order, False, True, actor)
        logger.info(f"Order {order.order_number} marked paid by {actor.id}")
        return order

    async def change_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Move an order to a new status.

        cancelled and refunded return the order's items to stock in the same
        transaction as the status change.

        Raises:
            NotFoundError: Order does not exist
            InvalidTransitionError: Target is not reachable from the current status
        """
        stock_restored = False
        try:
            order = await self._lock_order(order_id)
            old_status = order.order_status
            now = self.clock()

            target = apply_transition(order, new_status, now)

            if restores_stock(target):
                await self.stock.restore_lines(order.stock_line_items())
                stock_restored = True

            order.status_history.append(
                OrderStatusHistory(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    from_status=old_status,
                    to_status=target.value,
                    changed_by=actor.id,
                    notes=notes,
                    is_automatic=False,
                    created_at=now,
                )
            )
            await self.db.commit()

        except OrderEngineError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Database error changing status of order {order_id}: {e}")
            raise PersistenceError("Status update failed: Database error") from e

        await self.audit.log_status_change(
            order,
            old_status,
            target.value,
            actor=actor,
            notes=notes,
            extra={"stock_restored": stock_restored},
        )
        logger.info(
            f"Order {order.order_number}: {old_status} -> {target.value} by {actor.id}"
            + (" (stock restored)" if stock_restored else "")
        )
        return order

    async def mark_delivered(self, order_id: uuid.UUID, actor: Actor, notes: Optional[str] = None) -> Order:
        """Confirm delivery; only valid while the order is delivering."""
        return await self.change_status(
            order_id,
            OrderStatus.DELIVERED,
            actor,
            notes=notes or "Marked as delivered",
        )
