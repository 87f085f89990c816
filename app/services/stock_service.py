"""
Stock Ledger: validate, reserve and restore stock for order line items.

Reserve and restore run as one transaction per batch. Every product row
touched is locked (SELECT ... FOR UPDATE, or BEGIN IMMEDIATE on SQLite)
and re-read inside the transaction, so two checkouts racing for the last
unit cannot both succeed. Lines are processed in product id order to keep
lock acquisition deadlock-free across batches.

No other code path writes stock_quantity.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, List, Optional, Tuple, Union
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    InsufficientStockError,
    NotFoundError,
    StockReservationError,
    ValidationError,
)
from app.models.product import Product, ProductVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLineItem:
    """One line of a reservation batch."""
    product_id: uuid.UUID
    quantity: int
    variant_id: Optional[str] = None


@dataclass
class StockResult:
    ok: bool
    error: Optional[str] = None
    shortages: List[dict] = field(default_factory=list)


@dataclass
class StockValidationResult:
    ok: bool
    errors: List[str] = field(default_factory=list)
    stock_info: List[dict] = field(default_factory=list)
    shortages: List[dict] = field(default_factory=list)


LineInput = Union[StockLineItem, dict]


class StockService:
    """Service for stock validation, reservation and restoration."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== INPUT NORMALIZATION ====================

    @staticmethod
    def _to_line(item: LineInput) -> StockLineItem:
        if isinstance(item, StockLineItem):
            line = item
        else:
            try:
                product_id = item.get("product_id") or item.get("productId")
                line = StockLineItem(
                    product_id=uuid.UUID(str(product_id)),
                    quantity=int(item["quantity"]),
                    variant_id=item.get("variant_id") or item.get("variantId"),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid line item {item!r}: {e}")

        if line.quantity <= 0:
            raise ValidationError(
                f"Quantity must be positive for product {line.product_id}, got {line.quantity}"
            )
        return line

    def merge_lines(self, items: Iterable[LineInput]) -> List[StockLineItem]:
        """
        Normalize a batch: one line per (product, variant), quantities summed,
        sorted by product id so row locks are always taken in the same order.
        """
        totals = {}
        for item in items:
            line = self._to_line(item)
            key = (line.product_id, line.variant_id)
            totals[key] = totals.get(key, 0) + line.quantity

        if not totals:
            raise ValidationError("No line items provided")

        lines = [
            StockLineItem(product_id=product_id, variant_id=variant_id, quantity=quantity)
            for (product_id, variant_id), quantity in totals.items()
        ]
        return sorted(lines, key=lambda l: (str(l.product_id), l.variant_id or ""))

    # ==================== LOOKUPS ====================

    async def _get_product(self, product_id: uuid.UUID) -> Optional[Product]:
        result = await self.db.execute(select(Product).where(Product.id == product_id))
        return result.scalar_one_or_none()

    async def _lock_product(self, product_id: uuid.UUID) -> Optional[Product]:
        """Lock the product row and refresh any stale copy in the identity map."""
        stmt = (
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_variant(self, product_id: uuid.UUID, variant_sku: str) -> Optional[ProductVariant]:
        stmt = (
            select(ProductVariant)
            .where(
                ProductVariant.product_id == product_id,
                ProductVariant.sku == variant_sku,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _describe(product: Product, variant_id: Optional[str]) -> str:
        return f'"{product.name}"' + (f" ({variant_id})" if variant_id else "")

    def _shortage(self, product: Product, line: StockLineItem, available: int) -> dict:
        return {
            "product_id": str(product.id),
            "product_name": product.name,
            "variant_id": line.variant_id,
            "available": available,
            "requested": line.quantity,
            "message": (
                f"Insufficient stock for {self._describe(product, line.variant_id)}. "
                f"Available: {available}, Requested: {line.quantity}"
            ),
        }

    # ==================== VALIDATION ====================

    async def validate_availability(self, items: Iterable[LineInput]) -> StockValidationResult:
        """
        Check every line against current stock without modifying anything.

        All lines are checked so the caller can report every problem at once.
        """
        lines = self.merge_lines(items)
        errors: List[str] = []
        shortages: List[dict] = []
        stock_info: List[dict] = []

        for line in lines:
            product = await self._get_product(line.product_id)
            if not product:
                errors.append(f"Product not found: {line.product_id}")
                continue

            if not product.is_published:
                errors.append(f'Product "{product.name}" is not available for purchase')
                continue

            if line.variant_id:
                variant = product.find_variant(line.variant_id)
                if not variant:
                    errors.append(f'Variant not found for product "{product.name}"')
                    continue
                available = variant.stock_quantity
                location = "variant"
            else:
                available = product.stock_quantity
                location = "main"

            if available < line.quantity:
                shortage = self._shortage(product, line, available)
                shortages.append(shortage)
                errors.append(shortage["message"])
                continue

            stock_info.append({
                "product_id": str(product.id),
                "product_name": product.name,
                "variant_id": line.variant_id,
                "quantity": line.quantity,
                "available_stock": available,
                "stock_location": location,
            })

        return StockValidationResult(
            ok=not errors, errors=errors, stock_info=stock_info, shortages=shortages
        )

    # ==================== RESERVATION ====================

    async def reserve_lines(self, items: Iterable[LineInput]) -> List[dict]:
        """
        Lock, re-check and decrement inside the caller's transaction.

        Returns the shortages; when any exist nothing has been written.
        """
        lines = self.merge_lines(items)
        checked: List[Tuple[Product, Union[Product, ProductVariant], StockLineItem]] = []
        shortages: List[dict] = []

        for line in lines:
            product = await self._lock_product(line.product_id)
            if not product:
                raise NotFoundError(f"Product not found: {line.product_id}")

            if line.variant_id:
                target = await self._lock_variant(product.id, line.variant_id)
                if not target:
                    raise NotFoundError(f"Variant not found: {line.variant_id}")
            else:
                target = product

            if target.stock_quantity < line.quantity:
                shortages.append(self._shortage(product, line, target.stock_quantity))
            else:
                checked.append((product, target, line))

        if shortages:
            return shortages

        for product, target, line in checked:
            target.stock_quantity -= line.quantity
            product.sales_count = (product.sales_count or 0) + line.quantity

        await self.db.flush()
        return []

    async def reserve(self, items: Iterable[LineInput]) -> StockResult:
        """
        Reserve stock for a batch, all or nothing.

        Returns StockResult(ok=False, shortages=[...]) when any line is short;
        the transaction is rolled back and no line is decremented.
        """
        lines = self.merge_lines(items)
        try:
            shortages = await self.reserve_lines(lines)
            if shortages:
                await self.db.rollback()
                logger.warning(
                    f"Stock reservation rejected: {len(shortages)} line(s) short - "
                    + "; ".join(s["message"] for s in shortages)
                )
                return StockResult(
                    ok=False,
                    error="Insufficient stock for one or more items",
                    shortages=shortages,
                )

            await self.db.commit()
            logger.info(f"Reserved stock for {len(lines)} line(s)")
            return StockResult(ok=True)

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Stock reservation failed: {e}")
            return StockResult(ok=False, error=str(e))

    # ==================== RESTORATION ====================

    async def restore_lines(self, items: Iterable[LineInput]) -> int:
        """
        Increment stock inside the caller's transaction.

        Deleted products/variants are skipped with a warning. Returns the
        number of lines restored.
        """
        lines = self.merge_lines(items)
        restored = 0
        for line in lines:
            product = await self._lock_product(line.product_id)
            if not product:
                logger.warning(f"Product not found during stock restoration: {line.product_id}")
                continue

            if line.variant_id:
                variant = await self._lock_variant(product.id, line.variant_id)
                if not variant:
                    logger.warning(f"Variant not found during stock restoration: {line.variant_id}")
                    continue
                variant.stock_quantity += line.quantity
            else:
                product.stock_quantity += line.quantity

            product.sales_count = max(0, (product.sales_count or 0) - line.quantity)
            restored += 1

        await self.db.flush()
        return restored

    async def restore(self, items: Iterable[LineInput]) -> StockResult:
        """Return stock for a batch (cancellation, refund, failed checkout)."""
        lines = self.merge_lines(items)
        try:
            restored = await self.restore_lines(lines)
            await self.db.commit()
            logger.info(f"Restored stock for {restored}/{len(lines)} line(s)")
            return StockResult(ok=True)
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Stock restoration failed: {e}")
            return StockResult(ok=False, error=str(e))

    @asynccontextmanager
    async def with_reserved_stock(self, items: Iterable[LineInput]) -> AsyncIterator[List[StockLineItem]]:
        """
        Reserve stock, run the block, and restore the same lines if it raises.

            async with stock_service.with_reserved_stock(lines):
                order = await persist_order(...)

        Raises InsufficientStockError (every short line) or
        StockReservationError when the reservation itself fails.
        """
        lines = self.merge_lines(items)
        result = await self.reserve(lines)
        if not result.ok:
            if result.shortages:
                raise InsufficientStockError(result.shortages)
            raise StockReservationError(result.error or "Stock reservation failed")

        try:
            yield lines
        except Exception as e:
            logger.error(f"Operation failed after stock reservation, restoring stock: {e}")
            await self.db.rollback()
            restore_result = await self.restore(lines)
            if not restore_result.ok:
                logger.critical(
                    f"Failed to restore stock after failed operation: {restore_result.error}. "
                    f"Lines: {lines}"
                )
            raise

    # ==================== READ MODELS ====================

    async def get_stock_info(self, product_id: uuid.UUID, variant_id: Optional[str] = None) -> dict:
        product = await self._get_product(product_id)
        if not product:
            raise NotFoundError("Product not found")

        threshold = product.low_stock_threshold
        if variant_id:
            variant = product.find_variant(variant_id)
            if not variant:
                raise NotFoundError("Variant not found")
            quantity = variant.stock_quantity
            variant_name = variant.display_name
        else:
            quantity = product.stock_quantity
            variant_name = None

        return {
            "product_id": product.id,
            "product_name": product.name,
            "variant_id": variant_id,
            "variant_name": variant_name,
            "stock_quantity": quantity,
            "sales_count": product.sales_count,
            "low_stock_threshold": threshold,
            "is_low_stock": quantity <= threshold,
            "is_out_of_stock": quantity == 0,
        }

    async def get_low_stock_products(self, threshold: Optional[int] = None) -> List[dict]:
        """Published products and variants at or below their threshold."""
        result = await self.db.execute(
            select(Product).where(Product.is_published == True).order_by(Product.name)  # noqa: E712
        )
        products = result.scalars().all()

        low_stock = []
        for product in products:
            stock_threshold = threshold if threshold is not None else product.low_stock_threshold

            if product.stock_quantity <= stock_threshold:
                low_stock.append({
                    "product_id": product.id,
                    "product_name": product.name,
                    "sku": product.sku,
                    "variant_id": None,
                    "variant_name": None,
                    "stock_quantity": product.stock_quantity,
                    "threshold": stock_threshold,
                    "type": "main",
                })

            for variant in product.variants:
                if variant.stock_quantity <= stock_threshold:
                    low_stock.append({
                        "product_id": product.id,
                        "product_name": product.name,
                        "sku": product.sku,
                        "variant_id": variant.sku,
                        "variant_name": variant.display_name,
                        "stock_quantity": variant.stock_quantity,
                        "threshold": stock_threshold,
                        "type": "variant",
                    })

        return low_stock

    async def get_stock_summary(self, threshold: Optional[int] = None) -> dict:
        low_stock = await self.get_low_stock_products(threshold)
        return {
            "low_stock_items": low_stock,
            "total_low_stock_items": len(low_stock),
            "out_of_stock_items": [i for i in low_stock if i["stock_quantity"] == 0],
            "critical_stock_items": [
                i for i in low_stock if i["stock_quantity"] <= settings.CRITICAL_STOCK_LEVEL
            ],
        }

    # ==================== MANUAL ADJUSTMENT ====================

    async def adjust_stock(
        self,
        product_id: uuid.UUID,
        quantity: int,
        operation: str,
        variant_id: Optional[str] = None,
        reason: Optional[str] = None,
        adjusted_by: Optional[str] = None,
    ) -> dict:
        """
        Manually add or subtract stock.

        "subtract" goes through the same locked reservation path as checkout
        so it can never drive stock below zero.
        """
        if operation not in ("add", "subtract"):
            raise ValidationError('Operation must be either "add" or "subtract"')

        line = StockLineItem(product_id=product_id, variant_id=variant_id, quantity=abs(quantity))
        # Fails fast on bad input before touching the rows
        self.merge_lines([line])

        product = await self._get_product(product_id)
        if not product:
            raise NotFoundError("Product not found")
        if variant_id and not product.find_variant(variant_id):
            raise NotFoundError("Variant not found")

        if operation == "add":
            result = await self.restore([line])
        else:
            result = await self.reserve([line])

        if not result.ok:
            if result.shortages:
                raise InsufficientStockError(result.shortages)
            raise StockReservationError(result.error or "Stock adjustment failed")

        logger.info(
            f"Manual stock adjustment by {adjusted_by}: product={product_id} "
            f"variant={variant_id or 'main'} {operation} {abs(quantity)} "
            f"reason={reason or 'Manual adjustment'}"
        )
        return await self.get_stock_info(product_id, variant_id)
