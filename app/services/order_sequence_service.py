"""
Order Sequence Service for Atomic Order Number Generation

Format: {PREFIX}-{SEQUENCE}, e.g. ORD-000042

USAGE:
    from app.services.order_sequence_service import OrderSequenceService

    async def create_order(db: AsyncSession):
        service = OrderSequenceService(db)
        order_number = await service.get_next_number()
        # Returns: ORD-000001

The counter row is locked (SELECT FOR UPDATE) until the caller's
transaction ends, so the number is only consumed if the order commits.
"""

from typing import Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.order_sequence import OrderSequence

logger = logging.getLogger(__name__)


class OrderSequenceService:
    """
    Service for generating sequential order numbers.

    Uses database-level locking to ensure no duplicate numbers are
    generated even under concurrent checkouts.
    """

    def __init__(self, db: AsyncSession, prefix: Optional[str] = None):
        """
        Initialize the service.

        Args:
            db: Async database session
            prefix: Order number prefix (default: settings.ORDER_NUMBER_PREFIX)
        """
        self.db = db
        self.prefix = prefix or settings.ORDER_NUMBER_PREFIX

    async def ensure_sequence(self) -> OrderSequence:
        """
        Create the counter row if it does not exist yet.

        Called from init_db so the first checkout never races on the insert.
        Does NOT commit.
        """
        result = await self.db.execute(
            select(OrderSequence).where(OrderSequence.prefix == self.prefix)
        )
        sequence = result.scalar_one_or_none()
        if sequence:
            return sequence

        sequence = OrderSequence(
            prefix=self.prefix,
            current_number=0,
            padding_length=settings.ORDER_NUMBER_PADDING,
        )
        self.db.add(sequence)
        await self.db.flush()
        logger.info(f"Created order sequence {self.prefix}")
        return sequence

    async def _get_locked_sequence(self) -> OrderSequence:
        """
        Get the counter row with a row lock, creating it if missing.

        Returns:
            OrderSequence record (locked for update)
        """
        stmt = (
            select(OrderSequence)
            .where(OrderSequence.prefix == self.prefix)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        sequence = result.scalar_one_or_none()
        if sequence:
            return sequence

        await self.ensure_sequence()

        # Re-fetch with lock to ensure atomicity
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def get_next_number(self) -> str:
        """
        Get next order number with atomic increment.

        The increment is flushed, not committed: it becomes durable with
        the order that uses it.

        Returns:
            Formatted order number, e.g., ORD-000001
        """
        sequence = await self._get_locked_sequence()
        order_number = sequence.get_next_number()
        await self.db.flush()
        return order_number

    async def preview_next_number(self) -> str:
        """
        Preview what the next number would be without incrementing.

        Returns:
            What the next order number would be
        """
        result = await self.db.execute(
            select(OrderSequence).where(OrderSequence.prefix == self.prefix)
        )
        sequence = result.scalar_one_or_none()

        if sequence:
            return sequence.preview_next_number()

        # No sequence exists yet - would be first number
        return f"{self.prefix}-{'1'.zfill(settings.ORDER_NUMBER_PADDING)}"
