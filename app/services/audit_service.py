"""
Order audit trail.

Writes are best-effort: each entry goes through its own session, after the
primary transaction has committed, so an audit failure can never roll back
or block the change it describes. Failures are logged and reported as None.
"""
from typing import Optional, Dict, Any, List
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.actor import Actor, SYSTEM
from app.core.exceptions import AuditLogError
from app.models.order import Order
from app.models.order_audit_log import OrderAuditLog, AuditAction, AuditField

logger = logging.getLogger(__name__)


class AuditService:
    """
    Audit service for logging order mutations.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        db: Optional[AsyncSession] = None,
    ):
        """
        Args:
            session_factory: Factory for the dedicated write sessions
            db: Optional request session used for reads
        """
        self.session_factory = session_factory
        self.db = db

    async def log_change(
        self,
        order_id: uuid.UUID,
        order_number: str,
        action: str,
        field: str,
        actor: Actor,
        old_value: Any = None,
        new_value: Any = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[OrderAuditLog]:
        """
        Create an audit log entry.

        Args:
            order_id: ID of the affected order
            order_number: Human-readable order number
            action: AuditAction value
            field: AuditField value
            actor: Who performed the action (id, role, ip, user agent)
            old_value: Previous value
            new_value: New value
            notes: Free-text note
            metadata: Extra context

        Returns:
            The created OrderAuditLog entry, or None if the write failed
        """
        audit_log = OrderAuditLog(
            order_id=order_id,
            order_number=order_number,
            action=getattr(action, "value", action),
            field=getattr(field, "value", field),
            old_value=old_value,
            new_value=new_value,
            changed_by=actor.id,
            changed_by_role=actor.role,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            notes=notes,
            metadata_=metadata or {},
        )

        try:
            async with self.session_factory() as session:
                session.add(audit_log)
                await session.commit()
            return audit_log
        except Exception as e:
            error = AuditLogError(f"Failed to write audit entry {audit_log.action} for {order_number}: {e}")
            logger.error(error.message)
            return None

    async def log_order_created(self, order: Order, actor: Actor) -> Optional[OrderAuditLog]:
        """Log order creation."""
        return await self.log_change(
            order_id=order.id,
            order_number=order.order_number,
            action=AuditAction.ORDER_CREATED,
            field=AuditField.GENERAL,
            actor=actor,
            new_value={
                "order_status": order.order_status,
                "total_price": order.total_price,
                "payment_method": order.payment_method,
            },
            metadata={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "change_type": "order_created",
                "item_count": len(order.items),
            },
        )

    async def log_status_change(
        self,
        order: Order,
        old_status: str,
        new_status: str,
        actor: Actor = SYSTEM,
        notes: Optional[str] = None,
        is_automatic: bool = False,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[OrderAuditLog]:
        """Log order status change."""
        metadata = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "change_type": "status_transition",
            "is_automatic": is_automatic,
        }
        if extra:
            metadata.update(extra)

        return await self.log_change(
            order_id=order.id,
            order_number=order.order_number,
            action=AuditAction.STATUS_CHANGE,
            field=AuditField.ORDER_STATUS,
            actor=actor,
            old_value=old_status,
            new_value=new_status,
            notes=notes,
            metadata=metadata,
        )

    async def log_payment_status_change(
        self,
        order: Order,
        old_is_paid: bool,
        new_is_paid: bool,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Optional[OrderAuditLog]:
        """Log payment status change."""
        return await self.log_change(
            order_id=order.id,
            order_number=order.order_number,
            action=AuditAction.PAYMENT_STATUS_CHANGE,
            field=AuditField.IS_PAID,
            actor=actor,
            old_value=old_is_paid,
            new_value=new_is_paid,
            notes=notes,
            metadata={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "change_type": "payment_status_change",
                "paid_at": order.paid_at.isoformat() if new_is_paid and order.paid_at else None,
            },
        )

    async def log_order_update(
        self,
        order: Order,
        field: str,
        old_value: Any,
        new_value: Any,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Optional[OrderAuditLog]:
        """Log general order update."""
        return await self.log_change(
            order_id=order.id,
            order_number=order.order_number,
            action=AuditAction.ORDER_UPDATED,
            field=field,
            actor=actor,
            old_value=old_value,
            new_value=new_value,
            notes=notes,
            metadata={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "change_type": "general_update",
            },
        )

    # ==================== READS ====================

    async def _fetch_history(self, session: AsyncSession, order_id: uuid.UUID, limit: int) -> List[OrderAuditLog]:
        result = await session.execute(
            select(OrderAuditLog)
            .where(OrderAuditLog.order_id == order_id)
            .order_by(OrderAuditLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_order_history(
        self,
        order_id: uuid.UUID,
        limit: Optional[int] = None,
    ) -> List[OrderAuditLog]:
        """
        Get audit entries for an order, newest first.

        Returns an empty list if the read fails.
        """
        limit = limit or settings.AUDIT_HISTORY_LIMIT
        try:
            if self.db is not None:
                return await self._fetch_history(self.db, order_id, limit)
            async with self.session_factory() as session:
                return await self._fetch_history(session, order_id, limit)
        except Exception as e:
            logger.error(f"Failed to get audit history for order {order_id}: {e}")
            return []

    @staticmethod
    def format_entry(entry: OrderAuditLog) -> Dict[str, Any]:
        """Shape an entry for display."""
        return {
            "id": entry.id,
            "action": entry.action,
            "field": entry.field,
            "message": entry.get_display_message(),
            "timestamp": entry.created_at,
            "changed_by": entry.changed_by,
            "changed_by_role": entry.changed_by_role,
            "old_value": entry.old_value,
            "new_value": entry.new_value,
            "notes": entry.notes,
            "metadata": entry.metadata_,
        }

    async def get_formatted_order_history(
        self,
        order_id: uuid.UUID,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        history = await self.get_order_history(order_id, limit)
        return [self.format_entry(entry) for entry in history]
