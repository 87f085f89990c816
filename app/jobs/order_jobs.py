"""
Order Status Jobs

Automatic order status transitions:
- pending -> processing once pending_to_processing_scheduled_at has passed
- processing -> delivering once processing_to_delivering_scheduled_at has
  passed, and only if the order is COD or already paid

Each tick loads the due orders, then advances them one at a time, each in
its own transaction. The row is locked and re-checked before it is updated,
so an order that moved in the meantime (manual cancel, another worker) is
left alone. A failure on one order is logged and the tick continues.

Unpaid non-COD orders are kept out of the processing -> delivering batch
and only counted, so they cannot crowd out orders that are able to move.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple
import uuid

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.actor import Actor
from app.core.clock import Clock, utc_now
from app.core.exceptions import SchedulerTransitionError
from app.models.order import AutomaticTransition, Order, OrderStatus, OrderStatusHistory, PaymentMethod
from app.models.order_audit_log import ActorRole, SYSTEM_ACTOR
from app.services.audit_service import AuditService
from app.services.order_state_machine import apply_transition

logger = logging.getLogger(__name__)

JOB_ID = "order_status_transitions"

SCHEDULER_ACTOR = Actor(
    id=SYSTEM_ACTOR,
    role=ActorRole.SYSTEM.value,
    ip_address="system",
    user_agent="OrderStatusScheduler",
)

# Outcomes of a single order transition attempt
APPLIED = "applied"
STALE = "stale"
AWAITING_PAYMENT = "awaiting_payment"


@dataclass(frozen=True)
class TransitionEdge:
    transition: AutomaticTransition
    from_status: OrderStatus
    to_status: OrderStatus
    scheduled_attr: str
    executed_attr: str
    requires_payment: bool = False


TRANSITION_EDGES: Tuple[TransitionEdge, ...] = (
    TransitionEdge(
        transition=AutomaticTransition.PENDING_TO_PROCESSING,
        from_status=OrderStatus.PENDING,
        to_status=OrderStatus.PROCESSING,
        scheduled_attr="pending_to_processing_scheduled_at",
        executed_attr="pending_to_processing_executed_at",
    ),
    TransitionEdge(
        transition=AutomaticTransition.PROCESSING_TO_DELIVERING,
        from_status=OrderStatus.PROCESSING,
        to_status=OrderStatus.DELIVERING,
        scheduled_attr="processing_to_delivering_scheduled_at",
        executed_attr="processing_to_delivering_executed_at",
        requires_payment=True,
    ),
)


@dataclass
class TransitionCounts:
    processed: int = 0
    skipped: int = 0  # already in the cache, or moved since it was loaded
    awaiting_payment: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.awaiting_payment + self.errors


@dataclass
class TickResult:
    """Counts per automatic transition for one tick."""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    ran: bool = True
    counts: Dict[str, TransitionCounts] = field(
        default_factory=lambda: {edge.transition.value: TransitionCounts() for edge in TRANSITION_EDGES}
    )

    def for_transition(self, transition: AutomaticTransition) -> TransitionCounts:
        return self.counts[transition.value]

    @property
    def pending_to_processing(self) -> TransitionCounts:
        return self.for_transition(AutomaticTransition.PENDING_TO_PROCESSING)

    @property
    def processing_to_delivering(self) -> TransitionCounts:
        return self.for_transition(AutomaticTransition.PROCESSING_TO_DELIVERING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ran": self.ran,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            **{
                name: {
                    "processed": c.processed,
                    "skipped": c.skipped,
                    "awaiting_payment": c.awaiting_payment,
                    "errors": c.errors,
                }
                for name, c in self.counts.items()
            },
        }


class ProcessedTransitionCache:
    """
    Keys of transitions already applied by this process.

    Bounded: it is cleared when it fills up mid-tick and again at the end
    of any tick that left it at capacity. The executed_at columns remain
    the authoritative guard.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._keys: Set[str] = set()

    @staticmethod
    def key(order_id: uuid.UUID, transition: AutomaticTransition) -> str:
        return f"{order_id}:{transition.value}"

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> None:
        if len(self._keys) >= self.capacity:
            self.clear()
        self._keys.add(key)

    def clear_if_full(self) -> bool:
        if len(self._keys) >= self.capacity:
            self.clear()
            return True
        return False

    def clear(self) -> None:
        logger.info(f"Cleared processed transition cache ({len(self._keys)} keys)")
        self._keys.clear()


class OrderStatusScheduler:
    """Advances orders whose automatic transition time has passed."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        interval_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
        cache_size: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or utc_now
        self._scheduler = scheduler
        self.interval_seconds = interval_seconds or settings.ORDER_SCHEDULER_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.ORDER_SCHEDULER_BATCH_SIZE
        self.cache = ProcessedTransitionCache(cache_size or settings.ORDER_SCHEDULER_CACHE_SIZE)

        self._tick_lock = asyncio.Lock()
        self._running = False
        self._stopped = False
        self.last_tick_at: Optional[datetime] = None
        self.last_result: Optional[TickResult] = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from app.database import async_session_factory
            return async_session_factory
        return self._session_factory

    @property
    def scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            from app.jobs.scheduler import scheduler
            return scheduler
        return self._scheduler

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== LIFECYCLE ====================

    def start(self) -> None:
        """Register the interval job and start the scheduler if needed."""
        if self._running:
            logger.info("Order status scheduler is already running")
            return

        self._stopped = False
        self.scheduler.add_job(
            self._scheduled_tick,
            'interval',
            seconds=self.interval_seconds,
            id=JOB_ID,
            name='Order Status Transitions',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

        self._running = True
        logger.info(f"Order status scheduler started - checking every {self.interval_seconds}s")

    async def stop(self) -> None:
        """Remove the job and wait for an in-flight tick. No tick starts afterwards."""
        self._stopped = True
        if self._running and self.scheduler.get_job(JOB_ID):
            self.scheduler.remove_job(JOB_ID)
        self._running = False

        # Wait for the current tick, if any
        async with self._tick_lock:
            pass
        logger.info("Order status scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        job = self.scheduler.get_job(JOB_ID) if self._running else None
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "cache_size": len(self.cache),
            "cache_capacity": self.cache.capacity,
            "next_run_time": job.next_run_time if job else None,
            "last_tick_at": self.last_tick_at,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    # ==================== TICK ====================

    async def _scheduled_tick(self) -> None:
        try:
            await self.run_tick()
        except Exception as e:
            logger.error(f"Order status tick failed: {e}")

    async def run_tick(self) -> TickResult:
        """
        Run one pass over both automatic transitions.

        Returns a TickResult with ran=False when the scheduler has been
        stopped or another tick is still in progress.
        """
        if self._stopped:
            logger.debug("Order status scheduler stopped, tick skipped")
            return TickResult(ran=False)

        if self._tick_lock.locked():
            logger.warning("Previous order status tick still running, tick skipped")
            return TickResult(ran=False)

        async with self._tick_lock:
            if self._stopped:
                return TickResult(ran=False)

            now = self.clock()
            result = TickResult(started_at=now)

            for edge in TRANSITION_EDGES:
                try:
                    await self._process_edge(edge, now, result.for_transition(edge.transition))
                except Exception as e:
                    logger.error(f"Error processing {edge.transition.value} transitions: {e}")
                    result.for_transition(edge.transition).errors += 1

            self.cache.clear_if_full()

            result.finished_at = self.clock()
            self.last_tick_at = now
            self.last_result = result

            logger.info(
                f"Automatic transition check completed: "
                f"{result.pending_to_processing.processed} pending->processing, "
                f"{result.processing_to_delivering.processed} processing->delivering, "
                f"{result.processing_to_delivering.awaiting_payment} awaiting payment"
            )
            return result

    @staticmethod
    def _due_filter(edge: TransitionEdge, now: datetime) -> list:
        return [
            Order.order_status == edge.from_status.value,
            getattr(Order, edge.scheduled_attr) <= now,
            getattr(Order, edge.executed_attr).is_(None),
        ]

    @staticmethod
    def _payable():
        return or_(Order.payment_method == PaymentMethod.COD.value, Order.is_paid.is_(True))

    async def _load_due(self, edge: TransitionEdge, now: datetime) -> List[Tuple[uuid.UUID, str]]:
        conditions = self._due_filter(edge, now)
        if edge.requires_payment:
            conditions.append(self._payable())

        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id, Order.order_number)
                .where(*conditions)
                .order_by(Order.created_at.asc())
                .limit(self.batch_size)
            )
            rows = [(row.id, row.order_number) for row in result.all()]
            await session.commit()
        return rows

    async def _count_awaiting_payment(self, edge: TransitionEdge, now: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(Order.id)).where(
                    *self._due_filter(edge, now),
                    Order.payment_method != PaymentMethod.COD.value,
                    Order.is_paid.is_(False),
                )
            )
            count = result.scalar() or 0
            await session.commit()
        return count

    async def _process_edge(self, edge: TransitionEdge, now: datetime, counts: TransitionCounts) -> None:
        if edge.requires_payment:
            waiting = await self._count_awaiting_payment(edge, now)
            if waiting:
                logger.warning(
                    f"{waiting} orders due for {edge.to_status.value} are waiting for payment "
                    f"(payment required for non-COD orders before delivery)"
                )
            counts.awaiting_payment += waiting

        due = await self._load_due(edge, now)
        if due:
            logger.info(f"Found {len(due)} orders ready for {edge.from_status.value} -> {edge.to_status.value}")

        for order_id, order_number in due:
            key = self.cache.key(order_id, edge.transition)
            if key in self.cache:
                counts.skipped += 1
                continue

            try:
                outcome = await self._transition_order(edge, order_id, now)
            except Exception as e:
                error = SchedulerTransitionError(order_number, edge.transition.value, e)
                logger.error(error.message)
                counts.errors += 1
                continue

            if outcome == APPLIED:
                self.cache.add(key)
                counts.processed += 1
            elif outcome == AWAITING_PAYMENT:
                # Payment refunded or reverted after the batch was loaded
                logger.warning(
                    f"Skipping automatic transition for order {order_number}: "
                    f"payment required for non-COD orders before delivery"
                )
                counts.awaiting_payment += 1
            else:
                counts.skipped += 1

    async def _transition_order(self, edge: TransitionEdge, order_id: uuid.UUID, now: datetime) -> str:
        """Lock, re-check and advance one order in its own transaction."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(Order)
                    .where(Order.id == order_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                order = result.scalar_one_or_none()

                if (
                    order is None
                    or order.order_status != edge.from_status.value
                    or getattr(order, edge.executed_attr) is not None
                ):
                    await session.rollback()
                    return STALE

                if edge.requires_payment and not order.is_cod and not order.is_paid:
                    await session.rollback()
                    return AWAITING_PAYMENT

                old_status = order.order_status
                apply_transition(order, edge.to_status, now)
                setattr(order, edge.executed_attr, now)

                notes = f"Automatic transition from {old_status} to {edge.to_status.value}"
                session.add(
                    OrderStatusHistory(
                        id=uuid.uuid4(),
                        order_id=order.id,
                        from_status=old_status,
                        to_status=edge.to_status.value,
                        changed_by=SYSTEM_ACTOR,
                        notes=notes,
                        is_automatic=True,
                        created_at=now,
                    )
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        await AuditService(self.session_factory).log_status_change(
            order,
            old_status,
            edge.to_status.value,
            actor=SCHEDULER_ACTOR,
            notes=notes,
            is_automatic=True,
            extra={"transition": edge.transition.value},
        )
        logger.info(f"Order {order.order_number}: {old_status} -> {edge.to_status.value} (automatic)")
        return APPLIED


# Process-wide instance used by the app lifespan and the admin endpoints
order_status_scheduler = OrderStatusScheduler()
