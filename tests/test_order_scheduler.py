import pytest

from app.core.clock import ensure_utc
from app.jobs import order_jobs
from app.jobs.order_jobs import (
    APPLIED,
    AWAITING_PAYMENT,
    JOB_ID,
    STALE,
    TRANSITION_EDGES,
    OrderStatusScheduler,
    ProcessedTransitionCache,
)
from app.jobs.scheduler import build_scheduler
from app.models.order import AutomaticTransition, OrderStatus, PaymentMethod
from app.models.order_audit_log import AuditAction
from app.services.order_service import OrderService


@pytest.fixture
def order_scheduler(session_factory, clock):
    return OrderStatusScheduler(
        session_factory=session_factory,
        clock=clock,
        scheduler=build_scheduler(),
        interval_seconds=60,
        batch_size=50,
        cache_size=100,
    )


@pytest.fixture
def load_order(session_factory):
    async def _load(order_id):
        async with session_factory() as session:
            return await OrderService(session, session_factory).get_order(order_id)

    return _load


async def test_due_order_moves_to_processing(order_scheduler, place_order, catalog, clock, load_order, read_audit):
    order = await place_order([(catalog["phone"], 1, None)])

    clock.advance(minutes=2)
    result = await order_scheduler.run_tick()

    assert result.ran
    assert result.pending_to_processing.processed == 1
    assert result.processing_to_delivering.processed == 0

    fetched = await load_order(order.id)
    assert fetched.order_status == "processing"
    assert ensure_utc(fetched.pending_to_processing_executed_at) == clock.now
    assert fetched.processing_to_delivering_executed_at is None

    automatic = fetched.status_history[-1]
    assert (automatic.from_status, automatic.to_status) == ("pending", "processing")
    assert automatic.is_automatic is True
    assert automatic.changed_by == "system"

    entry = (await read_audit(order.id))[-1]
    assert entry.action == AuditAction.STATUS_CHANGE.value
    assert (entry.old_value, entry.new_value) == ("pending", "processing")
    assert entry.changed_by == "system"
    assert entry.changed_by_role == "system"
    assert entry.user_agent == "OrderStatusScheduler"
    assert entry.metadata_["is_automatic"] is True
    assert entry.metadata_["transition"] == AutomaticTransition.PENDING_TO_PROCESSING.value


async def test_order_not_yet_due_is_left_alone(order_scheduler, place_order, catalog, clock, load_order):
    order = await place_order([(catalog["phone"], 1, None)])

    clock.advance(seconds=30)
    result = await order_scheduler.run_tick()

    assert result.pending_to_processing.total == 0
    assert (await load_order(order.id)).order_status == "pending"


async def test_cod_order_reaches_delivering(order_scheduler, place_order, catalog, clock, load_order, read_audit):
    order = await place_order([(catalog["phone"], 1, None)])

    clock.advance(minutes=2)
    await order_scheduler.run_tick()
    clock.advance(minutes=30)
    result = await order_scheduler.run_tick()

    assert result.processing_to_delivering.processed == 1
    fetched = await load_order(order.id)
    assert fetched.order_status == "delivering"
    assert ensure_utc(fetched.processing_to_delivering_executed_at) == clock.now

    statuses = [e.new_value for e in await read_audit(order.id) if e.action == AuditAction.STATUS_CHANGE.value]
    assert statuses == ["processing", "delivering"]


async def test_overdue_order_advances_both_edges_in_one_tick(order_scheduler, place_order, catalog, clock, load_order):
    order = await place_order([(catalog["phone"], 1, None)])

    clock.advance(hours=2)
    result = await order_scheduler.run_tick()

    assert result.pending_to_processing.processed == 1
    assert result.processing_to_delivering.processed == 1
    assert (await load_order(order.id)).order_status == "delivering"


async def test_tick_is_idempotent(order_scheduler, session_factory, place_order, catalog, clock, load_order, read_audit):
    order = await place_order([(catalog["phone"], 1, None)])
    clock.advance(minutes=2)

    first = await order_scheduler.run_tick()
    second = await order_scheduler.run_tick()

    # A fresh process has an empty cache and still does nothing
    fresh = OrderStatusScheduler(session_factory=session_factory, clock=clock, scheduler=build_scheduler())
    third = await fresh.run_tick()

    assert first.pending_to_processing.processed == 1
    assert second.pending_to_processing.processed == 0
    assert third.pending_to_processing.processed == 0

    fetched = await load_order(order.id)
    assert [h.to_status for h in fetched.status_history] == ["pending", "processing"]
    status_entries = [e for e in await read_audit(order.id) if e.action == AuditAction.STATUS_CHANGE.value]
    assert len(status_entries) == 1


async def test_unpaid_card_order_waits_for_payment(
    order_scheduler, session_factory, place_order, catalog, clock, load_order, buyer
):
    order = await place_order([(catalog["phone"], 1, None)], payment_method=PaymentMethod.CARD)

    clock.advance(minutes=32)
    result = await order_scheduler.run_tick()

    assert result.pending_to_processing.processed == 1
    assert result.processing_to_delivering.processed == 0
    assert result.processing_to_delivering.awaiting_payment == 1
    assert (await load_order(order.id)).order_status == "processing"

    # Still blocked on the next tick
    clock.advance(minutes=5)
    result = await order_scheduler.run_tick()
    assert result.processing_to_delivering.awaiting_payment == 1

    async with session_factory() as session:
        await OrderService(session, session_factory, clock).mark_paid(order.id, buyer)

    clock.advance(minutes=1)
    result = await order_scheduler.run_tick()

    assert result.processing_to_delivering.processed == 1
    fetched = await load_order(order.id)
    assert fetched.order_status == "delivering"
    assert fetched.is_paid is True


async def test_failure_on_one_order_does_not_stop_the_tick(
    order_scheduler, place_order, catalog, clock, load_order, monkeypatch
):
    bad = await place_order([(catalog["phone"], 1, None)])
    good = await place_order([(catalog["phone"], 1, None)])

    original = order_jobs.apply_transition

    def flaky_apply(order, new_status, now):
        if order.id == bad.id:
            raise RuntimeError("constraint violated")
        return original(order, new_status, now)

    monkeypatch.setattr(order_jobs, "apply_transition", flaky_apply)

    clock.advance(minutes=2)
    result = await order_scheduler.run_tick()

    assert result.pending_to_processing.processed == 1
    assert result.pending_to_processing.errors == 1
    assert (await load_order(bad.id)).order_status == "pending"
    assert (await load_order(good.id)).order_status == "processing"


async def test_cancelled_order_is_never_advanced(
    order_scheduler, session_factory, place_order, catalog, clock, load_order, admin
):
    order = await place_order([(catalog["phone"], 1, None)])
    async with session_factory() as session:
        await OrderService(session, session_factory, clock).change_status(order.id, OrderStatus.CANCELLED, admin)

    clock.advance(hours=1)
    result = await order_scheduler.run_tick()

    assert result.pending_to_processing.total == 0
    fetched = await load_order(order.id)
    assert fetched.order_status == "cancelled"
    assert fetched.pending_to_processing_executed_at is None


async def test_transition_rechecks_the_row(order_scheduler, place_order, catalog, clock):
    order = await place_order([(catalog["phone"], 1, None)], payment_method=PaymentMethod.BANK_TRANSFER)
    pending_edge, processing_edge = TRANSITION_EDGES

    clock.advance(minutes=40)
    assert await order_scheduler._transition_order(processing_edge, order.id, clock.now) == STALE
    assert await order_scheduler._transition_order(pending_edge, order.id, clock.now) == APPLIED
    assert await order_scheduler._transition_order(pending_edge, order.id, clock.now) == STALE
    assert await order_scheduler._transition_order(processing_edge, order.id, clock.now) == AWAITING_PAYMENT


async def test_unpaid_orders_do_not_crowd_out_payable_ones(
    session_factory, place_order, catalog, clock, load_order
):
    small_batches = OrderStatusScheduler(
        session_factory=session_factory, clock=clock, scheduler=build_scheduler(), batch_size=2,
    )
    unpaid = []
    for _ in range(2):
        unpaid.append(await place_order([(catalog["phone"], 1, None)], payment_method=PaymentMethod.CARD))
        clock.advance(seconds=1)
    cod = await place_order([(catalog["phone"], 1, None)])

    clock.advance(minutes=40)
    first = await small_batches.run_tick()
    second = await small_batches.run_tick()

    assert first.pending_to_processing.processed == 2
    assert first.processing_to_delivering.awaiting_payment == 2
    assert second.pending_to_processing.processed == 1
    assert second.processing_to_delivering.processed == 1
    assert second.processing_to_delivering.awaiting_payment == 2
    assert second.processing_to_delivering.skipped == 0

    assert (await load_order(cod.id)).order_status == "delivering"
    for order in unpaid:
        assert (await load_order(order.id)).order_status == "processing"


# ==================== lifecycle ====================

async def test_stopped_scheduler_does_not_tick(order_scheduler, place_order, catalog, clock, load_order):
    order = await place_order([(catalog["phone"], 1, None)])

    order_scheduler.start()
    status = order_scheduler.get_status()
    assert status["running"] is True
    assert status["next_run_time"] is not None
    assert order_scheduler.scheduler.get_job(JOB_ID) is not None

    await order_scheduler.stop()
    order_scheduler.scheduler.shutdown(wait=False)

    clock.advance(minutes=5)
    result = await order_scheduler.run_tick()

    assert result.ran is False
    assert order_scheduler.get_status()["running"] is False
    assert (await load_order(order.id)).order_status == "pending"


async def test_overlapping_tick_is_skipped(order_scheduler):
    async with order_scheduler._tick_lock:
        result = await order_scheduler.run_tick()

    assert result.ran is False
    assert order_scheduler.last_result is None


async def test_status_reports_last_tick(order_scheduler, place_order, catalog, clock):
    await place_order([(catalog["phone"], 1, None)])
    clock.advance(minutes=2)
    await order_scheduler.run_tick()

    status = order_scheduler.get_status()

    assert status["running"] is False
    assert status["cache_size"] == 1
    assert status["cache_capacity"] == 100
    assert status["last_tick_at"] == clock.now
    assert status["last_result"]["pendingToProcessing"] == {
        "processed": 1, "skipped": 0, "awaiting_payment": 0, "errors": 0
    }


def test_cache_clears_when_full():
    cache = ProcessedTransitionCache(capacity=2)
    keys = [f"order-{n}:pendingToProcessing" for n in range(3)]

    for key in keys:
        cache.add(key)

    assert len(cache) == 1
    assert keys[2] in cache
    assert keys[0] not in cache


async def test_full_cache_is_cleared_at_end_of_tick(session_factory, place_order, catalog, clock):
    tiny_cache = OrderStatusScheduler(
        session_factory=session_factory, clock=clock, scheduler=build_scheduler(), cache_size=2,
    )
    await place_order([(catalog["phone"], 1, None)])
    await place_order([(catalog["phone"], 1, None)])

    clock.advance(minutes=2)
    result = await tiny_cache.run_tick()

    assert result.pending_to_processing.processed == 2
    assert len(tiny_cache.cache) == 0

    clock.advance(minutes=1)
    again = await tiny_cache.run_tick()
    assert again.pending_to_processing.total == 0
