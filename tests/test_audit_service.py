import uuid

from app.core.actor import SYSTEM
from app.database import build_engine, build_session_factory
from app.models.order_audit_log import AuditAction, AuditField
from app.services.audit_service import AuditService


async def test_log_change_records_actor_metadata(session_factory, buyer):
    audit = AuditService(session_factory)
    order_id = uuid.uuid4()

    entry = await audit.log_change(
        order_id=order_id,
        order_number="ORD-000042",
        action=AuditAction.ORDER_UPDATED,
        field=AuditField.GENERAL,
        actor=buyer,
        old_value={"notes": None},
        new_value={"notes": "Leave at the door"},
        notes="Customer note",
    )

    assert entry is not None
    history = await audit.get_order_history(order_id)
    assert len(history) == 1
    stored = history[0]
    assert stored.action == "order_updated"
    assert stored.changed_by == "user-1"
    assert stored.changed_by_role == "user"
    assert stored.ip_address == "10.0.0.1"
    assert stored.user_agent == "pytest"
    assert stored.new_value == {"notes": "Leave at the door"}


async def test_history_is_newest_first_and_limited(session_factory):
    audit = AuditService(session_factory)
    order_id = uuid.uuid4()

    for old, new in [("pending", "processing"), ("processing", "delivering"), ("delivering", "delivered")]:
        await audit.log_change(
            order_id=order_id,
            order_number="ORD-000007",
            action=AuditAction.STATUS_CHANGE,
            field=AuditField.ORDER_STATUS,
            actor=SYSTEM,
            old_value=old,
            new_value=new,
        )

    history = await audit.get_formatted_order_history(order_id)
    assert [h["new_value"] for h in history] == ["delivered", "delivering", "processing"]
    assert history[0]["message"] == 'Order status changed from "delivering" to "delivered"'
    assert history[0]["changed_by_role"] == "system"

    limited = await audit.get_order_history(order_id, limit=2)
    assert len(limited) == 2


async def test_history_of_unknown_order_is_empty(session_factory):
    assert await AuditService(session_factory).get_order_history(uuid.uuid4()) == []


async def test_write_failure_is_swallowed(tmp_path, buyer, caplog):
    # No tables in this database
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'no_tables.db'}")
    try:
        audit = AuditService(build_session_factory(engine))
        entry = await audit.log_change(
            order_id=uuid.uuid4(),
            order_number="ORD-000001",
            action=AuditAction.ORDER_CREATED,
            field=AuditField.GENERAL,
            actor=buyer,
        )
        history = await audit.get_order_history(uuid.uuid4())
    finally:
        await engine.dispose()

    assert entry is None
    assert history == []
    assert "Failed to write audit entry" in caplog.text
