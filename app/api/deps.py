from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.core.actor import Actor
from app.core.clock import Clock, utc_now
from app.jobs.order_jobs import OrderStatusScheduler, order_status_scheduler
from app.models.order_audit_log import ActorRole


logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_current_actor(
    request: Request,
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Dependency to get the caller identity.

    Authentication happens upstream; the gateway forwards the verified
    identity as X-User-Id / X-User-Role.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    role = (x_user_role or ActorRole.USER.value).lower()
    if role not in (ActorRole.ADMIN.value, ActorRole.USER.value):
        logger.warning(f"Rejected unknown role '{x_user_role}' for user {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role",
        )

    return Actor(
        id=x_user_id,
        role=role,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


async def require_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Dependency that only lets admins through."""
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return actor


def get_clock() -> Clock:
    return utc_now


def get_order_scheduler() -> OrderStatusScheduler:
    return order_status_scheduler


DB = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_admin)]
ClockDep = Annotated[Clock, Depends(get_clock)]
OrderScheduler = Annotated[OrderStatusScheduler, Depends(get_order_scheduler)]
