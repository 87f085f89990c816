from dataclasses import dataclass
from typing import Optional

from app.models.order_audit_log import ActorRole, SYSTEM_ACTOR


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation, plus request metadata for the audit trail."""
    id: str
    role: str = ActorRole.USER.value
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN.value

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM.value

    def can_access(self, owner_id: Optional[str]) -> bool:
        """Admins and the system see everything; users only their own orders."""
        return self.is_admin or self.is_system or (owner_id is not None and owner_id == self.id)


SYSTEM = Actor(id=SYSTEM_ACTOR, role=ActorRole.SYSTEM.value)
