from pydantic import BaseModel
from typing import Any, Optional, Dict
from datetime import datetime
import uuid


class AuditEntryResponse(BaseModel):
    """One formatted entry of an order's audit trail."""
    id: uuid.UUID
    action: str
    field: str
    message: str
    timestamp: datetime
    changed_by: str
    changed_by_role: str
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
