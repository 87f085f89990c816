from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class OrderSequence(Base):
    """
    Counter row for order numbers.

    One row per prefix. The row is locked (SELECT ... FOR UPDATE) while a
    number is taken, so concurrent checkouts never share a number.

    Example:
        prefix = "ORD"
        current_number = 42
        → Next order number: ORD-000043
    """
    __tablename__ = "order_sequences"

    prefix: Mapped[str] = mapped_column(String(10), primary_key=True)

    # Sequence Counter
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )

    # Formatting
    padding_length: Mapped[int] = mapped_column(
        Integer,
        default=6,
        nullable=False,
        comment="Zero padding for sequence (6 = 000001)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def get_next_number(self) -> str:
        """
        Generate next order number.

        NOTE: This method increments current_number but does NOT
        commit to database. The caller must handle the transaction.
        """
        self.current_number += 1
        return self.format_number(self.current_number)

    def preview_next_number(self) -> str:
        return self.format_number(self.current_number + 1)

    def format_number(self, number: int) -> str:
        return f"{self.prefix}-{str(number).zfill(self.padding_length)}"

    def __repr__(self) -> str:
        return f"<OrderSequence({self.prefix}: {self.current_number})>"
