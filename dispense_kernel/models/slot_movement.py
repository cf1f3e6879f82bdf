"""
Module: dispense_kernel.models.slot_movement
Responsibility: Append-only trail of every ledger change to a slot.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Rows are only ever inserted, never updated.
    - For a request, sum(allocate) - sum(restore) equals the units still
      charged to it (confirmed plus held).

Audit relevance:
    Lets an operator reconstruct why a slot's count changed: which request
    took units, which were given back after a failed cycle, and which were
    held because the hardware may have released them without confirmation.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dispense_kernel.db.base import Base, UUIDString


class MovementType(str, Enum):
    """Why a slot's quantity was touched."""

    RESTOCK = "restock"
    ALLOCATE = "allocate"
    RESTORE = "restore"
    # Informational: no quantity change
    DISPENSE = "dispense"
    HOLD = "hold"


class SlotMovement(Base):
    """One ledger change (or confirmation) against one slot."""

    __tablename__ = "slot_movements"

    __table_args__ = (
        Index("idx_movement_request", "request_id"),
        Index("idx_movement_slot", "machine_code", "slot_id"),
    )

    machine_code: Mapped[str] = mapped_column(String(20), nullable=False)

    slot_id: Mapped[str] = mapped_column(String(20), nullable=False)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)

    movement_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Always positive; direction comes from movement_type
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    # Slot quantity right after this movement
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    request_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SlotMovement {self.movement_type} {self.slot_id} "
            f"qty={self.quantity} balance={self.balance_after}>"
        )
