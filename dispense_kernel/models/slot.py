"""
Module: dispense_kernel.models.slot
Responsibility: ORM persistence for per-slot available quantity -- the only
    long-lived entity of the dispense subsystem.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - available_quantity never goes negative (CHECK constraint, plus the
      ledger refuses the decrement before flushing).
    - Optimistic locking: ``version`` is the mapper's version_id_col.  Every
      UPDATE is issued as ``... WHERE id = :id AND version = :seen`` so two
      transactions cannot both take the last unit of a slot.

Failure modes:
    - StaleDataError from the ORM when the version check fails; translated
      to AllocationConflictError by InventoryLedger.
    - IntegrityError when the CHECK constraint is violated.

Audit relevance:
    Every change to available_quantity is paired with a SlotMovement row
    written by InventoryLedger in the same transaction.
"""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dispense_kernel.db.base import Base


class SlotRecord(Base):
    """
    A physical, motor-addressable compartment holding units of one product.

    Contract:
        Owned exclusively by InventoryLedger.  Mutated only through the
        ledger's allocate/restore/restock operations.

    Guarantees:
        - (machine_code, slot_id) is unique.
        - available_quantity >= 0.
        - version increments on every UPDATE.
    """

    __tablename__ = "slot_records"

    __table_args__ = (
        UniqueConstraint("machine_code", "slot_id", name="uq_slot_machine"),
        CheckConstraint("available_quantity >= 0", name="ck_slot_available_non_negative"),
        Index("idx_slot_product", "machine_code", "product_id"),
    )

    # Kiosk this slot belongs to (one physical controller per machine code)
    machine_code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # Motor address, e.g. "11" or "A"
    slot_id: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    product_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    available_quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<SlotRecord {self.machine_code}/{self.slot_id} "
            f"product={self.product_id} available={self.available_quantity}>"
        )

    @property
    def has_stock(self) -> bool:
        return self.available_quantity > 0
