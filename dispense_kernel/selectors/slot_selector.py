"""
Module: dispense_kernel.selectors.slot_selector
Responsibility: Read-only views of one machine's slot mappings: which slots
    hold a product, how much is left, and which slot the catalog shows as
    the product's primary slot.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Only slots of ``machine_code`` are ever visible.
    - Results are SlotSnapshot DTOs.
"""

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dispense_kernel.domain.dtos import SlotSnapshot
from dispense_kernel.models.slot import SlotRecord
from dispense_kernel.selectors.base import BaseSelector


class SlotSelector(BaseSelector):
    """
    Slot queries scoped to one kiosk.

    Guarantees:
        - ``available_slots`` is ordered by descending quantity, then
          ascending slot id (the order the allocator drains slots in).
        - ``primary_slot`` is the lowest slot id that still has stock.
    """

    def __init__(self, session: Session, machine_code: str):
        super().__init__(session)
        self.machine_code = machine_code

    def available_slots(self, product_id: str) -> list[SlotSnapshot]:
        stmt = (
            select(SlotRecord)
            .where(
                SlotRecord.machine_code == self.machine_code,
                SlotRecord.product_id == product_id,
                SlotRecord.available_quantity > 0,
            )
            .order_by(SlotRecord.available_quantity.desc(), SlotRecord.slot_id)
        )
        return [SlotSnapshot.from_model(r) for r in self.session.scalars(stmt)]

    def total_available(self, product_id: str) -> int:
        stmt = select(func.coalesce(func.sum(SlotRecord.available_quantity), 0)).where(
            SlotRecord.machine_code == self.machine_code,
            SlotRecord.product_id == product_id,
        )
        return int(self.session.scalar(stmt) or 0)

    def primary_slot(self, product_id: str) -> str | None:
        stmt = (
            select(SlotRecord.slot_id)
            .where(
                SlotRecord.machine_code == self.machine_code,
                SlotRecord.product_id == product_id,
                SlotRecord.available_quantity > 0,
            )
            .order_by(SlotRecord.slot_id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def slot(self, slot_id: str) -> SlotSnapshot | None:
        record = self.session.scalar(
            select(SlotRecord).where(
                SlotRecord.machine_code == self.machine_code,
                SlotRecord.slot_id == slot_id,
            )
        )
        return SlotSnapshot.from_model(record) if record is not None else None

    def all_slots(self) -> list[SlotSnapshot]:
        stmt = (
            select(SlotRecord)
            .where(SlotRecord.machine_code == self.machine_code)
            .order_by(SlotRecord.slot_id)
        )
        return [SlotSnapshot.from_model(r) for r in self.session.scalars(stmt)]
