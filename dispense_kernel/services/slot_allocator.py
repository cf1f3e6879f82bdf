"""
SlotAllocator -- turns (product, quantity) into a decremented allocation plan.

Responsibility:
    Loads the product's stocked slots under lock, plans which slots to
    drain (pure ``plan_allocation``), and decrements the ledger by the plan
    in the same transaction.

Architecture position:
    Kernel > Services -- imperative shell around the pure planner.

Invariants enforced:
    - InsufficientStockError is raised before the ledger is touched.
    - The plan applied to the ledger always sums to the requested quantity.

Failure modes:
    - InsufficientStockError: not enough stock across the product's slots.
    - AllocationConflictError: concurrent update detected on flush; the
      caller rolls back and retries with a fresh allocation.
    - InvalidDispenseRequestError: non-positive quantity.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID, uuid4

from dispense_kernel.domain.allocation import plan_allocation
from dispense_kernel.domain.dtos import AllocationPlan, SlotSnapshot
from dispense_kernel.exceptions import InvalidDispenseRequestError
from dispense_kernel.logging_config import get_logger
from dispense_kernel.services.inventory_ledger import InventoryLedger

logger = get_logger("services.slot_allocator")


class SlotAllocator:
    """
    Contract:
        ``allocate`` runs inside the caller's transaction.  Nothing is
        committed here.

    Non-goals:
        - Does NOT retry conflicts.
        - Does NOT talk to hardware.
    """

    def __init__(self, ledger: InventoryLedger):
        self._ledger = ledger

    def allocate(
        self,
        product_id: str,
        quantity: int,
        preferred_slot_id: str | None = None,
        exclude_slot_ids: Iterable[str] = (),
        request_id: UUID | None = None,
        supplemental: bool = False,
    ) -> AllocationPlan:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidDispenseRequestError(
                product_id, quantity, "quantity must be a positive integer"
            )

        records = self._ledger.lock_available_slots(product_id, exclude_slot_ids)
        snapshots = [SlotSnapshot.from_model(r) for r in records]

        plan = plan_allocation(
            request_id=request_id or uuid4(),
            product_id=product_id,
            quantity=quantity,
            slots=snapshots,
            preferred_slot_id=preferred_slot_id,
            supplemental=supplemental,
        )

        logger.info(
            "allocation_planned",
            extra={
                "product_id": product_id,
                "requested_quantity": quantity,
                "preferred_slot_id": preferred_slot_id,
                "plan": [[line.slot_id, line.quantity] for line in plan.lines],
                "supplemental": supplemental,
            },
        )

        self._ledger.apply_allocation(plan, records)
        return plan
