"""
Allocation planning -- pure slot selection for a dispense request.

Responsibility:
    Turns the slots holding a product into an ordered AllocationPlan.  No
    I/O: the caller (SlotAllocator) reads the snapshots inside its
    transaction and applies the plan to the ledger afterwards.

Architecture position:
    Kernel > Domain -- pure functional core.

Invariants enforced:
    - Sum of planned quantities == requested quantity.
    - No planned quantity exceeds the slot's snapshot availability.
    - Total stock below the request raises InsufficientStockError before
      any plan exists.

Algorithm:
    1. Preferred slot first (hint only): take min(available, remaining).
    2. Remaining slots by descending availability, ties by ascending slot id.
"""

from __future__ import annotations

from typing import Iterable, Sequence
from uuid import UUID

from dispense_kernel.domain.dtos import AllocationPlan, PlanLine, SlotSnapshot
from dispense_kernel.exceptions import InsufficientStockError


def total_available(slots: Iterable[SlotSnapshot]) -> int:
    return sum(s.available_quantity for s in slots if s.available_quantity > 0)


def order_slots(
    slots: Sequence[SlotSnapshot],
    preferred_slot_id: str | None = None,
) -> list[SlotSnapshot]:
    """Return stocked slots in the order the allocator drains them."""
    stocked = [s for s in slots if s.available_quantity > 0]
    preferred = [s for s in stocked if s.slot_id == preferred_slot_id]
    rest = sorted(
        (s for s in stocked if s.slot_id != preferred_slot_id),
        key=lambda s: (-s.available_quantity, s.slot_id),
    )
    return preferred + rest


def plan_allocation(
    request_id: UUID,
    product_id: str,
    quantity: int,
    slots: Sequence[SlotSnapshot],
    preferred_slot_id: str | None = None,
    supplemental: bool = False,
) -> AllocationPlan:
    """
    Build a validated plan for ``quantity`` units of ``product_id``.

    Raises:
        InsufficientStockError: total availability < quantity.
    """
    candidates = [s for s in slots if s.product_id == product_id]
    available = total_available(candidates)
    if available < quantity:
        raise InsufficientStockError(product_id, quantity, available)

    remaining = quantity
    lines: list[PlanLine] = []
    for slot in order_slots(candidates, preferred_slot_id):
        if remaining == 0:
            break
        take = min(slot.available_quantity, remaining)
        lines.append(PlanLine(slot_id=slot.slot_id, quantity=take))
        remaining -= take

    plan = AllocationPlan(
        request_id=request_id,
        product_id=product_id,
        requested_quantity=quantity,
        lines=tuple(lines),
        supplemental=supplemental,
    )
    plan.ensure_valid()
    return plan
