"""
ResultAggregator -- merges per-slot results into a DispenseOutcome.

Responsibility:
    Decides ``overall_success``, ``delivery_status`` and ``failure_reason``
    from the per-slot breakdown the sequencer built.  Owns no state.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - overall_success iff every slot confirmed its effective planned
      quantity, the confirmed total equals the request, and no attempt
      anywhere ended AckOnlyUnconfirmed.
    - The full per-slot breakdown is returned even on partial failure.

Delivery status:
    DELIVERED            overall_success
    NOT_DELIVERED        nothing confirmed and no ambiguous attempt
    PARTIALLY_DELIVERED  everything else (including "maybe dropped")
"""

from __future__ import annotations

from typing import Mapping, Sequence
from uuid import UUID

from dispense_kernel.domain.dtos import (
    DeliveryStatus,
    DispenseOutcome,
    FailureReason,
    SlotResult,
)


class ResultAggregator:
    """Stateless; one instance may be shared by every sequencer."""

    def aggregate(
        self,
        request_id: UUID,
        product_id: str,
        requested_quantity: int,
        slot_results: Sequence[SlotResult],
        cancelled: bool = False,
        device_halted: bool = False,
        unreconciled: Mapping[str, int] | None = None,
    ) -> DispenseOutcome:
        total_confirmed = sum(r.quantity_confirmed for r in slot_results)
        any_ambiguous = any(r.ambiguous_attempts for r in slot_results)
        all_complete = all(r.is_complete for r in slot_results)

        overall_success = (
            bool(slot_results)
            and all_complete
            and total_confirmed == requested_quantity
            and not any_ambiguous
            and not cancelled
            and not device_halted
        )

        if overall_success:
            status = DeliveryStatus.DELIVERED
        elif total_confirmed == 0 and not any_ambiguous:
            status = DeliveryStatus.NOT_DELIVERED
        else:
            status = DeliveryStatus.PARTIALLY_DELIVERED

        return DispenseOutcome(
            request_id=request_id,
            product_id=product_id,
            requested_quantity=requested_quantity,
            slot_results={r.slot_id: r for r in slot_results},
            overall_success=overall_success,
            delivery_status=status,
            failure_reason=self._failure_reason(
                overall_success,
                cancelled,
                device_halted,
                total_confirmed < requested_quantity,
            ),
            cancelled=cancelled,
            unreconciled=dict(unreconciled or {}),
        )

    @staticmethod
    def _failure_reason(
        overall_success: bool,
        cancelled: bool,
        device_halted: bool,
        short: bool,
    ) -> FailureReason | None:
        if overall_success:
            return None
        if cancelled:
            return FailureReason.CANCELLED
        if device_halted:
            return FailureReason.DEVICE_NOT_READY
        if short:
            return FailureReason.SHORTFALL
        return FailureReason.AMBIGUOUS_DELIVERY
