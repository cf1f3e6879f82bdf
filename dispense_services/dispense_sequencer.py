"""
DispenseSequencer -- drives the device one unit at a time through a plan.

Responsibility:
    Executes an AllocationPlan: slots in plan order, units one after the
    other, each unit one full DeviceController cycle.  Applies the retry
    policy per unit, abandons a slot when a unit cannot be confirmed,
    reconciles the ledger for everything not confirmed, and optionally
    covers a shortfall with a supplemental allocation.

Architecture position:
    Services layer.  Depends on DeviceController (hardware), LedgerPort
    (bookkeeping), RetryPolicy and ResultAggregator (pure domain).

Invariants enforced:
    - Only a returned ``dispense_unit`` call counts as Confirmed.
    - Units never confirmed are restored before ``dispense`` returns,
      except ambiguous units under the ``hold`` policy, which stay
      decremented and are recorded as held.
    - Supplemental allocations are requested only after the abandoned
      slot's units were restored, never from an abandoned slot, and never
      for more than ``fallback_max_shortfall`` units.  Total decrement for
      a request therefore never exceeds the requested quantity.
    - Cancellation is checked between units only.

Failure modes:
    - InvalidAllocationPlanError: the plan does not validate (raised
      before any hardware command).
    - Per-unit hardware errors never escape; they are recorded on the
      outcome.
    - Ledger write failures (conflicts, database errors) never escape
      either: a failed restore is reported in ``unreconciled``, a failed
      audit movement is logged.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from dispense_hardware.controller import DeviceController
from dispense_kernel.domain.aggregator import ResultAggregator
from dispense_kernel.domain.clock import Clock, SystemClock
from dispense_kernel.domain.dtos import (
    AllocationPlan,
    AttemptOutcome,
    DispenseAttempt,
    DispenseOutcome,
    PlanLine,
    SlotFailure,
    SlotResult,
)
from dispense_kernel.domain.retry_policy import RetryPolicy
from dispense_kernel.exceptions import (
    AllocationError,
    DeviceError,
    DeviceNotReadyError,
    RetriesExhaustedError,
)
from dispense_kernel.logging_config import LogContext, get_logger
from dispense_services.ledger_gateway import LedgerPort

logger = get_logger("services.dispense_sequencer")

CANCELLED_CODE = "CANCELLED"

# Failures of a ledger write that must not abort a sequence in progress
LEDGER_ERRORS = (AllocationError, SQLAlchemyError)


class AmbiguousStockPolicy(str, Enum):
    """What the ledger does with a unit that may or may not have dropped."""

    HOLD = "hold"
    RESTORE = "restore"


@dataclass
class _SlotProgress:
    slot_id: str
    planned: int = 0
    confirmed: int = 0
    units_started: int = 0
    restored: int = 0
    held: int = 0
    ambiguous_units: int = 0
    attempts: list[DispenseAttempt] = field(default_factory=list)
    failure: SlotFailure | None = None

    def to_result(self) -> SlotResult:
        return SlotResult(
            slot_id=self.slot_id,
            planned_quantity=self.planned,
            quantity_confirmed=self.confirmed,
            attempts=tuple(self.attempts),
            restored_quantity=self.restored,
            held_quantity=self.held,
            ambiguous_units=self.ambiguous_units,
            failure=self.failure,
        )


@dataclass
class _Run:
    """Mutable state of one ``dispense`` call."""

    plan: AllocationPlan
    queue: deque[PlanLine]
    slots: dict[str, _SlotProgress] = field(default_factory=dict)
    abandoned: set[str] = field(default_factory=set)
    unreconciled: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    halt_error: DeviceNotReadyError | None = None

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.halt_error is not None


class DispenseSequencer:
    """
    Contract:
        ``dispense(plan)`` expects a plan already applied to the ledger
        (units decremented) and returns a DispenseOutcome.  Callers
        serialize invocations: there is one physical channel.

    Guarantees:
        - quantity 3 from one slot means exactly 3 ``dispense_unit`` calls
          when nothing fails.
        - The outcome lists every slot that received units, in plan order.
    """

    def __init__(
        self,
        device: DeviceController,
        ledger: LedgerPort,
        retry_policy: RetryPolicy | None = None,
        aggregator: ResultAggregator | None = None,
        clock: Clock | None = None,
        *,
        fallback_enabled: bool = True,
        fallback_max_shortfall: int = 2,
        ambiguous_stock_policy: AmbiguousStockPolicy | str = AmbiguousStockPolicy.HOLD,
    ):
        self._device = device
        self._ledger = ledger
        self._retry_policy = retry_policy or RetryPolicy()
        self._aggregator = aggregator or ResultAggregator()
        self._clock = clock or SystemClock()
        self._fallback_enabled = fallback_enabled
        self._fallback_max_shortfall = fallback_max_shortfall
        self._ambiguous_policy = AmbiguousStockPolicy(ambiguous_stock_policy)

    def dispense(
        self,
        plan: AllocationPlan,
        cancel_token: threading.Event | None = None,
    ) -> DispenseOutcome:
        plan.ensure_valid()
        run = _Run(plan=plan, queue=deque(plan.lines))

        logger.info(
            "dispense_sequence_started",
            extra={
                "plan": [[line.slot_id, line.quantity] for line in plan.lines],
                "requested_quantity": plan.requested_quantity,
            },
        )

        while run.queue:
            line = run.queue.popleft()
            slot = run.slots.setdefault(line.slot_id, _SlotProgress(line.slot_id))
            slot.planned += line.quantity
            with LogContext.bind(slot_id=line.slot_id):
                if run.stopped:
                    self._release_unattempted(run, slot, line.quantity)
                else:
                    self._run_line(run, slot, line, cancel_token)

        outcome = self._aggregator.aggregate(
            request_id=plan.request_id,
            product_id=plan.product_id,
            requested_quantity=plan.requested_quantity,
            slot_results=[s.to_result() for s in run.slots.values()],
            cancelled=run.cancelled,
            device_halted=run.halt_error is not None,
            unreconciled=run.unreconciled,
        )

        log = logger.info if outcome.overall_success else logger.warning
        log(
            "dispense_sequence_finished",
            extra={
                "overall_success": outcome.overall_success,
                "delivery_status": outcome.delivery_status.value,
                "total_confirmed": outcome.total_confirmed,
                "requested_quantity": outcome.requested_quantity,
                "failure_reason": (
                    outcome.failure_reason.value if outcome.failure_reason else None
                ),
            },
        )
        if outcome.unreconciled:
            logger.error(
                "dispense_ledger_unreconciled",
                extra={"unreconciled": dict(outcome.unreconciled)},
            )
        return outcome

    # ------------------------------------------------------------------
    # One plan line
    # ------------------------------------------------------------------

    def _run_line(
        self,
        run: _Run,
        slot: _SlotProgress,
        line: PlanLine,
        cancel_token: threading.Event | None,
    ) -> None:
        confirmed_here = 0
        failed: tuple[int, int, DeviceError] | None = None

        for _ in range(line.quantity):
            if cancel_token is not None and cancel_token.is_set():
                run.cancelled = True
                logger.warning("dispense_cancelled", extra={"confirmed_so_far": slot.confirmed})
                break
            slot.units_started += 1
            unit_index = slot.units_started
            error, attempts = self._dispense_unit(slot, unit_index)
            if error is not None:
                failed = (unit_index, attempts, error)
                break
            confirmed_here += 1

        if confirmed_here:
            self._record_movement(
                run, slot, "record_dispensed", self._ledger.record_dispensed, confirmed_here
            )

        remaining = line.quantity - confirmed_here
        if not remaining:
            return

        if failed is None:
            slot.failure = SlotFailure(
                slot_id=slot.slot_id,
                unit_index=slot.units_started + 1,
                code=CANCELLED_CODE,
                message="cancelled between units",
                requested_quantity=slot.planned,
                confirmed_quantity=slot.confirmed,
            )
            self._restore(run, slot, remaining)
            return

        unit_index, attempts, error = failed
        if isinstance(error, DeviceNotReadyError):
            run.halt_error = error
            slot.failure = SlotFailure(
                slot_id=slot.slot_id,
                unit_index=unit_index,
                code=error.code,
                message=str(error),
                requested_quantity=slot.planned,
                confirmed_quantity=slot.confirmed,
                ambiguous=error.ambiguous,
            )
            logger.error(
                "dispense_halted_device_not_ready",
                extra={"reason": error.reason, "ambiguous": error.ambiguous},
            )
            to_restore = remaining - self._hold_ambiguous(run, slot, error)
            if to_restore:
                self._restore(run, slot, to_restore)
            return

        self._abandon_slot(run, slot, unit_index, attempts, error, remaining)

    def _dispense_unit(
        self, slot: _SlotProgress, unit_index: int
    ) -> tuple[DeviceError | None, int]:
        """One unit with retries.  Returns (terminal error or None, attempts used)."""
        attempt_number = 0
        with LogContext.bind(unit_index=unit_index):
            while True:
                attempt_number += 1
                delay = self._retry_policy.delay_before(attempt_number)
                if delay > 0:
                    self._clock.sleep(delay)

                try:
                    self._device.dispense_unit(slot.slot_id)
                except DeviceError as exc:
                    slot.attempts.append(
                        DispenseAttempt(
                            slot_id=slot.slot_id,
                            unit_index=unit_index,
                            attempt_number=attempt_number,
                            outcome=(
                                AttemptOutcome.ACK_ONLY_UNCONFIRMED
                                if exc.ambiguous
                                else AttemptOutcome.FAILED
                            ),
                            error_code=exc.code,
                            error_message=str(exc),
                        )
                    )
                    if self._retry_policy.should_retry(attempt_number, exc):
                        logger.warning(
                            "unit_retry",
                            extra={
                                "attempt_number": attempt_number,
                                "error_code": exc.code,
                                "ambiguous": exc.ambiguous,
                            },
                        )
                        continue
                    return exc, attempt_number

                slot.confirmed += 1
                slot.attempts.append(
                    DispenseAttempt(
                        slot_id=slot.slot_id,
                        unit_index=unit_index,
                        attempt_number=attempt_number,
                        outcome=AttemptOutcome.CONFIRMED,
                    )
                )
                logger.info("unit_confirmed", extra={"attempt_number": attempt_number})
                return None, attempt_number

    # ------------------------------------------------------------------
    # Giving up on a slot
    # ------------------------------------------------------------------

    def _abandon_slot(
        self,
        run: _Run,
        slot: _SlotProgress,
        unit_index: int,
        attempts: int,
        error: DeviceError,
        remaining: int,
    ) -> None:
        exhausted = RetriesExhaustedError(
            slot_id=slot.slot_id,
            unit_index=unit_index,
            attempts=attempts,
            requested_quantity=slot.planned,
            confirmed_quantity=slot.confirmed,
            last_error=error,
        )
        slot.failure = SlotFailure(
            slot_id=slot.slot_id,
            unit_index=unit_index,
            code=exhausted.code,
            message=str(exhausted),
            requested_quantity=slot.planned,
            confirmed_quantity=slot.confirmed,
            ambiguous=error.ambiguous,
            cause_code=error.code,
        )
        run.abandoned.add(slot.slot_id)
        logger.error(
            "slot_abandoned",
            extra={
                "unit_index": unit_index,
                "attempts": attempts,
                "cause_code": error.code,
                "ambiguous": error.ambiguous,
                "remaining": remaining,
            },
        )

        to_restore = remaining - self._hold_ambiguous(run, slot, error)
        if to_restore and self._restore(run, slot, to_restore):
            self._request_fallback(run, slot, to_restore)

    def _hold_ambiguous(self, run: _Run, slot: _SlotProgress, error: DeviceError) -> int:
        """Units kept out of stock for a unit that may have dropped (0 or 1)."""
        if not error.ambiguous:
            return 0
        slot.ambiguous_units += 1
        if self._ambiguous_policy != AmbiguousStockPolicy.HOLD:
            return 0
        # The unit stays decremented whether or not the movement is written
        slot.held += 1
        self._record_movement(run, slot, "hold", self._ledger.hold, 1)
        return 1

    def _request_fallback(self, run: _Run, slot: _SlotProgress, shortfall: int) -> None:
        if not self._fallback_enabled or shortfall > self._fallback_max_shortfall:
            logger.info(
                "fallback_skipped",
                extra={
                    "shortfall": shortfall,
                    "fallback_enabled": self._fallback_enabled,
                    "fallback_max_shortfall": self._fallback_max_shortfall,
                },
            )
            return

        try:
            supplemental = self._ledger.allocate(
                run.plan.product_id,
                shortfall,
                exclude_slot_ids=sorted(run.abandoned),
                request_id=run.plan.request_id,
                supplemental=True,
            )
        except LEDGER_ERRORS as exc:
            logger.warning(
                "fallback_unavailable",
                extra={
                    "shortfall": shortfall,
                    "error_code": (
                        exc.code if isinstance(exc, AllocationError) else type(exc).__name__
                    ),
                },
            )
            return

        slot.planned -= shortfall
        run.queue.extend(supplemental.lines)
        logger.info(
            "fallback_planned",
            extra={
                "shortfall": shortfall,
                "plan": [[line.slot_id, line.quantity] for line in supplemental.lines],
            },
        )

    # ------------------------------------------------------------------
    # Ledger reconciliation
    # ------------------------------------------------------------------

    def _release_unattempted(self, run: _Run, slot: _SlotProgress, quantity: int) -> None:
        if run.halt_error is not None:
            code, message = run.halt_error.code, "not attempted: device not ready"
        else:
            code, message = CANCELLED_CODE, "not attempted: cancelled"
        if slot.failure is None:
            slot.failure = SlotFailure(
                slot_id=slot.slot_id,
                unit_index=None,
                code=code,
                message=message,
                requested_quantity=slot.planned,
                confirmed_quantity=slot.confirmed,
            )
        self._restore(run, slot, quantity)

    def _restore(self, run: _Run, slot: _SlotProgress, quantity: int) -> bool:
        try:
            self._ledger.restore(slot.slot_id, quantity, run.plan.request_id)
        except LEDGER_ERRORS:
            run.unreconciled[slot.slot_id] = run.unreconciled.get(slot.slot_id, 0) + quantity
            logger.error(
                "ledger_restore_failed",
                extra={"quantity": quantity},
                exc_info=True,
            )
            return False
        slot.restored += quantity
        return True

    def _record_movement(
        self,
        run: _Run,
        slot: _SlotProgress,
        action: str,
        write: Callable[[str, int, UUID | None], None],
        quantity: int,
    ) -> None:
        """
        Write an audit-only movement (dispensed or held).

        Stock was already decremented at allocation, so a failed write
        leaves the count right and only the trail short.
        """
        try:
            write(slot.slot_id, quantity, run.plan.request_id)
        except LEDGER_ERRORS:
            logger.error(
                "ledger_movement_failed",
                extra={"action": action, "quantity": quantity},
                exc_info=True,
            )
