"""
Transactional ledger gateway -- the sequencer's view of InventoryLedger.

Responsibility:
    Gives each ledger operation its own committed transaction and retries
    optimistic-lock conflicts a bounded number of times.  The sequencer
    depends on the narrow ``LedgerPort`` protocol, never on sessions.

Architecture position:
    Services layer.  Owns commit boundaries via ``session_scope``; kernel
    services underneath only flush.

Invariants enforced:
    - Every allocation, restore and hold is committed before the call
      returns, so a restore is visible to the next concurrent allocation.
    - AllocationConflictError is retried up to ``conflict_retries`` times
      with a fresh read, then surfaced with the attempt count.

Failure modes:
    - AllocationConflictError after the retry bound.
    - InsufficientStockError from allocate (never retried).
"""

from __future__ import annotations

from typing import Callable, Iterable, Protocol, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from dispense_kernel.db.engine import session_scope
from dispense_kernel.domain.clock import Clock
from dispense_kernel.domain.dtos import AllocationPlan, SlotSnapshot
from dispense_kernel.exceptions import AllocationConflictError
from dispense_kernel.logging_config import get_logger
from dispense_kernel.selectors.slot_selector import SlotSelector
from dispense_kernel.services.inventory_ledger import InventoryLedger
from dispense_kernel.services.slot_allocator import SlotAllocator

logger = get_logger("services.ledger_gateway")

T = TypeVar("T")


class LedgerPort(Protocol):
    """What the sequencer needs from inventory bookkeeping."""

    def allocate(
        self,
        product_id: str,
        quantity: int,
        preferred_slot_id: str | None = None,
        exclude_slot_ids: Iterable[str] = (),
        request_id: UUID | None = None,
        supplemental: bool = False,
    ) -> AllocationPlan: ...

    def restore(self, slot_id: str, quantity: int, request_id: UUID | None) -> None: ...

    def hold(self, slot_id: str, quantity: int, request_id: UUID | None) -> None: ...

    def record_dispensed(self, slot_id: str, quantity: int, request_id: UUID | None) -> None: ...


class TransactionalLedgerGateway:
    """
    LedgerPort backed by the database.

    Contract:
        One ``session_scope`` per call.  Reads (``primary_slot``,
        ``available_slots``, ``total_available``) also get their own
        short transaction.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock,
        machine_code: str,
        conflict_retries: int = 3,
    ):
        if conflict_retries < 1:
            raise ValueError(f"conflict_retries must be >= 1, got {conflict_retries}")
        self._session_factory = session_factory
        self._clock = clock
        self.machine_code = machine_code
        self._conflict_retries = conflict_retries

    # ------------------------------------------------------------------
    # LedgerPort
    # ------------------------------------------------------------------

    def allocate(
        self,
        product_id: str,
        quantity: int,
        preferred_slot_id: str | None = None,
        exclude_slot_ids: Iterable[str] = (),
        request_id: UUID | None = None,
        supplemental: bool = False,
    ) -> AllocationPlan:
        excluded = tuple(exclude_slot_ids)
        return self._with_conflict_retries(
            product_id,
            "allocate",
            lambda ledger: SlotAllocator(ledger).allocate(
                product_id,
                quantity,
                preferred_slot_id=preferred_slot_id,
                exclude_slot_ids=excluded,
                request_id=request_id,
                supplemental=supplemental,
            ),
        )

    def restore(self, slot_id: str, quantity: int, request_id: UUID | None) -> None:
        self._with_conflict_retries(
            None, "restore", lambda ledger: ledger.restore(slot_id, quantity, request_id)
        )

    def hold(self, slot_id: str, quantity: int, request_id: UUID | None) -> None:
        with session_scope(self._session_factory) as session:
            self._ledger(session).hold(slot_id, quantity, request_id)

    def record_dispensed(self, slot_id: str, quantity: int, request_id: UUID | None) -> None:
        with session_scope(self._session_factory) as session:
            self._ledger(session).record_dispensed(slot_id, quantity, request_id)

    # ------------------------------------------------------------------
    # Reads and maintenance
    # ------------------------------------------------------------------

    def restock(self, slot_id: str, product_id: str, quantity: int) -> SlotSnapshot:
        with session_scope(self._session_factory) as session:
            record = self._ledger(session).restock(slot_id, product_id, quantity)
            return SlotSnapshot.from_model(record)

    def primary_slot(self, product_id: str) -> str | None:
        with session_scope(self._session_factory) as session:
            return SlotSelector(session, self.machine_code).primary_slot(product_id)

    def available_slots(self, product_id: str) -> list[SlotSnapshot]:
        with session_scope(self._session_factory) as session:
            return SlotSelector(session, self.machine_code).available_slots(product_id)

    def total_available(self, product_id: str) -> int:
        with session_scope(self._session_factory) as session:
            return SlotSelector(session, self.machine_code).total_available(product_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ledger(self, session: Session) -> InventoryLedger:
        return InventoryLedger(session, self._clock, self.machine_code)

    def _with_conflict_retries(
        self,
        product_id: str | None,
        operation: str,
        fn: Callable[[InventoryLedger], T],
    ) -> T:
        last_error: AllocationConflictError | None = None
        for attempt in range(1, self._conflict_retries + 1):
            try:
                with session_scope(self._session_factory) as session:
                    return fn(self._ledger(session))
            except AllocationConflictError as exc:
                last_error = exc
                logger.warning(
                    "ledger_conflict_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self._conflict_retries,
                        "conflict_slot_id": exc.slot_id,
                    },
                )

        logger.error(
            "ledger_conflict_exhausted",
            extra={"operation": operation, "attempts": self._conflict_retries},
        )
        raise AllocationConflictError(
            product_id or (last_error.product_id if last_error else None),
            last_error.slot_id if last_error else None,
            attempts=self._conflict_retries,
        ) from last_error
