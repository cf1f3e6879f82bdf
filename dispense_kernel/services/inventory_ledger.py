"""
InventoryLedger -- per-slot available-quantity store.

Responsibility:
    The only code path that mutates SlotRecord.  Exposes atomic
    decrement (apply an allocation plan), restore, restock, and the two
    informational movements (dispense confirmation and ambiguous hold).
    Every call writes a SlotMovement row in the same transaction.

Architecture position:
    Kernel > Services -- imperative shell.
    Used by SlotAllocator (decrement) and by the ledger gateway in
    dispense_services (restore / hold / confirm).

Invariants enforced:
    - available_quantity never goes negative: a decrement larger than the
      slot's stock raises NegativeStockError before anything is flushed.
    - Optimistic locking: the ORM version check turns a concurrent update
      into StaleDataError, re-raised here as AllocationConflictError.
    - Machine scoping: only slots of ``machine_code`` are read or written.

Failure modes:
    - AllocationConflictError: version check failed on flush.
    - SlotNotFoundError: slot id not mapped on this machine.
    - NegativeStockError: decrement exceeds available stock.
    - ValueError: non-positive quantity.

Audit relevance:
    SlotMovement rows give, per request, allocate / restore / hold /
    dispense history with the slot balance after each change.
"""

from __future__ import annotations

from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dispense_kernel.domain.clock import Clock
from dispense_kernel.domain.dtos import AllocationPlan
from dispense_kernel.exceptions import (
    AllocationConflictError,
    NegativeStockError,
    SlotNotFoundError,
)
from dispense_kernel.logging_config import get_logger
from dispense_kernel.models.slot import SlotRecord
from dispense_kernel.models.slot_movement import MovementType, SlotMovement
from dispense_kernel.services.base import BaseService

logger = get_logger("services.inventory_ledger")


class InventoryLedger(BaseService):
    """
    Persisted per-slot stock for one kiosk.

    Contract:
        Receives a Session; flushes, never commits.  After an
        AllocationConflictError the caller must roll back the session.

    Guarantees:
        - Each mutation is paired with exactly one SlotMovement row.
        - ``last_updated`` is stamped from the injected Clock.

    Non-goals:
        - Does NOT retry conflicts (the gateway does).
        - Does NOT decide what to allocate (SlotAllocator does).
    """

    def __init__(self, session: Session, clock: Clock, machine_code: str):
        super().__init__(session)
        self._clock = clock
        self.machine_code = machine_code

    # ------------------------------------------------------------------
    # Reads under lock
    # ------------------------------------------------------------------

    def lock_available_slots(
        self,
        product_id: str,
        exclude_slot_ids: Iterable[str] = (),
    ) -> list[SlotRecord]:
        """
        Load the product's stocked slots for update.

        On PostgreSQL this takes row locks (FOR UPDATE); SQLite ignores the
        clause and relies on the version column.
        """
        stmt = (
            select(SlotRecord)
            .where(
                SlotRecord.machine_code == self.machine_code,
                SlotRecord.product_id == product_id,
                SlotRecord.available_quantity > 0,
            )
            .order_by(SlotRecord.slot_id)
            .with_for_update()
        )
        excluded = set(exclude_slot_ids)
        if excluded:
            stmt = stmt.where(SlotRecord.slot_id.not_in(sorted(excluded)))
        return list(self.session.scalars(stmt))

    def get_slot(self, slot_id: str) -> SlotRecord:
        record = self.session.scalar(
            select(SlotRecord).where(
                SlotRecord.machine_code == self.machine_code,
                SlotRecord.slot_id == slot_id,
            )
        )
        if record is None:
            raise SlotNotFoundError(slot_id, self.machine_code)
        return record

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply_allocation(
        self,
        plan: AllocationPlan,
        records: Sequence[SlotRecord],
    ) -> None:
        """
        Decrement every slot in ``plan`` by its planned quantity.

        Preconditions:
            ``records`` were loaded by ``lock_available_slots`` in this
            session and the plan is valid.

        Raises:
            NegativeStockError: a line exceeds the slot's current stock.
            AllocationConflictError: another transaction won the race.
        """
        plan.ensure_valid()
        by_slot = {r.slot_id: r for r in records}
        now = self._clock.now()

        for line in plan.lines:
            record = by_slot.get(line.slot_id)
            if record is None:
                raise SlotNotFoundError(line.slot_id, self.machine_code)
            if line.quantity > record.available_quantity:
                raise NegativeStockError(
                    line.slot_id, record.available_quantity, line.quantity
                )
            record.available_quantity -= line.quantity
            record.last_updated = now
            self._add_movement(
                record, MovementType.ALLOCATE, line.quantity, plan.request_id
            )

        self._flush(plan.product_id, plan.slot_ids)

        logger.info(
            "ledger_allocated",
            extra={
                "request_id": str(plan.request_id),
                "product_id": plan.product_id,
                "lines": [[line.slot_id, line.quantity] for line in plan.lines],
                "supplemental": plan.supplemental,
            },
        )

    def restore(self, slot_id: str, quantity: int, request_id: UUID | None) -> int:
        """Return ``quantity`` unconfirmed units to the slot. Returns the new balance."""
        _require_positive(quantity)
        record = self.get_slot(slot_id)
        record.available_quantity += quantity
        record.last_updated = self._clock.now()
        self._add_movement(record, MovementType.RESTORE, quantity, request_id)
        self._flush(record.product_id, (slot_id,))

        logger.info(
            "ledger_restored",
            extra={
                "slot_id": slot_id,
                "quantity": quantity,
                "balance_after": record.available_quantity,
            },
        )
        return record.available_quantity

    def hold(self, slot_id: str, quantity: int, request_id: UUID | None) -> None:
        """
        Record units whose delivery is ambiguous.

        The units stay decremented; the movement flags them for operator
        reconciliation.
        """
        _require_positive(quantity)
        record = self.get_slot(slot_id)
        self._add_movement(record, MovementType.HOLD, quantity, request_id)
        self.session.flush()

        logger.warning(
            "ledger_held_ambiguous",
            extra={"slot_id": slot_id, "quantity": quantity},
        )

    def record_dispensed(
        self, slot_id: str, quantity: int, request_id: UUID | None
    ) -> None:
        """Record sensor-confirmed units.  No quantity change: allocation already decremented."""
        _require_positive(quantity)
        record = self.get_slot(slot_id)
        self._add_movement(record, MovementType.DISPENSE, quantity, request_id)
        self.session.flush()

    def restock(self, slot_id: str, product_id: str, quantity: int) -> SlotRecord:
        """
        Add ``quantity`` units of ``product_id`` to a slot, creating the
        mapping when the slot is new.

        An empty slot may be remapped to another product; a stocked one
        may not.  Slot and product ids must be non-empty and free of
        whitespace: the slot id goes verbatim into the motor command.
        """
        _require_identifier("slot_id", slot_id)
        _require_identifier("product_id", product_id)
        _require_positive(quantity)
        now = self._clock.now()
        record = self.session.scalar(
            select(SlotRecord).where(
                SlotRecord.machine_code == self.machine_code,
                SlotRecord.slot_id == slot_id,
            )
        )
        if record is None:
            record = SlotRecord(
                machine_code=self.machine_code,
                slot_id=slot_id,
                product_id=product_id,
                available_quantity=0,
                last_updated=now,
            )
            self.session.add(record)
        elif record.product_id != product_id:
            if record.available_quantity > 0:
                raise ValueError(
                    f"Slot {slot_id} still holds {record.available_quantity} "
                    f"units of {record.product_id}"
                )
            record.product_id = product_id

        record.available_quantity += quantity
        record.last_updated = now
        self._add_movement(record, MovementType.RESTOCK, quantity, None)
        self._flush(product_id, (slot_id,))

        logger.info(
            "ledger_restocked",
            extra={
                "slot_id": slot_id,
                "product_id": product_id,
                "quantity": quantity,
                "balance_after": record.available_quantity,
            },
        )
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _add_movement(
        self,
        record: SlotRecord,
        movement_type: MovementType,
        quantity: int,
        request_id: UUID | None,
    ) -> None:
        self.session.add(
            SlotMovement(
                machine_code=self.machine_code,
                slot_id=record.slot_id,
                product_id=record.product_id,
                movement_type=movement_type.value,
                quantity=quantity,
                balance_after=record.available_quantity,
                request_id=request_id,
                occurred_at=self._clock.now(),
            )
        )

    def _flush(self, product_id: str, slot_ids: Sequence[str]) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            slot_id = slot_ids[0] if len(slot_ids) == 1 else None
            logger.warning(
                "ledger_version_conflict",
                extra={"product_id": product_id, "slot_ids": list(slot_ids)},
            )
            raise AllocationConflictError(product_id, slot_id) from exc


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise ValueError(f"Ledger quantity must be positive, got {quantity}")


def _require_identifier(field_name: str, value: str) -> None:
    if not value or any(c.isspace() for c in value):
        raise ValueError(f"Invalid {field_name}: {value!r}")
