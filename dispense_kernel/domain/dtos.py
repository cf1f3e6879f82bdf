"""
DTOs -- Pure domain data transfer objects for dispensing.

Responsibility:
    Defines the immutable data structures that flow through the dispense
    pipeline: DispenseRequest (input), SlotSnapshot (ledger view at
    allocation time), AllocationPlan (allocator output), DispenseAttempt
    (one unit-cycle attempt), SlotResult / DispenseOutcome (caller output).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    ``SlotSnapshot.from_model()`` is a boundary converter invoked only from
    the service layer.

Invariants enforced:
    - DispenseRequest.requested_quantity > 0.
    - Every PlanLine quantity > 0; no slot appears twice in one plan.
    - AllocationPlan.ensure_valid(): sum of line quantities equals the
      requested quantity.  Checked before any plan reaches hardware.

Data flow:
    DispenseRequest -> AllocationPlan -> [DispenseAttempt...] -> DispenseOutcome
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping
from uuid import UUID, uuid4

from dispense_kernel.exceptions import (
    InvalidAllocationPlanError,
    InvalidDispenseRequestError,
)

if TYPE_CHECKING:
    from dispense_kernel.models.slot import SlotRecord


@dataclass(frozen=True)
class DispenseRequest:
    """What the purchase flow asks for."""

    product_id: str
    requested_quantity: int
    preferred_slot_id: str | None = None
    request_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        if not self.product_id:
            raise InvalidDispenseRequestError(
                self.product_id, self.requested_quantity, "product_id is required"
            )
        if isinstance(self.requested_quantity, bool) or not isinstance(
            self.requested_quantity, int
        ):
            raise InvalidDispenseRequestError(
                self.product_id, self.requested_quantity, "quantity must be an integer"
            )
        if self.requested_quantity <= 0:
            raise InvalidDispenseRequestError(
                self.product_id, self.requested_quantity, "quantity must be positive"
            )


@dataclass(frozen=True)
class SlotSnapshot:
    """A slot's availability as read inside the allocation transaction."""

    slot_id: str
    product_id: str
    available_quantity: int

    @classmethod
    def from_model(cls, record: SlotRecord) -> SlotSnapshot:
        return cls(
            slot_id=record.slot_id,
            product_id=record.product_id,
            available_quantity=record.available_quantity,
        )


@dataclass(frozen=True)
class PlanLine:
    """Take ``quantity`` units from ``slot_id``."""

    slot_id: str
    quantity: int

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(
                f"Plan line for slot {self.slot_id} must take a positive quantity, "
                f"got {self.quantity}"
            )


@dataclass(frozen=True)
class AllocationPlan:
    """
    Ordered (slot, quantity) pairs for one request.

    Contract:
        Created per request and discarded after the sequencer consumes it.
        A supplemental plan covers a shortfall of an earlier plan and shares
        its ``request_id``.

    Guarantees:
        - No duplicate slots, every quantity positive (checked on creation).
        - ``ensure_valid()`` raises unless the lines sum to
          ``requested_quantity``.
    """

    request_id: UUID
    product_id: str
    requested_quantity: int
    lines: tuple[PlanLine, ...]
    supplemental: bool = False

    def __post_init__(self) -> None:
        slot_ids = [line.slot_id for line in self.lines]
        if len(slot_ids) != len(set(slot_ids)):
            raise ValueError(f"Allocation plan repeats a slot: {slot_ids}")

    @property
    def planned_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def slot_ids(self) -> tuple[str, ...]:
        return tuple(line.slot_id for line in self.lines)

    def quantity_for(self, slot_id: str) -> int:
        for line in self.lines:
            if line.slot_id == slot_id:
                return line.quantity
        return 0

    def ensure_valid(self) -> None:
        """Raise InvalidAllocationPlanError unless totals match the request."""
        if not self.lines or self.planned_quantity != self.requested_quantity:
            raise InvalidAllocationPlanError(
                self.product_id, self.requested_quantity, self.planned_quantity
            )


class AttemptOutcome(str, Enum):
    """
    Result tag of one unit-cycle attempt.

    ACK_ONLY_UNCONFIRMED is the ambiguous case: the motor accepted the
    command but the drop sensor never confirmed.  It is never equivalent
    to CONFIRMED.
    """

    CONFIRMED = "confirmed"
    ACK_ONLY_UNCONFIRMED = "ack_only_unconfirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class DispenseAttempt:
    """One invocation of the device controller for one unit."""

    slot_id: str
    unit_index: int
    attempt_number: int
    outcome: AttemptOutcome
    error_code: str | None = None
    error_message: str | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.outcome == AttemptOutcome.CONFIRMED

    @property
    def is_ambiguous(self) -> bool:
        return self.outcome == AttemptOutcome.ACK_ONLY_UNCONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "unit_index": self.unit_index,
            "attempt_number": self.attempt_number,
            "outcome": self.outcome.value,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class SlotFailure:
    """Why a slot stopped short; built from the terminal error."""

    slot_id: str
    unit_index: int | None
    code: str
    message: str
    requested_quantity: int
    confirmed_quantity: int
    ambiguous: bool = False
    # Code of the device error behind RETRIES_EXHAUSTED
    cause_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "unit_index": self.unit_index,
            "code": self.code,
            "message": self.message,
            "requested_quantity": self.requested_quantity,
            "confirmed_quantity": self.confirmed_quantity,
            "ambiguous": self.ambiguous,
            "cause_code": self.cause_code,
        }


@dataclass(frozen=True)
class SlotResult:
    """
    Per-slot breakdown of a dispense.

    ``planned_quantity`` is the slot's effective plan: the units allocated
    to it minus any shortfall handed to a supplemental plan.
    """

    slot_id: str
    planned_quantity: int
    quantity_confirmed: int
    attempts: tuple[DispenseAttempt, ...]
    restored_quantity: int = 0
    held_quantity: int = 0
    # Units whose last attempt ended AckOnlyUnconfirmed
    ambiguous_units: int = 0
    failure: SlotFailure | None = None

    @property
    def ambiguous_attempts(self) -> int:
        return sum(1 for a in self.attempts if a.is_ambiguous)

    @property
    def is_complete(self) -> bool:
        return self.quantity_confirmed == self.planned_quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "planned_quantity": self.planned_quantity,
            "quantity_confirmed": self.quantity_confirmed,
            "restored_quantity": self.restored_quantity,
            "held_quantity": self.held_quantity,
            "ambiguous_units": self.ambiguous_units,
            "attempts": [a.to_dict() for a in self.attempts],
            "failure": self.failure.to_dict() if self.failure else None,
        }


class DeliveryStatus(str, Enum):
    """What the purchase flow tells the customer."""

    DELIVERED = "delivered"
    PARTIALLY_DELIVERED = "partially_delivered"
    NOT_DELIVERED = "not_delivered"


class FailureReason(str, Enum):
    """Request-level failure reason carried on DispenseOutcome."""

    SHORTFALL = "SHORTFALL"
    AMBIGUOUS_DELIVERY = "AMBIGUOUS_DELIVERY"
    DEVICE_NOT_READY = "DEVICE_NOT_READY"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class DispenseOutcome:
    """
    Structured result handed back to the purchase flow.

    Guarantees:
        - ``slot_results`` always contains every slot that was allocated,
          in plan order, even on partial failure.
        - ``overall_success`` implies ``total_confirmed == requested_quantity``
          and no ambiguous attempt anywhere.
    """

    request_id: UUID
    product_id: str
    requested_quantity: int
    slot_results: Mapping[str, SlotResult]
    overall_success: bool
    delivery_status: DeliveryStatus
    failure_reason: FailureReason | None = None
    cancelled: bool = False
    unreconciled: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "slot_results", MappingProxyType(dict(self.slot_results)))
        object.__setattr__(self, "unreconciled", MappingProxyType(dict(self.unreconciled)))

    @property
    def total_confirmed(self) -> int:
        return sum(r.quantity_confirmed for r in self.slot_results.values())

    @property
    def ambiguous_units(self) -> int:
        return sum(r.ambiguous_units for r in self.slot_results.values())

    @property
    def attempts(self) -> tuple[DispenseAttempt, ...]:
        return tuple(a for r in self.slot_results.values() for a in r.attempts)

    @property
    def shortfall(self) -> int:
        return self.requested_quantity - self.total_confirmed

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "product_id": self.product_id,
            "requested_quantity": self.requested_quantity,
            "total_confirmed": self.total_confirmed,
            "overall_success": self.overall_success,
            "delivery_status": self.delivery_status.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "cancelled": self.cancelled,
            "slot_results": {k: v.to_dict() for k, v in self.slot_results.items()},
            "unreconciled": dict(self.unreconciled),
        }
