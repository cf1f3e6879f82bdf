"""
Typed Exception Hierarchy for the Dispense Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A vending kiosk has to decide, after every purchase, whether the customer
got what they paid for.  That decision must never depend on parsing an
error message.  Every error therefore:
  1. Has its own exception CLASS (catch by type, not message)
  2. Has a CODE attribute (machine-readable, safe to send over IPC)
  3. Carries structured DATA (slot id, unit index, requested/confirmed)

Example - WRONG way to handle errors:
    try:
        service.dispense_for_product("42", 2)
    except Exception as e:
        if "stock" in str(e):  # FRAGILE - message might change
            show_out_of_stock()

Example - RIGHT way:
    try:
        service.dispense_for_product("42", 2)
    except InsufficientStockError as e:
        show_out_of_stock(available=e.available)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from DispenseKernelError:

    DispenseKernelError (base)
    |
    +-- RequestError
    |   +-- InvalidDispenseRequestError
    |
    +-- AllocationError
    |   +-- InsufficientStockError
    |   +-- AllocationConflictError
    |   +-- InvalidAllocationPlanError
    |   +-- SlotNotFoundError
    |   +-- NegativeStockError
    |
    +-- DeviceError
    |   +-- DeviceNotReadyError
    |   |   +-- DeviceConnectionError
    |   +-- MotorAckTimeoutError
    |   +-- SensorConfirmTimeoutError   (ambiguous)
    |   +-- ProtocolDesyncError
    |   +-- DeviceFaultError
    |
    +-- SequencingError
    |   +-- RetriesExhaustedError
    |
    +-- ConcurrencyError
        +-- DispenserBusyError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|--------------------------------------
Request      | INVALID_DISPENSE_REQUEST   | Quantity <= 0, empty product id
-------------|----------------------------|--------------------------------------
Allocation   | INSUFFICIENT_STOCK         | Total stock < requested (no HW touched)
             | ALLOCATION_CONFLICT        | Version check lost to a concurrent tx
             | INVALID_ALLOCATION_PLAN    | Plan totals != requested quantity
             | SLOT_NOT_FOUND             | Slot id not mapped on this machine
             | NEGATIVE_STOCK             | Decrement would drop below zero
-------------|----------------------------|--------------------------------------
Device       | DEVICE_NOT_READY           | No motor-ready token / not connected
             | DEVICE_CONNECTION_FAILED   | Serial port could not be opened
             | MOTOR_ACK_TIMEOUT          | Motor command never accepted
             | SENSOR_CONFIRM_TIMEOUT     | Motor accepted, drop never confirmed
             | PROTOCOL_DESYNC            | Out-of-order / unknown token
             | DEVICE_FAULT               | Firmware answered with ERROR
-------------|----------------------------|--------------------------------------
Sequencing   | RETRIES_EXHAUSTED          | Unit failed on every allowed attempt
-------------|----------------------------|--------------------------------------
Concurrency  | DISPENSER_BUSY             | Hardware token not acquired in time

===============================================================================
HANDLING PATTERNS
===============================================================================

1. FATAL BEFORE HARDWARE: InsufficientStockError and DeviceNotReadyError are
   raised by ``DispenseService.dispense_for_product`` before any motor
   command is written.  Nothing was decremented, nothing was moved.

2. PER-UNIT HARDWARE ERRORS ARE NOT RAISED to the purchase flow.  They are
   retried by the sequencer and, when retries run out, recorded on the
   ``DispenseOutcome`` as a ``SlotFailure`` built from RetriesExhaustedError.

3. AMBIGUOUS SUCCESS: SensorConfirmTimeoutError.ambiguous is True, and so is
   any other DeviceError raised after the motor accepted its command
   (including a lost link).  The hardware may have released a unit.  Never
   treat it as delivered.
"""

from __future__ import annotations


class DispenseKernelError(Exception):
    """
    Base exception for all dispense kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "DISPENSE_KERNEL_ERROR"


# Request-related exceptions


class RequestError(DispenseKernelError):
    """Base exception for malformed dispense requests."""

    code: str = "REQUEST_ERROR"


class InvalidDispenseRequestError(RequestError):
    """Request fields are out of range (e.g. non-positive quantity)."""

    code: str = "INVALID_DISPENSE_REQUEST"

    def __init__(self, product_id: str, requested_quantity: int, reason: str):
        self.product_id = product_id
        self.requested_quantity = requested_quantity
        self.reason = reason
        super().__init__(
            f"Invalid dispense request for product {product_id!r} "
            f"(quantity={requested_quantity}): {reason}"
        )


# Allocation-related exceptions


class AllocationError(DispenseKernelError):
    """Base exception for slot allocation errors."""

    code: str = "ALLOCATION_ERROR"


class InsufficientStockError(AllocationError):
    """
    Total stock across the product's slots is below the requested quantity.

    Raised before the ledger is touched and before any hardware command.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested_quantity: int, available: int):
        self.product_id = product_id
        self.requested_quantity = requested_quantity
        self.available = available
        self.confirmed_quantity = 0
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested_quantity}, available {available}"
        )


class AllocationConflictError(AllocationError):
    """
    A concurrent transaction modified a slot between read and decrement.

    Callers retry with a fresh allocation up to a small bound.
    """

    code: str = "ALLOCATION_CONFLICT"

    def __init__(
        self,
        product_id: str | None,
        slot_id: str | None = None,
        attempts: int = 1,
    ):
        self.product_id = product_id
        self.slot_id = slot_id
        self.attempts = attempts
        super().__init__(
            f"Allocation conflict on slot {slot_id or '?'} for product "
            f"{product_id}: ledger was modified by another transaction "
            f"(attempts={attempts})"
        )


class InvalidAllocationPlanError(AllocationError):
    """
    Plan totals do not match the requested quantity.

    No plan reaches the hardware unless its totals validate.
    """

    code: str = "INVALID_ALLOCATION_PLAN"

    def __init__(self, product_id: str, requested_quantity: int, planned_quantity: int):
        self.product_id = product_id
        self.requested_quantity = requested_quantity
        self.planned_quantity = planned_quantity
        super().__init__(
            f"Allocation plan for product {product_id} totals {planned_quantity}, "
            f"expected {requested_quantity}"
        )


class SlotNotFoundError(AllocationError):
    """Slot id is not mapped on this machine."""

    code: str = "SLOT_NOT_FOUND"

    def __init__(self, slot_id: str, machine_code: str):
        self.slot_id = slot_id
        self.machine_code = machine_code
        super().__init__(f"Slot {slot_id} not found on machine {machine_code}")


class NegativeStockError(AllocationError):
    """A decrement would take a slot below zero."""

    code: str = "NEGATIVE_STOCK"

    def __init__(self, slot_id: str, available: int, requested_quantity: int):
        self.slot_id = slot_id
        self.available = available
        self.requested_quantity = requested_quantity
        super().__init__(
            f"Slot {slot_id} has {available} units, cannot take {requested_quantity}"
        )


# Device-related exceptions


class DeviceError(DispenseKernelError):
    """
    Base exception for hardware protocol failures during a unit cycle.

    ``retryable`` tells the sequencer whether another attempt of the same
    unit is allowed.  ``state`` is the protocol state the cycle failed in.
    """

    code: str = "DEVICE_ERROR"
    retryable: bool = True
    ambiguous: bool = False

    def __init__(self, slot_id: str | None, state: str | None, message: str):
        self.slot_id = slot_id
        self.state = state
        super().__init__(message)


class DeviceNotReadyError(DeviceError):
    """
    Controller is unreachable or never reported the motor subsystem ready.

    Raised with ``motor_acknowledged=True`` when the link is lost after the
    motor accepted its command: the unit may have dropped, so the error is
    ambiguous as well as fatal to the request.
    """

    code: str = "DEVICE_NOT_READY"
    retryable: bool = False

    def __init__(
        self,
        slot_id: str | None,
        state: str | None,
        reason: str,
        motor_acknowledged: bool = False,
    ):
        self.reason = reason
        self.ambiguous = motor_acknowledged
        super().__init__(slot_id, state, f"Device not ready: {reason}")


class DeviceConnectionError(DeviceNotReadyError):
    """Serial port could not be opened on any candidate path."""

    code: str = "DEVICE_CONNECTION_FAILED"

    def __init__(self, attempted_ports: list[str], reason: str):
        self.attempted_ports = list(attempted_ports)
        super().__init__(
            None,
            None,
            f"could not open serial port (tried {', '.join(attempted_ports) or 'none'}): {reason}",
        )


class MotorAckTimeoutError(DeviceError):
    """Motor command was sent but never accepted."""

    code: str = "MOTOR_ACK_TIMEOUT"

    def __init__(self, slot_id: str, state: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            slot_id,
            state,
            f"Motor command for slot {slot_id} not accepted within {timeout}s",
        )


class SensorConfirmTimeoutError(DeviceError):
    """
    Motor accepted the command but the drop sensor never confirmed.

    Ambiguous success: the hardware may have released a unit.  The attempt
    is tagged AckOnlyUnconfirmed and is never counted as delivered.
    """

    code: str = "SENSOR_CONFIRM_TIMEOUT"
    ambiguous: bool = True

    def __init__(
        self,
        slot_id: str,
        state: str,
        timeout: float,
        sensor_reported_failure: bool = False,
    ):
        self.timeout = timeout
        self.sensor_reported_failure = sensor_reported_failure
        detail = (
            "sensor reported no drop"
            if sensor_reported_failure
            else f"no sensor confirmation within {timeout}s"
        )
        super().__init__(slot_id, state, f"Slot {slot_id}: motor acknowledged, {detail}")


class ProtocolDesyncError(DeviceError):
    """Out-of-order, unrecognized, or missing protocol token."""

    code: str = "PROTOCOL_DESYNC"

    def __init__(
        self,
        slot_id: str | None,
        state: str | None,
        expected: str,
        received: str | None,
        motor_acknowledged: bool = False,
    ):
        self.expected = expected
        self.received = received
        # Once the motor accepted the command a unit may have dropped
        self.ambiguous = motor_acknowledged
        super().__init__(
            slot_id,
            state,
            f"Protocol desync in state {state}: expected {expected}, "
            f"received {received!r}",
        )


class DeviceFaultError(DeviceError):
    """Firmware answered with an ERROR line."""

    code: str = "DEVICE_FAULT"

    def __init__(
        self,
        slot_id: str | None,
        state: str | None,
        detail: str,
        motor_acknowledged: bool = False,
    ):
        self.detail = detail
        self.ambiguous = motor_acknowledged
        super().__init__(slot_id, state, f"Firmware fault in state {state}: {detail}")


# Sequencing-related exceptions


class SequencingError(DispenseKernelError):
    """Base exception for dispense sequencing errors."""

    code: str = "SEQUENCING_ERROR"


class RetriesExhaustedError(SequencingError):
    """
    A unit failed on every attempt the retry policy allowed.

    The sequencer stops the slot and records this error on the outcome.
    """

    code: str = "RETRIES_EXHAUSTED"

    def __init__(
        self,
        slot_id: str,
        unit_index: int,
        attempts: int,
        requested_quantity: int,
        confirmed_quantity: int,
        last_error: DeviceError,
    ):
        self.slot_id = slot_id
        self.unit_index = unit_index
        self.attempts = attempts
        self.requested_quantity = requested_quantity
        self.confirmed_quantity = confirmed_quantity
        self.last_error_code = last_error.code
        self.ambiguous = last_error.ambiguous
        super().__init__(
            f"Slot {slot_id} unit {unit_index} failed after {attempts} attempt(s) "
            f"({last_error.code}); confirmed {confirmed_quantity}/{requested_quantity}"
        )


# Concurrency-related exceptions


class ConcurrencyError(DispenseKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class DispenserBusyError(ConcurrencyError):
    """The hardware token could not be acquired within the gate timeout."""

    code: str = "DISPENSER_BUSY"

    def __init__(self, product_id: str, timeout: float):
        self.product_id = product_id
        self.timeout = timeout
        super().__init__(
            f"Dispenser busy: could not acquire hardware within {timeout}s "
            f"for product {product_id}"
        )
