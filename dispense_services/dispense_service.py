"""
DispenseService -- ``dispense_for_product``, the entry point of the
purchase flow.

Responsibility:
    Validates the request, takes the hardware token, makes sure the device
    is connected, allocates (with bounded conflict retries) and hands the
    plan to the sequencer.

Architecture position:
    Services layer -- outermost orchestration.  ``from_config`` wires the
    whole stack from a KioskConfig.

Invariants enforced:
    - At most one request is in flight against the hardware: allocation
      through completion happens while holding ``_gate``.
    - InsufficientStockError is raised before any hardware command.
    - A device that cannot be connected is reported before the ledger is
      touched.

Failure modes (raised, not returned):
    - InvalidDispenseRequestError, InsufficientStockError,
      AllocationConflictError (after retries), DeviceNotReadyError
      (pre-flight), DispenserBusyError (gate timeout).
    - Everything that happens once units start moving is reported on the
      returned DispenseOutcome instead.
"""

from __future__ import annotations

import threading
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from dispense_config.schema import KioskConfig
from dispense_hardware.controller import DeviceController
from dispense_hardware.factory import build_device_controller
from dispense_kernel.domain.aggregator import ResultAggregator
from dispense_kernel.domain.clock import Clock, SystemClock
from dispense_kernel.domain.dtos import DispenseOutcome, DispenseRequest
from dispense_kernel.domain.retry_policy import RetryPolicy
from dispense_kernel.exceptions import DispenseKernelError, DispenserBusyError
from dispense_kernel.logging_config import LogContext, get_logger
from dispense_services.dispense_sequencer import DispenseSequencer
from dispense_services.ledger_gateway import TransactionalLedgerGateway

logger = get_logger("services.dispense_service")


class DispenseService:
    """
    Contract:
        One instance per kiosk, shared by every caller thread.

    Guarantees:
        - ``dispense_for_product`` either raises one of the fatal errors
          above with the ledger unchanged, or returns an outcome whose
          ledger effects are committed.
    """

    def __init__(
        self,
        device: DeviceController,
        ledger: TransactionalLedgerGateway,
        sequencer: DispenseSequencer,
        *,
        gate_timeout: float = 30.0,
        prefer_primary_slot: bool = True,
    ):
        self._device = device
        self._ledger = ledger
        self._sequencer = sequencer
        self._gate_timeout = gate_timeout
        self._prefer_primary_slot = prefer_primary_slot
        self._gate = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: KioskConfig,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        device: DeviceController | None = None,
    ) -> DispenseService:
        clock = clock or SystemClock()
        device = device or build_device_controller(config.device, config.timeouts)
        ledger = TransactionalLedgerGateway(
            session_factory,
            clock,
            config.ledger.machine_code,
            conflict_retries=config.retry.allocation_conflict_retries,
        )
        sequencer = DispenseSequencer(
            device,
            ledger,
            RetryPolicy(
                max_attempts=config.retry.unit_max_attempts,
                backoff_seconds=config.retry.backoff_seconds,
                backoff_multiplier=config.retry.backoff_multiplier,
                retry_ambiguous=config.retry.retry_ambiguous,
            ),
            ResultAggregator(),
            clock,
            fallback_enabled=config.sequencer.fallback_enabled,
            fallback_max_shortfall=config.sequencer.fallback_max_shortfall,
            ambiguous_stock_policy=config.sequencer.ambiguous_stock_policy,
        )
        return cls(
            device,
            ledger,
            sequencer,
            gate_timeout=config.gate_timeout,
            prefer_primary_slot=config.sequencer.prefer_primary_slot,
        )

    @property
    def machine_code(self) -> str:
        return self._ledger.machine_code

    def dispense_for_product(
        self,
        product_id: str,
        requested_quantity: int,
        preferred_slot_id: str | None = None,
        cancel_token: threading.Event | None = None,
    ) -> DispenseOutcome:
        request = DispenseRequest(product_id, requested_quantity, preferred_slot_id)

        with LogContext.bind(
            request_id=request.request_id,
            product_id=product_id,
            machine_code=self.machine_code,
        ):
            if not self._gate.acquire(timeout=self._gate_timeout):
                logger.warning("dispenser_busy", extra={"gate_timeout": self._gate_timeout})
                raise DispenserBusyError(product_id, self._gate_timeout)
            try:
                return self._dispense(request, cancel_token)
            except DispenseKernelError as exc:
                logger.warning(
                    "dispense_rejected",
                    extra={"error_code": exc.code},
                    exc_info=True,
                )
                raise
            finally:
                self._gate.release()

    def _dispense(
        self,
        request: DispenseRequest,
        cancel_token: threading.Event | None,
    ) -> DispenseOutcome:
        logger.info(
            "dispense_requested",
            extra={
                "requested_quantity": request.requested_quantity,
                "preferred_slot_id": request.preferred_slot_id,
            },
        )

        self._device.ensure_connected()

        preferred = request.preferred_slot_id
        if preferred is None and self._prefer_primary_slot:
            preferred = self._ledger.primary_slot(request.product_id)

        plan = self._ledger.allocate(
            request.product_id,
            request.requested_quantity,
            preferred_slot_id=preferred,
            request_id=request.request_id,
        )
        return self._sequencer.dispense(plan, cancel_token)

    def connect(self) -> None:
        """Open the device channel now instead of on the first request."""
        self._device.ensure_connected()

    def status(self) -> dict[str, Any]:
        return {"machine_code": self.machine_code, "device": self._device.status()}

    def close(self) -> None:
        self._device.close()
