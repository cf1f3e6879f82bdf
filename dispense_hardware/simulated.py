"""
In-memory dispenser firmware and the controller that drives it.

Used for kiosks running without hardware and throughout the test suite.
The simulated firmware answers commands the way the controller board does
and can be told to misbehave on upcoming cycles.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dispense_hardware.controller import (
    DeviceTimeouts,
    LineChannel,
    ProtocolDeviceController,
    TransitionCallback,
)
from dispense_hardware.protocol import (
    DEFAULT_DIRECTION,
    DEFAULT_INIT_COMMAND,
    Token,
)
from dispense_kernel.exceptions import DeviceConnectionError, DeviceNotReadyError
from dispense_kernel.logging_config import get_logger

logger = get_logger("hardware.simulated")


class Fault(str, Enum):
    """Misbehaviour the simulated firmware can be told to produce."""

    NO_MOTOR_READY = "no_motor_ready"
    INIT_ERROR = "init_error"
    NO_MOTOR_ACK = "no_motor_ack"
    NO_SENSOR = "no_sensor"
    SENSOR_FAILED = "sensor_failed"
    NO_CYCLE_COMPLETE = "no_cycle_complete"
    OUT_OF_ORDER = "out_of_order"
    GARBAGE = "garbage"
    MOTOR_ERROR = "motor_error"
    # Link goes down right after MMOK; the motor still turns
    LINK_LOST = "link_lost"


@dataclass
class _PendingFault:
    fault: Fault
    slot_id: str | None
    remaining: int
    # Matching cycles to let through before the fault starts
    skip: int = 0


class SimulatedFirmware(LineChannel):
    """
    Scripted stand-in for the controller board.

    Guarantees:
        - ``read_line`` never blocks: an empty output queue reads as a
          timeout.
        - ``drops`` counts units that physically left each slot, including
          drops the sensor did not report.
    """

    def __init__(self, init_command: str = DEFAULT_INIT_COMMAND):
        self.init_command = init_command
        self.commands: list[str] = []
        self.drops: dict[str, int] = {}
        self.fail_to_open = False
        self._open = False
        self._output: deque[str] = deque()
        self._faults: list[_PendingFault] = []
        self._link_lost = False

    # -- fault injection -------------------------------------------------

    def inject(
        self,
        fault: Fault,
        slot_id: str | None = None,
        times: int = 1,
        after: int = 0,
    ) -> None:
        """
        Apply ``fault`` to ``times`` cycles (optionally only for ``slot_id``),
        starting after ``after`` matching cycles went through normally.
        """
        self._faults.append(_PendingFault(Fault(fault), slot_id, times, after))

    def clear_faults(self) -> None:
        self._faults.clear()

    def emit(self, line: str) -> None:
        """Queue an unsolicited line, e.g. ONOK after a power cycle."""
        self._output.append(line)

    @property
    def motor_commands(self) -> list[str]:
        return [c for c in self.commands if c.startswith("M")]

    def _take_fault(self, slot_id: str | None, stages: set[Fault]) -> Fault | None:
        for pending in self._faults:
            if pending.fault not in stages:
                continue
            if pending.slot_id is not None and pending.slot_id != slot_id:
                continue
            if pending.skip > 0:
                pending.skip -= 1
                continue
            pending.remaining -= 1
            if pending.remaining <= 0:
                self._faults.remove(pending)
            logger.debug(
                "simulated_fault_applied",
                extra={"fault": pending.fault.value, "fault_slot_id": slot_id},
            )
            return pending.fault
        return None

    # -- LineChannel -------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if self.fail_to_open:
            raise DeviceConnectionError(["simulated"], "simulated port unavailable")
        self._open = True
        self._link_lost = False
        self._output.append(Token.POWER_ON.value)

    def close(self) -> None:
        self._open = False
        self._output.clear()

    def reset_input(self) -> None:
        self._output.clear()

    def read_line(self, timeout: float) -> str | None:
        if not self._output:
            if self._link_lost:
                self._open = False
                raise DeviceNotReadyError(None, None, "simulated link lost")
            return None
        return self._output.popleft()

    def write_line(self, command: str) -> None:
        self.commands.append(command)
        if command == self.init_command:
            self._on_init()
        elif command.startswith("M") and len(command) > 2:
            self._on_motor(command[1:-1])
        else:
            self._output.append(f"ERROR: unknown command {command}")

    def describe(self) -> dict[str, Any]:
        return {"port": "simulated", "baud_rate": None, "attempted_ports": ["simulated"]}

    # -- firmware behaviour ----------------------------------------------

    def _on_init(self) -> None:
        fault = self._take_fault(None, {Fault.NO_MOTOR_READY, Fault.INIT_ERROR})
        self._output.append(Token.INIT_RECEIVED.value)
        if fault == Fault.INIT_ERROR:
            self._output.append("ERROR: 1")
        elif fault is None:
            self._output.append(Token.MOTOR_READY.value)

    def _on_motor(self, slot_id: str) -> None:
        fault = self._take_fault(
            slot_id,
            {
                Fault.NO_MOTOR_ACK,
                Fault.NO_SENSOR,
                Fault.SENSOR_FAILED,
                Fault.NO_CYCLE_COMPLETE,
                Fault.OUT_OF_ORDER,
                Fault.GARBAGE,
                Fault.MOTOR_ERROR,
                Fault.LINK_LOST,
            },
        )
        if fault == Fault.NO_MOTOR_ACK:
            return
        if fault == Fault.MOTOR_ERROR:
            self._output.append("Error: motor jammed")
            return
        if fault == Fault.GARBAGE:
            self._output.append("#@!")
            return
        if fault == Fault.OUT_OF_ORDER:
            self._output.extend(
                [Token.SENSOR_CONFIRMED.value, Token.MOTOR_ACCEPTED.value, Token.CYCLE_COMPLETE.value]
            )
            return

        self._output.append(Token.MOTOR_ACCEPTED.value)
        # The motor turned; whatever the sensor says, a unit may have left
        self.drops[slot_id] = self.drops.get(slot_id, 0) + 1
        if fault == Fault.LINK_LOST:
            self._link_lost = True
            return
        if fault == Fault.NO_SENSOR:
            return
        if fault == Fault.SENSOR_FAILED:
            self._output.extend([Token.SENSOR_FAILED.value, Token.CYCLE_COMPLETE.value])
            return
        self._output.append(Token.SENSOR_CONFIRMED.value)
        if fault == Fault.NO_CYCLE_COMPLETE:
            return
        self._output.extend([Token.CYCLE_COMPLETE.value, Token.READY_FOR_COMMAND.value])


class SimulatedDeviceController(ProtocolDeviceController):
    """The protocol state machine bound to SimulatedFirmware."""

    mode = "simulated"

    def __init__(
        self,
        timeouts: DeviceTimeouts | None = None,
        *,
        init_command: str = DEFAULT_INIT_COMMAND,
        direction: str = DEFAULT_DIRECTION,
        init_each_unit: bool = False,
        on_transition: TransitionCallback | None = None,
        firmware: SimulatedFirmware | None = None,
    ):
        self.firmware = firmware or SimulatedFirmware(init_command)
        super().__init__(
            self.firmware,
            timeouts,
            init_command=init_command,
            direction=direction,
            init_each_unit=init_each_unit,
            on_transition=on_transition,
        )

    def inject_fault(
        self,
        fault: Fault,
        slot_id: str | None = None,
        times: int = 1,
        after: int = 0,
    ) -> None:
        self.firmware.inject(fault, slot_id, times, after)
