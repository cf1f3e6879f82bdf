"""
DeviceController -- one physical unit cycle per call.

Responsibility:
    Drives the dispenser firmware through exactly one full protocol cycle
    for one slot:

        Idle -> Initializing -> AwaitingMotorReady -> MotorCommandSent
             -> AwaitingMotorAck -> AwaitingSensorConfirm -> Completed | Failed

    ``dispense_unit(slot_id)`` has no quantity parameter.  N units means N
    calls, each a full traversal to Completed.

Architecture position:
    Hardware layer.  Imports kernel exceptions and logging only.  The
    channel (serial port or in-memory firmware) is an owned resource handed
    in at construction, never a module global.

Invariants enforced:
    - A cycle returns normally only after MMOK, SNOK and STPOK were all
      observed, in that order, for that cycle.
    - Every wait has a timeout; DeviceTimeouts rejects missing or
      non-positive values.
    - After any failed cycle the input buffer is discarded and the session
      is marked uninitialized, so the next cycle re-sends the init command.

Failure modes:
    - DeviceNotReadyError: not connected, no MTROK after init, or the link
      failed mid-cycle (ambiguous once MMOK was seen).
    - MotorAckTimeoutError: no MMOK after the motor command.
    - SensorConfirmTimeoutError (ambiguous): MMOK seen, then no SNOK.
    - ProtocolDesyncError: unexpected/unknown token, or no STPOK.
    - DeviceFaultError: firmware ERROR line.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Callable

from dispense_hardware.protocol import (
    DEFAULT_DIRECTION,
    DEFAULT_INIT_COMMAND,
    LineKind,
    Token,
    motor_command,
    parse_line,
)
from dispense_kernel.exceptions import (
    DeviceError,
    DeviceFaultError,
    DeviceNotReadyError,
    MotorAckTimeoutError,
    ProtocolDesyncError,
    SensorConfirmTimeoutError,
)
from dispense_kernel.logging_config import get_logger

logger = get_logger("hardware.controller")


class DeviceState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    AWAITING_MOTOR_READY = "awaiting_motor_ready"
    MOTOR_COMMAND_SENT = "motor_command_sent"
    AWAITING_MOTOR_ACK = "awaiting_motor_ack"
    AWAITING_SENSOR_CONFIRM = "awaiting_sensor_confirm"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceTimeouts:
    """Per-stage timeouts in seconds.  All mandatory, all > 0."""

    open: float = 5.0
    motor_ready: float = 5.0
    motor_ack: float = 3.0
    sensor_confirm: float = 10.0
    cycle_complete: float = 5.0
    # Window for draining STPOK after an unconfirmed drop
    settle: float = 2.0

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None or value <= 0:
                raise ValueError(f"Timeout '{f.name}' must be > 0, got {value!r}")


@dataclass(frozen=True)
class UnitCycleResult:
    """A completed cycle and the states it went through."""

    slot_id: str
    cycle_number: int
    path: tuple[DeviceState, ...]
    init_sent: bool


TransitionCallback = Callable[[str, DeviceState, DeviceState], None]


class LineChannel(ABC):
    """A bidirectional line-oriented link to the firmware."""

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def write_line(self, command: str) -> None: ...

    @abstractmethod
    def read_line(self, timeout: float) -> str | None:
        """Next response line, or None if nothing arrived within ``timeout``."""

    @abstractmethod
    def reset_input(self) -> None: ...

    def describe(self) -> dict[str, Any]:
        return {}


class DeviceController(ABC):
    """
    Capability interface the sequencer depends on.

    Contract:
        ``dispense_unit`` either returns after a confirmed drop or raises a
        DeviceError subclass.  Implementations are selected by
        configuration (see ``dispense_hardware.factory``).
    """

    mode: str = "abstract"

    @abstractmethod
    def connect(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def dispense_unit(self, slot_id: str) -> UnitCycleResult: ...

    @abstractmethod
    def status(self) -> dict[str, Any]: ...

    def ensure_connected(self) -> None:
        if not self.is_connected:
            self.connect()


class ProtocolDeviceController(DeviceController):
    """
    The protocol state machine over any LineChannel.

    Guarantees:
        - One call, one motor command, one cycle.
        - Calls are serialized by an internal lock.
        - ``on_transition(slot_id, from_state, to_state)`` fires on every
          state change, and ``last_path`` keeps the last cycle's traversal.
    """

    def __init__(
        self,
        channel: LineChannel,
        timeouts: DeviceTimeouts | None = None,
        *,
        init_command: str = DEFAULT_INIT_COMMAND,
        direction: str = DEFAULT_DIRECTION,
        init_each_unit: bool = False,
        on_transition: TransitionCallback | None = None,
    ):
        self._channel = channel
        self._timeouts = timeouts or DeviceTimeouts()
        self._init_command = init_command
        self._direction = direction
        self._init_each_unit = init_each_unit
        self._on_transition = on_transition
        self._lock = threading.Lock()

        self.state = DeviceState.IDLE
        self.session_initialized = False
        self.cycles_completed = 0
        self.motor_commands_sent = 0
        self.last_error: str | None = None
        self.last_path: tuple[DeviceState, ...] = ()
        self._path: list[DeviceState] = []
        self._slot_id: str | None = None
        self._motor_acknowledged = False

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._channel.is_open

    def connect(self) -> None:
        with self._lock:
            if self._channel.is_open:
                return
            self._channel.open()
            self._channel.reset_input()
            self.session_initialized = False
            logger.info("device_connected", extra={"mode": self.mode, **self._channel.describe()})

    def close(self) -> None:
        with self._lock:
            self._channel.close()
            self.session_initialized = False
            logger.info("device_closed", extra={"mode": self.mode})

    def status(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "connected": self.is_connected,
            "state": self.state.value,
            "session_initialized": self.session_initialized,
            "cycles_completed": self.cycles_completed,
            "motor_commands_sent": self.motor_commands_sent,
            "last_error": self.last_error,
            **self._channel.describe(),
        }

    # ------------------------------------------------------------------
    # Unit cycle
    # ------------------------------------------------------------------

    def dispense_unit(self, slot_id: str) -> UnitCycleResult:
        with self._lock:
            if not self._channel.is_open:
                raise DeviceNotReadyError(slot_id, self.state.value, "device not connected")

            self._slot_id = slot_id
            self._path = [DeviceState.IDLE]
            self._motor_acknowledged = False
            try:
                init_sent = self._run_cycle(slot_id)
            except (DeviceError, OSError, ValueError) as raw:
                exc = self._classify_failure(slot_id, raw)
                self._transition(DeviceState.FAILED)
                self._resync()
                self.last_error = exc.code
                logger.warning(
                    "unit_cycle_failed",
                    extra={
                        "slot_id": slot_id,
                        "error_code": exc.code,
                        "failed_in": exc.state,
                        "ambiguous": exc.ambiguous,
                        "path": [s.value for s in self._path],
                    },
                )
                if exc is raw:
                    raise
                raise exc from raw
            finally:
                self.last_path = tuple(self._path)
                self.state = DeviceState.IDLE

            self.cycles_completed += 1
            self.last_error = None
            logger.info(
                "unit_cycle_completed",
                extra={"slot_id": slot_id, "cycle_number": self.cycles_completed},
            )
            return UnitCycleResult(
                slot_id=slot_id,
                cycle_number=self.cycles_completed,
                path=self.last_path,
                init_sent=init_sent,
            )

    def _run_cycle(self, slot_id: str) -> bool:
        t = self._timeouts
        init_sent = False

        self._transition(DeviceState.INITIALIZING)
        if self._init_each_unit or not self.session_initialized:
            self._channel.write_line(self._init_command)
            init_sent = True

        self._transition(DeviceState.AWAITING_MOTOR_READY)
        if init_sent:
            try:
                token = self._await({Token.MOTOR_READY}, t.motor_ready)
            except DeviceFaultError as exc:
                raise DeviceNotReadyError(slot_id, self.state.value, exc.detail) from exc
            if token is None:
                raise DeviceNotReadyError(
                    slot_id,
                    self.state.value,
                    f"no {Token.MOTOR_READY.value} within {t.motor_ready}s",
                )
            self.session_initialized = True

        self._channel.write_line(motor_command(slot_id, self._direction))
        self.motor_commands_sent += 1
        self._transition(DeviceState.MOTOR_COMMAND_SENT)

        self._transition(DeviceState.AWAITING_MOTOR_ACK)
        if self._await({Token.MOTOR_ACCEPTED}, t.motor_ack) is None:
            raise MotorAckTimeoutError(slot_id, self.state.value, t.motor_ack)
        self._motor_acknowledged = True

        self._transition(DeviceState.AWAITING_SENSOR_CONFIRM)
        token = self._await(
            {Token.SENSOR_CONFIRMED, Token.SENSOR_FAILED, Token.CYCLE_COMPLETE},
            t.sensor_confirm,
            motor_acknowledged=True,
        )
        if token != Token.SENSOR_CONFIRMED:
            if token != Token.CYCLE_COMPLETE:
                self._drain_until_stop()
            raise SensorConfirmTimeoutError(
                slot_id,
                DeviceState.AWAITING_SENSOR_CONFIRM.value,
                t.sensor_confirm,
                sensor_reported_failure=token == Token.SENSOR_FAILED,
            )

        if self._await({Token.CYCLE_COMPLETE}, t.cycle_complete, motor_acknowledged=True) is None:
            raise ProtocolDesyncError(
                slot_id,
                self.state.value,
                Token.CYCLE_COMPLETE.value,
                None,
                motor_acknowledged=True,
            )

        self._transition(DeviceState.COMPLETED)
        return init_sent

    def _classify_failure(self, slot_id: str, raw: Exception) -> DeviceError:
        """
        Map whatever ended the cycle onto a DeviceError.

        Once MMOK was seen every failure is ambiguous: a lost link or a
        transport error there says nothing about whether the unit dropped.
        """
        if isinstance(raw, DeviceError):
            if raw.ambiguous or not self._motor_acknowledged:
                return raw
            reason = raw.reason if isinstance(raw, DeviceNotReadyError) else str(raw)
        else:
            reason = f"{type(raw).__name__}: {raw}"
        return DeviceNotReadyError(
            slot_id,
            self.state.value,
            reason,
            motor_acknowledged=self._motor_acknowledged,
        )

    def _await(
        self,
        expected: set[Token],
        timeout: float,
        motor_acknowledged: bool = False,
    ) -> Token | None:
        """
        Read lines until one of ``expected`` arrives.  Returns None on timeout.

        Informational tokens and blank lines are skipped.  Anything else
        ends the cycle.
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            raw = self._channel.read_line(remaining)
            if raw is None:
                return None

            parsed = parse_line(raw)
            if parsed.kind == LineKind.EMPTY:
                continue
            if parsed.kind == LineKind.FAULT:
                raise DeviceFaultError(
                    self._slot_id, self.state.value, parsed.raw, motor_acknowledged
                )
            if parsed.token in expected:
                return parsed.token
            if parsed.is_informational:
                logger.debug("device_info_token", extra={"token": parsed.raw})
                continue
            raise ProtocolDesyncError(
                self._slot_id,
                self.state.value,
                "|".join(sorted(t.value for t in expected)),
                parsed.raw,
                motor_acknowledged=motor_acknowledged,
            )

    def _drain_until_stop(self) -> None:
        deadline = time.monotonic() + self._timeouts.settle
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            raw = self._channel.read_line(remaining)
            if raw is None or parse_line(raw).token == Token.CYCLE_COMPLETE:
                return

    def _resync(self) -> None:
        self.session_initialized = False
        if self._channel.is_open:
            self._channel.reset_input()

    def _transition(self, new_state: DeviceState) -> None:
        old_state = self.state
        self.state = new_state
        self._path.append(new_state)
        logger.debug(
            "device_state_transition",
            extra={"from_state": old_state.value, "to_state": new_state.value},
        )
        if self._on_transition is not None:
            self._on_transition(self._slot_id or "", old_state, new_state)
