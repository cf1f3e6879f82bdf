"""
Serial transport for the dispenser firmware (pyserial).

The kiosk talks to one controller board at 9600 baud, 8N1.  The configured
port is tried first, then each fallback port in order; the first one that
opens wins.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

import serial
from serial.tools import list_ports

from dispense_hardware.controller import (
    DeviceTimeouts,
    LineChannel,
    ProtocolDeviceController,
    TransitionCallback,
)
from dispense_hardware.protocol import (
    DEFAULT_DIRECTION,
    DEFAULT_INIT_COMMAND,
    DEFAULT_TERMINATOR,
    decode_line,
    encode_command,
)
from dispense_kernel.exceptions import DeviceConnectionError, DeviceNotReadyError
from dispense_kernel.logging_config import get_logger

logger = get_logger("hardware.serial")

DEFAULT_BAUD_RATE = 9600


def list_serial_ports() -> list[dict[str, str]]:
    """Serial ports visible to the OS, for diagnostics."""
    return [
        {
            "device": port.device,
            "description": port.description or "",
            "hwid": port.hwid or "",
        }
        for port in sorted(list_ports.comports(), key=lambda p: p.device)
    ]


class SerialLineChannel(LineChannel):
    """
    Contract:
        ``read_line`` returns one CRLF-terminated line or None on timeout.
        A partial line read before a timeout is kept and completed by the
        next read.
    """

    def __init__(
        self,
        port: str,
        fallback_ports: Sequence[str] = (),
        baud_rate: int = DEFAULT_BAUD_RATE,
        open_timeout: float = 5.0,
        terminator: str = DEFAULT_TERMINATOR,
        serial_factory: Callable[..., Any] = serial.Serial,
    ):
        self.candidate_ports = list(dict.fromkeys([port, *fallback_ports]))
        self.baud_rate = baud_rate
        self.open_timeout = open_timeout
        self.terminator = terminator
        self._serial_factory = serial_factory
        self._serial: Any = None
        self._pending = b""
        self.port: str | None = None
        self.attempted_ports: list[str] = []

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> None:
        self.attempted_ports = []
        last_error = "no candidate ports configured"
        for candidate in self.candidate_ports:
            self.attempted_ports.append(candidate)
            try:
                self._serial = self._serial_factory(
                    port=candidate,
                    baudrate=self.baud_rate,
                    bytesize=serial.EIGHTBITS,
                    parity=serial.PARITY_NONE,
                    stopbits=serial.STOPBITS_ONE,
                    timeout=self.open_timeout,
                    write_timeout=self.open_timeout,
                )
            except (serial.SerialException, OSError) as exc:
                last_error = str(exc)
                logger.warning(
                    "serial_port_open_failed",
                    extra={"port": candidate, "error": last_error},
                )
                continue
            self.port = candidate
            self._pending = b""
            logger.info(
                "serial_port_opened",
                extra={"port": candidate, "baud_rate": self.baud_rate},
            )
            return

        self._serial = None
        self.port = None
        raise DeviceConnectionError(self.attempted_ports, last_error)

    def close(self) -> None:
        if self._serial is not None:
            try:
                self._serial.close()
            finally:
                self._serial = None
                self._pending = b""

    def write_line(self, command: str) -> None:
        try:
            self._serial.write(encode_command(command, self.terminator))
            self._serial.flush()
        except serial.SerialException as exc:
            raise DeviceNotReadyError(None, None, f"serial write failed: {exc}") from exc
        logger.debug("serial_command_sent", extra={"command": command})

    def read_line(self, timeout: float) -> str | None:
        try:
            self._serial.timeout = timeout
            self._pending += self._serial.read_until(b"\n")
        except serial.SerialException as exc:
            raise DeviceNotReadyError(None, None, f"serial read failed: {exc}") from exc
        if not self._pending.endswith(b"\n"):
            return None
        line, self._pending = self._pending, b""
        text = decode_line(line)
        logger.debug("serial_line_received", extra={"line": text})
        return text

    def reset_input(self) -> None:
        self._pending = b""
        if not self.is_open:
            return
        try:
            self._serial.reset_input_buffer()
        except serial.SerialException as exc:
            logger.warning("serial_reset_failed", extra={"error": str(exc)})

    def describe(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "baud_rate": self.baud_rate,
            "attempted_ports": list(self.attempted_ports),
        }


class SerialDeviceController(ProtocolDeviceController):
    """The protocol state machine bound to a physical serial port."""

    mode = "serial"

    def __init__(
        self,
        port: str,
        fallback_ports: Sequence[str] = (),
        baud_rate: int = DEFAULT_BAUD_RATE,
        timeouts: DeviceTimeouts | None = None,
        *,
        init_command: str = DEFAULT_INIT_COMMAND,
        direction: str = DEFAULT_DIRECTION,
        terminator: str = DEFAULT_TERMINATOR,
        init_each_unit: bool = False,
        on_transition: TransitionCallback | None = None,
        serial_factory: Callable[..., Any] = serial.Serial,
    ):
        timeouts = timeouts or DeviceTimeouts()
        self.channel = SerialLineChannel(
            port,
            fallback_ports,
            baud_rate=baud_rate,
            open_timeout=timeouts.open,
            terminator=terminator,
            serial_factory=serial_factory,
        )
        super().__init__(
            self.channel,
            timeouts,
            init_command=init_command,
            direction=direction,
            init_each_unit=init_each_unit,
            on_transition=on_transition,
        )
