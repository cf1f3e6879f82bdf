"""
Dispenser hardware: wire protocol, unit-cycle state machine, and the
serial and simulated controllers.
"""

from dispense_hardware.controller import (
    DeviceController,
    DeviceState,
    DeviceTimeouts,
    LineChannel,
    ProtocolDeviceController,
    UnitCycleResult,
)
from dispense_hardware.factory import build_device_controller, build_timeouts
from dispense_hardware.serial_controller import (
    SerialDeviceController,
    SerialLineChannel,
    list_serial_ports,
)
from dispense_hardware.simulated import Fault, SimulatedDeviceController, SimulatedFirmware

__all__ = [
    "DeviceController",
    "DeviceState",
    "DeviceTimeouts",
    "Fault",
    "LineChannel",
    "ProtocolDeviceController",
    "SerialDeviceController",
    "SerialLineChannel",
    "SimulatedDeviceController",
    "SimulatedFirmware",
    "UnitCycleResult",
    "build_device_controller",
    "build_timeouts",
    "list_serial_ports",
]
