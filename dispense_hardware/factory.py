"""Builds the configured DeviceController (serial or simulated)."""

from __future__ import annotations

from dispense_config.schema import DeviceConfig, TimeoutsConfig
from dispense_hardware.controller import DeviceController, DeviceTimeouts, TransitionCallback
from dispense_hardware.serial_controller import SerialDeviceController
from dispense_hardware.simulated import SimulatedDeviceController


def build_timeouts(config: TimeoutsConfig) -> DeviceTimeouts:
    """Raises ValueError if any stage timeout is missing or not positive."""
    return DeviceTimeouts(
        open=config.open,
        motor_ready=config.motor_ready,
        motor_ack=config.motor_ack,
        sensor_confirm=config.sensor_confirm,
        cycle_complete=config.cycle_complete,
        settle=config.settle,
    )


def build_device_controller(
    device: DeviceConfig,
    timeouts: TimeoutsConfig,
    on_transition: TransitionCallback | None = None,
) -> DeviceController:
    device_timeouts = build_timeouts(timeouts)
    if device.mode == "serial":
        return SerialDeviceController(
            device.port,
            device.fallback_ports,
            baud_rate=device.baud_rate,
            timeouts=device_timeouts,
            init_command=device.init_command,
            direction=device.direction,
            terminator=device.terminator,
            init_each_unit=device.init_each_unit,
            on_transition=on_transition,
        )
    if device.mode == "simulated":
        return SimulatedDeviceController(
            device_timeouts,
            init_command=device.init_command,
            direction=device.direction,
            init_each_unit=device.init_each_unit,
            on_transition=on_transition,
        )
    raise ValueError(f"Unknown device mode: {device.mode!r}")
