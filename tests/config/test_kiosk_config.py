"""
Tests for kiosk configuration loading, validation and wiring.

Verifies:
- The shipped configuration set loads and validates
- get_active_config emits a KIOSK_CONFIG_TRACE entry
- Missing or non-positive timeouts are rejected, never defaulted
- DispenseService.from_config builds a working stack
"""

from dataclasses import replace
from pathlib import Path

import pytest
import yaml

from dispense_config import (
    compute_checksum,
    get_active_config,
    load_kiosk_config,
    parse_kiosk_config,
    validate_configuration,
)
from dispense_config.loader import load_yaml_file
from dispense_config.schema import DeviceConfig, TimeoutsConfig
from dispense_hardware.controller import DeviceTimeouts
from dispense_hardware.factory import build_device_controller, build_timeouts
from dispense_hardware.serial_controller import SerialDeviceController
from dispense_hardware.simulated import SimulatedDeviceController
from dispense_services.dispense_service import DispenseService

DEFAULT_SET = Path(__file__).resolve().parents[2] / "dispense_config" / "sets" / "kiosk.yaml"


@pytest.fixture
def raw_config() -> dict:
    return load_yaml_file(DEFAULT_SET)


def _write(tmp_path, data: dict) -> Path:
    path = tmp_path / "kiosk.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultSet:
    def test_loads(self):
        config = get_active_config()

        assert config.config_id == "KIOSK-DEFAULT"
        assert config.device.mode == "simulated"
        assert config.device.port == "COM5"
        assert config.device.fallback_ports == ("COM3", "COM4", "COM9", "COM7", "COM8")
        assert config.device.baud_rate == 9600
        assert config.device.init_command == "I42S"
        assert config.timeouts.sensor_confirm == 10.0
        assert config.retry.retry_ambiguous is True
        assert config.sequencer.ambiguous_stock_policy == "hold"
        assert config.ledger.machine_code == "001"

    def test_trace_logged(self, captured_logs):
        config = get_active_config()

        traces = [r for r in captured_logs() if r["message"] == "KIOSK_CONFIG_TRACE"]
        assert len(traces) == 1
        assert traces[0]["trace_type"] == "KIOSK_CONFIG_TRACE"
        assert traces[0]["config_set_id"] == "KIOSK-DEFAULT"
        assert traces[0]["checksum"] == config.checksum
        assert traces[0]["device_mode"] == "simulated"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")


class TestValidation:
    def test_missing_timeout_rejected(self, tmp_path, raw_config):
        del raw_config["timeouts"]["motor_ack"]

        with pytest.raises(ValueError, match="timeouts.motor_ack is missing"):
            get_active_config(_write(tmp_path, raw_config))

    def test_zero_timeout_rejected(self, tmp_path, raw_config):
        raw_config["timeouts"]["sensor_confirm"] = 0

        with pytest.raises(ValueError, match="timeouts.sensor_confirm must be > 0"):
            get_active_config(_write(tmp_path, raw_config))

    def test_unknown_mode_rejected(self, raw_config):
        raw_config["device"]["mode"] = "bluetooth"
        result = validate_configuration(parse_kiosk_config(raw_config))
        assert not result.is_valid
        assert any("device.mode" in e for e in result.errors)

    def test_serial_requires_port(self, raw_config):
        raw_config["device"].update(mode="serial", port="")
        result = validate_configuration(parse_kiosk_config(raw_config))
        assert "device.port is required in serial mode" in result.errors

    def test_bad_policy_and_bounds(self, raw_config):
        raw_config["sequencer"]["ambiguous_stock_policy"] = "bill"
        raw_config["retry"]["unit_max_attempts"] = 0
        raw_config["gate_timeout"] = 0
        result = validate_configuration(parse_kiosk_config(raw_config))
        assert len(result.errors) == 3

    def test_restore_with_ambiguous_retry_warns(self, raw_config):
        raw_config["sequencer"]["ambiguous_stock_policy"] = "restore"
        result = validate_configuration(parse_kiosk_config(raw_config))
        assert result.is_valid
        assert len(result.warnings) == 1

    def test_missing_device_section(self, raw_config):
        del raw_config["device"]
        with pytest.raises(KeyError):
            parse_kiosk_config(raw_config)


class TestChecksum:
    def test_deterministic(self, raw_config):
        assert compute_checksum(raw_config) == compute_checksum(dict(reversed(raw_config.items())))

    def test_changes_with_content(self, tmp_path, raw_config):
        before = load_kiosk_config(DEFAULT_SET).checksum
        raw_config["retry"]["unit_max_attempts"] = 3
        assert load_kiosk_config(_write(tmp_path, raw_config)).checksum != before


class TestFactory:
    def test_build_timeouts(self):
        timeouts = build_timeouts(TimeoutsConfig(1, 2, 3, 4, 5, 6))
        assert timeouts == DeviceTimeouts(1, 2, 3, 4, 5, 6)

    def test_build_timeouts_rejects_missing(self):
        with pytest.raises(ValueError):
            build_timeouts(TimeoutsConfig(1, 2, None, 4, 5, 6))

    def test_simulated_mode(self):
        config = get_active_config()
        device = build_device_controller(config.device, config.timeouts)
        assert isinstance(device, SimulatedDeviceController)

    def test_serial_mode_does_not_open_port(self):
        config = get_active_config()
        device = build_device_controller(
            replace(config.device, mode="serial", port="COM5"), config.timeouts
        )
        assert isinstance(device, SerialDeviceController)
        assert device.channel.candidate_ports[0] == "COM5"
        assert device.is_connected is False

    def test_unknown_mode(self):
        config = get_active_config()
        with pytest.raises(ValueError):
            build_device_controller(DeviceConfig(mode="carrier-pigeon"), config.timeouts)


def test_service_from_config(seed_slots, session_factory, deterministic_clock, stock):
    seed_slots({"P-COLA": [("11", 3)]})
    service = DispenseService.from_config(get_active_config(), session_factory, deterministic_clock)

    outcome = service.dispense_for_product("P-COLA", 2)

    assert outcome.overall_success is True
    assert service.machine_code == "001"
    assert service.status()["device"]["mode"] == "simulated"
    assert stock("11") == 1
    service.close()
