"""
Configuration Loader (``dispense_config.loader``).

Responsibility
--------------
Loads a kiosk YAML configuration set and parses it into the frozen
dataclasses of ``dispense_config.schema``.  Runtime code goes through
``dispense_config.get_active_config()`` instead of calling this directly.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Timeouts are never defaulted: a missing key parses as ``None`` and is
  rejected by the validator.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the source.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``config_id`` / ``version`` / ``device``  -> ``KeyError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from dispense_config.schema import (
    DeviceConfig,
    KioskConfig,
    LedgerConfig,
    RetryConfig,
    SequencerConfig,
    TimeoutsConfig,
)

TIMEOUT_KEYS = ("open", "motor_ready", "motor_ack", "sensor_confirm", "cycle_complete", "settle")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_device(data: dict[str, Any]) -> DeviceConfig:
    defaults = DeviceConfig()
    return DeviceConfig(
        mode=str(data.get("mode", defaults.mode)),
        port=str(data.get("port", defaults.port)),
        fallback_ports=tuple(str(p) for p in data.get("fallback_ports", ())),
        baud_rate=int(data.get("baud_rate", defaults.baud_rate)),
        init_command=str(data.get("init_command", defaults.init_command)),
        direction=str(data.get("direction", defaults.direction)),
        terminator=str(data.get("terminator", defaults.terminator)),
        init_each_unit=bool(data.get("init_each_unit", defaults.init_each_unit)),
    )


def parse_timeouts(data: dict[str, Any]) -> TimeoutsConfig:
    values: dict[str, float | None] = {}
    for key in TIMEOUT_KEYS:
        raw = data.get(key)
        values[key] = float(raw) if raw is not None else None
    return TimeoutsConfig(**values)


def parse_retry(data: dict[str, Any]) -> RetryConfig:
    defaults = RetryConfig()
    return RetryConfig(
        unit_max_attempts=int(data.get("unit_max_attempts", defaults.unit_max_attempts)),
        backoff_seconds=float(data.get("backoff_seconds", defaults.backoff_seconds)),
        backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
        retry_ambiguous=bool(data.get("retry_ambiguous", defaults.retry_ambiguous)),
        allocation_conflict_retries=int(
            data.get("allocation_conflict_retries", defaults.allocation_conflict_retries)
        ),
    )


def parse_sequencer(data: dict[str, Any]) -> SequencerConfig:
    defaults = SequencerConfig()
    return SequencerConfig(
        fallback_enabled=bool(data.get("fallback_enabled", defaults.fallback_enabled)),
        fallback_max_shortfall=int(
            data.get("fallback_max_shortfall", defaults.fallback_max_shortfall)
        ),
        ambiguous_stock_policy=str(
            data.get("ambiguous_stock_policy", defaults.ambiguous_stock_policy)
        ),
        prefer_primary_slot=bool(data.get("prefer_primary_slot", defaults.prefer_primary_slot)),
    )


def parse_ledger(data: dict[str, Any]) -> LedgerConfig:
    defaults = LedgerConfig()
    return LedgerConfig(
        database_url=str(data.get("database_url", defaults.database_url)),
        machine_code=str(data.get("machine_code", defaults.machine_code)),
        echo=bool(data.get("echo", defaults.echo)),
    )


def parse_kiosk_config(data: dict[str, Any]) -> KioskConfig:
    """
    Parse a whole configuration set from a dict.

    Raises:
        KeyError: if ``config_id``, ``version`` or ``device`` is missing.
    """
    return KioskConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        device=parse_device(data["device"]),
        timeouts=parse_timeouts(data.get("timeouts") or {}),
        retry=parse_retry(data.get("retry") or {}),
        sequencer=parse_sequencer(data.get("sequencer") or {}),
        ledger=parse_ledger(data.get("ledger") or {}),
        gate_timeout=float(data.get("gate_timeout", 30.0)),
        checksum=compute_checksum(data),
    )


def load_kiosk_config(path: Path) -> KioskConfig:
    return parse_kiosk_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
