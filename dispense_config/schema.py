"""
Configuration Schema (``dispense_config.schema``).

Frozen dataclasses for one kiosk configuration set.  Pure data: no I/O
and no validation beyond types (see ``validator.py``).
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DeviceConfig:
    """Which controller to build and how to talk to it."""

    mode: str = "simulated"
    port: str = "COM5"
    fallback_ports: tuple[str, ...] = ()
    baud_rate: int = 9600
    init_command: str = "I42S"
    direction: str = "F"
    terminator: str = "\n"
    init_each_unit: bool = False


@dataclass(frozen=True)
class TimeoutsConfig:
    """Per-stage protocol timeouts in seconds.  None means missing."""

    open: float | None = None
    motor_ready: float | None = None
    motor_ack: float | None = None
    sensor_confirm: float | None = None
    cycle_complete: float | None = None
    settle: float | None = None


@dataclass(frozen=True)
class RetryConfig:
    unit_max_attempts: int = 2
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 1.0
    retry_ambiguous: bool = True
    allocation_conflict_retries: int = 3


@dataclass(frozen=True)
class SequencerConfig:
    fallback_enabled: bool = True
    fallback_max_shortfall: int = 2
    # hold | restore
    ambiguous_stock_policy: str = "hold"
    # Use the product's primary slot when the caller gives no preference
    prefer_primary_slot: bool = True


@dataclass(frozen=True)
class LedgerConfig:
    database_url: str = "sqlite:///kiosk.db"
    machine_code: str = "001"
    echo: bool = False


@dataclass(frozen=True)
class KioskConfig:
    """
    One complete configuration set.

    ``checksum`` identifies the source YAML it was parsed from.
    """

    config_id: str
    version: int
    device: DeviceConfig
    timeouts: TimeoutsConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    sequencer: SequencerConfig = field(default_factory=SequencerConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    gate_timeout: float = 30.0
    checksum: str = ""
