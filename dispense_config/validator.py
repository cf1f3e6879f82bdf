"""
Configuration Validator (``dispense_config.validator``).

Responsibility
--------------
Checks a parsed ``KioskConfig`` before anything is built from it.  All
problems are collected so an operator sees every mistake at once.

Invariants enforced
-------------------
* Every protocol timeout is present and > 0.
* Device mode is ``serial`` or ``simulated``; serial mode names a port.
* Retry bounds are sane; the ambiguous stock policy is ``hold`` or
  ``restore``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields

from dispense_config.schema import KioskConfig

DEVICE_MODES = frozenset({"serial", "simulated"})
AMBIGUOUS_POLICIES = frozenset({"hold", "restore"})
TERMINATORS = frozenset({"\n", "\r\n", "\r"})


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` is True only when ``errors`` is empty.  Warnings do not
    block startup.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_configuration(config: KioskConfig) -> ConfigValidationResult:
    result = ConfigValidationResult()
    errors = result.errors

    device = config.device
    if device.mode not in DEVICE_MODES:
        errors.append(f"device.mode must be one of {sorted(DEVICE_MODES)}, got {device.mode!r}")
    if device.mode == "serial" and not device.port:
        errors.append("device.port is required in serial mode")
    if device.baud_rate <= 0:
        errors.append(f"device.baud_rate must be > 0, got {device.baud_rate}")
    if not device.init_command:
        errors.append("device.init_command must not be empty")
    if len(device.direction) != 1:
        errors.append(f"device.direction must be a single character, got {device.direction!r}")
    if device.terminator not in TERMINATORS:
        errors.append(f"device.terminator must be one of LF, CRLF, CR, got {device.terminator!r}")

    for f in fields(config.timeouts):
        value = getattr(config.timeouts, f.name)
        if value is None:
            errors.append(f"timeouts.{f.name} is missing")
        elif value <= 0:
            errors.append(f"timeouts.{f.name} must be > 0, got {value}")

    retry = config.retry
    if retry.unit_max_attempts < 1:
        errors.append(f"retry.unit_max_attempts must be >= 1, got {retry.unit_max_attempts}")
    if retry.backoff_seconds < 0:
        errors.append(f"retry.backoff_seconds must be >= 0, got {retry.backoff_seconds}")
    if retry.backoff_multiplier < 1:
        errors.append(f"retry.backoff_multiplier must be >= 1, got {retry.backoff_multiplier}")
    if retry.allocation_conflict_retries < 1:
        errors.append(
            "retry.allocation_conflict_retries must be >= 1, "
            f"got {retry.allocation_conflict_retries}"
        )

    sequencer = config.sequencer
    if sequencer.fallback_max_shortfall < 0:
        errors.append(
            f"sequencer.fallback_max_shortfall must be >= 0, got {sequencer.fallback_max_shortfall}"
        )
    if sequencer.ambiguous_stock_policy not in AMBIGUOUS_POLICIES:
        errors.append(
            f"sequencer.ambiguous_stock_policy must be one of {sorted(AMBIGUOUS_POLICIES)}, "
            f"got {sequencer.ambiguous_stock_policy!r}"
        )
    if retry.retry_ambiguous and sequencer.ambiguous_stock_policy == "restore":
        result.warnings.append(
            "retry.retry_ambiguous with ambiguous_stock_policy=restore can release "
            "units that are never charged to a request"
        )

    if not config.ledger.machine_code:
        errors.append("ledger.machine_code must not be empty")
    if not config.ledger.database_url:
        errors.append("ledger.database_url must not be empty")

    if config.gate_timeout <= 0:
        errors.append(f"gate_timeout must be > 0, got {config.gate_timeout}")

    return result
