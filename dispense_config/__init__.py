"""
Kiosk configuration (``dispense_config``).

``get_active_config()`` is the only public entrypoint: no other component
reads configuration files.
"""

from __future__ import annotations

import logging
from pathlib import Path

from dispense_config.loader import compute_checksum, load_kiosk_config, parse_kiosk_config
from dispense_config.schema import (
    DeviceConfig,
    KioskConfig,
    LedgerConfig,
    RetryConfig,
    SequencerConfig,
    TimeoutsConfig,
)
from dispense_config.validator import ConfigValidationResult, validate_configuration

__all__ = [
    "ConfigValidationResult",
    "DeviceConfig",
    "KioskConfig",
    "LedgerConfig",
    "RetryConfig",
    "SequencerConfig",
    "TimeoutsConfig",
    "compute_checksum",
    "get_active_config",
    "load_kiosk_config",
    "parse_kiosk_config",
    "validate_configuration",
]

_logger = logging.getLogger("dispense_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "kiosk.yaml"


def get_active_config(config_path: Path | None = None) -> KioskConfig:
    """The ONLY public configuration entrypoint.

    Guarantees:
        - The returned config has passed validation.
        - A ``KIOSK_CONFIG_TRACE`` log entry is emitted on every
          successful call.

    Args:
        config_path: YAML set to load.  Defaults to the shipped
            ``dispense_config/sets/kiosk.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If validation fails.
    """
    config = load_kiosk_config(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)

    validation = validate_configuration(config)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("config_warning", extra={"warning": warning})

    _logger.info(
        "KIOSK_CONFIG_TRACE",
        extra={
            "trace_type": "KIOSK_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "device_mode": config.device.mode,
            "machine_code": config.ledger.machine_code,
        },
    )
    return config
