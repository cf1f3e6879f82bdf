#!/usr/bin/env python3
"""
Run one dispense end-to-end against the configured device and print the
outcome as JSON.

Usage:
    python3 scripts/dispense.py --product COKE-350 --quantity 2 [--slot 11]
    python3 scripts/dispense.py --list-ports
    python3 scripts/dispense.py --status

Exit status is 0 only when every requested unit was confirmed.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Dispense a product through the kiosk hardware (or simulator).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Kiosk YAML config set.")
    parser.add_argument("--product", help="Product id to dispense.")
    parser.add_argument("--quantity", type=int, default=1, help="Units to dispense (default: 1).")
    parser.add_argument("--slot", default=None, help="Preferred slot id (hint only).")
    parser.add_argument(
        "--list-ports",
        action="store_true",
        help="List serial ports visible to the OS and exit.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Connect to the device, print its status and exit.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    if args.list_ports:
        from dispense_hardware.serial_controller import list_serial_ports

        print(json.dumps(list_serial_ports(), indent=2))
        return 0

    from dispense_config import get_active_config
    from dispense_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from dispense_kernel.exceptions import DispenseKernelError
    from dispense_kernel.logging_config import configure_logging
    from dispense_services.dispense_service import DispenseService

    configure_logging()
    config = get_active_config(args.config)
    init_engine_from_url(config.ledger.database_url, echo=config.ledger.echo)
    create_tables()
    service = DispenseService.from_config(config, get_session_factory())

    try:
        if args.status:
            try:
                service.connect()
            except DispenseKernelError as exc:
                print(f"Device not ready: {exc}", file=sys.stderr)
            print(json.dumps(service.status(), indent=2, default=str))
            return 0

        if not args.product:
            print("--product is required", file=sys.stderr)
            return 2

        try:
            outcome = service.dispense_for_product(args.product, args.quantity, args.slot)
        except DispenseKernelError as exc:
            print(json.dumps({"error": exc.code, "message": str(exc)}, indent=2))
            return 1

        print(json.dumps(outcome.to_dict(), indent=2))
        return 0 if outcome.overall_success else 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
