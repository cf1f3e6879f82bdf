#!/usr/bin/env python3
"""
Seed or restock slot mappings for this kiosk.

Each --slot adds units of a product to a slot, creating the mapping when
the slot is new.

Usage:
    python3 scripts/seed_slots.py --slot 11:COKE-350:5 --slot 12:COKE-350:3
    python3 scripts/seed_slots.py --config my_kiosk.yaml --slot A:WATER:10
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_slot(value: str) -> tuple[str, str, int]:
    try:
        slot_id, product_id, quantity = value.split(":")
        return slot_id, product_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"expected SLOT:PRODUCT:QUANTITY, got {value!r}"
        ) from exc


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed or restock kiosk slot mappings.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Kiosk YAML config set.")
    parser.add_argument(
        "--slot",
        dest="slots",
        action="append",
        type=_parse_slot,
        required=True,
        help="SLOT:PRODUCT:QUANTITY (repeatable).",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    from dispense_config import get_active_config
    from dispense_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from dispense_kernel.domain.clock import SystemClock
    from dispense_kernel.logging_config import configure_logging
    from dispense_services.ledger_gateway import TransactionalLedgerGateway

    configure_logging()
    config = get_active_config(args.config)
    init_engine_from_url(config.ledger.database_url, echo=config.ledger.echo)
    create_tables()

    ledger = TransactionalLedgerGateway(
        get_session_factory(), SystemClock(), config.ledger.machine_code
    )
    for slot_id, product_id, quantity in args.slots:
        snapshot = ledger.restock(slot_id, product_id, quantity)
        print(json.dumps({
            "slot_id": snapshot.slot_id,
            "product_id": snapshot.product_id,
            "available_quantity": snapshot.available_quantity,
        }))
    return 0


if __name__ == "__main__":
    sys.exit(main())
