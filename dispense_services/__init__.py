"""
Dispense orchestration: sequencing units through the device and keeping
the inventory ledger reconciled with what was actually confirmed.
"""

from dispense_services.dispense_sequencer import AmbiguousStockPolicy, DispenseSequencer
from dispense_services.dispense_service import DispenseService
from dispense_services.ledger_gateway import LedgerPort, TransactionalLedgerGateway

__all__ = [
    "AmbiguousStockPolicy",
    "DispenseSequencer",
    "DispenseService",
    "LedgerPort",
    "TransactionalLedgerGateway",
]
