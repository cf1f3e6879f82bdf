"""
Dispense Kernel

Inventory ledger and pure domain core for kiosk dispensing:
- Per-slot stock with optimistic locking
- Allocation planning across slots
- Append-only slot movement trail
- Structured outcomes with partial-failure accounting
"""

__version__ = "0.1.0"
