"""Kernel services: the only writers of slot state."""

from dispense_kernel.services.base import BaseService
from dispense_kernel.services.inventory_ledger import InventoryLedger
from dispense_kernel.services.slot_allocator import SlotAllocator

__all__ = ["BaseService", "InventoryLedger", "SlotAllocator"]
