"""Read-only query selectors."""

from dispense_kernel.selectors.slot_selector import SlotSelector

__all__ = ["SlotSelector"]
