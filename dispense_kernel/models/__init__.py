"""ORM models for the dispense kernel."""

from dispense_kernel.models.slot import SlotRecord
from dispense_kernel.models.slot_movement import MovementType, SlotMovement

__all__ = [
    "SlotRecord",
    "SlotMovement",
    "MovementType",
]
