"""
Pure domain layer.

This module contains pure data transfer objects and domain logic
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Hardware
- I/O

All domain objects are immutable and deterministic.
"""

from dispense_kernel.domain.aggregator import ResultAggregator
from dispense_kernel.domain.allocation import order_slots, plan_allocation, total_available
from dispense_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from dispense_kernel.domain.dtos import (
    AllocationPlan,
    AttemptOutcome,
    DeliveryStatus,
    DispenseAttempt,
    DispenseOutcome,
    DispenseRequest,
    FailureReason,
    PlanLine,
    SlotFailure,
    SlotResult,
    SlotSnapshot,
)
from dispense_kernel.domain.retry_policy import RetryPolicy

__all__ = [
    "AllocationPlan",
    "AttemptOutcome",
    "Clock",
    "DeliveryStatus",
    "DeterministicClock",
    "DispenseAttempt",
    "DispenseOutcome",
    "DispenseRequest",
    "FailureReason",
    "PlanLine",
    "ResultAggregator",
    "RetryPolicy",
    "SlotFailure",
    "SlotResult",
    "SlotSnapshot",
    "SystemClock",
    "order_slots",
    "plan_allocation",
    "total_available",
]
