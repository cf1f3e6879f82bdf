"""
Unit tests for ResultAggregator.

Verifies:
- overall_success only when every slot confirmed its plan and nothing was ambiguous
- delivery_status and failure_reason derivation
- Per-slot breakdown kept on partial failure
"""

from uuid import uuid4

import pytest

from dispense_kernel.domain.aggregator import ResultAggregator
from dispense_kernel.domain.dtos import (
    AttemptOutcome,
    DeliveryStatus,
    DispenseAttempt,
    FailureReason,
    SlotFailure,
    SlotResult,
)


def _attempts(slot_id: str, outcomes: list[AttemptOutcome]) -> tuple[DispenseAttempt, ...]:
    return tuple(
        DispenseAttempt(slot_id, unit_index=i + 1, attempt_number=1, outcome=o)
        for i, o in enumerate(outcomes)
    )


def _result(slot_id, planned, confirmed, extra=(), failure=None) -> SlotResult:
    outcomes = [AttemptOutcome.CONFIRMED] * confirmed + list(extra)
    return SlotResult(
        slot_id=slot_id,
        planned_quantity=planned,
        quantity_confirmed=confirmed,
        attempts=_attempts(slot_id, outcomes),
        failure=failure,
    )


@pytest.fixture
def aggregator():
    return ResultAggregator()


class TestAggregate:
    def test_full_success(self, aggregator):
        outcome = aggregator.aggregate(
            uuid4(), "P-COLA", 3, [_result("A", 2, 2), _result("B", 1, 1)]
        )
        assert outcome.overall_success is True
        assert outcome.delivery_status == DeliveryStatus.DELIVERED
        assert outcome.failure_reason is None
        assert outcome.total_confirmed == 3
        assert list(outcome.slot_results) == ["A", "B"]

    def test_partial_shortfall(self, aggregator):
        failure = SlotFailure("11", 2, "RETRIES_EXHAUSTED", "x", 3, 1)
        outcome = aggregator.aggregate(
            uuid4(),
            "P-COLA",
            3,
            [_result("11", 3, 1, [AttemptOutcome.FAILED], failure)],
        )
        assert outcome.overall_success is False
        assert outcome.delivery_status == DeliveryStatus.PARTIALLY_DELIVERED
        assert outcome.failure_reason == FailureReason.SHORTFALL
        assert outcome.shortfall == 2
        assert outcome.slot_results["11"].failure is failure

    def test_nothing_delivered(self, aggregator):
        outcome = aggregator.aggregate(
            uuid4(), "P-COLA", 1, [_result("11", 1, 0, [AttemptOutcome.FAILED])]
        )
        assert outcome.delivery_status == DeliveryStatus.NOT_DELIVERED
        assert outcome.failure_reason == FailureReason.SHORTFALL

    def test_ambiguous_attempt_blocks_success(self, aggregator):
        # Retried after an unconfirmed drop, then confirmed
        result = SlotResult(
            slot_id="11",
            planned_quantity=1,
            quantity_confirmed=1,
            attempts=(
                DispenseAttempt("11", 1, 1, AttemptOutcome.ACK_ONLY_UNCONFIRMED),
                DispenseAttempt("11", 1, 2, AttemptOutcome.CONFIRMED),
            ),
        )
        outcome = aggregator.aggregate(uuid4(), "P-COLA", 1, [result])
        assert outcome.overall_success is False
        assert outcome.delivery_status == DeliveryStatus.PARTIALLY_DELIVERED
        assert outcome.failure_reason == FailureReason.AMBIGUOUS_DELIVERY

    def test_ambiguous_only_is_not_not_delivered(self, aggregator):
        outcome = aggregator.aggregate(
            uuid4(),
            "P-COLA",
            1,
            [_result("11", 1, 0, [AttemptOutcome.ACK_ONLY_UNCONFIRMED])],
        )
        assert outcome.delivery_status == DeliveryStatus.PARTIALLY_DELIVERED

    def test_cancelled_takes_precedence(self, aggregator):
        outcome = aggregator.aggregate(
            uuid4(), "P-COLA", 3, [_result("11", 3, 1)], cancelled=True, device_halted=True
        )
        assert outcome.failure_reason == FailureReason.CANCELLED
        assert outcome.cancelled is True

    def test_device_halted(self, aggregator):
        outcome = aggregator.aggregate(
            uuid4(), "P-COLA", 2, [_result("11", 2, 0)], device_halted=True
        )
        assert outcome.failure_reason == FailureReason.DEVICE_NOT_READY
        assert outcome.delivery_status == DeliveryStatus.NOT_DELIVERED

    def test_no_slots_is_not_success(self, aggregator):
        outcome = aggregator.aggregate(uuid4(), "P-COLA", 1, [])
        assert outcome.overall_success is False

    def test_unreconciled_carried(self, aggregator):
        outcome = aggregator.aggregate(
            uuid4(), "P-COLA", 2, [_result("11", 2, 1)], unreconciled={"11": 1}
        )
        assert dict(outcome.unreconciled) == {"11": 1}
        assert outcome.to_dict()["unreconciled"] == {"11": 1}

    def test_to_dict_is_json_ready(self, aggregator):
        request_id = uuid4()
        outcome = aggregator.aggregate(request_id, "P-COLA", 1, [_result("11", 1, 1)])
        data = outcome.to_dict()
        assert data["request_id"] == str(request_id)
        assert data["delivery_status"] == "delivered"
        assert data["slot_results"]["11"]["attempts"][0]["outcome"] == "confirmed"
