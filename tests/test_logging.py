"""Tests for the structured logging system (dispense_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from dispense_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    """Parse all JSON log lines from a stream."""
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "dispense_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("unit_confirmed", extra={"attempt_number": 2, "outcome": "confirmed"})

        record = _parse_log(stream)
        assert record["attempt_number"] == 2
        assert record["outcome"] == "confirmed"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(request_id="req-1", slot_id="11", unit_index="2")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["request_id"] == "req-1"
        assert record["slot_id"] == "11"
        assert record["unit_index"] == "2"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_extracted(self):
        """Dispense kernel exceptions carry .code and structured fields."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from dispense_kernel.exceptions import InsufficientStockError

        try:
            raise InsufficientStockError("P-COLA", 3, 1)
        except InsufficientStockError:
            logger.error("allocation_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INSUFFICIENT_STOCK"
        assert record["exc_type"] == "InsufficientStockError"
        assert record["exc_product_id"] == "P-COLA"
        assert record["exc_requested_quantity"] == 3
        assert record["exc_available"] == 1

    def test_driver_exception_fields_not_spilled(self):
        """Database errors log type and message only, never bound params."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from sqlalchemy.exc import OperationalError

        try:
            raise OperationalError(
                "UPDATE slot_records SET available_quantity=?",
                {"available_quantity": 4},
                Exception("database is locked"),
            )
        except OperationalError:
            logger.error("ledger_movement_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "OperationalError"
        assert "database is locked" in record["exc_message"]
        assert not [k for k in record if k.startswith("exc_") and k not in ("exc_type", "exc_message")]

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("bare_message")

        record = _parse_log(stream)
        assert "request_id" not in record
        assert "slot_id" not in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        uid = uuid4()
        logger.info("with_uuid", extra={"plan_request_id": uid})

        record = _parse_log(stream)
        assert record["plan_request_id"] == str(uid)

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # Default level is INFO, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert "ts" in record
            assert "level" in record
            assert "logger" in record
            assert "message" in record


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(request_id="x", product_id="y")
        ctx = LogContext.get_all()
        assert ctx == {"request_id": "x", "product_id": "y"}

    def test_clear(self):
        LogContext.set(request_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(slot_id="outer")
        with LogContext.bind(slot_id="inner"):
            assert LogContext.get_all()["slot_id"] == "inner"
        assert LogContext.get_all()["slot_id"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        assert "slot_id" not in LogContext.get_all()
        with LogContext.bind(slot_id="temp"):
            assert LogContext.get_all()["slot_id"] == "temp"
        assert "slot_id" not in LogContext.get_all()

    def test_bind_stringifies_values(self):
        with LogContext.bind(unit_index=3):
            assert LogContext.get_all()["unit_index"] == "3"

    def test_additive_set(self):
        LogContext.set(request_id="a")
        LogContext.set(machine_code="001")
        ctx = LogContext.get_all()
        assert ctx["request_id"] == "a"
        assert ctx["machine_code"] == "001"

    def test_all_fields(self):
        LogContext.set(
            request_id="r",
            product_id="p",
            slot_id="s",
            machine_code="m",
            unit_index="1",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 5
        assert ctx["request_id"] == "r"
        assert ctx["unit_index"] == "1"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        root = logging.getLogger("dispense_kernel")
        assert len(root.handlers) == 1

    def test_get_logger_returns_child(self):
        logger = get_logger("services.dispense_sequencer")
        assert logger.name == "dispense_kernel.services.dispense_sequencer"

    def test_logger_hierarchy(self):
        """Child loggers inherit the dispense_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        child = get_logger("hardware.controller")
        child.debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "dispense_kernel.hardware.controller"
