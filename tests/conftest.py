"""
Pytest configuration and fixtures for dispense tests.

Each test gets a fresh SQLite database file under ``tmp_path``.  Set
``DATABASE_URL`` to run the suite against PostgreSQL instead; tables are
dropped and recreated around every test.
"""

import json
import logging
import os
import threading
from io import StringIO
from typing import Callable, Generator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from dispense_hardware.controller import DeviceState, DeviceTimeouts
from dispense_hardware.simulated import SimulatedDeviceController
from dispense_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from dispense_kernel.domain.aggregator import ResultAggregator
from dispense_kernel.domain.clock import DeterministicClock
from dispense_kernel.domain.retry_policy import RetryPolicy
from dispense_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from dispense_kernel.selectors.slot_selector import SlotSelector
from dispense_kernel.services.inventory_ledger import InventoryLedger
from dispense_services.dispense_sequencer import DispenseSequencer
from dispense_services.dispense_service import DispenseService
from dispense_services.ledger_gateway import TransactionalLedgerGateway

MACHINE_CODE = "001"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "sqlite_only: mark test as relying on SQLite's lack of row locks"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture dispense_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, dispense_service):
            dispense_service.dispense_for_product("P-1", 1)
            logs = captured_logs()
            assert any(r["message"] == "unit_confirmed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("dispense_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


def get_database_url(tmp_path) -> str:
    return os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'kiosk.db'}"


def is_sqlite_run() -> bool:
    return not os.environ.get("DATABASE_URL", "sqlite").startswith("postgresql")


@pytest.fixture
def engine(tmp_path):
    eng = init_engine_from_url(get_database_url(tmp_path))
    drop_tables()
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Kernel fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def inventory_ledger(session, deterministic_clock) -> InventoryLedger:
    return InventoryLedger(session, deterministic_clock, MACHINE_CODE)


@pytest.fixture
def ledger_gateway(session_factory, deterministic_clock) -> TransactionalLedgerGateway:
    return TransactionalLedgerGateway(session_factory, deterministic_clock, MACHINE_CODE)


@pytest.fixture
def seed_slots(ledger_gateway) -> Callable[..., None]:
    """
    Restock slots: ``seed_slots(P_COLA=[("11", 5)], P_WATER=[("A", 2)])``
    or ``seed_slots({"P-COLA": [("11", 5)]})``.
    """

    def _seed(mapping: dict[str, list[tuple[str, int]]] | None = None, **kwargs) -> None:
        for product_id, slots in {**(mapping or {}), **kwargs}.items():
            for slot_id, quantity in slots:
                ledger_gateway.restock(slot_id, product_id, quantity)

    return _seed


@pytest.fixture
def stock(session_factory) -> Callable[[str], int]:
    """Current available quantity of a slot, read in a fresh session."""

    def _stock(slot_id: str) -> int:
        with session_factory() as sess:
            snapshot = SlotSelector(sess, MACHINE_CODE).slot(slot_id)
            return snapshot.available_quantity if snapshot else 0

    return _stock


# =============================================================================
# Hardware fixtures
# =============================================================================


class TransitionRecorder:
    """Collects (slot_id, from_state, to_state) from the controller."""

    def __init__(self):
        self.events: list[tuple[str, DeviceState, DeviceState]] = []
        self._lock = threading.Lock()

    def __call__(self, slot_id: str, old: DeviceState, new: DeviceState) -> None:
        with self._lock:
            self.events.append((slot_id, old, new))

    def states(self) -> list[DeviceState]:
        return [new for _, _, new in self.events]

    def count(self, state: DeviceState) -> int:
        return sum(1 for s in self.states() if s == state)


@pytest.fixture
def transitions() -> TransitionRecorder:
    return TransitionRecorder()


@pytest.fixture
def device(transitions) -> SimulatedDeviceController:
    return SimulatedDeviceController(DeviceTimeouts(), on_transition=transitions)


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def make_sequencer(device, ledger_gateway, deterministic_clock):
    def _make(**kwargs) -> DispenseSequencer:
        retry_policy = kwargs.pop("retry_policy", RetryPolicy())
        return DispenseSequencer(
            kwargs.pop("device", device),
            kwargs.pop("ledger", ledger_gateway),
            retry_policy,
            ResultAggregator(),
            deterministic_clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_service(device, ledger_gateway, make_sequencer):
    def _make(
        gate_timeout: float = 5.0,
        prefer_primary_slot: bool = True,
        **kwargs,
    ) -> DispenseService:
        kwargs.setdefault("device", device)
        return DispenseService(
            kwargs["device"],
            kwargs.get("ledger", ledger_gateway),
            make_sequencer(**kwargs),
            gate_timeout=gate_timeout,
            prefer_primary_slot=prefer_primary_slot,
        )

    return _make


@pytest.fixture
def dispense_service(make_service) -> DispenseService:
    return make_service()
