"""Pytest fixtures and fakes.

The ledger is replaced by ``FakeLedger`` (reader + writer in one object) and
time by ``FakeClock`` so scheduling decisions are deterministic. The app is
driven through TestClient without its lifespan; fixtures put collaborators on
``app.state`` the way the lifespan would.
"""

import os
import sys
import threading
from dataclasses import replace
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'round_settlement' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from round_settlement.main import app  # type: ignore  # noqa: E402
from round_settlement.database import Base  # type: ignore  # noqa: E402
from round_settlement.api import deps  # type: ignore  # noqa: E402
from round_settlement.config import WEBHOOK_SETTINGS  # noqa: E402
from round_settlement.errors import RoundNotFound  # noqa: E402
from round_settlement.jobs.queue import DelayedJobQueue  # noqa: E402
from round_settlement.ledger.types import Round  # noqa: E402
from round_settlement.models.db import NotificationLog, SettlementLog  # noqa: E402
from round_settlement.services.audit import AuditLog  # noqa: E402
from round_settlement.services.notification_ingress import NotificationIngress  # noqa: E402
from round_settlement.services.reconciliation_engine import ReconciliationEngine  # noqa: E402
from round_settlement.services.settlement_executor import SettlementExecutor  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"
WEBHOOK_SETTINGS["secret"] = WEBHOOK_SECRET

# File-based SQLite so worker threads and the test thread share one database
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_settlement_audit.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# AuditLog and get_db resolve database.SessionLocal per call
import round_settlement.database as _database  # noqa: E402
_database.SessionLocal = TestingSessionLocal  # type: ignore

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    @property
    def seconds(self) -> int:
        return self.now // 1000


class FakeLedger:
    """In-memory round contract. Settling marks the round completed with one winner.

    With ``settles_current`` the settlement call ignores its argument and closes
    the current round, as the deployed contract's parameterless call does.
    """

    def __init__(self, settles_current: bool = False):
        self.settles_current = settles_current
        self.rounds: dict[int, Round] = {}
        self.entries: dict[int, int] = {}
        self.winners: dict[int, list[str]] = {}
        self.runner_ups: dict[int, list[str]] = {}
        self.current_round_id = 0
        self.submissions: list[int] = []
        self.submit_errors: list[Exception] = []
        self.read_error: Exception | None = None
        self._lock = threading.Lock()

    def add_round(self, round_id: int, *, end_time: int, completed: bool = False, entries: int = 3, start_time: int | None = None) -> Round:
        round_ = Round(
            id=round_id,
            start_time=start_time if start_time is not None else end_time - 3600,
            end_time=end_time,
            completed=completed,
            prize_pool=10**21,
            donations=5 * 10**18,
            request_id=0,
        )
        self.rounds[round_id] = round_
        self.entries[round_id] = entries
        self.current_round_id = max(self.current_round_id, round_id)
        return round_

    def _check(self) -> None:
        if self.read_error is not None:
            raise self.read_error

    def get_current_round_id(self) -> int:
        self._check()
        return self.current_round_id

    def get_round(self, round_id: int) -> Round:
        self._check()
        if round_id not in self.rounds:
            raise RoundNotFound(round_id)
        return self.rounds[round_id]

    def get_entry_count(self, round_id: int) -> int:
        self._check()
        return self.entries.get(round_id, 0)

    def get_winners(self, round_id: int) -> list[str]:
        self._check()
        return list(self.winners.get(round_id, []))

    def get_runner_ups(self, round_id: int) -> list[str]:
        self._check()
        return list(self.runner_ups.get(round_id, []))

    def submit_settlement(self, round_id: int) -> str:
        with self._lock:
            self.submissions.append(round_id)
            if self.submit_errors:
                raise self.submit_errors.pop(0)
            target = self.current_round_id if self.settles_current else round_id
            self.rounds[target] = replace(self.rounds[target], completed=True)
            self.winners[target] = [f"0x{target:040x}"]
            return "0x" + f"{len(self.submissions):064x}"


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_settlement_audit.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _clean_audit_tables(create_test_db):
    yield
    session = TestingSessionLocal()
    try:
        session.query(SettlementLog).delete()
        session.query(NotificationLog).delete()
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def memory_queue(clock):
    queue = DelayedJobQueue(clock=clock)
    yield queue
    queue.shutdown()


@pytest.fixture()
def audit():
    return AuditLog()


@pytest.fixture()
def executor(ledger, audit):
    return SettlementExecutor(ledger, ledger, audit=audit)


@pytest.fixture()
def settlement_engine(ledger, memory_queue, executor, clock):
    return ReconciliationEngine(ledger, memory_queue, executor, clock=clock)


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def client(ledger, memory_queue, settlement_engine, audit):
    app.state.ledger_reader = ledger
    app.state.settlement_queue = memory_queue
    app.state.reconciliation_engine = settlement_engine
    app.state.notification_ingress = NotificationIngress(settlement_engine, audit=audit)
    yield TestClient(app)
    for name in ("ledger_reader", "settlement_queue", "reconciliation_engine", "notification_ingress"):
        setattr(app.state, name, None)


@pytest.fixture()
def webhook_headers():
    return {"goldsky-webhook-secret": WEBHOOK_SECRET}
