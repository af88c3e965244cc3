# tests/conftest.py
"""
Shared fixtures: a disposable SQLite DB per test, an in-memory ledger seeded
with one active dataset, and an engine/façade wired to them with a settable clock.
"""
import os

# Must be set before access_broker modules read the environment
os.environ.setdefault("MOCK_AUTH", "true")
os.environ.setdefault("MOCK_LEDGER", "true")
os.environ.setdefault("GRANT_RETRY_ENABLED", "false")
os.environ.setdefault("LOG_AS_JSON", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest

from access_broker import db as dbmod
from access_broker.access_query import AccessQueryFacade
from access_broker.config import BrokerConfig
from access_broker.engine import AccessRequestEngine
from access_broker.ledger import MockLedgerGateway
from access_broker.locks import InMemoryTupleLocks
from access_broker.store import EscrowStore

from helpers import DATASET_ID, OWNER, FakeClock


@pytest.fixture
def db(tmp_path):
    dbmod.reconfigure(f"sqlite:///{tmp_path / 'broker.db'}")
    dbmod.init_db()
    yield
    dbmod.engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return BrokerConfig(mock_ledger=True, lock_timeout_seconds=5.0)


@pytest.fixture
def ledger():
    gw = MockLedgerGateway()
    gw.add_dataset(OWNER, DATASET_ID)
    return gw


@pytest.fixture
def store(db):
    return EscrowStore()


@pytest.fixture
def locks(config):
    return InMemoryTupleLocks(timeout_seconds=config.lock_timeout_seconds)


@pytest.fixture
def engine(config, store, ledger, locks, clock):
    return AccessRequestEngine(config, store, ledger, locks, clock=clock)


@pytest.fixture
def facade(store, ledger, clock):
    return AccessQueryFacade(ledger, store, clock=clock)
