# tests/test_locks.py
"""
Redis tuple locks against an in-memory stand-in for the redis client, and the
lease that build_tuple_locks derives from the ledger budget.
"""
import threading

import pytest
import redis

from access_broker.config import BrokerConfig
from access_broker.errors import Timeout
from access_broker.locks import (
    InMemoryTupleLocks,
    RedisTupleLocks,
    build_tuple_locks,
    lock_lease_seconds,
    tuple_key,
)

from helpers import DATASET_ID, OWNER, REQUESTER


class FakeLock:
    def __init__(self, client, name, timeout, blocking_timeout):
        self.client = client
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    def acquire(self):
        with self.client.guard:
            if self.name in self.client.held:
                return False
            self.client.held.add(self.name)
            return True

    def release(self):
        with self.client.guard:
            if self.name not in self.client.held:
                raise redis.exceptions.LockNotOwnedError("Cannot release a lock that's no longer owned")
            self.client.held.discard(self.name)


class FakeRedis:
    def __init__(self):
        self.held = set()
        self.guard = threading.Lock()
        self.locks = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        lock = FakeLock(self, name, timeout, blocking_timeout)
        self.locks.append(lock)
        return lock


@pytest.fixture
def client():
    return FakeRedis()


def test_hold_takes_and_releases_the_tuple_lock(client):
    locks = RedisTupleLocks(timeout_seconds=2.0, lease_seconds=345.0, client=client)
    key = tuple_key(OWNER, REQUESTER, DATASET_ID)

    with locks.hold(key):
        assert client.held == {f"access-broker:lock:{key}"}

    assert client.held == set()
    lock = client.locks[0]
    assert lock.timeout == 345.0
    assert 0 < lock.blocking_timeout <= 2.0


def test_contended_tuple_times_out(client):
    locks = RedisTupleLocks(timeout_seconds=0.5, lease_seconds=60.0, client=client)
    key = tuple_key(OWNER, REQUESTER, DATASET_ID)

    with locks.hold(key):
        with pytest.raises(Timeout) as exc:
            with locks.hold(key):
                pass
    assert exc.value.details == {"stage": "lock"}
    # other tuples are independent
    with locks.hold(tuple_key(OWNER, REQUESTER, DATASET_ID + 1)):
        pass


def test_lapsed_lease_is_logged_not_raised(client, caplog):
    locks = RedisTupleLocks(timeout_seconds=1.0, lease_seconds=1.0, client=client)
    key = tuple_key(OWNER, REQUESTER, DATASET_ID)

    with caplog.at_level("WARNING", logger="access-broker"):
        with locks.hold(key):
            # lease expired and the key was dropped server side
            client.held.clear()

    assert "lease expired" in caplog.text


def test_error_inside_hold_still_releases(client):
    locks = RedisTupleLocks(timeout_seconds=1.0, lease_seconds=10.0, client=client)
    with pytest.raises(RuntimeError):
        with locks.hold("k"):
            raise RuntimeError("boom")
    assert client.held == set()


def test_derived_lease_outlasts_confirm_payment_ledger_budget():
    config = BrokerConfig(
        lock_timeout_seconds=30.0,
        ledger_timeout_seconds=30.0,
        ledger_max_attempts=3,
        ledger_retry_max_delay_ms=5000,
    )
    # three ledger calls, three attempts each, 30s timeout plus 5s backoff
    assert lock_lease_seconds(config) == 30.0 + 3 * 3 * 35.0
    assert lock_lease_seconds(config) > 3 * 3 * 30.0


def test_configured_lease_wins():
    assert lock_lease_seconds(BrokerConfig(lock_lease_seconds=900.0)) == 900.0


def test_build_tuple_locks_picks_backend_and_lease():
    in_memory = build_tuple_locks(BrokerConfig(lock_timeout_seconds=4.0))
    assert isinstance(in_memory, InMemoryTupleLocks)
    assert in_memory.timeout_seconds == 4.0

    # redis-py connects lazily, so no server is needed to construct the client
    config = BrokerConfig(redis_url="redis://localhost:6379/0", ledger_max_attempts=5)
    distributed = build_tuple_locks(config)
    assert isinstance(distributed, RedisTupleLocks)
    assert distributed.lease_seconds == lock_lease_seconds(config)
    assert distributed.timeout_seconds == config.lock_timeout_seconds
