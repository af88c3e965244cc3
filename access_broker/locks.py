# access_broker/locks.py
"""
Per-tuple exclusivity for mutating engine operations.

- InMemoryTupleLocks: one threading.Lock per tuple key (single process)
- RedisTupleLocks: redis lock per tuple key (multi-process deployments, REDIS_URL)

Acquisition waits at most the lock timeout or the caller's deadline, whichever
is shorter, and raises Timeout otherwise.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Tuple

import redis

from access_broker import monitoring
from access_broker.config import BrokerConfig
from access_broker.deadlines import bounded_timeout
from access_broker.errors import Timeout


def tuple_key(owner: str, requester: str, dataset_id: int) -> str:
    return f"{owner}:{requester}:{dataset_id}"


class InMemoryTupleLocks:
    """Thread-safe registry of per-key locks; entries are dropped once unused."""

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}  # key -> (lock, holders+waiters)
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
            return lock

    def _release(self, key: str) -> None:
        with self._guard:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    @contextmanager
    def hold(self, key: str, deadline: Optional[float] = None) -> Iterator[None]:
        wait = bounded_timeout(deadline, self.timeout_seconds, "lock")
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=max(0.0, wait)):
                raise Timeout("Timed out waiting for concurrent operation on this request", {"stage": "lock"})
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release(key)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


class RedisTupleLocks:
    """Distributed per-key lock using redis-py's Lock (SET NX PX + token)."""

    def __init__(
        self,
        redis_url: str = "",
        timeout_seconds: float = 30.0,
        lease_seconds: float = 120.0,
        client: Optional[redis.Redis] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.lease_seconds = lease_seconds
        self._client = client if client is not None else redis.Redis.from_url(redis_url)

    @contextmanager
    def hold(self, key: str, deadline: Optional[float] = None) -> Iterator[None]:
        wait = bounded_timeout(deadline, self.timeout_seconds, "lock")
        lock = self._client.lock(f"access-broker:lock:{key}", timeout=self.lease_seconds, blocking_timeout=max(0.0, wait))
        if not lock.acquire():
            raise Timeout("Timed out waiting for concurrent operation on this request", {"stage": "lock"})
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # lease expired while held; the conditional update still guards the record
                monitoring.logger.warning("Tuple lock lease expired before release", extra={"lock_key": key})


# get_transaction, get_access_grant and submit_grant_access run under one hold
LEDGER_CALLS_PER_HOLD = 3


def lock_lease_seconds(config: BrokerConfig) -> float:
    """Configured lease, or one that outlasts the longest hold confirm_payment can make."""
    if config.lock_lease_seconds > 0:
        return config.lock_lease_seconds
    per_attempt = config.ledger_timeout_seconds + config.ledger_retry_max_delay_ms / 1000.0
    ledger_budget = LEDGER_CALLS_PER_HOLD * max(1, config.ledger_max_attempts) * per_attempt
    return config.lock_timeout_seconds + ledger_budget


def build_tuple_locks(config: BrokerConfig):
    if config.redis_url:
        return RedisTupleLocks(
            config.redis_url,
            timeout_seconds=config.lock_timeout_seconds,
            lease_seconds=lock_lease_seconds(config),
        )
    return InMemoryTupleLocks(timeout_seconds=config.lock_timeout_seconds)
