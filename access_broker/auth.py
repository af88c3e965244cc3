# access_broker/auth.py
"""
API key auth, caller identity and pluggable rate-limiter.

Env vars:
- MOCK_AUTH (default: true): bypass API key checks in dev
- API_KEYS: comma-separated allowed keys
- API_KEYS_FILE: optional path to file with one key per line
- RATE_LIMIT_PER_MINUTE (default: 60)
- REDIS_URL: optional, enables Redis-based distributed limiter

The caller's wallet address travels in the `x-wallet-address` header. It is
taken at face value here; signature verification happens in front of this
service.
"""

import os
import time
import threading
from typing import Optional, Tuple, Dict, Set

import redis

from access_broker import monitoring
from access_broker.schemas import normalize_address

# Configuration
MOCK_AUTH = os.getenv("MOCK_AUTH", "true").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
API_KEYS_ENV = os.getenv("API_KEYS", "")
API_KEYS_FILE = os.getenv("API_KEYS_FILE", "")
REDIS_URL = os.getenv("REDIS_URL", "")

WALLET_HEADER = "x-wallet-address"


def _load_api_keys() -> Set[str]:
    keys: Set[str] = {k.strip() for k in API_KEYS_ENV.split(",") if k.strip()}
    if API_KEYS_FILE and os.path.exists(API_KEYS_FILE):
        try:
            with open(API_KEYS_FILE, "r", encoding="utf-8") as f:
                keys.update(line.strip() for line in f if line.strip())
        except OSError:
            monitoring.logger.exception("Could not read API_KEYS_FILE", extra={"path": API_KEYS_FILE})
    return keys


API_KEYS = _load_api_keys()


class InMemoryFixedWindowLimiter:
    """Thread-safe in-memory fixed-window rate limiter (per-process)."""

    def __init__(self, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._store: Dict[str, Tuple[int, int]] = {}  # key -> (window_minute, count)
        self._lock = threading.Lock()

    def allow_request(self, key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        with self._lock:
            wstart, count = self._store.get(key, (window, 0))
            if wstart != window:
                count = 0
            if count >= self.limit:
                return False, 0
            self._store[key] = (window, count + 1)
            return True, self.limit - (count + 1)

    def reset(self):
        with self._lock:
            self._store.clear()


class RedisFixedWindowLimiter:
    """Redis fixed-window counter using INCR + EXPIRE."""

    def __init__(self, redis_url: str, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    def allow_request(self, key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        rkey = f"access-broker:rate:{key}:{window}"
        try:
            count = int(self._client.incr(rkey))
            if count == 1:
                self._client.expire(rkey, 120)
        except redis.exceptions.RedisError:
            # fail open: the limiter is not an authorization layer
            monitoring.logger.warning("Rate limiter unavailable; allowing request")
            return True, None
        if count > self.limit:
            return False, 0
        return True, self.limit - count


def _build_limiter():
    if REDIS_URL:
        return RedisFixedWindowLimiter(REDIS_URL, RATE_LIMIT_PER_MINUTE)
    return InMemoryFixedWindowLimiter(RATE_LIMIT_PER_MINUTE)


_rate_limiter = _build_limiter()


def is_key_allowed(api_key: Optional[str]) -> bool:
    """Check if API key is valid. If MOCK_AUTH=true, always returns True."""
    if MOCK_AUTH:
        return True
    if not api_key or not API_KEYS:
        return False
    return api_key in API_KEYS


def check_rate_limit(api_key: str) -> Tuple[bool, Optional[int]]:
    """Check and consume quota. Returns (allowed, remaining)."""
    if MOCK_AUTH:
        return True, None
    if not api_key:
        return False, 0
    return _rate_limiter.allow_request(api_key)


def get_limiter():
    return _rate_limiter


def caller_address(value: Optional[str]) -> Optional[str]:
    """Normalized wallet address from the identity header, or None when absent."""
    if value is None or not value.strip():
        return None
    return normalize_address(value, "caller")
