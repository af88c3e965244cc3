# access_broker/config.py
"""
Service configuration.

Everything the engine and its collaborators need is read once from the
environment into a BrokerConfig and handed to constructors explicitly.

Env vars:
- DATABASE_URL (default: sqlite:///./access_broker.db)
- APTOS_NODE_URL (default: https://fullnode.testnet.aptoslabs.com)
- DATAX_MODULE_ADDR / NETWORK_MODULE_ADDR: on-chain module addresses
- GRANT_RELAY_URL, GRANT_RELAY_API_KEY: signing relay used for grant submission
- MOCK_LEDGER (default: true): use the in-memory ledger in dev/tests
- ACCESS_PRICE_OCTAS (default: 10000000, i.e. 0.1 APT)
- GRANT_DURATION_SECONDS (default: one year)
- LEDGER_TIMEOUT_SECONDS, LEDGER_MAX_ATTEMPTS, LEDGER_RETRY_BASE_DELAY_MS, LEDGER_RETRY_MAX_DELAY_MS
- LOCK_TIMEOUT_SECONDS, REDIS_URL
- GRANT_RETRY_ENABLED, GRANT_RETRY_INTERVAL_SECONDS, GRANT_RETRY_BASE_DELAY_SECONDS,
  GRANT_RETRY_MAX_DELAY_SECONDS, GRANT_RETRY_BATCH_SIZE
- MESSAGE_MAX_LENGTH, LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT
"""

import os
from dataclasses import dataclass

DEFAULT_MODULE_ADDR = "0x0b133cba97a77b2dee290919e27c72c7d49d8bf5a3294efbd8c40cc38a009eab"
ONE_YEAR_SECONDS = 365 * 24 * 60 * 60


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class BrokerConfig:
    database_url: str = "sqlite:///./access_broker.db"

    aptos_node_url: str = "https://fullnode.testnet.aptoslabs.com"
    datax_module_addr: str = DEFAULT_MODULE_ADDR
    network_module_addr: str = DEFAULT_MODULE_ADDR
    grant_relay_url: str = ""
    grant_relay_api_key: str = ""
    mock_ledger: bool = True

    access_price_octas: int = 10_000_000
    grant_duration_seconds: int = ONE_YEAR_SECONDS

    ledger_timeout_seconds: float = 30.0
    ledger_max_attempts: int = 3
    ledger_retry_base_delay_ms: int = 500
    ledger_retry_max_delay_ms: int = 5000

    lock_timeout_seconds: float = 30.0
    # 0 derives the redis lock lease from the lock wait and ledger budgets
    lock_lease_seconds: float = 0.0
    redis_url: str = ""

    grant_retry_enabled: bool = True
    grant_retry_interval_seconds: float = 15.0
    grant_retry_base_delay_seconds: float = 30.0
    grant_retry_max_delay_seconds: float = 900.0
    grant_retry_batch_size: int = 20

    message_max_length: int = 1000
    list_default_limit: int = 50
    list_max_limit: int = 200

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            aptos_node_url=os.getenv("APTOS_NODE_URL", cls.aptos_node_url),
            datax_module_addr=os.getenv("DATAX_MODULE_ADDR", cls.datax_module_addr),
            network_module_addr=os.getenv("NETWORK_MODULE_ADDR", cls.network_module_addr),
            grant_relay_url=os.getenv("GRANT_RELAY_URL", ""),
            grant_relay_api_key=os.getenv("GRANT_RELAY_API_KEY", ""),
            mock_ledger=_env_bool("MOCK_LEDGER", "true"),
            access_price_octas=_env_int("ACCESS_PRICE_OCTAS", cls.access_price_octas),
            grant_duration_seconds=_env_int("GRANT_DURATION_SECONDS", cls.grant_duration_seconds),
            ledger_timeout_seconds=_env_float("LEDGER_TIMEOUT_SECONDS", cls.ledger_timeout_seconds),
            ledger_max_attempts=max(1, _env_int("LEDGER_MAX_ATTEMPTS", cls.ledger_max_attempts)),
            ledger_retry_base_delay_ms=_env_int("LEDGER_RETRY_BASE_DELAY_MS", cls.ledger_retry_base_delay_ms),
            ledger_retry_max_delay_ms=_env_int("LEDGER_RETRY_MAX_DELAY_MS", cls.ledger_retry_max_delay_ms),
            lock_timeout_seconds=_env_float("LOCK_TIMEOUT_SECONDS", cls.lock_timeout_seconds),
            lock_lease_seconds=_env_float("LOCK_LEASE_SECONDS", cls.lock_lease_seconds),
            redis_url=os.getenv("REDIS_URL", ""),
            grant_retry_enabled=_env_bool("GRANT_RETRY_ENABLED", "true"),
            grant_retry_interval_seconds=_env_float("GRANT_RETRY_INTERVAL_SECONDS", cls.grant_retry_interval_seconds),
            grant_retry_base_delay_seconds=_env_float("GRANT_RETRY_BASE_DELAY_SECONDS", cls.grant_retry_base_delay_seconds),
            grant_retry_max_delay_seconds=_env_float("GRANT_RETRY_MAX_DELAY_SECONDS", cls.grant_retry_max_delay_seconds),
            grant_retry_batch_size=max(1, _env_int("GRANT_RETRY_BATCH_SIZE", cls.grant_retry_batch_size)),
            message_max_length=_env_int("MESSAGE_MAX_LENGTH", cls.message_max_length),
            list_default_limit=_env_int("LIST_DEFAULT_LIMIT", cls.list_default_limit),
            list_max_limit=_env_int("LIST_MAX_LIMIT", cls.list_max_limit),
        )
