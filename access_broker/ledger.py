# access_broker/ledger.py
"""
Ledger Gateway: reads dataset, grant and transaction state from the ledger and
submits access-grant transactions.

Backends:
- AptosLedgerGateway: Aptos fullnode REST API for reads; grant submissions go
  through a signing relay (keys never live in this service).
- MockLedgerGateway: deterministic in-memory ledger for dev/tests (MOCK_LEDGER=true).

Reads are idempotent and retried with exponential backoff on network errors,
HTTP 408/429 and 5xx. Other 4xx responses are definitive and never retried.
Every call is bounded by the configured timeout and the caller's deadline.
"""

import hashlib
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from access_broker import monitoring
from access_broker.config import BrokerConfig
from access_broker.deadlines import bounded_timeout, check_deadline, remaining
from access_broker.errors import InvalidArgument, SubmissionFailed, Timeout
from access_broker.schemas import (
    AccessGrant,
    DatasetInfo,
    LedgerTransaction,
    normalize_address,
)

APTOS_COIN = "0x1::aptos_coin::AptosCoin"
TRANSFER_FUNCTIONS = {
    "0x1::aptos_account::transfer",
    "0x1::aptos_account::transfer_coins",
    "0x1::coin::transfer",
}


class LedgerGateway:
    """Port consumed by the engine and the access query façade."""

    def get_dataset(self, owner: str, dataset_id: int, deadline: Optional[float] = None) -> Optional[DatasetInfo]:
        raise NotImplementedError

    def get_access_grant(
        self, owner: str, requester: str, dataset_id: int, deadline: Optional[float] = None
    ) -> Optional[AccessGrant]:
        raise NotImplementedError

    def get_transaction(self, tx_hash: str, deadline: Optional[float] = None) -> Optional[LedgerTransaction]:
        raise NotImplementedError

    def submit_grant_access(
        self,
        owner: str,
        requester: str,
        dataset_id: int,
        expires_at: int,
        idempotency_key: str,
        deadline: Optional[float] = None,
    ) -> str:
        """Returns the grant tx hash. Raises SubmissionFailed on network/ledger rejection."""
        raise NotImplementedError


def _safe_address(value: Any) -> Optional[str]:
    try:
        return normalize_address(value)
    except InvalidArgument:
        return None


def _to_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _decode_bytes_hex(value: Any) -> Optional[str]:
    # Move vector<u8> arrives either as a list of numbers or as a hex string
    if isinstance(value, list):
        return "0x" + "".join(f"{_to_int(b) & 0xFF:02x}" for b in value)
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return None


def _decode_bytes_text(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return bytes(_to_int(b) & 0xFF for b in value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        if value.startswith("0x"):
            try:
                return bytes.fromhex(value[2:]).decode("utf-8", errors="replace")
            except ValueError:
                return value
        return value
    return None


def _decode_active(value: Any) -> bool:
    # datasets are created active; anything unrecognised keeps that default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    if isinstance(value, (int, float)):
        return value != 0
    return True


def parse_transaction(tx_hash: str, body: Dict[str, Any]) -> LedgerTransaction:
    """Decode an Aptos REST transaction into the fields payment verification needs."""
    if body.get("type") == "pending_transaction":
        return LedgerTransaction(hash=tx_hash, succeeded=False, pending=True,
                                 sender=_safe_address(body.get("sender")))
    payload = body.get("payload") or {}
    function = payload.get("function")
    args = payload.get("arguments") or []
    type_args = payload.get("type_arguments") or []
    recipient = None
    amount = 0
    if function in TRANSFER_FUNCTIONS and len(args) >= 2:
        coin_ok = function == "0x1::aptos_account::transfer" or type_args == [APTOS_COIN]
        if coin_ok:
            recipient = _safe_address(args[0])
            amount = _to_int(args[1])
    return LedgerTransaction(
        hash=tx_hash,
        succeeded=bool(body.get("success", False)),
        pending=False,
        sender=_safe_address(body.get("sender")),
        recipient=recipient,
        amount=amount,
        function=function,
    )


@dataclass
class AptosLedgerGateway(LedgerGateway):
    node_url: str
    datax_module_addr: str
    network_module_addr: str
    relay_url: str = ""
    relay_api_key: str = ""
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_base_delay_ms: int = 500
    retry_max_delay_ms: int = 5000
    session: Optional[requests.Session] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._session = self.session or requests.Session()

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "AptosLedgerGateway":
        return cls(
            node_url=config.aptos_node_url,
            datax_module_addr=config.datax_module_addr,
            network_module_addr=config.network_module_addr,
            relay_url=config.grant_relay_url,
            relay_api_key=config.grant_relay_api_key,
            timeout_seconds=config.ledger_timeout_seconds,
            max_attempts=config.ledger_max_attempts,
            retry_base_delay_ms=config.ledger_retry_base_delay_ms,
            retry_max_delay_ms=config.ledger_retry_max_delay_ms,
        )

    # --- reads
    def get_dataset(self, owner: str, dataset_id: int, deadline: Optional[float] = None) -> Optional[DatasetInfo]:
        resource = f"{self.datax_module_addr}::data_registry::DataStore"
        url = f"{self._node()}/v1/accounts/{owner}/resource/{quote(resource, safe='')}"
        response = self._call("GET", url, "get_dataset", deadline)
        if response is None:
            return None
        body = self._json(response, "get_dataset")
        datasets = ((body or {}).get("data") or {}).get("datasets") or []
        for entry in datasets:
            if _to_int(entry.get("id"), default=-1) != dataset_id:
                continue
            return DatasetInfo(
                owner=owner,
                dataset_id=dataset_id,
                exists=True,
                active=_decode_active(entry.get("is_active")),
                data_hash=_decode_bytes_hex(entry.get("data_hash")),
                metadata=_decode_bytes_text(entry.get("metadata")),
                created_at=_to_int(entry.get("created_at")) or None,
            )
        return None

    def get_access_grant(
        self, owner: str, requester: str, dataset_id: int, deadline: Optional[float] = None
    ) -> Optional[AccessGrant]:
        # has_access already applies the on-chain expiry check
        payload = {
            "function": f"{self.network_module_addr}::AccessControl::has_access",
            "type_arguments": [],
            "arguments": [owner, str(dataset_id), requester],
        }
        response = self._call("POST", f"{self._node()}/v1/view", "get_access_grant", deadline, json_body=payload)
        if response is None:
            return None
        body = self._json(response, "get_access_grant")
        has_access = isinstance(body, list) and len(body) > 0 and body[0] is True
        if not has_access:
            return None
        return AccessGrant(owner=owner, requester=requester, dataset_id=dataset_id, active=True, expires_at=None)

    def get_transaction(self, tx_hash: str, deadline: Optional[float] = None) -> Optional[LedgerTransaction]:
        url = f"{self._node()}/v1/transactions/by_hash/{tx_hash}"
        response = self._call("GET", url, "get_transaction", deadline)
        if response is None:
            return None
        body = self._json(response, "get_transaction")
        if not isinstance(body, dict):
            raise SubmissionFailed("LEDGER_RESPONSE_INVALID_SHAPE", retryable=True, details={"call": "get_transaction"})
        return parse_transaction(tx_hash, body)

    # --- writes
    def submit_grant_access(
        self,
        owner: str,
        requester: str,
        dataset_id: int,
        expires_at: int,
        idempotency_key: str,
        deadline: Optional[float] = None,
    ) -> str:
        if not self.relay_url:
            raise SubmissionFailed("GRANT_RELAY_NOT_CONFIGURED", retryable=False)
        payload = {
            "function": f"{self.network_module_addr}::AccessControl::grant_access",
            "signer": owner,
            "arguments": [str(dataset_id), requester, str(expires_at)],
            "idempotency_key": idempotency_key,
        }
        headers = {"Idempotency-Key": idempotency_key}
        if self.relay_api_key:
            headers["X-Relay-Api-Key"] = self.relay_api_key
        url = self.relay_url.rstrip("/") + "/v1/transactions"
        response = self._call(
            "POST", url, "submit_grant_access", deadline, json_body=payload, headers=headers, not_found_ok=False
        )
        body = self._json(response, "submit_grant_access")
        tx_hash = body.get("hash") if isinstance(body, dict) else None
        if not isinstance(tx_hash, str) or not tx_hash:
            raise SubmissionFailed("GRANT_RELAY_RESPONSE_MISSING_HASH", retryable=True)
        return tx_hash

    # --- transport
    def _node(self) -> str:
        return self.node_url.rstrip("/")

    def _call(
        self,
        method: str,
        url: str,
        call: str,
        deadline: Optional[float],
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        not_found_ok: bool = True,
    ):
        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            timeout = bounded_timeout(deadline, self.timeout_seconds, call)
            start = time.time()
            try:
                response = self._session.request(method, url, json=json_body, headers=headers, timeout=timeout)
            except requests.Timeout:
                last_error = "timeout"
                left = remaining(deadline)
                if left is not None and left <= 0:
                    raise Timeout(f"Ledger call {call} timed out", {"call": call})
            except requests.RequestException as exc:
                last_error = str(exc)[:256]
            else:
                status = response.status_code
                if status == 404 and not_found_ok:
                    return None
                if status < 400:
                    return response
                if not (status in (408, 429) or status >= 500):
                    raise SubmissionFailed(
                        f"LEDGER_REJECTED:{status}",
                        retryable=False,
                        details={"call": call, "body": _response_text(response)},
                    )
                last_error = f"http_{status}"
            finally:
                monitoring.observe_ledger_call(start, call)
            if attempt >= self.max_attempts:
                break
            monitoring.logger.warning(
                "Ledger call retry",
                extra={"call": call, "attempt": attempt, "max_attempts": self.max_attempts, "reason": last_error},
            )
            self._sleep_backoff(attempt, deadline, call)
        raise SubmissionFailed(f"LEDGER_RETRY_EXHAUSTED:{last_error}", retryable=True, details={"call": call})

    def _sleep_backoff(self, attempt: int, deadline: Optional[float], call: str) -> None:
        base = max(0.0, self.retry_base_delay_ms / 1000.0)
        cap = max(base, self.retry_max_delay_ms / 1000.0)
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        delay += random.uniform(0.0, delay) if delay > 0 else 0.0
        left = remaining(deadline)
        if left is not None and left <= delay:
            raise Timeout(f"Deadline exceeded while retrying {call}", {"call": call})
        time.sleep(delay)

    @staticmethod
    def _json(response: Any, call: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise SubmissionFailed(f"LEDGER_RESPONSE_INVALID_JSON:{exc}", retryable=True, details={"call": call}) from exc


def _response_text(response: Any) -> str:
    value = getattr(response, "text", "")
    return str(value or "").strip()[:256]


@dataclass
class MockLedgerGateway(LedgerGateway):
    """In-memory ledger. Grant submissions are deduplicated by idempotency key."""

    datasets: Dict[tuple, DatasetInfo] = field(default_factory=dict)
    grants: Dict[tuple, AccessGrant] = field(default_factory=dict)
    transactions: Dict[str, LedgerTransaction] = field(default_factory=dict)
    submissions: List[Dict[str, Any]] = field(default_factory=list)
    calls: Dict[str, int] = field(default_factory=dict)
    fail_submissions: int = 0

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._by_key: Dict[str, str] = {}

    # --- seeding helpers
    def add_dataset(self, owner: str, dataset_id: int, active: bool = True, metadata: str = "") -> DatasetInfo:
        owner = normalize_address(owner)
        info = DatasetInfo(owner=owner, dataset_id=dataset_id, exists=True, active=active, metadata=metadata)
        with self._lock:
            self.datasets[(owner, dataset_id)] = info
        return info

    def add_transfer(
        self,
        tx_hash: str,
        sender: str,
        recipient: str,
        amount: int,
        succeeded: bool = True,
        pending: bool = False,
        dataset_ref: Optional[int] = None,
    ) -> LedgerTransaction:
        tx = LedgerTransaction(
            hash=tx_hash.lower(),
            succeeded=succeeded,
            pending=pending,
            sender=normalize_address(sender),
            recipient=normalize_address(recipient),
            amount=amount,
            dataset_ref=dataset_ref,
            function="0x1::aptos_account::transfer",
        )
        with self._lock:
            self.transactions[tx.hash] = tx
        return tx

    def set_grant(
        self, owner: str, requester: str, dataset_id: int, expires_at: Optional[int], active: bool = True
    ) -> AccessGrant:
        owner, requester = normalize_address(owner), normalize_address(requester)
        grant = AccessGrant(owner=owner, requester=requester, dataset_id=dataset_id, active=active, expires_at=expires_at)
        with self._lock:
            self.grants[(owner, requester, dataset_id)] = grant
        return grant

    def call_count(self, call: str) -> int:
        with self._lock:
            return self.calls.get(call, 0)

    def _count(self, call: str) -> None:
        with self._lock:
            self.calls[call] = self.calls.get(call, 0) + 1

    # --- port
    def get_dataset(self, owner: str, dataset_id: int, deadline: Optional[float] = None) -> Optional[DatasetInfo]:
        check_deadline(deadline, "get_dataset")
        self._count("get_dataset")
        with self._lock:
            return self.datasets.get((owner, dataset_id))

    def get_access_grant(
        self, owner: str, requester: str, dataset_id: int, deadline: Optional[float] = None
    ) -> Optional[AccessGrant]:
        check_deadline(deadline, "get_access_grant")
        self._count("get_access_grant")
        with self._lock:
            return self.grants.get((owner, requester, dataset_id))

    def get_transaction(self, tx_hash: str, deadline: Optional[float] = None) -> Optional[LedgerTransaction]:
        check_deadline(deadline, "get_transaction")
        self._count("get_transaction")
        with self._lock:
            return self.transactions.get(tx_hash)

    def submit_grant_access(
        self,
        owner: str,
        requester: str,
        dataset_id: int,
        expires_at: int,
        idempotency_key: str,
        deadline: Optional[float] = None,
    ) -> str:
        check_deadline(deadline, "submit_grant_access")
        self._count("submit_grant_access")
        with self._lock:
            if self.fail_submissions > 0:
                self.fail_submissions -= 1
                raise SubmissionFailed("MOCK_LEDGER_UNAVAILABLE", retryable=True)
            if idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            tx_hash = "0x" + hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()
            self._by_key[idempotency_key] = tx_hash
            self.grants[(owner, requester, dataset_id)] = AccessGrant(
                owner=owner, requester=requester, dataset_id=dataset_id, active=True, expires_at=expires_at
            )
            self.submissions.append({
                "owner": owner,
                "requester": requester,
                "dataset_id": dataset_id,
                "expires_at": expires_at,
                "idempotency_key": idempotency_key,
                "tx_hash": tx_hash,
            })
            return tx_hash


def build_ledger_gateway(config: BrokerConfig) -> LedgerGateway:
    if config.mock_ledger:
        monitoring.logger.info("Using in-memory mock ledger")
        return MockLedgerGateway()
    return AptosLedgerGateway.from_config(config)
