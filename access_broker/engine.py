# access_broker/engine.py
"""
Access Request Engine.

Owns the lifecycle of an access request:

    pending --approve--> approved --confirm_payment(verified)--> paid   [terminal]
    pending --deny-----> denied                                         [terminal]

Mutations run under a per-tuple lock and land through conditional updates, so
concurrent callers on the same tuple serialize and the loser sees InvalidState.
Once a payment is verified the request is durably marked paid together with a
grant obligation; grant submission failures after that point are queued for
retry rather than reported to the caller.
"""

import datetime
import functools
import hashlib
from typing import Callable, Optional, Tuple, Union

from access_broker import monitoring
from access_broker.config import BrokerConfig
from access_broker.deadlines import check_deadline
from access_broker.errors import (
    BrokerError,
    Conflict,
    Forbidden,
    InvalidArgument,
    InvalidState,
    NotFound,
    PaymentNotVerified,
    SubmissionFailed,
    Timeout,
)
from access_broker.ledger import LedgerGateway
from access_broker.locks import tuple_key
from access_broker.payments import TX_ALREADY_USED, verify_payment
from access_broker.schemas import (
    AccessRequest,
    GrantObligation,
    ObligationStatus,
    RequestPage,
    RequestStatus,
    normalize_address,
    normalize_dataset_id,
    normalize_tx_hash,
)
from access_broker.store import EscrowStore, TxHashInUse


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def grant_idempotency_key(owner: str, requester: str, dataset_id: int, request_id: str) -> str:
    """Deterministic submission key: the same paid request always maps to the same grant."""
    raw = f"grant:{owner}:{requester}:{dataset_id}:{request_id}:{RequestStatus.PAID.value}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _instrumented(operation: str):
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except BrokerError as e:
                monitoring.inc_operation_error(operation, e.error_code)
                raise
        return wrapper
    return decorator


class AccessRequestEngine:
    def __init__(
        self,
        config: BrokerConfig,
        store: EscrowStore,
        ledger: LedgerGateway,
        locks,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self.config = config
        self.store = store
        self.ledger = ledger
        self.locks = locks
        self._clock = clock or _utcnow

    def _now(self) -> datetime.datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # validation helpers
    # ------------------------------------------------------------------
    def _validate_tuple(self, owner, requester, dataset_id) -> Tuple[str, str, int]:
        o = normalize_address(owner, "owner")
        r = normalize_address(requester, "requester")
        d = normalize_dataset_id(dataset_id)
        return o, r, d

    def _validate_message(self, message: Optional[str]) -> Optional[str]:
        if message is None:
            return None
        if not isinstance(message, str):
            raise InvalidArgument("message must be a string", {"field": "message"})
        message = message.strip()
        if not message:
            return None
        if len(message) > self.config.message_max_length:
            raise InvalidArgument(
                f"message exceeds {self.config.message_max_length} characters",
                {"field": "message", "length": len(message)},
            )
        if any(ord(ch) < 32 and ch not in "\n\t" for ch in message):
            raise InvalidArgument("message contains control characters", {"field": "message"})
        return message

    def _current_or_404(self, owner: str, requester: str, dataset_id: int) -> AccessRequest:
        current = self.store.get_current(owner, requester, dataset_id)
        if current is None:
            raise NotFound(
                "Access request not found",
                {"owner": owner, "requester": requester, "dataset_id": dataset_id},
            )
        return current

    def _page_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.list_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgument("limit must be a positive integer", {"field": "limit"})
        return min(limit, self.config.list_max_limit)

    @staticmethod
    def _parse_status(status: Union[None, str, RequestStatus]) -> Optional[RequestStatus]:
        if status is None or isinstance(status, RequestStatus):
            return status
        try:
            return RequestStatus(str(status).strip().lower())
        except ValueError as e:
            raise InvalidArgument(f"unknown status '{status}'", {"field": "status"}) from e

    # ------------------------------------------------------------------
    # state machine
    # ------------------------------------------------------------------
    @_instrumented("create_request")
    def create_request(
        self,
        owner: str,
        requester: str,
        dataset_id: int,
        message: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> AccessRequest:
        """
        Open a new pending request for (owner, requester, dataset).

        Raises InvalidArgument (owner == requester, malformed input), NotFound
        (dataset unknown or inactive on-chain) or Conflict (an open request
        already exists for the tuple).
        """
        o, r, d = self._validate_tuple(owner, requester, dataset_id)
        if o == r:
            raise InvalidArgument("owner and requester must differ", {"owner": o, "requester": r})
        message = self._validate_message(message)

        dataset = self.ledger.get_dataset(o, d, deadline)
        if dataset is None or not dataset.exists or not dataset.active:
            raise NotFound("Dataset not found or inactive", {"owner": o, "dataset_id": d})

        with self.locks.hold(tuple_key(o, r, d), deadline):
            current = self.store.get_current(o, r, d)
            if current is not None and current.is_open:
                # the store's unique open_key enforces the same thing across processes
                raise Conflict(
                    "An open access request already exists for this owner, requester and dataset",
                    {"request_id": current.request_id, "status": current.status.value},
                )
            created = self.store.create_request(
                o, r, d, message, self.config.access_price_octas, self._now()
            )

        monitoring.inc_transition("created")
        monitoring.logger.info(
            "Access request created",
            extra={"request_id": created.request_id, "owner": o, "requester": r, "dataset_id": d},
        )
        return created

    @_instrumented("approve_request")
    def approve_request(
        self, owner: str, requester: str, dataset_id: int, caller: str, deadline: Optional[float] = None
    ) -> AccessRequest:
        """pending -> approved. Repeating on an approved request returns it unchanged."""
        return self._owner_transition(RequestStatus.APPROVED, owner, requester, dataset_id, caller, deadline)

    @_instrumented("deny_request")
    def deny_request(
        self, owner: str, requester: str, dataset_id: int, caller: str, deadline: Optional[float] = None
    ) -> AccessRequest:
        """pending -> denied (terminal)."""
        return self._owner_transition(RequestStatus.DENIED, owner, requester, dataset_id, caller, deadline)

    def _owner_transition(
        self,
        target: RequestStatus,
        owner: str,
        requester: str,
        dataset_id: int,
        caller: str,
        deadline: Optional[float],
    ) -> AccessRequest:
        o, r, d = self._validate_tuple(owner, requester, dataset_id)
        if normalize_address(caller, "caller") != o:
            raise Forbidden("Only the dataset owner may approve or deny access requests", {"owner": o})

        with self.locks.hold(tuple_key(o, r, d), deadline):
            current = self._current_or_404(o, r, d)
            if target == RequestStatus.APPROVED and current.status == RequestStatus.APPROVED:
                return current
            if current.status != RequestStatus.PENDING:
                raise InvalidState(
                    f"Cannot move request from {current.status.value} to {target.value}",
                    {"request_id": current.request_id, "status": current.status.value},
                )
            stamps = {"approved_at": self._now()} if target == RequestStatus.APPROVED else {}
            updated = self.store.transition(
                current.request_id, RequestStatus.PENDING, current.version, target, **stamps
            )
            if updated is None:
                latest = self.store.get_request(current.request_id)
                if target == RequestStatus.APPROVED and latest is not None and latest.status == RequestStatus.APPROVED:
                    return latest
                raise InvalidState(
                    "Access request was modified concurrently",
                    {"request_id": current.request_id, "status": latest.status.value if latest else None},
                )

        monitoring.inc_transition(f"pending_to_{target.value}")
        monitoring.logger.info(
            f"Access request {target.value}",
            extra={"request_id": updated.request_id, "owner": o, "requester": r, "dataset_id": d},
        )
        return updated

    # ------------------------------------------------------------------
    # payment reconciliation
    # ------------------------------------------------------------------
    @_instrumented("confirm_payment")
    def confirm_payment(
        self,
        owner: str,
        requester: str,
        dataset_id: int,
        tx_hash: str,
        deadline: Optional[float] = None,
    ) -> AccessRequest:
        """
        approved -> paid once `tx_hash` is verified on the ledger.

        The lock is held across read, ledger verification and write. A verified
        payment is committed together with a grant obligation; the grant is then
        submitted right away and, if that fails, left queued for the retry
        worker. Repeating with the same hash on a paid request is a no-op.
        """
        o, r, d = self._validate_tuple(owner, requester, dataset_id)
        tx_hash = normalize_tx_hash(tx_hash)

        with self.locks.hold(tuple_key(o, r, d), deadline):
            current = self._current_or_404(o, r, d)
            if current.status == RequestStatus.PAID:
                if current.payment_tx_hash == tx_hash:
                    return current
                raise InvalidState(
                    "Request is already paid with a different transaction",
                    {"request_id": current.request_id, "status": current.status.value},
                )
            if current.status != RequestStatus.APPROVED:
                raise InvalidState(
                    f"Cannot confirm payment for a {current.status.value} request",
                    {"request_id": current.request_id, "status": current.status.value},
                )

            used_by = self.store.find_by_tx_hash(tx_hash)
            if used_by is not None and used_by.request_id != current.request_id:
                monitoring.inc_payment_verification(TX_ALREADY_USED)
                raise PaymentNotVerified(
                    TX_ALREADY_USED,
                    "Payment transaction already settled another request",
                    {"tx_hash": tx_hash, "request_id": current.request_id},
                )

            try:
                tx = self.ledger.get_transaction(tx_hash, deadline)
                verify_payment(current, tx_hash, tx)
            except PaymentNotVerified as e:
                monitoring.inc_payment_verification(e.reason)
                monitoring.logger.warning(
                    "Payment not verified",
                    extra={"request_id": current.request_id, "tx_hash": tx_hash, "reason": e.reason},
                )
                raise

            check_deadline(deadline, "commit")
            now = self._now()
            try:
                result = self.store.mark_paid(
                    current.request_id,
                    current.version,
                    tx_hash,
                    paid_at=now,
                    grant_expires_at=int(now.timestamp()) + self.config.grant_duration_seconds,
                    idempotency_key=grant_idempotency_key(o, r, d, current.request_id),
                    first_attempt_at=now + datetime.timedelta(seconds=self.config.grant_retry_base_delay_seconds),
                )
            except TxHashInUse as e:
                monitoring.inc_payment_verification(TX_ALREADY_USED)
                raise PaymentNotVerified(
                    TX_ALREADY_USED,
                    "Payment transaction already settled another request",
                    {"tx_hash": tx_hash, "request_id": current.request_id},
                ) from e
            if result is None:
                raise InvalidState(
                    "Access request was modified concurrently", {"request_id": current.request_id}
                )
            paid, obligation = result

            monitoring.inc_payment_verification("verified")
            monitoring.inc_transition("approved_to_paid")
            monitoring.logger.info(
                "Payment verified",
                extra={"request_id": paid.request_id, "tx_hash": tx_hash, "owner": o, "requester": r, "dataset_id": d},
            )
            self._fulfil_obligation(obligation, deadline)

        return paid

    def _retry_delay(self, attempts: int) -> datetime.timedelta:
        base = max(0.0, self.config.grant_retry_base_delay_seconds)
        cap = max(base, self.config.grant_retry_max_delay_seconds)
        return datetime.timedelta(seconds=min(cap, base * (2 ** max(0, attempts - 1))))

    def _fulfil_obligation(self, obligation: GrantObligation, deadline: Optional[float] = None) -> bool:
        """Submit the owed grant. Failures are recorded for retry, never raised."""
        log_extra = {
            "request_id": obligation.request_id,
            "owner": obligation.owner,
            "requester": obligation.requester,
            "dataset_id": obligation.dataset_id,
            "attempt": obligation.attempts + 1,
        }
        try:
            grant = self.ledger.get_access_grant(
                obligation.owner, obligation.requester, obligation.dataset_id, deadline
            )
            if grant is not None and grant.active and grant.expires_at is not None \
                    and grant.expires_at >= obligation.expires_at:
                self.store.fulfil_obligation(obligation.obligation_id, None, self._now(), attempted=False)
                monitoring.inc_grant_submission("already_on_chain")
                monitoring.logger.info("Grant already on-chain; obligation fulfilled", extra=log_extra)
                return True
            grant_tx = self.ledger.submit_grant_access(
                obligation.owner,
                obligation.requester,
                obligation.dataset_id,
                obligation.expires_at,
                obligation.idempotency_key,
                deadline,
            )
        except (SubmissionFailed, Timeout) as e:
            self._record_grant_failure(obligation, f"{e.error_code}:{e.message}")
            monitoring.logger.warning(
                "Grant submission failed; queued for retry", extra=dict(log_extra, error_code=e.error_code)
            )
            return False
        except Exception as e:
            # payment already moved: keep the obligation whatever went wrong
            self._record_grant_failure(obligation, f"E_INTERNAL:{e}")
            monitoring.logger.exception("Unexpected error submitting grant; queued for retry", extra=log_extra)
            return False

        self.store.fulfil_obligation(obligation.obligation_id, grant_tx, self._now())
        monitoring.inc_grant_submission("submitted")
        monitoring.logger.info("Grant submitted", extra=dict(log_extra, grant_tx_hash=grant_tx))
        return True

    def _record_grant_failure(self, obligation: GrantObligation, error: str) -> None:
        next_at = self._now() + self._retry_delay(obligation.attempts + 1)
        self.store.record_obligation_failure(obligation.obligation_id, error, next_at)
        monitoring.inc_grant_submission("failed")

    def retry_pending_grants(self, limit: Optional[int] = None) -> int:
        """Attempt every due grant obligation once. Returns how many were fulfilled."""
        due = self.store.due_obligations(self._now(), limit or self.config.grant_retry_batch_size)
        fulfilled = 0
        for obligation in due:
            key = tuple_key(obligation.owner, obligation.requester, obligation.dataset_id)
            try:
                with self.locks.hold(key):
                    fresh = self.store.get_obligation(obligation.request_id)
                    if fresh is None or fresh.status != ObligationStatus.PENDING:
                        continue
                    if self._fulfil_obligation(fresh):
                        fulfilled += 1
            except Timeout:
                monitoring.logger.warning(
                    "Tuple busy; grant retry deferred", extra={"request_id": obligation.request_id}
                )
        monitoring.set_pending_grants(self.store.count_pending_obligations())
        return fulfilled

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    @_instrumented("get_request")
    def get_request(self, owner: str, requester: str, dataset_id: int) -> AccessRequest:
        o, r, d = self._validate_tuple(owner, requester, dataset_id)
        return self._current_or_404(o, r, d)

    @_instrumented("list_requests_for_owner")
    def list_requests_for_owner(
        self,
        owner: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        status: Union[None, str, RequestStatus] = None,
    ) -> RequestPage:
        return self.store.list_for_owner(
            normalize_address(owner, "owner"), self._page_limit(limit), cursor, self._parse_status(status)
        )

    @_instrumented("list_requests_for_requester")
    def list_requests_for_requester(
        self,
        requester: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        status: Union[None, str, RequestStatus] = None,
    ) -> RequestPage:
        return self.store.list_for_requester(
            normalize_address(requester, "requester"), self._page_limit(limit), cursor, self._parse_status(status)
        )
