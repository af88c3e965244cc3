# access_broker/store.py
"""
Escrow Store: durable AccessRequest records and the grant-obligation queue.

Records are keyed by request_id and indexed by the (owner, requester, dataset)
tuple, by owner, by requester and by payment tx hash. Every state change is a
conditional update on (request_id, status, version); a None result means the
caller lost a race and should re-read.
"""

import base64
import binascii
import datetime
import json
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from access_broker import db as dbmod
from access_broker.errors import Conflict, InvalidArgument
from access_broker.models import AccessRequestRecord, GrantObligationRecord
from access_broker.schemas import (
    AccessRequest,
    GrantObligation,
    ObligationStatus,
    RequestPage,
    RequestStatus,
    TERMINAL_STATUSES,
)


class TxHashInUse(Conflict):
    """The payment tx hash is already attached to another request."""


def _as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def _open_key(owner: str, requester: str, dataset_id: int) -> str:
    return f"{owner}|{requester}|{dataset_id}"


def _to_request(row: AccessRequestRecord) -> AccessRequest:
    return AccessRequest(
        request_id=row.request_id,
        owner=row.owner_address,
        requester=row.requester_address,
        dataset_id=row.dataset_id,
        status=RequestStatus(row.status),
        message=row.message,
        price_octas=row.price_octas,
        payment_tx_hash=row.payment_tx_hash,
        created_at=_as_utc(row.created_at),
        approved_at=_as_utc(row.approved_at),
        paid_at=_as_utc(row.paid_at),
        version=row.version,
    )


def _to_obligation(row: GrantObligationRecord) -> GrantObligation:
    return GrantObligation(
        obligation_id=row.id,
        request_id=row.request_id,
        owner=row.owner_address,
        requester=row.requester_address,
        dataset_id=row.dataset_id,
        expires_at=row.expires_at,
        idempotency_key=row.idempotency_key,
        status=ObligationStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        next_attempt_at=_as_utc(row.next_attempt_at),
        grant_tx_hash=row.grant_tx_hash,
        created_at=_as_utc(row.created_at),
        fulfilled_at=_as_utc(row.fulfilled_at),
    )


def encode_cursor(created_at: datetime.datetime, row_id: int) -> str:
    payload = json.dumps({"t": _as_utc(created_at).isoformat(), "i": row_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[datetime.datetime, int]:
    try:
        raw = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
        created_at = _as_utc(datetime.datetime.fromisoformat(raw["t"]))
        row_id = int(raw["i"])
    except (ValueError, KeyError, TypeError, UnicodeError, binascii.Error) as e:
        raise InvalidArgument("malformed pagination cursor", {"field": "cursor"}) from e
    return created_at, row_id


class EscrowStore:
    """SQLAlchemy-backed escrow store. Sessions come from access_broker.db at call time."""

    # --- access requests
    def create_request(
        self,
        owner: str,
        requester: str,
        dataset_id: int,
        message: Optional[str],
        price_octas: int,
        created_at: datetime.datetime,
    ) -> AccessRequest:
        row = AccessRequestRecord(
            request_id=str(uuid.uuid4()),
            owner_address=owner,
            requester_address=requester,
            dataset_id=dataset_id,
            status=RequestStatus.PENDING.value,
            message=message,
            price_octas=price_octas,
            created_at=created_at,
            open_key=_open_key(owner, requester, dataset_id),
            version=1,
        )
        try:
            with dbmod.session_scope() as db:
                db.add(row)
                db.flush()
                created = _to_request(row)
        except IntegrityError as e:
            raise Conflict(
                "An open access request already exists for this owner, requester and dataset",
                {"owner": owner, "requester": requester, "dataset_id": dataset_id},
            ) from e
        return created

    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        with dbmod.session_scope() as db:
            row = db.execute(
                select(AccessRequestRecord).where(AccessRequestRecord.request_id == request_id)
            ).scalar_one_or_none()
            return _to_request(row) if row else None

    def get_current(self, owner: str, requester: str, dataset_id: int) -> Optional[AccessRequest]:
        """Most recently created record for the tuple (open or terminal)."""
        with dbmod.session_scope() as db:
            row = db.execute(
                select(AccessRequestRecord)
                .where(
                    AccessRequestRecord.owner_address == owner,
                    AccessRequestRecord.requester_address == requester,
                    AccessRequestRecord.dataset_id == dataset_id,
                )
                .order_by(AccessRequestRecord.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_request(row) if row else None

    def find_by_tx_hash(self, tx_hash: str) -> Optional[AccessRequest]:
        with dbmod.session_scope() as db:
            row = db.execute(
                select(AccessRequestRecord).where(AccessRequestRecord.payment_tx_hash == tx_hash)
            ).scalar_one_or_none()
            return _to_request(row) if row else None

    def transition(
        self,
        request_id: str,
        expected_status: RequestStatus,
        expected_version: int,
        new_status: RequestStatus,
        **stamps: Any,
    ) -> Optional[AccessRequest]:
        values: Dict[str, Any] = {"status": new_status.value, "version": expected_version + 1}
        values.update(stamps)
        if new_status in TERMINAL_STATUSES:
            values["open_key"] = None
        with dbmod.session_scope() as db:
            res = db.execute(
                update(AccessRequestRecord)
                .where(
                    AccessRequestRecord.request_id == request_id,
                    AccessRequestRecord.status == expected_status.value,
                    AccessRequestRecord.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                return None
            row = db.execute(
                select(AccessRequestRecord).where(AccessRequestRecord.request_id == request_id)
            ).scalar_one()
            return _to_request(row)

    def mark_paid(
        self,
        request_id: str,
        expected_version: int,
        tx_hash: str,
        paid_at: datetime.datetime,
        grant_expires_at: int,
        idempotency_key: str,
        first_attempt_at: datetime.datetime,
    ) -> Optional[Tuple[AccessRequest, GrantObligation]]:
        """
        approved -> paid and the matching grant obligation, in one transaction.
        Returns None if the record moved on underneath the caller.
        Raises TxHashInUse if tx_hash already settled another request.
        """
        try:
            with dbmod.session_scope() as db:
                res = db.execute(
                    update(AccessRequestRecord)
                    .where(
                        AccessRequestRecord.request_id == request_id,
                        AccessRequestRecord.status == RequestStatus.APPROVED.value,
                        AccessRequestRecord.version == expected_version,
                    )
                    .values(
                        status=RequestStatus.PAID.value,
                        payment_tx_hash=tx_hash,
                        paid_at=paid_at,
                        open_key=None,
                        version=expected_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    return None
                row = db.execute(
                    select(AccessRequestRecord).where(AccessRequestRecord.request_id == request_id)
                ).scalar_one()
                obligation = GrantObligationRecord(
                    request_id=request_id,
                    owner_address=row.owner_address,
                    requester_address=row.requester_address,
                    dataset_id=row.dataset_id,
                    expires_at=grant_expires_at,
                    idempotency_key=idempotency_key,
                    status=ObligationStatus.PENDING.value,
                    attempts=0,
                    next_attempt_at=first_attempt_at,
                    created_at=paid_at,
                )
                db.add(obligation)
                db.flush()
                return _to_request(row), _to_obligation(obligation)
        except IntegrityError as e:
            raise TxHashInUse("Payment transaction already used", {"tx_hash": tx_hash}) from e

    def list_for_owner(
        self, owner: str, limit: int, cursor: Optional[str] = None, status: Optional[RequestStatus] = None
    ) -> RequestPage:
        return self._list(AccessRequestRecord.owner_address == owner, limit, cursor, status)

    def list_for_requester(
        self, requester: str, limit: int, cursor: Optional[str] = None, status: Optional[RequestStatus] = None
    ) -> RequestPage:
        return self._list(AccessRequestRecord.requester_address == requester, limit, cursor, status)

    def _list(self, criterion, limit: int, cursor: Optional[str], status: Optional[RequestStatus]) -> RequestPage:
        stmt = select(AccessRequestRecord).where(criterion)
        if status is not None:
            stmt = stmt.where(AccessRequestRecord.status == status.value)
        if cursor:
            c_at, c_id = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    AccessRequestRecord.created_at < c_at,
                    and_(AccessRequestRecord.created_at == c_at, AccessRequestRecord.id < c_id),
                )
            )
        stmt = stmt.order_by(AccessRequestRecord.created_at.desc(), AccessRequestRecord.id.desc()).limit(limit + 1)
        with dbmod.session_scope() as db:
            rows = list(db.execute(stmt).scalars())
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            last = rows[-1]
            next_cursor = encode_cursor(last.created_at, last.id)
        return RequestPage(items=[_to_request(r) for r in rows], next_cursor=next_cursor)

    # --- grant obligations
    def get_obligation(self, request_id: str) -> Optional[GrantObligation]:
        with dbmod.session_scope() as db:
            row = db.execute(
                select(GrantObligationRecord).where(GrantObligationRecord.request_id == request_id)
            ).scalar_one_or_none()
            return _to_obligation(row) if row else None

    def due_obligations(self, now: datetime.datetime, limit: int) -> List[GrantObligation]:
        with dbmod.session_scope() as db:
            rows = db.execute(
                select(GrantObligationRecord)
                .where(
                    GrantObligationRecord.status == ObligationStatus.PENDING.value,
                    GrantObligationRecord.next_attempt_at <= now,
                )
                .order_by(GrantObligationRecord.next_attempt_at.asc(), GrantObligationRecord.id.asc())
                .limit(limit)
            ).scalars()
            return [_to_obligation(r) for r in rows]

    def record_obligation_failure(
        self, obligation_id: int, error: str, next_attempt_at: datetime.datetime
    ) -> None:
        with dbmod.session_scope() as db:
            db.execute(
                update(GrantObligationRecord)
                .where(
                    GrantObligationRecord.id == obligation_id,
                    GrantObligationRecord.status == ObligationStatus.PENDING.value,
                )
                .values(
                    attempts=GrantObligationRecord.attempts + 1,
                    last_error=error[:1000],
                    next_attempt_at=next_attempt_at,
                )
                .execution_options(synchronize_session=False)
            )

    def fulfil_obligation(
        self,
        obligation_id: int,
        grant_tx_hash: Optional[str],
        fulfilled_at: datetime.datetime,
        attempted: bool = True,
    ) -> None:
        values: Dict[str, Any] = {
            "status": ObligationStatus.FULFILLED.value,
            "grant_tx_hash": grant_tx_hash,
            "fulfilled_at": fulfilled_at,
            "last_error": None,
        }
        if attempted:
            values["attempts"] = GrantObligationRecord.attempts + 1
        with dbmod.session_scope() as db:
            db.execute(
                update(GrantObligationRecord)
                .where(
                    GrantObligationRecord.id == obligation_id,
                    GrantObligationRecord.status == ObligationStatus.PENDING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def count_pending_obligations(self) -> int:
        with dbmod.session_scope() as db:
            return db.execute(
                select(func.count(GrantObligationRecord.id)).where(
                    GrantObligationRecord.status == ObligationStatus.PENDING.value
                )
            ).scalar_one()
