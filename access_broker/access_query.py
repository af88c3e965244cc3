# access_broker/access_query.py
"""
Access Query Façade.

The ledger decides access. The escrow store is consulted only when there is no
effective on-chain grant, and then only to tell the caller where the
negotiation stands (pending, approved, denied, paid, or no request at all).
"""

import datetime
from typing import Callable, Optional

from access_broker import monitoring
from access_broker.ledger import LedgerGateway
from access_broker.schemas import AccessDecision, normalize_address, normalize_dataset_id
from access_broker.store import EscrowStore


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class AccessQueryFacade:
    def __init__(
        self,
        ledger: LedgerGateway,
        store: EscrowStore,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self.ledger = ledger
        self.store = store
        self._clock = clock or _utcnow

    def check_access(
        self, owner: str, dataset_id: int, requester: str, deadline: Optional[float] = None
    ) -> AccessDecision:
        o = normalize_address(owner, "owner")
        r = normalize_address(requester, "requester")
        d = normalize_dataset_id(dataset_id)

        grant = self.ledger.get_access_grant(o, r, d, deadline)
        now_ts = int(self._clock().timestamp())
        if grant is not None and grant.is_effective(now_ts):
            return AccessDecision(has_access=True, expires_at=grant.expires_at)

        current = self.store.get_current(o, r, d)
        decision = AccessDecision(
            has_access=False,
            expires_at=grant.expires_at if grant is not None else None,
            escrow_status=current.status if current else None,
            request_id=current.request_id if current else None,
        )
        monitoring.logger.debug(
            "No effective grant",
            extra={"owner": o, "requester": r, "dataset_id": d, "escrow_status": current.status.value if current else None},
        )
        return decision
