# access_broker/schemas.py
import re
import datetime
from enum import Enum
from typing import List, Optional, Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from access_broker.errors import InvalidArgument

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{1,64}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{1,64}$")


def normalize_address(value: Any, field: str = "address") -> str:
    """Lower-case and left-pad an account address to the 64-digit long form."""
    if not isinstance(value, str):
        raise InvalidArgument(f"{field} must be a string", {"field": field})
    s = value.strip().lower()
    if not _ADDRESS_RE.match(s):
        raise InvalidArgument(f"{field} must be a 0x-prefixed hex address", {"field": field})
    return "0x" + s[2:].rjust(64, "0")


def normalize_tx_hash(value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidArgument("tx_hash must be a string", {"field": "tx_hash"})
    s = value.strip().lower()
    if not _TX_HASH_RE.match(s):
        raise InvalidArgument("tx_hash must be 0x followed by up to 64 hex digits", {"field": "tx_hash"})
    return s


def normalize_dataset_id(value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise InvalidArgument("dataset_id must be a positive integer", {"field": "dataset_id"})
    if isinstance(value, str):
        # isdigit() also admits superscripts that int() rejects
        if not value.strip().isdecimal():
            raise InvalidArgument("dataset_id must be a positive integer", {"field": "dataset_id"})
        try:
            value = int(value.strip())
        except ValueError:
            raise InvalidArgument("dataset_id must be a positive integer", {"field": "dataset_id"}) from None
    if not isinstance(value, int) or value <= 0 or value >= 2 ** 64:
        raise InvalidArgument("dataset_id must be a positive integer", {"field": "dataset_id"})
    return value


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    PAID = "paid"


OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.APPROVED)
TERMINAL_STATUSES = (RequestStatus.DENIED, RequestStatus.PAID)


class AccessRequest(BaseModel):
    """Off-chain escrow record for one access-request instance."""

    model_config = ConfigDict(use_enum_values=False)

    request_id: str
    owner: str
    requester: str
    dataset_id: int
    status: RequestStatus
    message: Optional[str] = None
    price_octas: int
    payment_tx_hash: Optional[str] = None
    created_at: datetime.datetime
    approved_at: Optional[datetime.datetime] = None
    paid_at: Optional[datetime.datetime] = None
    version: int = 1

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data.pop("version", None)
        return data


class ObligationStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"


class GrantObligation(BaseModel):
    obligation_id: int
    request_id: str
    owner: str
    requester: str
    dataset_id: int
    expires_at: int
    idempotency_key: str
    status: ObligationStatus
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: datetime.datetime
    grant_tx_hash: Optional[str] = None
    created_at: datetime.datetime
    fulfilled_at: Optional[datetime.datetime] = None


class DatasetInfo(BaseModel):
    owner: str
    dataset_id: int
    exists: bool = True
    active: bool = True
    data_hash: Optional[str] = None
    metadata: Optional[str] = None
    created_at: Optional[int] = None


class AccessGrant(BaseModel):
    owner: str
    requester: str
    dataset_id: int
    active: bool
    expires_at: Optional[int] = None  # unix seconds

    def is_effective(self, now_ts: int) -> bool:
        if not self.active:
            return False
        return self.expires_at is None or self.expires_at > now_ts


class LedgerTransaction(BaseModel):
    hash: str
    succeeded: bool
    pending: bool = False
    sender: Optional[str] = None
    recipient: Optional[str] = None
    amount: int = 0
    dataset_ref: Optional[int] = None
    function: Optional[str] = None


class AccessDecision(BaseModel):
    has_access: bool
    expires_at: Optional[int] = None
    escrow_status: Optional[RequestStatus] = None
    request_id: Optional[str] = None


class RequestPage(BaseModel):
    items: List[AccessRequest] = Field(default_factory=list)
    next_cursor: Optional[str] = None

    @field_validator("next_cursor")
    @classmethod
    def cursor_not_blank(cls, v):
        if v is not None and not v.strip():
            return None
        return v
