# access_broker/models.py
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, Index
import datetime

from access_broker.db import Base


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class AccessRequestRecord(Base):
    __tablename__ = "access_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), unique=True, index=True, nullable=False)
    owner_address = Column(String(66), nullable=False, index=True)
    requester_address = Column(String(66), nullable=False, index=True)
    dataset_id = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    message = Column(Text, nullable=True)
    price_octas = Column(BigInteger, nullable=False)
    # unique: a payment transaction can settle at most one request
    payment_tx_hash = Column(String(66), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # "owner|requester|dataset" while pending/approved, NULL once terminal.
    # The unique index is what enforces one open request per tuple.
    open_key = Column(String(160), unique=True, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_access_requests_tuple", "owner_address", "requester_address", "dataset_id"),
        Index("ix_access_requests_created", "created_at"),
    )


class GrantObligationRecord(Base):
    __tablename__ = "grant_obligations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), unique=True, nullable=False)
    owner_address = Column(String(66), nullable=False)
    requester_address = Column(String(66), nullable=False)
    dataset_id = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
    idempotency_key = Column(String(64), unique=True, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, index=True)
    grant_tx_hash = Column(String(66), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
