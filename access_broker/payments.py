# access_broker/payments.py
"""
Payment verification: does a ledger transaction settle an approved request?

A transaction settles the request when it exists, has executed successfully,
moves at least the request price from the requester to the owner, and (when
the ledger reports one) references the same dataset. Anti-replay across
requests is checked by the engine against the escrow store.
"""

from typing import Optional

from access_broker.errors import PaymentNotVerified
from access_broker.schemas import AccessRequest, LedgerTransaction

TX_NOT_FOUND = "TX_NOT_FOUND"
TX_PENDING = "TX_PENDING"
TX_FAILED = "TX_FAILED"
NOT_A_TRANSFER = "NOT_A_TRANSFER"
SENDER_MISMATCH = "SENDER_MISMATCH"
RECIPIENT_MISMATCH = "RECIPIENT_MISMATCH"
AMOUNT_TOO_LOW = "AMOUNT_TOO_LOW"
DATASET_MISMATCH = "DATASET_MISMATCH"
TX_ALREADY_USED = "TX_ALREADY_USED"


def verify_payment(record: AccessRequest, tx_hash: str, tx: Optional[LedgerTransaction]) -> LedgerTransaction:
    """Return the transaction if it settles `record`, else raise PaymentNotVerified."""
    details = {"tx_hash": tx_hash, "request_id": record.request_id}
    if tx is None:
        raise PaymentNotVerified(TX_NOT_FOUND, "Payment transaction not found on the ledger", details)
    if tx.pending:
        raise PaymentNotVerified(TX_PENDING, "Payment transaction has not been committed yet", details)
    if not tx.succeeded:
        raise PaymentNotVerified(TX_FAILED, "Payment transaction did not execute successfully", details)
    if tx.recipient is None:
        raise PaymentNotVerified(
            NOT_A_TRANSFER, "Transaction is not a native coin transfer", dict(details, function=tx.function)
        )
    if tx.sender != record.requester:
        raise PaymentNotVerified(SENDER_MISMATCH, "Payment was not sent by the requester", details)
    if tx.recipient != record.owner:
        raise PaymentNotVerified(RECIPIENT_MISMATCH, "Payment was not sent to the dataset owner", details)
    if tx.amount < record.price_octas:
        raise PaymentNotVerified(
            AMOUNT_TOO_LOW,
            "Payment amount is below the access price",
            dict(details, amount=tx.amount, price_octas=record.price_octas),
        )
    if tx.dataset_ref is not None and tx.dataset_ref != record.dataset_id:
        raise PaymentNotVerified(DATASET_MISMATCH, "Payment references a different dataset", details)
    return tx
