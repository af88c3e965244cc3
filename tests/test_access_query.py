# tests/test_access_query.py
"""The ledger decides access; escrow state is informational only."""
from access_broker.schemas import RequestStatus

from helpers import DATASET_ID, OWNER, REQUESTER, approved, pay


def test_on_chain_grant_wins_over_denied_escrow(engine, facade, ledger, clock):
    engine.create_request(OWNER, REQUESTER, DATASET_ID)
    engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    expires = int(clock.now.timestamp()) + 3600
    ledger.set_grant(OWNER, REQUESTER, DATASET_ID, expires_at=expires)

    decision = facade.check_access(OWNER, DATASET_ID, REQUESTER)
    assert decision.has_access is True
    assert decision.expires_at == expires
    assert decision.escrow_status is None


def test_grant_without_reported_expiry_is_effective(facade, ledger):
    ledger.set_grant(OWNER, REQUESTER, DATASET_ID, expires_at=None)
    assert facade.check_access(OWNER, DATASET_ID, REQUESTER).has_access is True


def test_expired_grant_falls_back_to_escrow(engine, facade, ledger, clock):
    req = approved(engine)
    ledger.set_grant(OWNER, REQUESTER, DATASET_ID, expires_at=int(clock.now.timestamp()) - 1)

    decision = facade.check_access(OWNER, DATASET_ID, REQUESTER)
    assert decision.has_access is False
    assert decision.escrow_status == RequestStatus.APPROVED
    assert decision.request_id == req.request_id


def test_inactive_grant_is_not_access(facade, ledger, clock):
    ledger.set_grant(OWNER, REQUESTER, DATASET_ID, expires_at=int(clock.now.timestamp()) + 60, active=False)
    assert facade.check_access(OWNER, DATASET_ID, REQUESTER).has_access is False


def test_no_grant_no_request(facade):
    decision = facade.check_access(OWNER, DATASET_ID, REQUESTER)
    assert decision.has_access is False
    assert decision.escrow_status is None
    assert decision.request_id is None


def test_pending_request_reported(engine, facade):
    engine.create_request(OWNER, REQUESTER, DATASET_ID)
    decision = facade.check_access(OWNER, DATASET_ID, REQUESTER)
    assert decision.has_access is False
    assert decision.escrow_status == RequestStatus.PENDING


def test_paid_request_grants_access_after_submission(engine, facade, ledger):
    approved(engine)
    pay(ledger, "0xabc")
    engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, "0xabc")
    assert facade.check_access(OWNER, DATASET_ID, REQUESTER).has_access is True


def test_grant_expiring_later_loses_access(engine, facade, ledger, clock):
    ledger.set_grant(OWNER, REQUESTER, DATASET_ID, expires_at=int(clock.now.timestamp()) + 10)
    assert facade.check_access(OWNER, DATASET_ID, REQUESTER).has_access is True
    clock.advance(11)
    assert facade.check_access(OWNER, DATASET_ID, REQUESTER).has_access is False


def test_grant_revoked_on_chain_after_payment_is_not_access(engine, facade, ledger):
    approved(engine)
    pay(ledger, "0xabc")
    engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, "0xabc")
    granted = ledger.grants[(OWNER, REQUESTER, DATASET_ID)]

    # revocation happens on the ledger, outside this service
    ledger.set_grant(OWNER, REQUESTER, DATASET_ID, expires_at=granted.expires_at, active=False)

    decision = facade.check_access(OWNER, DATASET_ID, REQUESTER)
    assert decision.has_access is False
    assert decision.escrow_status == RequestStatus.PAID
