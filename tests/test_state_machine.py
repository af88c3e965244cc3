# tests/test_state_machine.py
"""
Lifecycle of an access request: pending -> approved -> paid, pending -> denied.
"""
import random

import pytest

from access_broker.errors import (
    Conflict,
    Forbidden,
    InvalidArgument,
    InvalidState,
    NotFound,
    PaymentNotVerified,
)
from access_broker.schemas import RequestStatus, normalize_dataset_id

from helpers import DATASET_ID, OTHER, OWNER, REQUESTER, approved, pay


def test_create_approve_pay_scenario(engine, ledger, clock):
    created = engine.create_request(OWNER, REQUESTER, DATASET_ID, "please")
    assert created.status == RequestStatus.PENDING
    assert created.created_at == clock.now
    assert created.message == "please"
    assert created.price_octas == 10_000_000
    assert created.approved_at is None

    clock.advance(60)
    appr = engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    assert appr.status == RequestStatus.APPROVED
    assert appr.approved_at == clock.now
    assert appr.request_id == created.request_id

    clock.advance(60)
    pay(ledger, "0xabc")
    paid = engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, "0xabc")
    assert paid.status == RequestStatus.PAID
    assert paid.paid_at == clock.now
    assert paid.payment_tx_hash == "0xabc"
    assert len(ledger.submissions) == 1


def test_second_create_while_open_conflicts(engine):
    engine.create_request(OWNER, REQUESTER, DATASET_ID)
    with pytest.raises(Conflict):
        engine.create_request(OWNER, REQUESTER, DATASET_ID)

    engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    with pytest.raises(Conflict):
        engine.create_request(OWNER, REQUESTER, DATASET_ID)


def test_approve_is_idempotent(engine):
    first = approved(engine)
    again = engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    assert again.status == RequestStatus.APPROVED
    assert again.request_id == first.request_id
    assert again.approved_at == first.approved_at
    assert again.version == first.version


def test_deny_is_terminal(engine):
    engine.create_request(OWNER, REQUESTER, DATASET_ID)
    denied = engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    assert denied.status == RequestStatus.DENIED
    assert denied.approved_at is None

    with pytest.raises(InvalidState):
        engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    with pytest.raises(InvalidState):
        engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    with pytest.raises(InvalidState):
        engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, "0xabc")


def test_deny_after_approve_is_invalid(engine):
    approved(engine)
    with pytest.raises(InvalidState):
        engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)


def test_new_request_allowed_after_denial(engine):
    first = engine.create_request(OWNER, REQUESTER, DATASET_ID)
    engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)

    second = engine.create_request(OWNER, REQUESTER, DATASET_ID, "second try")
    assert second.request_id != first.request_id
    assert second.status == RequestStatus.PENDING
    assert engine.get_request(OWNER, REQUESTER, DATASET_ID).request_id == second.request_id


def test_only_owner_may_approve_or_deny(engine):
    engine.create_request(OWNER, REQUESTER, DATASET_ID)
    with pytest.raises(Forbidden):
        engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=REQUESTER)
    with pytest.raises(Forbidden):
        engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OTHER)
    assert engine.get_request(OWNER, REQUESTER, DATASET_ID).status == RequestStatus.PENDING


def test_approve_unknown_request_not_found(engine):
    with pytest.raises(NotFound):
        engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
    with pytest.raises(NotFound):
        engine.get_request(OWNER, REQUESTER, DATASET_ID)


def test_owner_equal_requester_rejected(engine):
    with pytest.raises(InvalidArgument):
        engine.create_request(OWNER, OWNER, DATASET_ID)


def test_unknown_or_inactive_dataset_not_found(engine, ledger):
    with pytest.raises(NotFound):
        engine.create_request(OWNER, REQUESTER, 999)

    ledger.add_dataset(OWNER, 8, active=False)
    with pytest.raises(NotFound):
        engine.create_request(OWNER, REQUESTER, 8)


def test_message_policy(engine):
    with pytest.raises(InvalidArgument):
        engine.create_request(OWNER, REQUESTER, DATASET_ID, "x" * 1001)
    with pytest.raises(InvalidArgument):
        engine.create_request(OWNER, REQUESTER, DATASET_ID, "bad\x00byte")

    created = engine.create_request(OWNER, REQUESTER, DATASET_ID, "  line one\nline two  ")
    assert created.message == "line one\nline two"


def test_blank_message_stored_as_none(engine):
    created = engine.create_request(OWNER, REQUESTER, DATASET_ID, "   ")
    assert created.message is None


@pytest.mark.parametrize("owner, dataset_id", [
    ("not-an-address", DATASET_ID),
    ("0x" + "f" * 65, DATASET_ID),
    (OWNER, 0),
    (OWNER, -3),
    (OWNER, True),
    (OWNER, "²"),
    (OWNER, "7a"),
])
def test_malformed_identifiers_rejected(engine, owner, dataset_id):
    with pytest.raises(InvalidArgument):
        engine.create_request(owner, REQUESTER, dataset_id)


def test_dataset_id_strings_must_be_plain_decimal():
    assert normalize_dataset_id(" 42 ") == 42
    for bad in ("²", "٣x", "", "-1", "1.5"):
        with pytest.raises(InvalidArgument):
            normalize_dataset_id(bad)


def test_addresses_are_normalized(engine, ledger):
    short_owner = "0xA"
    ledger.add_dataset(short_owner, 1)
    created = engine.create_request(short_owner, REQUESTER.upper().replace("0X", "0x"), 1)
    assert created.owner == "0x" + "0" * 63 + "a"
    assert created.requester == REQUESTER
    # same tuple through a different spelling is the same record
    with pytest.raises(Conflict):
        engine.create_request("0x000a", REQUESTER, 1)


ALLOWED_TRACES = (
    [RequestStatus.PENDING, RequestStatus.APPROVED, RequestStatus.PAID],
    [RequestStatus.PENDING, RequestStatus.DENIED],
)


def _is_prefix(trace):
    return any(trace == path[:len(trace)] for path in ALLOWED_TRACES)


@pytest.mark.parametrize("seed", [1, 7, 42, 2024])
def test_random_operation_sequences_only_move_forward(engine, ledger, seed):
    rng = random.Random(seed)
    traces = {}
    tx_counter = 0

    for _ in range(60):
        op = rng.choice(["create", "approve", "deny", "confirm", "confirm_bad"])
        try:
            if op == "create":
                engine.create_request(OWNER, REQUESTER, DATASET_ID)
            elif op == "approve":
                engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
            elif op == "deny":
                engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
            elif op == "confirm":
                tx_counter += 1
                tx_hash = hex(0x1000 + tx_counter)
                pay(ledger, tx_hash)
                engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, tx_hash)
            else:
                tx_counter += 1
                tx_hash = hex(0x1000 + tx_counter)
                pay(ledger, tx_hash, amount=1)
                engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, tx_hash)
        except (Conflict, InvalidState, NotFound, PaymentNotVerified):
            pass

        try:
            current = engine.get_request(OWNER, REQUESTER, DATASET_ID)
        except NotFound:
            continue
        trace = traces.setdefault(current.request_id, [])
        if not trace or trace[-1] != current.status:
            trace.append(current.status)

    assert traces
    for trace in traces.values():
        assert _is_prefix(trace), trace

    # at most one open record per tuple at any time
    page = engine.list_requests_for_owner(OWNER, limit=200)
    assert sum(1 for r in page.items if r.is_open) <= 1
