# tests/test_concurrency.py
"""Same-tuple operations serialize; the loser of a race sees InvalidState."""
import threading

import pytest

from access_broker.engine import AccessRequestEngine
from access_broker.errors import InvalidState, Timeout
from access_broker.locks import InMemoryTupleLocks, tuple_key
from access_broker.schemas import RequestStatus

from helpers import DATASET_ID, OWNER, REQUESTER, approved, pay


def _race(*calls):
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def run(i, fn):
        barrier.wait()
        try:
            results[i] = ("ok", fn())
        except Exception as e:
            results[i] = ("err", e)

    threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    return results


@pytest.mark.parametrize("round_", range(5))
def test_approve_and_deny_race_exactly_one_wins(engine, round_):
    engine.create_request(OWNER, REQUESTER, DATASET_ID)

    results = _race(
        lambda: engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER),
        lambda: engine.deny_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER),
    )
    oks = [r for kind, r in results if kind == "ok"]
    errs = [r for kind, r in results if kind == "err"]
    assert len(oks) == 1
    assert len(errs) == 1
    assert isinstance(errs[0], InvalidState)

    final = engine.get_request(OWNER, REQUESTER, DATASET_ID)
    assert final.status == oks[0].status
    assert final.status in (RequestStatus.APPROVED, RequestStatus.DENIED)


def test_concurrent_confirms_submit_one_grant(engine, ledger):
    approved(engine)
    pay(ledger, "0xabc")

    results = _race(*[
        (lambda: engine.confirm_payment(OWNER, REQUESTER, DATASET_ID, "0xabc")) for _ in range(4)
    ])
    assert all(kind == "ok" for kind, _ in results)
    assert {r.status for _, r in results} == {RequestStatus.PAID}
    assert len(ledger.submissions) == 1
    assert ledger.call_count("get_transaction") == 1


def test_concurrent_creates_one_open_request(engine):
    results = _race(*[(lambda: engine.create_request(OWNER, REQUESTER, DATASET_ID)) for _ in range(4)])
    assert sum(1 for kind, _ in results if kind == "ok") == 1
    page = engine.list_requests_for_owner(OWNER)
    assert len(page.items) == 1


def test_lock_wait_is_bounded(config, store, ledger, clock):
    locks = InMemoryTupleLocks(timeout_seconds=0.05)
    eng = AccessRequestEngine(config, store, ledger, locks, clock=clock)
    eng.create_request(OWNER, REQUESTER, DATASET_ID)

    with locks.hold(tuple_key(OWNER, REQUESTER, DATASET_ID)):
        with pytest.raises(Timeout):
            eng.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)

    assert eng.get_request(OWNER, REQUESTER, DATASET_ID).status == RequestStatus.PENDING
    assert locks.active_keys() == 0


def test_different_tuples_do_not_block(config, store, ledger, clock):
    locks = InMemoryTupleLocks(timeout_seconds=0.05)
    eng = AccessRequestEngine(config, store, ledger, locks, clock=clock)
    ledger.add_dataset(OWNER, DATASET_ID + 1)

    with locks.hold(tuple_key(OWNER, REQUESTER, DATASET_ID)):
        created = eng.create_request(OWNER, REQUESTER, DATASET_ID + 1)
    assert created.status == RequestStatus.PENDING
