# tests/helpers.py
"""Constants and small builders shared by the test modules."""
import datetime

OWNER = "0x" + "a1" * 32
REQUESTER = "0x" + "b2" * 32
OTHER = "0x" + "c3" * 32
DATASET_ID = 7
PRICE = 10_000_000


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime.datetime(2025, 6, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now


def pay(ledger, tx_hash="0xabc", amount=PRICE, sender=REQUESTER, recipient=OWNER, **kwargs):
    """Seed a transfer on the mock ledger."""
    return ledger.add_transfer(tx_hash, sender, recipient, amount, **kwargs)


def approved(engine):
    engine.create_request(OWNER, REQUESTER, DATASET_ID, "please")
    return engine.approve_request(OWNER, REQUESTER, DATASET_ID, caller=OWNER)
