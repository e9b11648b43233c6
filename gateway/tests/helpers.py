"""Shared test doubles: real wallets, a scripted payout provider, a settable clock and a flaky store."""

import threading
import time

from eth_account import Account
from eth_account.messages import encode_defunct

from voting.errors import PayoutFailed, StorageError
from voting.message_codec import default_codec
from voting.payout import PayoutClient
from voting.store import MemoryStore


def now_ms() -> int:
    return int(time.time() * 1000)


class Wallet:

    def __init__(self):
        self.account = Account.create()
        self.address = self.account.address          # EIP-55 checksum casing

    def sign(self, message: str) -> str:
        signed = self.account.sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()

    def signed_fields(self, action: str, timestamp: int = None) -> dict:
        ts = now_ms() if timestamp is None else timestamp
        message = default_codec.build(self.address, ts, action)
        return {"signature": self.sign(message), "message": message, "timestamp": ts}


class FakePayoutClient(PayoutClient):

    def __init__(self, fail: bool = False, error: Exception = None, delay: float = 0.0):
        self.fail     = fail
        self.error    = error
        self.delay    = delay
        self.requests = []
        self._lock    = threading.Lock()

    def submit(self, request):
        with self._lock:
            self.requests.append(request)
            n = len(self.requests)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.fail:
            raise PayoutFailed("Payout failed with status 422")
        return {"data": {"id": f"payout-{n}", "status": "pending", "idempotencyKey": request.idempotency_key}}


class FrozenClock:

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.value = start_ms

    def __call__(self) -> int:
        return self.value

    def advance(self, ms: int) -> None:
        self.value += ms


class CommitThenFailStore(MemoryStore):
    """Applies the vote write, then reports a storage error once for one voter."""

    def __init__(self, flaky_voter: str):
        super().__init__()
        self.flaky_voter = flaky_voter.lower()
        self.tripped     = False

    def record_vote(self, product_id, voter_address):
        result = super().record_vote(product_id, voter_address)
        if voter_address == self.flaky_voter and not self.tripped:
            self.tripped = True
            raise StorageError("connection reset after write")
        return result
