"""
PayoutOrchestrator / CirclePayoutClient tests

Coverage:
  - threshold gate: below threshold no-op, crossing claims none -> pending
  - settle: success -> paid with receipt, any failure -> failed (never stuck pending)
  - exactly-once under N racing threshold-crossing votes
  - terminal states stay fixed under further votes
  - stale pending sweep
  - Circle HTTP client: body shape, non-2xx, timeout, missing key
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from helpers import FakePayoutClient, FrozenClock
from voting.errors import PayoutFailed
from voting.models import PAYOUT_TRANSITIONS, PayoutStatus, Product, is_allowed_transition
from voting.payout import CirclePayoutClient, PayoutOrchestrator, PayoutRequest
from voting.store import MemoryStore
from voting.vote_ledger import VoteLedger

MAKER = "0x" + "ab" * 20


def _product_with_votes(store, ledger, n):
    product = store.create_product(Product(title="Widget", maker_address=MAKER))
    for i in range(n):
        ledger.record_vote(product.id, f"0x{i:040x}")
    return store.get_product(product.id)


class TestThresholdGate:

    def setup_method(self):
        self.clock  = FrozenClock()
        self.store  = MemoryStore()
        self.ledger = VoteLedger(self.store)
        self.client = FakePayoutClient()
        self.orch   = PayoutOrchestrator(self.store, self.client, threshold=10, clock=self.clock)

    def test_below_threshold_noop(self):
        product = _product_with_votes(self.store, self.ledger, 9)
        decision = self.orch.on_vote_counted(product, 9)
        assert decision.status == PayoutStatus.NONE
        assert decision.triggered is False
        assert self.store.get_product(product.id).payout_status == PayoutStatus.NONE

    def test_crossing_claims_pending(self):
        product = _product_with_votes(self.store, self.ledger, 10)
        decision = self.orch.on_vote_counted(product, 10)
        assert decision.status == PayoutStatus.PENDING
        assert decision.triggered is True
        stored = self.store.get_product(product.id)
        assert stored.payout_status == PayoutStatus.PENDING
        assert stored.payout_updated_at == self.clock()
        assert self.client.requests == []

    def test_second_crossing_does_not_trigger(self):
        product = _product_with_votes(self.store, self.ledger, 10)
        assert self.orch.on_vote_counted(product, 10).triggered is True
        # stale snapshot still says "none": the CAS must refuse it
        decision = self.orch.on_vote_counted(product, 11)
        assert decision.triggered is False
        assert decision.status == PayoutStatus.PENDING


class TestSettle:

    def setup_method(self):
        self.clock  = FrozenClock()
        self.store  = MemoryStore()
        self.ledger = VoteLedger(self.store)

    def _claimed(self, client):
        orch = PayoutOrchestrator(self.store, client, threshold=10, clock=self.clock)
        product = _product_with_votes(self.store, self.ledger, 10)
        assert orch.on_vote_counted(product, 10).triggered
        return orch, product

    def test_success_marks_paid(self):
        client = FakePayoutClient()
        orch, product = self._claimed(client)
        decision = orch.execute_payout(product)
        assert decision.status == PayoutStatus.PAID
        stored = self.store.get_product(product.id)
        assert stored.payout_status == PayoutStatus.PAID
        assert stored.payout_data == decision.payout_data
        assert stored.payout_data["data"]["id"] == "payout-1"

    def test_request_carries_destination_amount_and_key(self):
        client = FakePayoutClient()
        orch, product = self._claimed(client)
        orch.execute_payout(product)
        [req] = client.requests
        assert req.destination == MAKER
        assert req.amount == "1.00"
        assert req.currency == "USD"
        uuid.UUID(req.idempotency_key)

    def test_provider_failure_marks_failed(self):
        orch, product = self._claimed(FakePayoutClient(fail=True))
        decision = orch.execute_payout(product)
        assert decision.status == PayoutStatus.FAILED
        stored = self.store.get_product(product.id)
        assert stored.payout_status == PayoutStatus.FAILED
        assert stored.payout_data is None
        assert "422" in stored.payout_error

    def test_unexpected_error_marks_failed(self):
        orch, product = self._claimed(FakePayoutClient(error=RuntimeError("socket exploded")))
        assert orch.execute_payout(product).status == PayoutStatus.FAILED
        assert self.store.get_product(product.id).payout_status == PayoutStatus.FAILED

    def test_terminal_state_fixed_under_more_votes(self):
        client = FakePayoutClient()
        orch, product = self._claimed(client)
        orch.execute_payout(product)
        for n in range(11, 15):
            self.ledger.record_vote(product.id, f"0x{n:040x}")
            fresh = self.store.get_product(product.id)
            decision = orch.process_vote(fresh, n)
            assert decision.status == PayoutStatus.PAID
            assert decision.triggered is False
        assert len(client.requests) == 1

    def test_failed_is_terminal(self):
        client = FakePayoutClient(fail=True)
        orch, product = self._claimed(client)
        orch.execute_payout(product)
        fresh = self.store.get_product(product.id)
        assert orch.process_vote(fresh, 12).status == PayoutStatus.FAILED
        assert len(client.requests) == 1

    def test_idempotency_keys_are_fresh(self):
        a = PayoutRequest(destination=MAKER)
        b = PayoutRequest(destination=MAKER)
        assert a.idempotency_key != b.idempotency_key


class TestExactlyOnce:

    @pytest.mark.parametrize("fail", [False, True])
    def test_racing_votes_submit_once(self, fail):
        store  = MemoryStore()
        ledger = VoteLedger(store)
        client = FakePayoutClient(fail=fail, delay=0.01)
        orch   = PayoutOrchestrator(store, client, threshold=10)
        product = _product_with_votes(store, ledger, 9)

        racers  = 12
        barrier = threading.Barrier(racers)

        def vote(i):
            barrier.wait()
            receipt = ledger.record_vote(product.id, f"0x{1000 + i:040x}")
            return orch.on_vote_counted(receipt.product, receipt.current_count)

        with ThreadPoolExecutor(max_workers=racers) as pool:
            decisions = list(pool.map(vote, range(racers)))

        winners = [d for d in decisions if d.triggered]
        assert len(winners) == 1
        assert all(d.status == PayoutStatus.PENDING for d in decisions)

        settled = orch.execute_payout(product)
        assert len(client.requests) == 1
        expected = PayoutStatus.FAILED if fail else PayoutStatus.PAID
        assert settled.status == expected
        assert store.get_product(product.id).payout_status == expected


class TestStalePending:

    def setup_method(self):
        self.clock  = FrozenClock()
        self.store  = MemoryStore()
        self.ledger = VoteLedger(self.store)
        self.orch   = PayoutOrchestrator(self.store, FakePayoutClient(), threshold=10, clock=self.clock)

    def test_old_pending_resolved_to_failed(self):
        product = _product_with_votes(self.store, self.ledger, 10)
        self.orch.on_vote_counted(product, 10)
        self.clock.advance(300_001)
        assert self.orch.expire_stale_pending(max_age_ms=300_000) == 1
        stored = self.store.get_product(product.id)
        assert stored.payout_status == PayoutStatus.FAILED
        assert stored.payout_error

    def test_recent_pending_untouched(self):
        product = _product_with_votes(self.store, self.ledger, 10)
        self.orch.on_vote_counted(product, 10)
        self.clock.advance(1_000)
        assert self.orch.expire_stale_pending(max_age_ms=300_000) == 0
        assert self.store.get_product(product.id).payout_status == PayoutStatus.PENDING

    def test_late_success_after_sweep_keeps_failed(self):
        product = _product_with_votes(self.store, self.ledger, 10)
        self.orch.on_vote_counted(product, 10)
        self.clock.advance(300_001)
        self.orch.expire_stale_pending(max_age_ms=300_000)
        assert self.orch.execute_payout(product).status == PayoutStatus.FAILED


class TestTransitions:

    def setup_method(self):
        self.store   = MemoryStore()
        self.product = self.store.create_product(Product(title="Widget", maker_address=MAKER))

    @pytest.mark.parametrize("old,new", [
        (PayoutStatus.NONE,    PayoutStatus.PENDING),
        (PayoutStatus.PENDING, PayoutStatus.PAID),
        (PayoutStatus.PENDING, PayoutStatus.FAILED),
    ])
    def test_forward_moves_allowed(self, old, new):
        assert is_allowed_transition(old, new) is True

    @pytest.mark.parametrize("old,new", [
        (PayoutStatus.NONE,    PayoutStatus.PAID),
        (PayoutStatus.PAID,    PayoutStatus.PENDING),
        (PayoutStatus.FAILED,  PayoutStatus.NONE),
        (PayoutStatus.PAID,    PayoutStatus.FAILED),
    ])
    def test_other_moves_rejected_by_store(self, old, new):
        assert is_allowed_transition(old, new) is False
        with pytest.raises(ValueError):
            self.store.compare_and_set_payout(self.product.id, old, new, 1_000)
        assert self.store.get_product(self.product.id).payout_status == PayoutStatus.NONE

    def test_terminal_states_have_no_exits(self):
        assert PAYOUT_TRANSITIONS[PayoutStatus.PAID] == set()
        assert PAYOUT_TRANSITIONS[PayoutStatus.FAILED] == set()


# ── Circle HTTP client ────────────────────────────────────────────────────────

class _FakeResponse:

    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload    = payload
        self.text        = str(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        return self._payload


class TestCirclePayoutClient:

    def setup_method(self):
        self.client  = CirclePayoutClient(api_key="test-key", base_url="https://circle.test/", chain="arc", timeout=3)
        self.request = PayoutRequest(destination=MAKER)

    def test_success_returns_receipt(self, monkeypatch):
        calls = []

        def fake_post(url, json, headers, timeout):
            calls.append((url, json, headers, timeout))
            return _FakeResponse(201, {"data": {"id": "p-1"}})

        monkeypatch.setattr(requests, "post", fake_post)
        assert self.client.submit(self.request) == {"data": {"id": "p-1"}}

        [(url, body, headers, timeout)] = calls
        assert url == "https://circle.test/v1/payouts"
        assert timeout == 3
        assert headers["Authorization"] == "Bearer test-key"
        assert body == {
            "amount": {"amount": "1.00", "currency": "USD"},
            "destination": {"type": "blockchain", "chain": "arc", "address": MAKER},
            "idempotencyKey": self.request.idempotency_key,
        }

    def test_rejection_raises(self, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda *a, **k: _FakeResponse(400, {"message": "bad"}))
        with pytest.raises(PayoutFailed):
            self.client.submit(self.request)

    def test_timeout_raises(self, monkeypatch):
        def slow(*a, **k):
            raise requests.Timeout("read timed out")

        monkeypatch.setattr(requests, "post", slow)
        with pytest.raises(PayoutFailed) as exc:
            self.client.submit(self.request)
        assert "timed out" in exc.value.message

    def test_missing_api_key(self, monkeypatch):
        def never(*a, **k):
            raise AssertionError("must not call the provider without a key")

        monkeypatch.setattr(requests, "post", never)
        with pytest.raises(PayoutFailed):
            CirclePayoutClient(api_key="").submit(self.request)
