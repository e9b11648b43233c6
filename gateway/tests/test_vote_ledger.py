import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from helpers import CommitThenFailStore, Wallet
from voting.errors import ProductNotFound, StorageError
from voting.models import Product
from voting.store import MemoryStore
from voting.vote_ledger import VoteLedger

MAKER = "0x" + "ab" * 20


class TestRecordVote:

    def setup_method(self):
        self.store   = MemoryStore()
        self.ledger  = VoteLedger(self.store)
        self.product = self.store.create_product(Product(title="Widget", maker_address=MAKER))
        self.voter   = "0x" + "cd" * 20

    def test_first_vote_accepted(self):
        receipt = self.ledger.record_vote(self.product.id, self.voter)
        assert receipt.accepted is True
        assert receipt.current_count == 1
        assert self.store.get_product(self.product.id).vote_count == 1

    def test_duplicate_returns_current_count(self):
        self.ledger.record_vote(self.product.id, self.voter)
        receipt = self.ledger.record_vote(self.product.id, self.voter)
        assert receipt.accepted is False
        assert receipt.current_count == 1
        assert self.store.get_product(self.product.id).vote_count == 1

    def test_duplicate_detection_ignores_case(self):
        self.ledger.record_vote(self.product.id, "0x" + "CD" * 20)
        receipt = self.ledger.record_vote(self.product.id, self.voter)
        assert receipt.accepted is False
        assert self.ledger.has_voted(self.product.id, "0x" + "Cd" * 20) is True

    def test_same_voter_on_two_products(self):
        other = self.store.create_product(Product(title="Gadget", maker_address=MAKER))
        assert self.ledger.record_vote(self.product.id, self.voter).accepted is True
        assert self.ledger.record_vote(other.id, self.voter).accepted is True

    def test_count_derived_from_ledger(self):
        for i in range(5):
            self.ledger.record_vote(self.product.id, f"0x{i:040x}")
        assert self.ledger.count_votes(self.product.id) == 5
        assert self.store.get_product(self.product.id).vote_count == 5

    def test_unknown_product(self):
        with pytest.raises(ProductNotFound):
            self.ledger.record_vote("00000000-0000-4000-8000-000000000000", self.voter)

    def test_vote_count_never_decreases(self):
        ahead = self.store.create_product(Product(title="Ahead", maker_address=MAKER, vote_count=7))
        receipt = self.ledger.record_vote(ahead.id, self.voter)
        assert receipt.current_count == 1
        assert receipt.product.vote_count == 7
        assert self.store.get_product(ahead.id).vote_count == 7


class TestConcurrentVotes:

    def setup_method(self):
        self.store   = MemoryStore()
        self.ledger  = VoteLedger(self.store)
        self.product = self.store.create_product(Product(title="Widget", maker_address=MAKER))

    def _race(self, voters):
        barrier = threading.Barrier(len(voters))

        def cast(voter):
            barrier.wait()
            return self.ledger.record_vote(self.product.id, voter)

        with ThreadPoolExecutor(max_workers=len(voters)) as pool:
            return list(pool.map(cast, voters))

    def test_same_pair_exactly_one_success(self):
        voter = Wallet().address
        receipts = self._race([voter, voter])
        assert sorted(r.accepted for r in receipts) == [False, True]
        assert self.ledger.count_votes(self.product.id) == 1

    def test_same_pair_many_racers(self):
        voter = Wallet().address
        receipts = self._race([voter] * 16)
        assert [r.accepted for r in receipts].count(True) == 1

    def test_distinct_voters_all_counted(self):
        voters = [f"0x{i:040x}" for i in range(25)]
        receipts = self._race(voters)
        assert all(r.accepted for r in receipts)
        assert sorted(r.current_count for r in receipts)[-1] == 25
        assert self.store.get_product(self.product.id).vote_count == 25


class TestInterruptedWrite:

    def test_retry_repairs_cached_count(self):
        flaky  = f"0x{9:040x}"
        store  = CommitThenFailStore(flaky)
        ledger = VoteLedger(store)
        product = store.create_product(Product(title="Widget", maker_address=MAKER))
        for i in range(9):
            ledger.record_vote(product.id, f"0x{i:040x}")

        with pytest.raises(StorageError):
            ledger.record_vote(product.id, flaky)

        receipt = ledger.record_vote(product.id, flaky)
        assert receipt.accepted is False
        assert receipt.current_count == 10
        assert receipt.product.vote_count == 10
        assert store.get_product(product.id).vote_count == 10
