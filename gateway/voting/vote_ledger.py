"""
ARCHUNT :: Vote ledger
======================
Durable, deduplicated record of (product, voter) pairs and the source of
truth for vote counts.

Uniqueness is enforced by the store itself (a set insert that reports
whether the member was new), never by check-then-insert here. The insert,
the recount from ledger rows and the write of that count onto the product
happen in one atomic store call. Duplicates go through the same call, so
replaying a vote whose response was lost brings the cached counter back
in line with the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from voting.errors import ProductNotFound
from voting.models import Product
from voting.store import Store

logger = logging.getLogger("archunt.ledger")


@dataclass
class VoteReceipt:
    accepted:      bool
    current_count: int
    product:       Product


class VoteLedger:

    def __init__(self, store: Store):
        self.store = store

    def record_vote(self, product_id: str, voter_address: str) -> VoteReceipt:
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFound()

        voter = voter_address.lower()
        inserted, current = self.store.record_vote(product_id, voter)
        product.vote_count = max(product.vote_count, current)

        if not inserted:
            logger.info(f"[LEDGER] Duplicate vote {voter} -> {product_id} (votes={current})")
        else:
            logger.info(f"[LEDGER] Vote recorded {voter} -> {product_id} (votes={current})")
        return VoteReceipt(accepted=inserted, current_count=current, product=product)

    def count_votes(self, product_id: str) -> int:
        return self.store.count_votes(product_id)

    def has_voted(self, product_id: str, voter_address: str) -> bool:
        return self.store.has_vote(product_id, voter_address.lower())
