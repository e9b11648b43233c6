"""
ARCHUNT :: Payout orchestrator
==============================
Per-product state machine driving exactly one reward payout:

    none ──(count >= threshold, atomic CAS)──> pending ──> paid
                                                       └─> failed

Only the caller whose ``none -> pending`` compare-and-set succeeds submits
the payout; every other concurrent caller sees a non-``none`` status and
returns it unchanged. ``failed`` is terminal: nothing here retries.

Every path out of ``execute_payout`` resolves the product to ``paid`` or
``failed``. A process dying between claim and settle leaves ``pending``
behind; ``expire_stale_pending`` sweeps those to ``failed``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

from voting import settings
from voting.errors import PayoutFailed
from voting.models import PayoutStatus, Product
from voting.replay_guard import now_ms
from voting.store import Store

logger = logging.getLogger("archunt.payout")


@dataclass(frozen=True)
class PayoutRequest:
    destination:     str
    amount:          str = settings.PAYOUT_AMOUNT
    currency:        str = settings.PAYOUT_CURRENCY
    idempotency_key: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class PayoutDecision:
    status:      PayoutStatus
    payout_data: Optional[dict] = None
    triggered:   bool = False     # True only for the caller that won none -> pending


# ── Provider capability ────────────────────────────────────────────────────────

class PayoutClient:
    """Submit a payout, return the provider receipt or raise PayoutFailed."""

    def submit(self, request: PayoutRequest) -> dict:
        raise NotImplementedError


class CirclePayoutClient(PayoutClient):

    def __init__(
        self,
        api_key:  str   = settings.CIRCLE_API_KEY,
        base_url: str   = settings.CIRCLE_BASE_URL,
        chain:    str   = settings.CIRCLE_PAYOUT_CHAIN,
        timeout:  float = settings.PAYOUT_TIMEOUT_SEC,
    ):
        self.api_key  = api_key
        self.base_url = base_url.rstrip("/")
        self.chain    = chain
        self.timeout  = timeout

    def build_body(self, request: PayoutRequest) -> dict:
        return {
            "amount": {"amount": request.amount, "currency": request.currency},
            "destination": {
                "type":    "blockchain",
                "chain":   self.chain,
                "address": request.destination,
            },
            "idempotencyKey": request.idempotency_key,
        }

    def submit(self, request: PayoutRequest) -> dict:
        if not self.api_key:
            raise PayoutFailed("CIRCLE_API_KEY not configured")

        try:
            resp = requests.post(
                f"{self.base_url}/v1/payouts",
                json=self.build_body(request),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type":  "application/json",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise PayoutFailed(f"Payout provider timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise PayoutFailed(f"Payout provider unreachable: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:500]}

        if not resp.ok:
            logger.error(f"[PAYOUT] Circle rejected payout {request.idempotency_key}: {resp.status_code} {data}")
            raise PayoutFailed(f"Payout failed with status {resp.status_code}")

        return data


# ── State machine ──────────────────────────────────────────────────────────────

class PayoutOrchestrator:

    def __init__(
        self,
        store:     Store,
        client:    PayoutClient,
        threshold: int = settings.VOTE_THRESHOLD,
        amount:    str = settings.PAYOUT_AMOUNT,
        clock:     Callable[[], int] = now_ms,
    ):
        self.store     = store
        self.client    = client
        self.threshold = threshold
        self.amount    = amount
        self.clock     = clock

    def _current(self, product_id: str, fallback: Product) -> PayoutDecision:
        fresh = self.store.get_product(product_id) or fallback
        return PayoutDecision(status=fresh.payout_status, payout_data=fresh.payout_data)

    def on_vote_counted(self, product: Product, current_count: int) -> PayoutDecision:
        if current_count < self.threshold:
            return PayoutDecision(status=product.payout_status, payout_data=product.payout_data)

        if product.payout_status != PayoutStatus.NONE:
            return self._current(product.id, product)

        claimed = self.store.compare_and_set_payout(
            product.id, PayoutStatus.NONE, PayoutStatus.PENDING, self.clock(),
        )
        if not claimed:
            return self._current(product.id, product)

        logger.info(f"[PAYOUT] Threshold {self.threshold} reached for {product.id} (votes={current_count}), payout claimed")
        return PayoutDecision(status=PayoutStatus.PENDING, triggered=True)

    def execute_payout(self, product: Product) -> PayoutDecision:
        """Submit the payout for a product this caller moved to pending, then settle it."""
        request = PayoutRequest(destination=product.maker_address, amount=self.amount)
        logger.info(
            f"[PAYOUT] Submitting payout for {product.id}: {request.amount} {request.currency} "
            f"-> {request.destination} (key={request.idempotency_key})"
        )

        try:
            receipt = self.client.submit(request)
        except PayoutFailed as e:
            logger.error(f"[PAYOUT] Payout for {product.id} failed: {e.message}")
            return self._settle_failed(product, e.message)
        except Exception as e:
            logger.error(f"[PAYOUT] Unexpected payout error for {product.id}: {e}", exc_info=True)
            return self._settle_failed(product, "Unexpected payout error")

        if not self.store.compare_and_set_payout(
            product.id, PayoutStatus.PENDING, PayoutStatus.PAID, self.clock(), payout_data=receipt,
        ):
            logger.critical(
                f"[PAYOUT] Payout {request.idempotency_key} for {product.id} succeeded "
                f"but the product was no longer pending"
            )
            return self._current(product.id, product)

        logger.info(f"[PAYOUT] Payout for {product.id} paid")
        return PayoutDecision(status=PayoutStatus.PAID, payout_data=receipt)

    def _settle_failed(self, product: Product, reason: str) -> PayoutDecision:
        if self.store.compare_and_set_payout(
            product.id, PayoutStatus.PENDING, PayoutStatus.FAILED, self.clock(), payout_error=reason,
        ):
            return PayoutDecision(status=PayoutStatus.FAILED)
        return self._current(product.id, product)

    def process_vote(self, product: Product, current_count: int) -> PayoutDecision:
        """Synchronous variant: claim and, if this caller won, settle in-line."""
        decision = self.on_vote_counted(product, current_count)
        if decision.triggered:
            return self.execute_payout(product)
        return decision

    def expire_stale_pending(self, max_age_ms: int = settings.PAYOUT_STALE_AFTER_SEC * 1000) -> int:
        cutoff  = self.clock() - max_age_ms
        expired = 0
        for product_id in self.store.list_pending_payouts(cutoff):
            if self.store.compare_and_set_payout(
                product_id, PayoutStatus.PENDING, PayoutStatus.FAILED, self.clock(),
                payout_error="Payout did not settle in time",
            ):
                expired += 1
                logger.warning(f"[PAYOUT] Stale pending payout for {product_id} marked failed")
        return expired
