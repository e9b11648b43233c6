"""
ARCHUNT :: Replay guard
=======================
Cheap pre-checks that run before signature recovery:

  1. Freshness  : |now - timestamp| must be within the allowed skew (±5 min)
  2. Canonical  : the message must start with the exact expected prefix for
                  (wallet, timestamp[, action])

Neither check proves authenticity on its own; ``authenticate`` chains them
with the signature verifier and collapses every failure into one
InvalidSignature so clients cannot probe which check tripped.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Optional

from voting import settings
from voting.errors import InvalidSignature
from voting.message_codec import MessageCodec, default_codec
from voting.signature_verifier import SignatureVerifier

logger = logging.getLogger("archunt.auth")


def now_ms() -> int:
    return int(time.time() * 1000)


class ReplayFailure(str, Enum):
    EXPIRED           = "expired"
    MALFORMED_MESSAGE = "malformed_message"


class ReplayGuard:

    def __init__(
        self,
        codec:       MessageCodec = default_codec,
        max_skew_ms: int = settings.SIGNATURE_MAX_SKEW_MS,
        clock:       Callable[[], int] = now_ms,
    ):
        self.codec       = codec
        self.max_skew_ms = max_skew_ms
        self.clock       = clock

    def check_freshness(
        self,
        address:     str,
        message:     str,
        timestamp:   int,
        max_skew_ms: Optional[int] = None,
        action:      Optional[str] = None,
        now:         Optional[int] = None,
    ) -> dict:
        """
        Returns {"ok": True} or {"ok": False, "reason": ReplayFailure, "detail": str}.
        """
        skew = self.max_skew_ms if max_skew_ms is None else max_skew_ms
        now  = self.clock() if now is None else now

        if abs(now - timestamp) > skew:
            return {
                "ok":     False,
                "reason": ReplayFailure.EXPIRED,
                "detail": f"timestamp {timestamp} is {abs(now - timestamp)}ms from now (max {skew}ms)",
            }

        if not self.codec.matches_expected(address, timestamp, message, action):
            return {
                "ok":     False,
                "reason": ReplayFailure.MALFORMED_MESSAGE,
                "detail": "message does not match the canonical format",
            }

        return {"ok": True}


def authenticate(
    guard:     ReplayGuard,
    verifier:  SignatureVerifier,
    address:   str,
    message:   str,
    signature: str,
    timestamp: int,
    action:    str,
) -> None:
    """Freshness/format first (cheap), signature second. Raises InvalidSignature."""
    fresh = guard.check_freshness(address, message, timestamp, action=action)
    if not fresh["ok"]:
        logger.info(f"[AUTH] Rejected {action} for {address}: {fresh['reason'].value} ({fresh['detail']})")
        raise InvalidSignature()

    if not verifier.verify(address, message, signature):
        logger.info(f"[AUTH] Rejected {action} for {address}: signature does not recover to wallet")
        raise InvalidSignature()
