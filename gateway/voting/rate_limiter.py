"""
ARCHUNT :: Rate limiter
=======================
Fixed-window counter keyed by an arbitrary identifier (wallet, IP, or a
composite). The check-and-increment is one atomic store call, so bursts
from concurrent handlers in different processes cannot exceed the cap.

If the store cannot be reached the limiter fails closed: the request is
rejected, never waved through.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from voting import settings
from voting.errors import RateLimitExceeded, StorageError
from voting.replay_guard import now_ms
from voting.store import Store

logger = logging.getLogger("archunt.ratelimit")


@dataclass(frozen=True)
class RateLimitPolicy:
    name:         str     # reported back to the client when tripped
    max_requests: int
    window_ms:    int
    message:      str

    def key(self, identifier: str) -> str:
        return f"{self.name}:{identifier}"


SUBMIT_POLICY = RateLimitPolicy(
    name         = "submit-wallet",
    max_requests = settings.SUBMIT_LIMIT_PER_WALLET,
    window_ms    = settings.SUBMIT_WINDOW_SEC * 1000,
    message      = f"Rate limit exceeded. Maximum {settings.SUBMIT_LIMIT_PER_WALLET} products per wallet per day.",
)

VOTE_WALLET_POLICY = RateLimitPolicy(
    name         = "vote-wallet",
    max_requests = settings.VOTE_LIMIT_PER_WALLET,
    window_ms    = settings.VOTE_WINDOW_SEC * 1000,
    message      = f"Rate limit exceeded. Maximum {settings.VOTE_LIMIT_PER_WALLET} votes per wallet per hour.",
)

VOTE_IP_POLICY = RateLimitPolicy(
    name         = "vote-ip",
    max_requests = settings.VOTE_LIMIT_PER_IP,
    window_ms    = settings.VOTE_WINDOW_SEC * 1000,
    message      = f"Rate limit exceeded. Maximum {settings.VOTE_LIMIT_PER_IP} votes per network per hour.",
)


class RateLimiter:

    def __init__(self, store: Store, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    def allow(self, identifier: str, max_requests: int, window_ms: int) -> bool:
        if max_requests < 1 or window_ms < 1:
            raise ValueError("max_requests and window_ms must be positive")
        try:
            return self.store.rate_limit_hit(identifier, max_requests, window_ms, self.clock())
        except StorageError as e:
            logger.error(f"[RATE] Store unavailable for '{identifier}', rejecting: {e}")
            return False

    def enforce(self, policy: RateLimitPolicy, identifier: str) -> None:
        if not self.allow(policy.key(identifier), policy.max_requests, policy.window_ms):
            logger.warning(f"[RATE] {policy.name} limit hit for {identifier}")
            raise RateLimitExceeded(limiter=policy.name, message=policy.message)
