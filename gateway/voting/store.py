"""
ARCHUNT :: Persistence layer
============================
Narrow store interface for products, the vote ledger and rate-limit records.

Every operation that has to be safe across processes is a single atomic
store operation:

  - vote write               : Lua, SADD + SCARD + monotonic max(vote_count)
  - payout status transition : Lua compare-and-set on the product hash,
                               restricted to the forward-only transition table
  - rate-limit hit           : Lua check-and-increment on the record hash

RedisStore is the production backend. MemoryStore gives the same guarantees
inside one process (a lock around each operation) and backs tests and local
development.
"""

from __future__ import annotations

import copy
import functools
import json
import logging
import threading
from typing import Optional

import redis

from voting import settings
from voting.errors import StorageError
from voting.models import Category, PayoutStatus, Product, RateLimitRecord, is_allowed_transition

logger = logging.getLogger("archunt.store")


class Store:
    """Interface shared by every backend."""

    def ping(self) -> bool:
        raise NotImplementedError

    # ── Products ──────────────────────────────────────────────────────────────
    def create_product(self, product: Product) -> Product:
        raise NotImplementedError

    def get_product(self, product_id: str) -> Optional[Product]:
        raise NotImplementedError

    # ── Vote ledger ───────────────────────────────────────────────────────────
    def record_vote(self, product_id: str, voter_address: str) -> tuple[bool, int]:
        """
        Insert the (product, voter) pair, count the product's ledger rows and
        raise the cached vote_count to that count, as one atomic operation.

        Returns (inserted, count). A duplicate still refreshes the cached
        count, so replaying a vote repairs a product whose counter lags.
        """
        raise NotImplementedError

    def has_vote(self, product_id: str, voter_address: str) -> bool:
        raise NotImplementedError

    def count_votes(self, product_id: str) -> int:
        raise NotImplementedError

    # ── Payout state ──────────────────────────────────────────────────────────
    def compare_and_set_payout(
        self,
        product_id:   str,
        expected:     PayoutStatus,
        new:          PayoutStatus,
        now_ms:       int,
        payout_data:  Optional[dict] = None,
        payout_error: Optional[str] = None,
    ) -> bool:
        """Move expected -> new if the product is still at expected. Raises ValueError for a backward move."""
        raise NotImplementedError

    def list_pending_payouts(self, claimed_before_ms: int) -> list[str]:
        raise NotImplementedError

    # ── Rate limiting ─────────────────────────────────────────────────────────
    def rate_limit_hit(self, identifier: str, max_requests: int, window_ms: int, now_ms: int) -> bool:
        raise NotImplementedError

    def get_rate_limit(self, identifier: str) -> Optional[RateLimitRecord]:
        raise NotImplementedError


def _check_transition(expected: PayoutStatus, new: PayoutStatus) -> None:
    if not is_allowed_transition(PayoutStatus(expected), PayoutStatus(new)):
        raise ValueError(f"illegal payout transition {PayoutStatus(expected).value} -> {PayoutStatus(new).value}")


# ══════════════════════════════════════════════════════════════════════════════
#  In-memory backend
# ══════════════════════════════════════════════════════════════════════════════

class MemoryStore(Store):

    def __init__(self):
        self._lock        = threading.Lock()
        self._products:    dict[str, Product] = {}
        self._votes:       dict[str, set[str]] = {}
        self._rate_limits: dict[str, RateLimitRecord] = {}

    def ping(self) -> bool:
        return True

    def create_product(self, product: Product) -> Product:
        with self._lock:
            if product.id in self._products:
                raise StorageError("Failed to create product")
            self._products[product.id] = copy.deepcopy(product)
            self._votes.setdefault(product.id, set())
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            product = self._products.get(product_id)
            return copy.deepcopy(product) if product else None

    def record_vote(self, product_id: str, voter_address: str) -> tuple[bool, int]:
        with self._lock:
            voters   = self._votes.setdefault(product_id, set())
            inserted = voter_address not in voters
            voters.add(voter_address)
            count    = len(voters)
            product  = self._products.get(product_id)
            if product is not None and count > product.vote_count:
                product.vote_count = count
            return inserted, count

    def has_vote(self, product_id: str, voter_address: str) -> bool:
        with self._lock:
            return voter_address in self._votes.get(product_id, ())

    def count_votes(self, product_id: str) -> int:
        with self._lock:
            return len(self._votes.get(product_id, ()))

    def compare_and_set_payout(self, product_id, expected, new, now_ms, payout_data=None, payout_error=None) -> bool:
        _check_transition(expected, new)
        with self._lock:
            product = self._products.get(product_id)
            if product is None or product.payout_status != expected:
                return False
            product.payout_status     = new
            product.payout_updated_at = now_ms
            if payout_data is not None:
                product.payout_data = copy.deepcopy(payout_data)
            if payout_error is not None:
                product.payout_error = payout_error
            return True

    def list_pending_payouts(self, claimed_before_ms: int) -> list[str]:
        with self._lock:
            return [
                p.id for p in self._products.values()
                if p.payout_status == PayoutStatus.PENDING and p.payout_updated_at <= claimed_before_ms
            ]

    def rate_limit_hit(self, identifier, max_requests, window_ms, now_ms) -> bool:
        with self._lock:
            record = self._rate_limits.get(identifier)
            if record is None or record.expired(now_ms, window_ms):
                self._rate_limits[identifier] = RateLimitRecord(identifier, 1, now_ms)
                return True
            if record.count < max_requests:
                record.count += 1
                return True
            return False

    def get_rate_limit(self, identifier: str) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._rate_limits.get(identifier)
            return copy.copy(record) if record else None


# ══════════════════════════════════════════════════════════════════════════════
#  Redis backend
# ══════════════════════════════════════════════════════════════════════════════

# KEYS[1] votes set, KEYS[2] product hash
# ARGV[1] voter address
# returns {inserted (0|1), ledger count}
_RECORD_VOTE_LUA = """
local inserted = redis.call('SADD', KEYS[1], ARGV[1])
local count = redis.call('SCARD', KEYS[1])
if redis.call('EXISTS', KEYS[2]) == 1 then
  local current = tonumber(redis.call('HGET', KEYS[2], 'vote_count') or '0')
  if count > current then
    redis.call('HSET', KEYS[2], 'vote_count', count)
  end
end
return {inserted, count}
"""

# KEYS[1] product hash, KEYS[2] pending zset
# ARGV[1] expected, ARGV[2] new, ARGV[3] now_ms, ARGV[4] product id,
# ARGV[5] payout_data json or '', ARGV[6] payout_error or ''
_PAYOUT_CAS_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
if redis.call('HGET', KEYS[1], 'payout_status') ~= ARGV[1] then return 0 end
redis.call('HSET', KEYS[1], 'payout_status', ARGV[2], 'payout_updated_at', ARGV[3])
if ARGV[5] ~= '' then redis.call('HSET', KEYS[1], 'payout_data', ARGV[5]) end
if ARGV[6] ~= '' then redis.call('HSET', KEYS[1], 'payout_error', ARGV[6]) end
if ARGV[2] == 'pending' then
  redis.call('ZADD', KEYS[2], ARGV[3], ARGV[4])
else
  redis.call('ZREM', KEYS[2], ARGV[4])
end
return 1
"""

# KEYS[1] rate-limit hash
# ARGV[1] max requests, ARGV[2] window ms, ARGV[3] now ms
_RATE_LIMIT_LUA = """
local count = tonumber(redis.call('HGET', KEYS[1], 'count') or '0')
local start = tonumber(redis.call('HGET', KEYS[1], 'window_start') or '0')
local max_requests = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
if count == 0 or now > start + window then
  redis.call('HSET', KEYS[1], 'count', 1, 'window_start', now)
  redis.call('PEXPIRE', KEYS[1], window)
  return 1
end
if count < max_requests then
  redis.call('HINCRBY', KEYS[1], 'count', 1)
  return 1
end
return 0
"""


def _redis_errors_as_storage_errors(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except redis.RedisError as e:
            logger.error(f"[REDIS] {fn.__name__} failed: {e}")
            raise StorageError() from e
    return wrapper


def _product_to_hash(product: Product) -> dict[str, str]:
    raw = {
        "id":                product.id,
        "title":             product.title,
        "tagline":           product.tagline,
        "description":       product.description,
        "maker_address":     product.maker_address,
        "category":          product.category.value,
        "website_url":       product.website_url,
        "youtube_url":       product.youtube_url,
        "image_url":         product.image_url,
        "vote_count":        str(product.vote_count),
        "payout_status":     product.payout_status.value,
        "payout_data":       json.dumps(product.payout_data) if product.payout_data is not None else None,
        "payout_error":      product.payout_error,
        "created_at":        str(product.created_at),
        "payout_updated_at": str(product.payout_updated_at),
    }
    return {k: v for k, v in raw.items() if v is not None}


def _product_from_hash(data: dict[str, str]) -> Product:
    payout_data = data.get("payout_data")
    return Product(
        id                = data["id"],
        title             = data["title"],
        tagline           = data.get("tagline"),
        description       = data.get("description"),
        maker_address     = data["maker_address"],
        category          = Category(data.get("category", Category.GENERAL.value)),
        website_url       = data.get("website_url"),
        youtube_url       = data.get("youtube_url"),
        image_url         = data.get("image_url"),
        vote_count        = int(data.get("vote_count", "0")),
        payout_status     = PayoutStatus(data.get("payout_status", PayoutStatus.NONE.value)),
        payout_data       = json.loads(payout_data) if payout_data else None,
        payout_error      = data.get("payout_error"),
        created_at        = int(data.get("created_at", "0")),
        payout_updated_at = int(data.get("payout_updated_at", "0")),
    )


class RedisStore(Store):

    def __init__(self, client: redis.Redis, prefix: str = settings.REDIS_PREFIX):
        self.client = client
        self.prefix = prefix
        self._record_vote       = client.register_script(_RECORD_VOTE_LUA)
        self._payout_cas        = client.register_script(_PAYOUT_CAS_LUA)
        self._rate_limit        = client.register_script(_RATE_LIMIT_LUA)

    @classmethod
    def from_url(cls, url: str = settings.REDIS_URL, prefix: str = settings.REDIS_PREFIX) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    # ── Keys ──────────────────────────────────────────────────────────────────
    def _product_key(self, product_id: str) -> str:
        return f"{self.prefix}:product:{product_id}"

    def _votes_key(self, product_id: str) -> str:
        return f"{self.prefix}:votes:{product_id}"

    def _pending_key(self) -> str:
        return f"{self.prefix}:payouts:pending"

    def _rate_key(self, identifier: str) -> str:
        return f"{self.prefix}:rl:{identifier}"

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"[REDIS] ping failed: {e}")
            return False

    @_redis_errors_as_storage_errors
    def create_product(self, product: Product) -> Product:
        key = self._product_key(product.id)
        # HSETNX on the id field claims the key; a uuid4 collision is a hard error
        if not self.client.hsetnx(key, "id", product.id):
            raise StorageError("Failed to create product")
        self.client.hset(key, mapping=_product_to_hash(product))
        return product

    @_redis_errors_as_storage_errors
    def get_product(self, product_id: str) -> Optional[Product]:
        data = self.client.hgetall(self._product_key(product_id))
        if not data or "title" not in data:
            return None
        return _product_from_hash(data)

    @_redis_errors_as_storage_errors
    def record_vote(self, product_id: str, voter_address: str) -> tuple[bool, int]:
        inserted, count = self._record_vote(
            keys=[self._votes_key(product_id), self._product_key(product_id)],
            args=[voter_address],
        )
        return int(inserted) == 1, int(count)

    @_redis_errors_as_storage_errors
    def has_vote(self, product_id: str, voter_address: str) -> bool:
        return bool(self.client.sismember(self._votes_key(product_id), voter_address))

    @_redis_errors_as_storage_errors
    def count_votes(self, product_id: str) -> int:
        return int(self.client.scard(self._votes_key(product_id)))

    @_redis_errors_as_storage_errors
    def compare_and_set_payout(self, product_id, expected, new, now_ms, payout_data=None, payout_error=None) -> bool:
        _check_transition(expected, new)
        result = self._payout_cas(
            keys=[self._product_key(product_id), self._pending_key()],
            args=[
                PayoutStatus(expected).value,
                PayoutStatus(new).value,
                now_ms,
                product_id,
                json.dumps(payout_data) if payout_data is not None else "",
                payout_error or "",
            ],
        )
        return int(result) == 1

    @_redis_errors_as_storage_errors
    def list_pending_payouts(self, claimed_before_ms: int) -> list[str]:
        return list(self.client.zrangebyscore(self._pending_key(), "-inf", claimed_before_ms))

    @_redis_errors_as_storage_errors
    def rate_limit_hit(self, identifier, max_requests, window_ms, now_ms) -> bool:
        result = self._rate_limit(keys=[self._rate_key(identifier)], args=[max_requests, window_ms, now_ms])
        return int(result) == 1

    @_redis_errors_as_storage_errors
    def get_rate_limit(self, identifier: str) -> Optional[RateLimitRecord]:
        data = self.client.hgetall(self._rate_key(identifier))
        if not data:
            return None
        return RateLimitRecord(identifier, int(data["count"]), int(data["window_start"]))


def build_store(backend: str = settings.STORE_BACKEND) -> Store:
    if backend == "memory":
        logger.warning("Using in-memory store: state is per-process and lost on restart (DEV ONLY)")
        return MemoryStore()
    if backend == "redis":
        store = RedisStore.from_url()
        if not store.ping():
            logger.critical(f"Redis at {settings.REDIS_URL} is unreachable; requests will fail until it is up")
        return store
    raise ValueError(f"Unknown ARCHUNT_STORE backend: {backend!r}")
