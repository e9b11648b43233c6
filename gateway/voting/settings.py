"""
ARCHUNT :: Vote Gateway settings
================================
All runtime configuration is read from the environment (optionally from a
local .env file) once, at import time.
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Identity ───────────────────────────────────────────────────────────────────
APP_NAME = os.getenv("ARCHUNT_APP_NAME", "ArcHunt")

# ── Store ──────────────────────────────────────────────────────────────────────
STORE_BACKEND = os.getenv("ARCHUNT_STORE", "redis").strip().lower()   # redis | memory
REDIS_URL     = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PREFIX  = os.getenv("REDIS_PREFIX", "archunt")

# ── Signed messages ────────────────────────────────────────────────────────────
SIGNATURE_MAX_SKEW_MS = int(os.getenv("SIGNATURE_MAX_SKEW_MS", "300000"))   # ±5 min

ACTION_VOTE           = "vote"
ACTION_SUBMIT_PRODUCT = "submit-product"

# ── Rate limits ────────────────────────────────────────────────────────────────
SUBMIT_LIMIT_PER_WALLET  = int(os.getenv("SUBMIT_LIMIT_PER_WALLET", "5"))
SUBMIT_WINDOW_SEC        = int(os.getenv("SUBMIT_WINDOW_SEC", str(24 * 3600)))
VOTE_LIMIT_PER_WALLET    = int(os.getenv("VOTE_LIMIT_PER_WALLET", "20"))
VOTE_LIMIT_PER_IP        = int(os.getenv("VOTE_LIMIT_PER_IP", "50"))
VOTE_WINDOW_SEC          = int(os.getenv("VOTE_WINDOW_SEC", "3600"))
RATE_LIMIT_CLIENT_KEY    = os.getenv("RATE_LIMIT_CLIENT_KEY", "30/minute")
TRUST_PROXY_HEADERS      = _env_bool("TRUST_PROXY_HEADERS")

# ── Payout ─────────────────────────────────────────────────────────────────────
VOTE_THRESHOLD  = 10
PAYOUT_AMOUNT   = "1.00"
PAYOUT_CURRENCY = "USD"

CIRCLE_API_KEY         = os.getenv("CIRCLE_API_KEY", "")
CIRCLE_CLIENT_KEY      = os.getenv("CIRCLE_CLIENT_KEY", "")
CIRCLE_BASE_URL        = os.getenv("CIRCLE_BASE_URL", "https://api-sandbox.circle.com")
CIRCLE_PAYOUT_CHAIN    = os.getenv("CIRCLE_PAYOUT_CHAIN", "arc")
PAYOUT_TIMEOUT_SEC     = float(os.getenv("PAYOUT_TIMEOUT_SEC", "15"))
PAYOUT_STALE_AFTER_SEC = int(os.getenv("PAYOUT_STALE_AFTER_SEC", "300"))

# ── HTTP ───────────────────────────────────────────────────────────────────────
_raw_origins = os.getenv("ALLOWED_ORIGINS", "*")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]
