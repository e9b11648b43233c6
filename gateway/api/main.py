"""
ARCHUNT :: Vote Gateway API
FastAPI server exposing signed product submission and voting, with a
one-time reward payout per product once it reaches the vote threshold.

Endpoints:
  - POST /submit-product  : signed product submission (5 / wallet / day)
  - POST /vote            : signed vote (20 / wallet / hour, 50 / IP / hour)
  - GET  /get-client-key  : wallet UI configuration token
  - GET  /health          : liveness + store reachability

Request pipeline for a vote:
  schema → freshness/format → signature → rate limits → ledger → payout gate
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded as ThrottleExceeded
from slowapi.util import get_remote_address

from voting import settings
from voting.errors import DuplicateVote, GatewayError, RateLimitExceeded, StorageError
from voting.payout import CirclePayoutClient, PayoutClient, PayoutDecision, PayoutOrchestrator
from voting.rate_limiter import SUBMIT_POLICY, VOTE_IP_POLICY, VOTE_WALLET_POLICY, RateLimiter
from voting.replay_guard import ReplayGuard, authenticate, now_ms
from voting.signature_verifier import SignatureVerifier
from voting.store import Store, build_store
from voting.submission_validator import ProductSubmission, VoteRequest, validation_failed_from
from voting.vote_ledger import VoteLedger

__version__ = "1.0.0"

# ─── Setup ────────────────────────────────────────────────────────────────────
LOG_FORMAT = "%(asctime)s [%(levelname)s] ARCHUNT :: %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
log = logging.getLogger("archunt.api")


# ─── Services ─────────────────────────────────────────────────────────────────
@dataclass
class Services:
    store:        Store
    ledger:       VoteLedger
    orchestrator: PayoutOrchestrator
    limiter:      RateLimiter
    guard:        ReplayGuard
    verifier:     SignatureVerifier = field(default_factory=SignatureVerifier)
    clock:        Callable[[], int] = now_ms


def build_services(
    store:         Optional[Store] = None,
    payout_client: Optional[PayoutClient] = None,
    clock:         Callable[[], int] = now_ms,
) -> Services:
    store = store if store is not None else build_store()
    return Services(
        store        = store,
        ledger       = VoteLedger(store),
        orchestrator = PayoutOrchestrator(store, payout_client or CirclePayoutClient(), clock=clock),
        limiter      = RateLimiter(store, clock=clock),
        guard        = ReplayGuard(clock=clock),
        clock        = clock,
    )


services = build_services()


def get_services() -> Services:
    return services


# ─── Client identity ──────────────────────────────────────────────────────────
def client_ip(request: Request) -> str:
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return get_remote_address(request)


# ─── Throttle for unauthenticated reads ───────────────────────────────────────
throttle = Limiter(
    key_func=client_ip,
    storage_uri=settings.REDIS_URL if settings.STORE_BACKEND == "redis" else "memory://",
)


# ─── Startup Validation ───────────────────────────────────────────────────────
def _startup_validation() -> None:
    warnings_found = []

    if not settings.CIRCLE_API_KEY:
        warnings_found.append(
            "CIRCLE_API_KEY is not set. Every product that reaches the vote "
            "threshold will have its payout marked failed."
        )
    if not settings.CIRCLE_CLIENT_KEY:
        warnings_found.append("CIRCLE_CLIENT_KEY is not set. /get-client-key will return 500.")
    if "*" in settings.ALLOWED_ORIGINS:
        warnings_found.append("ALLOWED_ORIGINS is '*'. Restrict it to the dApp origin in production.")

    for w in warnings_found:
        log.critical(f"\n{'='*70}\nCONFIG WARNING: {w}\n{'='*70}")

    if not warnings_found:
        log.info("Startup validation passed. Payout and client keys are configured.")

    try:
        expired = services.orchestrator.expire_stale_pending()
        if expired:
            log.warning(f"[PAYOUT] {expired} stale pending payout(s) resolved to failed")
    except StorageError as e:
        log.error(f"[PAYOUT] Stale payout sweep skipped: {e}")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _startup_validation()
    yield


app = FastAPI(
    title="ArcHunt Vote Gateway",
    description="Signed voting with exactly-once reward payouts",
    version=__version__,
    lifespan=lifespan,
)
app.state.limiter = throttle

log.info(f"CORS allowed origins: {settings.ALLOWED_ORIGINS}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ─── Error handlers ───────────────────────────────────────────────────────────
@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = validation_failed_from(list(exc.errors()))
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(ThrottleExceeded)
async def _throttle_handler(request: Request, exc: ThrottleExceeded) -> JSONResponse:
    err = RateLimitExceeded(limiter="client-key", message=f"Rate limit exceeded: {exc.detail}")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    err = GatewayError()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


# ─── Helpers ──────────────────────────────────────────────────────────────────
def _vote_response(votes: int, decision: PayoutDecision) -> Dict[str, Any]:
    body: Dict[str, Any] = {"votes": votes, "payoutStatus": decision.status.value}
    if decision.payout_data is not None:
        body["payoutData"] = decision.payout_data
    return body


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.options("/{path:path}", include_in_schema=False)
def preflight(path: str) -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/health")
def health(svc: Services = Depends(get_services)) -> Dict[str, Any]:
    store_ok = svc.store.ping()
    return {
        "status":    "operational" if store_ok else "degraded",
        "store":     settings.STORE_BACKEND,
        "version":   __version__,
        "timestamp": int(time.time()),
    }


@app.post("/submit-product", status_code=status.HTTP_201_CREATED, summary="Submit a Product")
def submit_product(
    body: ProductSubmission,
    svc:  Services = Depends(get_services),
) -> Dict[str, Any]:
    authenticate(
        svc.guard, svc.verifier,
        address   = body.maker_address,
        message   = body.message,
        signature = body.signature,
        timestamp = body.timestamp,
        action    = settings.ACTION_SUBMIT_PRODUCT,
    )
    svc.limiter.enforce(SUBMIT_POLICY, body.maker_address)

    product = svc.store.create_product(body.to_product(created_at=svc.clock()))
    log.info(f"[SUBMIT] Product created: {product.id} by {product.maker_address}")
    return {"product": product.to_dict()}


@app.post("/vote", summary="Vote for a Product")
def vote(
    body:             VoteRequest,
    request:          Request,
    background_tasks: BackgroundTasks,
    svc:              Services = Depends(get_services),
) -> Any:
    authenticate(
        svc.guard, svc.verifier,
        address   = body.voter_address,
        message   = body.message,
        signature = body.signature,
        timestamp = body.timestamp,
        action    = settings.ACTION_VOTE,
    )
    svc.limiter.enforce(VOTE_WALLET_POLICY, body.voter_address)
    svc.limiter.enforce(VOTE_IP_POLICY, client_ip(request))

    receipt = svc.ledger.record_vote(body.product_id, body.voter_address)

    # duplicates pass the gate too: a retry of a vote whose first attempt
    # died after the ledger write must still be able to claim the payout
    decision = svc.orchestrator.on_vote_counted(receipt.product, receipt.current_count)
    if decision.triggered:
        # response goes out as "pending"; the product settles to paid/failed after
        background_tasks.add_task(svc.orchestrator.execute_payout, receipt.product)

    if not receipt.accepted:
        err = DuplicateVote(votes=receipt.current_count, payout_status=decision.status.value)
        # returned rather than raised so the scheduled settle is not dropped
        return JSONResponse(status_code=err.status_code, content=err.to_dict(), background=background_tasks)

    log.info(f"[VOTE] {body.voter_address} -> {body.product_id} (votes={receipt.current_count}, payout={decision.status.value})")
    return _vote_response(receipt.current_count, decision)


@app.get("/get-client-key", summary="Wallet UI Client Key")
@throttle.limit(settings.RATE_LIMIT_CLIENT_KEY)
def get_client_key(request: Request) -> Dict[str, Any]:
    if not settings.CIRCLE_CLIENT_KEY:
        log.error("[KEY] CIRCLE_CLIENT_KEY not configured")
        raise GatewayError("Client key is not configured")
    return {"clientKey": settings.CIRCLE_CLIENT_KEY}


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
