# access_broker/app.py
import time
from contextlib import asynccontextmanager
from typing import Optional

# Load .env BEFORE any access_broker imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Query, Path
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, PlainTextResponse
from pydantic import BaseModel

from access_broker import monitoring
from access_broker import auth as authmod
from access_broker import db as dbmod
from access_broker.access_query import AccessQueryFacade
from access_broker.config import BrokerConfig
from access_broker.deadlines import deadline_after
from access_broker.engine import AccessRequestEngine
from access_broker.errors import BrokerError, InvalidArgument, Unauthenticated, E_INTERNAL
from access_broker.ledger import build_ledger_gateway
from access_broker.locks import build_tuple_locks
from access_broker.schemas import RequestPage
from access_broker.store import EscrowStore
from access_broker.worker import GrantRetryWorker

config = BrokerConfig.from_env()

if config.database_url != dbmod.DATABASE_URL:
    dbmod.reconfigure(config.database_url)
# Initialize DB tables on startup
dbmod.init_db()

store = EscrowStore()
ledger = build_ledger_gateway(config)
engine = AccessRequestEngine(config, store, ledger, build_tuple_locks(config))
access_query = AccessQueryFacade(ledger, store)
worker = GrantRetryWorker(engine, config.grant_retry_interval_seconds, config.grant_retry_batch_size)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if config.grant_retry_enabled:
        worker.start()
    try:
        yield
    finally:
        worker.stop()


app = FastAPI(title="Dataset Access Broker", lifespan=lifespan)

API_KEY_HEADER = "x-api-key"
TIMEOUT_HEADER = "x-request-timeout"


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_and_rate_limit_middleware(request: Request, call_next):
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    allowed, _remaining = authmod.check_rate_limit(api_key or "")
    if not allowed:
        resp = JSONResponse(
            status_code=429,
            content={
                "request_id": None,
                "status": "error",
                "error_code": "E_RATE_LIMIT",
                "message": "Rate limit exceeded",
            },
        )
        resp.headers["Retry-After"] = "60"
        return resp

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    finally:
        # templated path keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path
        monitoring.observe_request(start, endpoint, request.method, status)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    if exc.http_status >= 500:
        monitoring.logger.warning(
            "Request failed", extra={"path": request.url.path, "error_code": exc.error_code, "details": exc.details}
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_response(exc.details.get("request_id")))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    err = InvalidArgument("Malformed request", {"errors": [
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg")} for e in exc.errors()
    ]})
    return JSONResponse(status_code=err.http_status, content=err.to_response())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    monitoring.logger.exception("Unhandled exception in request", extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={
            "request_id": None,
            "status": "error",
            "error_code": E_INTERNAL,
            "message": "Internal server error",
            "details": {},
        },
    )


def _deadline(request: Request) -> Optional[float]:
    raw = request.headers.get(TIMEOUT_HEADER)
    if raw is None or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError as e:
        raise InvalidArgument(f"{TIMEOUT_HEADER} must be a number of seconds", {"header": TIMEOUT_HEADER}) from e
    if seconds <= 0:
        raise InvalidArgument(f"{TIMEOUT_HEADER} must be positive", {"header": TIMEOUT_HEADER})
    return deadline_after(seconds)


def _caller(request: Request) -> str:
    caller = authmod.caller_address(request.headers.get(authmod.WALLET_HEADER))
    if caller is None:
        raise Unauthenticated(f"Missing {authmod.WALLET_HEADER} header", {"header": authmod.WALLET_HEADER})
    return caller


def _record_response(record, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"request_id": record.request_id, "status": "success", "access_request": record.to_wire()},
    )


def _page_response(page: RequestPage) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content={
            "status": "success",
            "items": [r.to_wire() for r in page.items],
            "next_cursor": page.next_cursor,
        },
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
class TupleBody(BaseModel):
    owner: str
    requester: str
    dataset_id: int


class CreateRequestBody(TupleBody):
    message: Optional[str] = None


class ConfirmPaymentBody(TupleBody):
    tx_hash: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/api/access-requests")
def create_access_request(body: CreateRequestBody, request: Request):
    """
    POST /api/access-requests
    Body: { "owner": "0x..", "requester": "0x..", "dataset_id": 1, "message": "..." }
    """
    record = engine.create_request(body.owner, body.requester, body.dataset_id, body.message, _deadline(request))
    return _record_response(record, status_code=201)


@app.post("/api/access-requests/approve")
def approve_access_request(body: TupleBody, request: Request):
    record = engine.approve_request(body.owner, body.requester, body.dataset_id, _caller(request), _deadline(request))
    return _record_response(record)


@app.post("/api/access-requests/deny")
def deny_access_request(body: TupleBody, request: Request):
    record = engine.deny_request(body.owner, body.requester, body.dataset_id, _caller(request), _deadline(request))
    return _record_response(record)


@app.post("/api/access-requests/confirm-payment")
def confirm_payment(body: ConfirmPaymentBody, request: Request):
    """
    POST /api/access-requests/confirm-payment
    Body: { "owner": "0x..", "requester": "0x..", "dataset_id": 1, "tx_hash": "0x..." }
    Returns the paid record. Grant submission problems after a verified payment
    are retried in the background and do not fail this call.
    """
    record = engine.confirm_payment(body.owner, body.requester, body.dataset_id, body.tx_hash, _deadline(request))
    return _record_response(record)


@app.get("/api/access-requests/current")
def get_current_access_request(
    owner: str = Query(...),
    requester: str = Query(...),
    dataset_id: int = Query(...),
):
    return _record_response(engine.get_request(owner, requester, dataset_id))


@app.get("/api/owners/{owner}/access-requests")
def list_owner_requests(
    owner: str = Path(..., description="Dataset owner address"),
    cursor: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
):
    return _page_response(engine.list_requests_for_owner(owner, cursor=cursor, limit=limit, status=status))


@app.get("/api/requesters/{requester}/access-requests")
def list_requester_requests(
    requester: str = Path(..., description="Requester address"),
    cursor: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
):
    return _page_response(engine.list_requests_for_requester(requester, cursor=cursor, limit=limit, status=status))


@app.post("/api/access/check")
def check_access(body: TupleBody, request: Request):
    decision = access_query.check_access(body.owner, body.dataset_id, body.requester, _deadline(request))
    content = {"status": "success"}
    content.update(decision.model_dump(mode="json"))
    return JSONResponse(status_code=200, content=content)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
