# access_broker/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

import sentry_sdk
from pythonjsonlogger import jsonlogger
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "access-broker", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            ))
        logger.addHandler(handler)
    return logger


logger = setup_logger()

if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "broker_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "broker_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["endpoint"],
)

TRANSITIONS = Counter(
    "broker_request_transitions_total",
    "Access request state transitions",
    ["transition"],
)

OPERATION_ERRORS = Counter(
    "broker_operation_errors_total",
    "Engine operations that failed, by error code",
    ["operation", "error_code"],
)

PAYMENT_VERIFICATIONS = Counter(
    "broker_payment_verifications_total",
    "Payment verification outcomes",
    ["outcome"],
)

GRANT_SUBMISSIONS = Counter(
    "broker_grant_submissions_total",
    "On-chain grant submission attempts",
    ["outcome"],
)

LEDGER_LATENCY = Histogram(
    "broker_ledger_call_latency_seconds",
    "Ledger gateway call latency",
    ["call"],
)

PENDING_GRANTS = Gauge(
    "broker_pending_grant_obligations",
    "Grant obligations waiting for on-chain submission",
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def inc_transition(transition: str):
    try:
        TRANSITIONS.labels(transition=transition).inc()
    except Exception:
        pass


def inc_operation_error(operation: str, error_code: str):
    try:
        OPERATION_ERRORS.labels(operation=operation, error_code=error_code).inc()
    except Exception:
        pass


def inc_payment_verification(outcome: str):
    try:
        PAYMENT_VERIFICATIONS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_grant_submission(outcome: str):
    try:
        GRANT_SUBMISSIONS.labels(outcome=outcome).inc()
    except Exception:
        pass


def observe_ledger_call(start_ts: float, call: str):
    try:
        LEDGER_LATENCY.labels(call=call).observe(time.time() - start_ts)
    except Exception:
        pass


def set_pending_grants(n: int):
    try:
        PENDING_GRANTS.set(n)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
