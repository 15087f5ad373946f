# rewrite_pipeline/monitoring.py
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
from prometheus_client import (
    Counter, Histogram,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger.json import JsonFormatter

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "rewrite-pipeline", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "rewrite_http_requests_total",
    "Total HTTP requests handled",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "rewrite_http_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

CLASSIFIER_COUNTER = Counter(
    "rewrite_classifier_total",
    "Classifier calls by outcome (ok or error code)",
    ["outcome"],
)

CLASSIFIER_LATENCY = Histogram(
    "rewrite_classifier_latency_seconds",
    "Classifier provider call latency",
)

ORCHESTRATOR_OUTCOMES = Counter(
    "rewrite_orchestrator_outcomes_total",
    "Orchestrator runs by outcome",
    ["outcome"],
)

TRIGGER_OUTCOMES = Counter(
    "rewrite_trigger_outcomes_total",
    "Cron runner trigger dispatch results",
    ["outcome"],
)

JOB_TRANSITIONS = Counter(
    "rewrite_job_transitions_total",
    "Rewrite job status transitions",
    ["to_status"],
)

BATCH_SUBMISSIONS = Counter(
    "rewrite_batch_submissions_total",
    "Provider batch submissions by outcome",
    ["outcome"],
)

BATCH_LINE_OUTCOMES = Counter(
    "rewrite_batch_line_outcomes_total",
    "Collector per-line outcomes",
    ["outcome"],
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_classifier(start_ts: float, outcome: str):
    try:
        CLASSIFIER_LATENCY.observe(time.time() - start_ts)
        CLASSIFIER_COUNTER.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_orchestrator_outcome(outcome: str):
    try:
        ORCHESTRATOR_OUTCOMES.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_trigger_outcome(outcome: str):
    try:
        TRIGGER_OUTCOMES.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_job_transition(to_status: str, n: int = 1):
    try:
        JOB_TRANSITIONS.labels(to_status=to_status).inc(n)
    except Exception:
        pass


def inc_batch_submission(outcome: str):
    try:
        BATCH_SUBMISSIONS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_batch_line(outcome: str):
    try:
        BATCH_LINE_OUTCOMES.labels(outcome=outcome).inc()
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
