# rewrite_pipeline/state.py
"""
Explicit state machines for jobs, requests, triggers and provider batches.

Every status write in store.py goes through check_transition(); anything not
listed here raises IllegalTransition. Terminal states have no outgoing edges.
"""

from typing import Dict, FrozenSet

from rewrite_pipeline.errors import IllegalTransition

# --- RewriteJob
JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_BATCH_SUBMITTED = "batch_submitted"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELED = "canceled"

JOB_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    JOB_QUEUED: frozenset({JOB_PROCESSING, JOB_FAILED, JOB_CANCELED}),
    JOB_PROCESSING: frozenset({JOB_BATCH_SUBMITTED, JOB_QUEUED, JOB_COMPLETED, JOB_FAILED, JOB_CANCELED}),
    JOB_BATCH_SUBMITTED: frozenset({JOB_QUEUED, JOB_COMPLETED, JOB_FAILED, JOB_CANCELED}),
    JOB_COMPLETED: frozenset(),
    JOB_FAILED: frozenset(),
    JOB_CANCELED: frozenset(),
}
JOB_TERMINAL = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELED})
JOB_IN_FLIGHT = frozenset({JOB_QUEUED, JOB_PROCESSING, JOB_BATCH_SUBMITTED})

# --- RewriteRequest
REQ_QUEUED = "queued"
REQ_PROCESSING = "processing"
REQ_COMPLETED = "completed"
REQ_CANCELED = "canceled"

REQUEST_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    REQ_QUEUED: frozenset({REQ_PROCESSING, REQ_COMPLETED, REQ_CANCELED}),
    REQ_PROCESSING: frozenset({REQ_COMPLETED, REQ_CANCELED}),
    REQ_COMPLETED: frozenset(),
    REQ_CANCELED: frozenset(),
}

# --- ComplaintTrigger
TRG_QUEUED = "queued"
TRG_PROCESSING = "processing"
TRG_COMPLETED = "completed"
TRG_FAILED = "failed"
TRG_CANCELED = "canceled"

TRIGGER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    TRG_QUEUED: frozenset({TRG_PROCESSING, TRG_FAILED, TRG_CANCELED}),
    TRG_PROCESSING: frozenset({TRG_QUEUED, TRG_COMPLETED, TRG_FAILED, TRG_CANCELED}),
    TRG_COMPLETED: frozenset(),
    TRG_FAILED: frozenset(),
    TRG_CANCELED: frozenset(),
}

# --- ProviderBatch (status mirrors the provider; completed can still be downgraded
# to failed when the output file turns out to be missing)
BATCH_SUBMITTED = "submitted"
BATCH_RUNNING = "running"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
BATCH_CANCELED = "canceled"
BATCH_PENDING = frozenset({BATCH_SUBMITTED, BATCH_RUNNING})

BATCH_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    BATCH_SUBMITTED: frozenset({BATCH_RUNNING, BATCH_COMPLETED, BATCH_FAILED, BATCH_CANCELED}),
    BATCH_RUNNING: frozenset({BATCH_COMPLETED, BATCH_FAILED, BATCH_CANCELED}),
    BATCH_COMPLETED: frozenset({BATCH_FAILED}),
    BATCH_FAILED: frozenset(),
    BATCH_CANCELED: frozenset(),
}

_TABLES = {
    "job": JOB_TRANSITIONS,
    "request": REQUEST_TRANSITIONS,
    "trigger": TRIGGER_TRANSITIONS,
    "batch": BATCH_TRANSITIONS,
}


def can_transition(kind: str, current: str, target: str) -> bool:
    return target in _TABLES[kind].get(current, frozenset())


def check_transition(kind: str, current: str, target: str) -> None:
    if not can_transition(kind, current, target):
        raise IllegalTransition(kind, current, target)
