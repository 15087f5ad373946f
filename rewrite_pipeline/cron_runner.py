# rewrite_pipeline/cron_runner.py
"""
Cron runner: sweep the trigger backlog, then dispatch due triggers to the
orchestrator, one POST per trigger.

The orchestrator owns the terminal marking of a trigger. The runner only
requeues (mark_trigger_retry) when the orchestrator could not be reached or
answered non-2xx.
"""

import json
import os
from typing import Any, Callable, Dict, Optional, Tuple

from rewrite_pipeline import config
from rewrite_pipeline import monitoring
from rewrite_pipeline import store
from rewrite_pipeline.connectors import service_client
from rewrite_pipeline.errors import to_error_message
from rewrite_pipeline.utils import clamp_int, new_id, truncate

CRON_BATCH_SIZE = clamp_int(os.getenv("CRON_BATCH_SIZE", "20"), 1, 100, 20)
CRON_DEFAULT_SURFACE = os.getenv("CRON_DEFAULT_SURFACE", "weekly_harmony")
ORCHESTRATOR_TIMEOUT_MS = clamp_int(os.getenv("ORCHESTRATOR_TIMEOUT_MS", "25000"), 1000, 120000, 25000)

TRIGGER_MAX_ATTEMPTS = store.TRIGGER_MAX_ATTEMPTS
STALE_PROCESSING_SECONDS = 10 * 60
RETRY_AFTER_SECONDS = 10 * 60

PostJson = Callable[..., Tuple[int, Optional[Dict[str, Any]], str]]


def orchestrator_payload(trigger: Dict[str, Any], surface: str) -> Dict[str, Any]:
    return {
        "entry_id": trigger["entry_id"],
        "home_id": trigger["home_id"],
        "sender_user_id": trigger["author_user_id"],
        "recipient_user_id": trigger["recipient_user_id"],
        "surface": surface,
    }


def process_claimed_job(
    trigger: Dict[str, Any],
    orchestrator_url: str,
    secret: str,
    timeout_seconds: float,
    post_json: PostJson = service_client.post_json,
    surface: str = CRON_DEFAULT_SURFACE,
    retry_after_seconds: int = RETRY_AFTER_SECONDS,
) -> Dict[str, Any]:
    entry_id = trigger["entry_id"]
    log_extra = {"entry_id": entry_id, "request_id": trigger.get("request_id")}
    try:
        status, _body, text = post_json(orchestrator_url, orchestrator_payload(trigger, surface), secret,
                                        timeout_seconds, request_id=trigger.get("request_id"))
    except Exception as e:
        msg = to_error_message(e)
        store.mark_trigger_retry(entry_id, f"orchestrator_call_failed:{truncate(msg, 400)}",
                                 note="runner_requeue_orchestrator_call_failed",
                                 retry_after_seconds=retry_after_seconds)
        monitoring.inc_trigger_outcome("call_failed")
        monitoring.logger.warning("Orchestrator call failed", extra={**log_extra, "error": msg[:300]})
        return {"ok": False, "entry_id": entry_id, "status": 0}

    if not 200 <= status < 300:
        store.mark_trigger_retry(entry_id, f"orchestrator_http_{status}:{truncate(text or '', 400)}",
                                 note="runner_requeue_orchestrator_http_error",
                                 retry_after_seconds=retry_after_seconds)
        monitoring.inc_trigger_outcome("http_error")
        monitoring.logger.warning("Orchestrator returned non-2xx", extra={**log_extra, "status": status})
        return {"ok": False, "entry_id": entry_id, "status": status}

    monitoring.inc_trigger_outcome("dispatched")
    return {"ok": True, "entry_id": entry_id, "status": status}


def _in_process_post(url: str, payload: Dict[str, Any], secret: str, timeout_seconds: float,
                     request_id: Optional[str] = None) -> Tuple[int, Optional[Dict[str, Any]], str]:
    """Same contract as service_client.post_json, but runs the orchestrator in this process."""
    from rewrite_pipeline.orchestrator import RewriteOrchestrator

    status, body = RewriteOrchestrator().handle_body(json.dumps(payload).encode("utf-8"))
    return status, body, json.dumps(body)


def run(request_id: Optional[str] = None, post_json: Optional[PostJson] = None,
        limit: Optional[int] = None) -> Tuple[int, Dict[str, Any]]:
    """One cron pass. Returns (http_status, envelope)."""
    request_id = request_id or new_id()

    requeued_stale = store.requeue_stale_triggers(stale_seconds=STALE_PROCESSING_SECONDS)
    failed_exhausted = store.fail_exhausted_triggers(max_attempts=TRIGGER_MAX_ATTEMPTS)

    url = config.env_optional("ORCHESTRATOR_FUNCTION_URL")
    if post_json is None:
        post_json = service_client.post_json if url else _in_process_post
    secret = config.env("ORCHESTRATOR_SHARED_SECRET") if url else ""

    triggers = store.pop_pending_triggers(limit or CRON_BATCH_SIZE, max_attempts=TRIGGER_MAX_ATTEMPTS)
    results = [
        process_claimed_job(t, url or "in-process", secret, ORCHESTRATOR_TIMEOUT_MS / 1000.0, post_json=post_json)
        for t in triggers
    ]

    monitoring.logger.info("Cron pass finished", extra={
        "request_id": request_id,
        "claimed": len(triggers),
        "requeued_stale": requeued_stale,
        "failed_exhausted": failed_exhausted,
    })
    return 200, {
        "ok": True,
        "request_id": request_id,
        "claimed": len(triggers),
        "dispatched": sum(1 for r in results if r["ok"]),
        "requeued_stale": requeued_stale,
        "failed_exhausted": failed_exhausted,
        "results": results,
    }
