# rewrite_pipeline/batch_submitter.py
"""
Batch submitter: claim queued batch-lane jobs, build a byte-capped JSONL file,
upload it, create the provider batch, register it and link the jobs.

Every claimed job leaves this module in a definite state: batch_submitted,
queued again with a backoff, or failed.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from rewrite_pipeline import config
from rewrite_pipeline import monitoring
from rewrite_pipeline import store
from rewrite_pipeline.connectors.openai_batch import OpenAIBatchClient
from rewrite_pipeline.errors import PipelineError, to_error_message
from rewrite_pipeline.processors import rewrite_prompt as _prompt
from rewrite_pipeline.utils import new_id, truncate, utf8_len

MAX_JOBS = 100
COMPLETION_WINDOW = "24h"
ENDPOINT = _prompt.BATCH_ENDPOINT
DEFAULT_MODEL = "gpt-5-nano"

MAX_JSONL_BYTES = 5_000_000
MAX_JSONL_LINE_BYTES = 100_000

BACKOFF_BATCH_FULL_SECONDS = 5 * 60
BACKOFF_OPENAI_FAIL_SECONDS = 15 * 60
BACKOFF_INTERNAL_SECONDS = 10 * 60
BACKOFF_UNSUPPORTED_SECONDS = 6 * 3600

SUPPORTED_PROVIDER = ("openai", "openai_responses")


def _default_client() -> OpenAIBatchClient:
    return OpenAIBatchClient(api_key=config.env("OPENAI_REWRITE_API_KEY"))


def _requeue_all(job_ids: List[str], error: str, backoff_seconds: int) -> None:
    for job_id in job_ids:
        store.fail_or_requeue_job(job_id, error, backoff_seconds)


def build_jsonl(jobs: List[Dict[str, Any]]) -> Tuple[List[Dict[str, str]], Dict[str, int]]:
    """
    Turn claimed jobs into accepted JSONL lines. Jobs that cannot go into this
    batch are failed or requeued here. Returns (accepted, skipped_counts).
    """
    accepted: List[Dict[str, str]] = []
    deferred: List[str] = []
    skipped = {"missing_request": 0, "unsupported_provider": 0, "too_large_line": 0, "batch_full_deferred": 0}
    total_bytes = 0

    for job in jobs:
        job_id = job["job_id"]
        if total_bytes >= MAX_JSONL_BYTES:
            deferred.append(job_id)
            continue

        req = store.fetch_request(job["rewrite_request_id"])
        if req is None:
            store.fail_job(job_id, "rewrite_request_not_found")
            skipped["missing_request"] += 1
            continue

        decision = job.get("routing_decision") or {}
        provider = str(decision.get("provider") or "openai")
        adapter_kind = str(decision.get("adapter_kind") or "openai_responses")
        if (provider, adapter_kind) != SUPPORTED_PROVIDER:
            store.fail_or_requeue_job(job_id, "batch_provider_not_supported", BACKOFF_UNSUPPORTED_SECONDS)
            skipped["unsupported_provider"] += 1
            continue

        line_obj = _prompt.build_batch_line(job_id, _prompt.body_for_request(req, decision, DEFAULT_MODEL))
        if str(line_obj.get("custom_id") or "") != job_id:
            store.fail_or_requeue_job(job_id, "batch_custom_id_mismatch", BACKOFF_INTERNAL_SECONDS)
            continue

        line = json.dumps(line_obj, ensure_ascii=False, separators=(",", ":"))
        line_bytes = utf8_len(line)
        if line_bytes > MAX_JSONL_LINE_BYTES:
            store.fail_or_requeue_job(job_id, f"batch_line_too_large_{line_bytes}", BACKOFF_UNSUPPORTED_SECONDS)
            skipped["too_large_line"] += 1
            continue

        newline = 1 if accepted else 0
        if total_bytes + newline + line_bytes > MAX_JSONL_BYTES:
            deferred.append(job_id)
            continue

        accepted.append({"job_id": job_id, "rewrite_request_id": job["rewrite_request_id"], "line": line})
        total_bytes += newline + line_bytes

    for job_id in deferred:
        store.fail_or_requeue_job(job_id, "batch_full_deferred", BACKOFF_BATCH_FULL_SECONDS)
    skipped["batch_full_deferred"] = len(deferred)
    return accepted, skipped


def run(request_id: Optional[str] = None,
        client_factory: Callable[[], Any] = _default_client,
        max_jobs: int = MAX_JOBS) -> Tuple[int, Dict[str, Any]]:
    """One submitter pass. Returns (http_status, envelope)."""
    request_id = request_id or new_id()
    log_extra = {"request_id": request_id}

    jobs = store.claim_jobs(max_jobs, execution_mode="batch")
    if not jobs:
        return 200, {"ok": True, "request_id": request_id, "submitted": 0}

    accepted, skipped = build_jsonl(jobs)
    if not accepted:
        monitoring.inc_batch_submission("no_valid_jobs")
        return 200, {"ok": True, "request_id": request_id, "submitted": 0,
                     "note": "no_valid_jobs", "skipped": skipped}

    jsonl = "\n".join(a["line"] for a in accepted)
    job_ids = [a["job_id"] for a in accepted]

    try:
        client = client_factory()
        input_file_id = client.upload_jsonl(jsonl)
        provider_batch_id = client.create_batch(input_file_id, ENDPOINT, COMPLETION_WINDOW)
    except Exception as e:
        msg = to_error_message(e)
        monitoring.inc_batch_submission("provider_failed")
        monitoring.logger.warning("Batch upload/create failed, requeueing accepted jobs",
                                  extra={**log_extra, "jobs": len(job_ids), "error": msg[:300]})
        _requeue_all(job_ids, f"openai_batch_submit_failed:{truncate(msg, 240)}", BACKOFF_OPENAI_FAIL_SECONDS)
        raise

    try:
        store.register_batch(provider_batch_id, input_file_id, len(accepted), ENDPOINT)
    except PipelineError as e:
        # without a batch row the collector never polls it
        _requeue_all(job_ids, f"db_register_batch_failed:{e.message}", BACKOFF_INTERNAL_SECONDS)
        monitoring.inc_batch_submission("register_failed")
        return 500, {"ok": False, "request_id": request_id,
                     "error": f"rewrite_batch_register_failed:{e.message}", "code": e.code,
                     "retryable": True}

    try:
        store.mark_jobs_batch_submitted(job_ids, provider_batch_id)
    except PipelineError as e:
        _requeue_all(job_ids, f"mark_jobs_submitted_failed:{e.message}", BACKOFF_INTERNAL_SECONDS)
        monitoring.inc_batch_submission("link_failed")
        return 500, {"ok": False, "request_id": request_id,
                     "error": f"mark_jobs_batch_submitted_failed:{e.message}", "code": e.code,
                     "retryable": True}

    monitoring.inc_batch_submission("submitted")
    monitoring.logger.info("Provider batch submitted",
                           extra={**log_extra, "provider_batch_id": provider_batch_id, "jobs": len(job_ids)})
    return 200, {
        "ok": True,
        "request_id": request_id,
        "submitted": len(accepted),
        "provider_batch_id": provider_batch_id,
        "input_file_id": input_file_id,
        "note": "partial_batch_due_to_limits" if len(accepted) < len(jobs) else "full_batch",
        "skipped": skipped,
    }
