# rewrite_pipeline/batch_collector.py
"""
Batch collector: poll pending provider batches, download finished output
files, and drive every job line through the completion path.

Lines are idempotent: a line whose job is no longer batch_submitted for this
batch is skipped without touching any counter but `skipped`.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from rewrite_pipeline import completion
from rewrite_pipeline import config
from rewrite_pipeline import monitoring
from rewrite_pipeline import state
from rewrite_pipeline import store
from rewrite_pipeline.connectors.openai_batch import OpenAIBatchClient, map_openai_status
from rewrite_pipeline.errors import PipelineError, to_error_message
from rewrite_pipeline.processors import rewrite_prompt as _prompt
from rewrite_pipeline.utils import is_uuid, new_id, safe_short

MAX_BATCHES = 10
MAX_JSONL_LINE_CHARS = 2_000_000
REQUEUE_LIMIT = 1000

BACKOFF_PROVIDER_SECONDS = 6 * 3600
BACKOFF_DOWNLOAD_SECONDS = 30 * 60
BACKOFF_MISSING_OUTPUT_SECONDS = 30 * 60
BACKOFF_LINE_ERROR_SECONDS = 10 * 60


def _default_client() -> OpenAIBatchClient:
    return OpenAIBatchClient(api_key=config.env("OPENAI_REWRITE_API_KEY"))


def process_line(line: str, provider_batch_id: str, touched: Set[str]) -> str:
    """
    Handle one output line. Returns completed | failed | skipped.
    Only lines whose job is batch_submitted for this batch can change state.
    """
    if len(line) > MAX_JSONL_LINE_CHARS:
        return "failed"
    try:
        item = json.loads(line)
    except ValueError:
        return "failed"
    if not isinstance(item, dict):
        return "failed"

    job_id = str(item.get("custom_id") or "").strip()
    if not is_uuid(job_id):
        return "skipped"

    job = store.fetch_job(job_id)
    if job is None:
        return "skipped"
    if job["provider_batch_id"] != provider_batch_id or job["status"] != state.JOB_BATCH_SUBMITTED:
        return "skipped"

    touched.add(job["rewrite_request_id"])

    if item.get("error"):
        store.fail_or_requeue_job(job_id, f"provider_item_error:{safe_short(item['error'])}",
                                  BACKOFF_PROVIDER_SECONDS)
        return "failed"

    response = item.get("response") if isinstance(item.get("response"), dict) else {}
    rewritten = _prompt.extract_rewritten_text(response.get("body"))
    result = completion.finish_job(job, rewritten)
    return "completed" if result["outcome"] == completion.OUTCOME_COMPLETED else "failed"


def _requeue_batch(provider_batch_id: str, reason: str, backoff_seconds: int) -> int:
    rows = store.requeue_jobs_by_provider_batch(provider_batch_id, reason, backoff_seconds, limit=REQUEUE_LIMIT)
    return len(rows)


def _finalize_touched(touched: Set[str], log_extra: Dict[str, Any]) -> int:
    finalized = 0
    for rewrite_request_id in sorted(touched):
        try:
            store.finalize_request(rewrite_request_id)
            finalized += 1
        except PipelineError as e:
            monitoring.logger.warning("finalize_request failed",
                                      extra={**log_extra, "rewrite_request_id": rewrite_request_id,
                                             "error": e.message})
    return finalized


def collect_batch(client: Any, batch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Poll one batch and settle its jobs. The stored batch status only leaves
    submitted/running after its jobs have been requeued or completed, so a
    crash part-way through leaves the batch pending for the next pass.
    """
    provider_batch_id = batch["provider_batch_id"]
    log_extra = {"provider_batch_id": provider_batch_id}

    remote = client.get_batch(provider_batch_id)
    mapped = map_openai_status(remote.get("status"))
    output_file_id = remote.get("output_file_id")
    error_file_id = remote.get("error_file_id")

    if mapped in (state.BATCH_FAILED, state.BATCH_CANCELED):
        requeued = _requeue_batch(provider_batch_id, f"provider_batch_{mapped}", BACKOFF_PROVIDER_SECONDS)
        store.update_batch(provider_batch_id, mapped, output_file_id, error_file_id)
        monitoring.logger.warning("Provider batch ended without completing",
                                  extra={**log_extra, "status": mapped, "requeued_jobs": requeued})
        return {"provider_batch_id": provider_batch_id, "status": mapped, "requeued_jobs": requeued}

    if mapped != state.BATCH_COMPLETED:
        store.update_batch(provider_batch_id, mapped, output_file_id, error_file_id)
        return {"provider_batch_id": provider_batch_id, "status": mapped}

    if not output_file_id:
        requeued = _requeue_batch(provider_batch_id, "provider_batch_completed_missing_output_file",
                                  BACKOFF_MISSING_OUTPUT_SECONDS)
        store.update_batch(provider_batch_id, state.BATCH_FAILED, None, error_file_id)
        monitoring.logger.warning("Provider batch completed without output file",
                                  extra={**log_extra, "requeued_jobs": requeued})
        return {"provider_batch_id": provider_batch_id, "status": state.BATCH_FAILED,
                "reason": "missing_output_file_id", "requeued_jobs": requeued}

    try:
        output_text = client.download_file(output_file_id)
    except Exception as e:
        requeued = _requeue_batch(provider_batch_id, "output_download_failed", BACKOFF_DOWNLOAD_SECONDS)
        store.update_batch(provider_batch_id, state.BATCH_COMPLETED, output_file_id, error_file_id)
        monitoring.logger.warning("Batch output download failed",
                                  extra={**log_extra, "requeued_jobs": requeued})
        return {"provider_batch_id": provider_batch_id, "status": state.BATCH_COMPLETED,
                "reason": "output_download_failed", "error": to_error_message(e)[:300],
                "requeued_jobs": requeued}

    lines = [ln.strip() for ln in (output_text or "").split("\n") if ln.strip()]
    counts = {"completed": 0, "failed": 0, "skipped": 0}
    touched: Set[str] = set()
    line_errors = 0
    try:
        for line in lines:
            try:
                outcome = process_line(line, provider_batch_id, touched)
            except Exception as e:
                outcome = "failed"
                line_errors += 1
                monitoring.logger.warning("Batch output line failed",
                                          extra={**log_extra, "error": to_error_message(e)[:300]})
            counts[outcome] += 1
            monitoring.inc_batch_line(outcome)
    finally:
        finalized = _finalize_touched(touched, log_extra)

    requeued = 0
    if line_errors:
        # jobs whose line raised are still batch_submitted for this batch
        requeued = _requeue_batch(provider_batch_id, "collector_line_error", BACKOFF_LINE_ERROR_SECONDS)

    store.update_batch(provider_batch_id, state.BATCH_COMPLETED, output_file_id, error_file_id)
    monitoring.logger.info("Batch collected", extra={**log_extra, **counts, "lines": len(lines)})
    return {
        "provider_batch_id": provider_batch_id,
        "status": state.BATCH_COMPLETED,
        "lines": len(lines),
        "completed": counts["completed"],
        "failed": counts["failed"],
        "skipped": counts["skipped"],
        "finalized_requests": finalized,
        "requeued_jobs": requeued,
    }


def run(request_id: Optional[str] = None,
        client_factory: Callable[[], Any] = _default_client,
        max_batches: int = MAX_BATCHES) -> Tuple[int, Dict[str, Any]]:
    """One collector pass. Returns (http_status, envelope)."""
    request_id = request_id or new_id()
    pending = store.list_pending_batches(max_batches)
    if not pending:
        return 200, {"ok": True, "request_id": request_id, "checked": 0}

    client = client_factory()
    results: List[Dict[str, Any]] = []
    for batch in pending:
        try:
            results.append(collect_batch(client, batch))
        except PipelineError as e:
            # batch stays pending and is polled on the next pass
            monitoring.logger.warning("Batch poll failed",
                                      extra={"request_id": request_id,
                                             "provider_batch_id": batch["provider_batch_id"],
                                             "error": e.message})
            results.append({"provider_batch_id": batch["provider_batch_id"], "status": batch["status"],
                            "error": e.message[:300], "retryable": e.retryable})

    return 200, {"ok": True, "request_id": request_id, "checked": len(pending), "results": results}
