# rewrite_pipeline/realtime_worker.py
"""
Realtime lane: jobs routed with execution_mode=realtime are claimed here and
sent to the synchronous Responses endpoint with the same body a batch line
would carry. Completion goes through completion.finish_job().
"""

from typing import Any, Dict, Optional, Set, Tuple

from rewrite_pipeline import completion
from rewrite_pipeline import config
from rewrite_pipeline import llm_wrapper as _llm
from rewrite_pipeline import monitoring
from rewrite_pipeline import store
from rewrite_pipeline.errors import PipelineError
from rewrite_pipeline.processors import rewrite_prompt as _prompt
from rewrite_pipeline.utils import new_id, safe_short

MAX_JOBS = 10
DEFAULT_MODEL = "gpt-4.1"
PROVIDER_TIMEOUT_SECONDS = 30.0
BACKOFF_PROVIDER_SECONDS = 10 * 60
BACKOFF_UNSUPPORTED_SECONDS = 6 * 3600


def run_job(job: Dict[str, Any], api_key: str) -> str:
    job_id = job["job_id"]
    decision = job.get("routing_decision") or {}
    if str(decision.get("provider") or "openai") != "openai":
        store.fail_or_requeue_job(job_id, "realtime_provider_not_supported", BACKOFF_UNSUPPORTED_SECONDS)
        return completion.OUTCOME_REQUEUED

    req = store.fetch_request(job["rewrite_request_id"])
    if req is None:
        store.fail_job(job_id, "rewrite_request_not_found")
        return completion.OUTCOME_FAILED

    body = _prompt.body_for_request(req, decision, DEFAULT_MODEL)
    try:
        raw = _llm.responses_create(body, api_key=api_key, timeout=PROVIDER_TIMEOUT_SECONDS)
    except PipelineError as e:
        error = f"provider_error:{safe_short(e.message)}"
        if e.retryable:
            status = store.fail_or_requeue_job(job_id, error, BACKOFF_PROVIDER_SECONDS)
            return completion.OUTCOME_FAILED if status == "failed" else completion.OUTCOME_REQUEUED
        store.fail_job(job_id, error)
        return completion.OUTCOME_FAILED

    return completion.finish_job(job, _prompt.extract_rewritten_text(raw))["outcome"]


def run(request_id: Optional[str] = None, max_jobs: int = MAX_JOBS) -> Tuple[int, Dict[str, Any]]:
    """One realtime pass. Returns (http_status, envelope)."""
    request_id = request_id or new_id()
    api_key = "" if _llm.MOCK_LLM else config.env("OPENAI_REWRITE_API_KEY")

    jobs = store.claim_jobs(max_jobs, execution_mode="realtime")
    counts = {completion.OUTCOME_COMPLETED: 0, completion.OUTCOME_REQUEUED: 0, completion.OUTCOME_FAILED: 0}
    touched: Set[str] = set()
    for job in jobs:
        touched.add(job["rewrite_request_id"])
        outcome = run_job(job, api_key)
        counts[outcome] += 1

    for rewrite_request_id in sorted(touched):
        store.finalize_request(rewrite_request_id)

    if jobs:
        monitoring.logger.info("Realtime pass finished", extra={"request_id": request_id, **counts})
    return 200, {"ok": True, "request_id": request_id, "claimed": len(jobs), **counts}
