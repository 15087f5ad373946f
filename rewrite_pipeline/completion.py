# rewrite_pipeline/completion.py
"""
Per-job completion path shared by the batch collector and the realtime worker:
candidate text -> evaluation gate -> complete_job (or requeue / fail).
"""

from typing import Any, Dict

from rewrite_pipeline import monitoring
from rewrite_pipeline import quality as _quality
from rewrite_pipeline import store
from rewrite_pipeline.errors import PipelineError
from rewrite_pipeline.utils import safe_short

BACKOFF_PARSE_SECONDS = 10 * 60
BACKOFF_COMPLETE_SECONDS = 10 * 60

DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4.1"
DEFAULT_PROMPT_VERSION = "v1"

OUTCOME_COMPLETED = "completed"
OUTCOME_REQUEUED = "requeued"
OUTCOME_FAILED = "failed"


def power_mode_of(context_pack: Any) -> str:
    if isinstance(context_pack, dict) and isinstance(context_pack.get("power"), dict):
        mode = context_pack["power"].get("power_mode")
        if mode in ("peer", "higher_sender", "higher_recipient"):
            return mode
    return "peer"


def _requeue(job_id: str, error: str, backoff_seconds: int) -> str:
    status = store.fail_or_requeue_job(job_id, error, backoff_seconds)
    return OUTCOME_FAILED if status == "failed" else OUTCOME_REQUEUED


def finish_job(job: Dict[str, Any], rewritten_text: str) -> Dict[str, Any]:
    """
    Run the completion path for one in-flight job. Returns {outcome, error?, eval_result?}
    where outcome is completed | requeued | failed.
    """
    job_id = job["job_id"]
    log_extra = {"job_id": job_id, "rewrite_request_id": job.get("rewrite_request_id")}

    if not rewritten_text:
        return {"outcome": _requeue(job_id, "empty_rewrite", BACKOFF_PARSE_SECONDS), "error": "empty_rewrite"}

    req = store.fetch_request(job["rewrite_request_id"])
    if req is None:
        store.fail_job(job_id, "rewrite_request_not_found")
        return {"outcome": OUTCOME_FAILED, "error": "rewrite_request_not_found"}

    blob = req.get("rewrite_request") or {}
    target_locale = req["target_locale"]
    eval_result = _quality.evaluate_rewrite(
        {
            "rewrite_request_id": job["rewrite_request_id"],
            "target_locale": target_locale,
            "original_text": blob.get("original_text"),
            "intent": blob.get("intent"),
        },
        {
            "rewrite_request_id": job["rewrite_request_id"],
            "recipient_user_id": job["recipient_user_id"],
            "rewritten_text": rewritten_text,
            "output_language": target_locale,
        },
        power_mode=power_mode_of(blob.get("context_pack")),
    )
    if not _quality.passes_gate(eval_result):
        error = "eval_failed:" + safe_short(",".join(eval_result.get("violations") or []))
        store.fail_job(job_id, error)
        monitoring.logger.info("Rewrite rejected by evaluation", extra={**log_extra, "error": error})
        return {"outcome": OUTCOME_FAILED, "error": error, "eval_result": eval_result}

    decision = job.get("routing_decision") or {}
    try:
        store.complete_job(
            job_id,
            rewritten_text=rewritten_text,
            output_language=target_locale,
            target_locale=target_locale,
            model=str(decision.get("model") or DEFAULT_MODEL),
            provider=str(decision.get("provider") or DEFAULT_PROVIDER),
            prompt_version=str(decision.get("prompt_version") or DEFAULT_PROMPT_VERSION),
            policy_version=req["policy_version"],
            lexicon_version=_quality.LEXICON_VERSION,
            eval_result=eval_result,
        )
    except PipelineError as e:
        error = f"complete_failed:{safe_short(e.message)}"
        monitoring.logger.warning("complete_job failed, requeueing", extra={**log_extra, "error": error})
        return {"outcome": _requeue(job_id, error, BACKOFF_COMPLETE_SECONDS), "error": error}

    return {"outcome": OUTCOME_COMPLETED, "eval_result": eval_result}
