# rewrite_pipeline/auth.py
"""
Shared-secret auth for the internal endpoints.

Every /api/* endpoint expects the header `x-internal-secret`; which secret it
is compared against depends on the caller tier:

- CLASSIFIER_SHARED_SECRET    : /api/classifier (called by the orchestrator)
- ORCHESTRATOR_SHARED_SECRET  : /api/orchestrator (called by the cron runner)
- WORKER_SHARED_SECRET        : batch submit/collect, realtime, cron

Secrets are read per request so rotating the env does not need a restart.
"""

import hmac
from typing import Dict, Optional

from rewrite_pipeline import config
from rewrite_pipeline.errors import PipelineError

SECRET_HEADER = "x-internal-secret"

SECRET_ENV_BY_PATH: Dict[str, str] = {
    "/api/classifier": "CLASSIFIER_SHARED_SECRET",
    "/api/orchestrator": "ORCHESTRATOR_SHARED_SECRET",
    "/api/batch/submit": "WORKER_SHARED_SECRET",
    "/api/batch/collect": "WORKER_SHARED_SECRET",
    "/api/realtime/run": "WORKER_SHARED_SECRET",
    "/api/cron/run": "WORKER_SHARED_SECRET",
}
DEFAULT_SECRET_ENV = "WORKER_SHARED_SECRET"


def secret_env_for(path: str) -> str:
    return SECRET_ENV_BY_PATH.get(path.rstrip("/") or "/", DEFAULT_SECRET_ENV)


def check_internal_secret(path: str, provided: Optional[str]) -> None:
    """Raise PipelineError(500 missing_env) when unconfigured, (401 unauthorized) on mismatch."""
    expected = config.env(secret_env_for(path))
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise PipelineError(401, "unauthorized", retryable=False, code="unauthorized")
