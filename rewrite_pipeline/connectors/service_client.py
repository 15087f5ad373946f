# rewrite_pipeline/connectors/service_client.py
"""
Internal service-to-service HTTP calls (orchestrator -> classifier, cron -> orchestrator).

post_json() never raises for HTTP status codes: it returns (status, parsed_body, text).
Transport failures raise httpx exceptions; callers decide how to classify them.
"""

from typing import Any, Dict, Optional, Tuple

import httpx

from rewrite_pipeline import monitoring
from rewrite_pipeline.errors import PipelineError, is_retryable_text
from rewrite_pipeline.utils import truncate

SECRET_HEADER = "x-internal-secret"


def post_json(url: str, payload: Dict[str, Any], secret: str, timeout_seconds: float,
              request_id: Optional[str] = None) -> Tuple[int, Optional[Dict[str, Any]], str]:
    headers = {"content-type": "application/json", SECRET_HEADER: secret}
    if request_id:
        headers["x-request-id"] = request_id
    with httpx.Client(timeout=httpx.Timeout(timeout_seconds)) as client:
        resp = client.post(url, json=payload, headers=headers)
    text = resp.text or ""
    try:
        body = resp.json()
    except ValueError:
        body = None
    return resp.status_code, (body if isinstance(body, dict) else None), text


def call_classifier_service(url: str, secret: str, payload: Dict[str, Any], timeout_seconds: float,
                            request_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Classifier over HTTP. Returns the classifier result dict (envelope stripped).
    Errors keep the service's code; retryable honours the body flag plus 408/429/5xx.
    """
    try:
        status, body, text = post_json(url, payload, secret, timeout_seconds, request_id=request_id)
    except httpx.TimeoutException as e:
        raise PipelineError(504, "classifier_service_timeout", retryable=True, code="classifier_timeout") from e
    except httpx.HTTPError as e:
        msg = f"classifier_service_failed:{e}"
        monitoring.logger.warning("Classifier service call failed", extra={"error": msg[:300]})
        raise PipelineError(502, msg, retryable=True, code="classifier_service_failed") from e

    if 200 <= status < 300 and body is not None and body.get("ok") is True \
            and isinstance(body.get("classifier_result"), dict):
        return body["classifier_result"]

    body = body or {}
    code = str(body.get("code") or "classifier_service_failed")
    message = str(body.get("error") or truncate(text, 240) or f"classifier_service_status_{status}")
    retryable = bool(body.get("retryable")) or status in (408, 429) or status >= 500
    if not body and not retryable:
        retryable = is_retryable_text(message)
    raise PipelineError(status or 502, f"{code}:{message}", retryable=retryable, code=code)
