# rewrite_pipeline/llm_wrapper.py
"""
Centralized LLM wrapper. Supports OpenAI (Responses API) and Anthropic backends.

call_structured() returns a standardized dict:
{
  "text": "<assistant text, expected to be a JSON object>",
  "model": "<model used>",
  "response_id": "<provider response id if available>",
  "raw": <raw response dict>
}

responses_create() sends a prepared Responses API body (the same body a batch
line carries) and returns the raw response dict.

SDK exceptions never escape: timeouts, connection failures and HTTP status
errors are mapped to PipelineError with the retryable flag set per status.

Configuration (env vars):
  CLASSIFIER_PROVIDER=openai|anthropic   (default: openai)
  OPENAI_CLASSIFIER_API_KEY=...
  OPENAI_REWRITE_API_KEY=...
  ANTHROPIC_API_KEY=...
  MOCK_LLM=true                           (deterministic mock for dev)
"""

import os
import json
import time
from typing import Any, Dict, Optional

import anthropic
import openai

from rewrite_pipeline.errors import PipelineError, is_retryable_text
from rewrite_pipeline.utils import truncate

MOCK_LLM = os.getenv("MOCK_LLM", "false").lower() in ("1", "true", "yes")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()

_ANTHROPIC_DEFAULT = "claude-sonnet-4-20250514"
_OPENAI_DEFAULT = "gpt-4o-mini"


def default_model(provider: str) -> str:
    return _ANTHROPIC_DEFAULT if provider == "anthropic" else _OPENAI_DEFAULT


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def provider_error_from_exception(exc: Exception) -> PipelineError:
    if isinstance(exc, PipelineError):
        return exc
    # timeout errors subclass connection errors in both SDKs; check them first
    if isinstance(exc, (openai.APITimeoutError, anthropic.APITimeoutError)):
        return PipelineError(504, "provider call timed out", retryable=True, code="timeout")
    if isinstance(exc, (openai.APIConnectionError, anthropic.APIConnectionError)):
        return PipelineError(502, "provider upstream fetch failed", retryable=True, code="upstream_fetch_failed")
    if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError)):
        status = int(getattr(exc, "status_code", 0) or 0)
        retryable = status == 429 or status >= 500
        return PipelineError(502, f"provider_error {status}: {truncate(str(exc), 300)}",
                             retryable=retryable, code="provider_error")
    msg = f"LLM call failed: {exc}"
    return PipelineError(502, msg, retryable=is_retryable_text(msg), code="provider_error")


# ---------------------------------------------------------------------------
# Output extraction (Responses API shape)
# ---------------------------------------------------------------------------
def extract_output_text(data: Any) -> str:
    """output_text if present, else the first output[].content[] chunk of type output_text."""
    if isinstance(data, dict):
        ot = data.get("output_text")
        if isinstance(ot, str) and ot.strip():
            return ot.strip()
        for item in data.get("output") or []:
            content = item.get("content") if isinstance(item, dict) else None
            if not isinstance(content, list):
                continue
            for c in content:
                if isinstance(c, dict) and c.get("type") == "output_text" \
                        and isinstance(c.get("text"), str) and c["text"].strip():
                    return c["text"].strip()
    return ""


# ---------------------------------------------------------------------------
# OpenAI backend
# ---------------------------------------------------------------------------
def _real_openai_responses(body: Dict[str, Any], api_key: str, timeout: float) -> Dict[str, Any]:
    client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
    resp = client.responses.create(**body)
    data = resp.model_dump()
    # output_text is a convenience property, not part of the dumped model
    data.setdefault("output_text", getattr(resp, "output_text", "") or "")
    return data


# ---------------------------------------------------------------------------
# Anthropic backend
# ---------------------------------------------------------------------------
def _real_anthropic_json(instructions: str, user_content: str, schema: Dict[str, Any], model: str,
                         max_tokens: int, timeout: float) -> Dict[str, Any]:
    client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, timeout=timeout, max_retries=0)
    system = (instructions + "\nThe JSON object must match this JSON schema:\n" + json.dumps(schema)).strip()
    resp = client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=0.0,
        system=system,
        messages=[{"role": "user", "content": user_content}],
    )
    text = ""
    for block in resp.content:
        if hasattr(block, "text"):
            text += block.text
    return {"id": getattr(resp, "id", None), "model": model, "output_text": text.strip()}


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------
def _mock_output_for_schema(schema_name: str) -> Dict[str, Any]:
    if schema_name == "complaint_classifier_v1":
        return {
            "detected_language": "en",
            "topics": ["other"],
            "intent": "concern",
            "rewrite_strength": "full_reframe",
            "safety_flags": [],
        }
    return {"rewritten_text": "Hi, could we find a moment to talk about something on my mind? Thank you."}


def _mock_responses(body: Dict[str, Any]) -> Dict[str, Any]:
    """Deterministic mock used in dev. Answers with a schema-valid JSON object."""
    fmt = ((body.get("text") or {}).get("format") or {})
    model = body.get("model") or _OPENAI_DEFAULT
    text = json.dumps(_mock_output_for_schema(fmt.get("name", "")))
    return {
        "id": f"mock-{model}-{int(time.time() * 1000)}",
        "model": model,
        "output_text": text,
        "output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}],
    }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def responses_create(body: Dict[str, Any], api_key: str, timeout: float = 30.0) -> Dict[str, Any]:
    if MOCK_LLM:
        return _mock_responses(body)
    try:
        return _real_openai_responses(body, api_key=api_key, timeout=timeout)
    except Exception as e:
        raise provider_error_from_exception(e) from e


def call_structured(
    *,
    provider: str,
    model: Optional[str],
    instructions: str,
    user_content: str,
    schema_name: str,
    schema: Dict[str, Any],
    max_output_tokens: int,
    timeout: float,
    api_key: str = "",
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    One structured-output call. Returns dict with keys 'text','model','response_id','raw'.
    Raises PipelineError (provider_empty when no text came back).
    """
    model = model or default_model(provider)

    if provider == "anthropic" and not MOCK_LLM:
        try:
            raw = _real_anthropic_json(instructions, user_content, schema, model=model,
                                       max_tokens=max_output_tokens, timeout=timeout)
        except Exception as e:
            raise provider_error_from_exception(e) from e
    else:
        body: Dict[str, Any] = {
            "model": model,
            "instructions": instructions,
            "input": [{"role": "user", "content": [{"type": "input_text", "text": user_content}]}],
            "max_output_tokens": max_output_tokens,
            "text": {"format": {"type": "json_schema", "name": schema_name, "strict": True, "schema": schema}},
        }
        if metadata:
            body["metadata"] = metadata
        raw = responses_create(body, api_key=api_key, timeout=timeout)

    text = extract_output_text(raw)
    if not text:
        raise PipelineError(502, "provider returned empty output", retryable=True, code="provider_empty")
    return {"text": text, "model": model, "response_id": raw.get("id"), "raw": raw}
