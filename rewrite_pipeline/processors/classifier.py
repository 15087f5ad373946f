# rewrite_pipeline/processors/classifier.py
import os
import json
import time
from typing import Any, Dict, Optional

import jsonschema

from rewrite_pipeline import config
from rewrite_pipeline import llm_wrapper as _llm
from rewrite_pipeline import monitoring
from rewrite_pipeline.errors import PipelineError
from rewrite_pipeline.schemas import ClassifierResult, INTENTS, STRENGTHS, TOPICS
from rewrite_pipeline.utils import is_uuid, normalize_locale

CLASSIFIER_VERSION = "v1"
SCHEMA_NAME = "complaint_classifier_v1"

CLASSIFIER_PROVIDER = os.getenv("CLASSIFIER_PROVIDER", "openai").strip().lower()
CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "").strip() or None

MAX_BODY_BYTES = 64_000
MAX_TEXT_CHARS = 4000
MAX_SURFACE_CHARS = 64
MAX_OUTPUT_TOKENS = 250
PROVIDER_TIMEOUT_SECONDS = 12.0

CLASSIFIER_INSTRUCTIONS = (
    "You are a fast, cheap classifier. Return ONLY a JSON object that matches the provided schema. "
    "Do not include extra keys. Do not include explanations."
)

CLASSIFIER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "detected_language": {"type": "string", "minLength": 2, "maxLength": 16},
        "topics": {
            "type": "array",
            "minItems": 1,
            "maxItems": 3,
            "items": {"type": "string", "enum": list(TOPICS)},
        },
        "intent": {"type": "string", "enum": list(INTENTS)},
        "rewrite_strength": {"type": "string", "enum": list(STRENGTHS)},
        "safety_flags": {
            "type": "array",
            "maxItems": 12,
            "items": {"type": "string", "maxLength": 48},
        },
    },
    "required": ["detected_language", "topics", "intent", "rewrite_strength", "safety_flags"],
}


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------
def parse_body(raw: bytes) -> Dict[str, Any]:
    if len(raw) > MAX_BODY_BYTES:
        raise PipelineError(413, "payload_too_large", retryable=False)
    try:
        body = json.loads(raw.decode("utf-8") if raw else "")
    except (UnicodeDecodeError, ValueError):
        raise PipelineError(400, "invalid_json_payload", retryable=False)
    if not isinstance(body, dict):
        raise PipelineError(400, "invalid_payload", retryable=False)
    return body


def validate_input(body: Dict[str, Any]) -> Dict[str, str]:
    """Check {original_text, surface, sender_user_id}; returns the trimmed values."""
    original_text = body.get("original_text")
    surface = body.get("surface")
    sender_user_id = body.get("sender_user_id")

    for key, value in (("original_text", original_text), ("surface", surface),
                       ("sender_user_id", sender_user_id)):
        if not isinstance(value, str) or not value.strip():
            raise PipelineError(400, f"missing_field:{key}", retryable=False, code="missing_field")

    if len(original_text) > MAX_TEXT_CHARS:
        raise PipelineError(413, "payload_too_large", retryable=False)
    if not is_uuid(sender_user_id):
        raise PipelineError(400, "invalid_sender_user_id", retryable=False)
    if len(surface.strip()) > MAX_SURFACE_CHARS:
        raise PipelineError(400, "invalid_surface", retryable=False)

    return {
        "original_text": original_text.strip(),
        "surface": surface.strip(),
        "sender_user_id": sender_user_id.strip(),
    }


# ---------------------------------------------------------------------------
# Output normalization
# ---------------------------------------------------------------------------
def normalize_result(parsed: Dict[str, Any]) -> Dict[str, Any]:
    """Unknown topics dropped (max 3, fallback other), unknown intent -> concern,
    unknown strength -> full_reframe, empty flags -> ["none"], bad locale -> en."""
    result = ClassifierResult(
        classifier_version=CLASSIFIER_VERSION,
        detected_language=normalize_locale(parsed.get("detected_language")) or "en",
        topics=parsed.get("topics"),
        intent=parsed.get("intent"),
        rewrite_strength=parsed.get("rewrite_strength"),
        safety_flags=parsed.get("safety_flags"),
    )
    return result.model_dump()


def parse_output(text: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(text)
    except ValueError:
        raise PipelineError(502, "provider_bad_json", retryable=True)
    if not isinstance(parsed, dict):
        raise PipelineError(502, "provider_bad_json", retryable=True)
    try:
        jsonschema.validate(instance=parsed, schema=CLASSIFIER_SCHEMA)
    except jsonschema.ValidationError as e:
        # normalization repairs everything a strict schema would reject
        monitoring.logger.warning("Classifier output off-schema, normalizing",
                                  extra={"schema_error": e.message[:200]})
    return parsed


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def classify(original_text: str, surface: str, sender_user_id: str,
             request_id: Optional[str] = None) -> Dict[str, Any]:
    """
    One provider call, normalized result:
    {classifier_version, detected_language, topics, intent, rewrite_strength, safety_flags}
    Raises PipelineError with the classifier error taxonomy.
    """
    provider = CLASSIFIER_PROVIDER if CLASSIFIER_PROVIDER in ("openai", "anthropic") else "openai"
    api_key = ""
    if provider == "openai" and not _llm.MOCK_LLM:
        api_key = config.env("OPENAI_CLASSIFIER_API_KEY")

    user_content = json.dumps({
        "sender_message": original_text,
        "surface": surface,
        "sender_user_id": sender_user_id,
    }, ensure_ascii=False)

    start = time.time()
    try:
        resp = _llm.call_structured(
            provider=provider,
            model=CLASSIFIER_MODEL,
            instructions=CLASSIFIER_INSTRUCTIONS,
            user_content=user_content,
            schema_name=SCHEMA_NAME,
            schema=CLASSIFIER_SCHEMA,
            max_output_tokens=MAX_OUTPUT_TOKENS,
            timeout=PROVIDER_TIMEOUT_SECONDS,
            api_key=api_key,
            metadata={"request_id": request_id or "", "surface": surface},
        )
        result = normalize_result(parse_output(resp["text"]))
    except PipelineError as e:
        monitoring.observe_classifier(start, e.code)
        raise
    monitoring.observe_classifier(start, "ok")
    result["model"] = resp.get("model")
    return result


def handle_classifier_body(raw: bytes, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Endpoint entry: byte-capped body -> validated input -> classify()."""
    body = parse_body(raw)
    fields = validate_input(body)
    return classify(fields["original_text"], fields["surface"], fields["sender_user_id"],
                    request_id=request_id)
