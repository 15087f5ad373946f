# tests/test_llm_wrapper.py
import httpx
import openai
import pytest

import rewrite_pipeline.llm_wrapper as llm
from rewrite_pipeline.errors import PipelineError

REQ = httpx.Request("POST", "https://api.openai.com/v1/responses")


def _status_error(code):
    return openai.APIStatusError(f"status {code}", response=httpx.Response(code, request=REQ), body=None)


def test_timeout_maps_to_504_retryable():
    err = llm.provider_error_from_exception(openai.APITimeoutError(request=REQ))
    assert (err.status, err.code, err.retryable) == (504, "timeout", True)


def test_connection_error_is_retryable():
    err = llm.provider_error_from_exception(openai.APIConnectionError(request=REQ))
    assert err.code == "upstream_fetch_failed"
    assert err.retryable is True


@pytest.mark.parametrize("code,retryable", [(429, True), (500, True), (503, True), (400, False), (401, False)])
def test_status_errors(code, retryable):
    err = llm.provider_error_from_exception(_status_error(code))
    assert err.code == "provider_error"
    assert err.retryable is retryable


def test_unknown_exception_uses_text_sniffing():
    assert llm.provider_error_from_exception(RuntimeError("connection reset by peer")).retryable is True
    assert llm.provider_error_from_exception(ValueError("bad schema")).retryable is False


def test_pipeline_error_passes_through():
    original = PipelineError(418, "teapot", retryable=False)
    assert llm.provider_error_from_exception(original) is original


def test_extract_output_text_prefers_output_text_then_content():
    assert llm.extract_output_text({"output_text": " hi "}) == "hi"
    assert llm.extract_output_text({
        "output": [{"content": [{"type": "refusal", "text": "no"}, {"type": "output_text", "text": "yes"}]}],
    }) == "yes"
    assert llm.extract_output_text(None) == ""


def test_call_structured_empty_output(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    monkeypatch.setattr(llm, "responses_create", lambda body, api_key, timeout=30.0: {"id": "r1", "output": []})
    with pytest.raises(PipelineError) as ei:
        llm.call_structured(provider="openai", model=None, instructions="i", user_content="u",
                            schema_name="s", schema={}, max_output_tokens=10, timeout=1.0, api_key="k")
    assert ei.value.code == "provider_empty"
    assert ei.value.retryable is True


def test_call_structured_builds_json_schema_body(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    seen = {}

    def fake_create(body, api_key, timeout=30.0):
        seen["body"] = body
        return {"id": "r2", "output_text": '{"a": 1}'}

    monkeypatch.setattr(llm, "responses_create", fake_create)
    out = llm.call_structured(provider="openai", model="gpt-4o-mini", instructions="i", user_content="u",
                              schema_name="complaint_classifier_v1", schema={"type": "object"},
                              max_output_tokens=250, timeout=12.0, api_key="k", metadata={"request_id": "x"})
    assert out == {"text": '{"a": 1}', "model": "gpt-4o-mini", "response_id": "r2",
                   "raw": {"id": "r2", "output_text": '{"a": 1}'}}
    fmt = seen["body"]["text"]["format"]
    assert fmt["type"] == "json_schema" and fmt["strict"] is True
    assert seen["body"]["metadata"] == {"request_id": "x"}


def test_mock_responses_is_schema_aware(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", True)
    raw = llm.responses_create({"model": "m", "text": {"format": {"name": "complaint_rewrite_output_v1"}}},
                               api_key="")
    assert "rewritten_text" in raw["output_text"]
