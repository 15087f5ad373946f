# tests/test_classifier.py
import json

import pytest

import rewrite_pipeline.llm_wrapper as llm
import rewrite_pipeline.processors.classifier as clf
from rewrite_pipeline.errors import PipelineError
from rewrite_pipeline.utils import new_id


def test_normalize_result_drops_unknown_topics_and_caps_at_three():
    out = clf.normalize_result({
        "detected_language": "EN-nz",
        "topics": ["noise", "aliens", "noise", "guests", "privacy", "schedule"],
        "intent": "request",
        "rewrite_strength": "light_touch",
        "safety_flags": ["  harsh  "],
    })
    assert out["topics"] == ["noise", "guests", "privacy"]
    assert out["detected_language"] == "en-nz"
    assert out["safety_flags"] == ["harsh"]
    assert out["classifier_version"] == "v1"


def test_normalize_result_fallbacks():
    out = clf.normalize_result({
        "detected_language": "not a locale!",
        "topics": ["aliens"],
        "intent": "rant",
        "rewrite_strength": "nuclear",
        "safety_flags": [],
    })
    assert out["topics"] == ["other"]
    assert out["intent"] == "concern"
    assert out["rewrite_strength"] == "full_reframe"
    assert out["safety_flags"] == ["none"]
    assert out["detected_language"] == "en"


def test_parse_body_errors():
    with pytest.raises(PipelineError) as ei:
        clf.parse_body(b"x" * 64_001)
    assert ei.value.status == 413

    with pytest.raises(PipelineError) as ei:
        clf.parse_body(b"{not json")
    assert (ei.value.status, ei.value.code) == (400, "invalid_json_payload")

    with pytest.raises(PipelineError) as ei:
        clf.parse_body(b"[1, 2]")
    assert ei.value.code == "invalid_payload"


def test_validate_input():
    sender = new_id()
    with pytest.raises(PipelineError) as ei:
        clf.validate_input({"surface": "weekly_harmony", "sender_user_id": sender})
    assert ei.value.code == "missing_field"
    assert ei.value.message == "missing_field:original_text"

    with pytest.raises(PipelineError) as ei:
        clf.validate_input({"original_text": "a" * 4001, "surface": "s", "sender_user_id": sender})
    assert ei.value.status == 413

    with pytest.raises(PipelineError) as ei:
        clf.validate_input({"original_text": "hi", "surface": "s", "sender_user_id": "nope"})
    assert ei.value.code == "invalid_sender_user_id"

    ok = clf.validate_input({"original_text": "  hi  ", "surface": " weekly_harmony ", "sender_user_id": sender})
    assert ok == {"original_text": "hi", "surface": "weekly_harmony", "sender_user_id": sender}


def test_classify_calls_provider_and_normalizes(monkeypatch):
    monkeypatch.setenv("OPENAI_CLASSIFIER_API_KEY", "sk-test")
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    captured = {}

    def fake_call_structured(**kwargs):
        captured.update(kwargs)
        return {
            "text": json.dumps({
                "detected_language": "es",
                "topics": ["noise", "bogus"],
                "intent": "boundary",
                "rewrite_strength": "light_touch",
                "safety_flags": [],
            }),
            "model": "gpt-4o-mini",
            "response_id": "resp_1",
            "raw": {},
        }

    monkeypatch.setattr(llm, "call_structured", fake_call_structured)
    out = clf.classify("Turn the music down!", "weekly_harmony", new_id())

    assert out["detected_language"] == "es"
    assert out["topics"] == ["noise"]
    assert out["intent"] == "boundary"
    assert out["model"] == "gpt-4o-mini"
    assert captured["api_key"] == "sk-test"
    assert captured["schema_name"] == "complaint_classifier_v1"
    assert json.loads(captured["user_content"])["sender_message"] == "Turn the music down!"


def test_classify_bad_json_is_retryable(monkeypatch):
    monkeypatch.setenv("OPENAI_CLASSIFIER_API_KEY", "sk-test")
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    monkeypatch.setattr(llm, "call_structured", lambda **kw: {"text": "not json", "model": "m"})
    with pytest.raises(PipelineError) as ei:
        clf.classify("hi", "weekly_harmony", new_id())
    assert ei.value.code == "provider_bad_json"
    assert ei.value.retryable is True


def test_classify_missing_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_CLASSIFIER_API_KEY", raising=False)
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    with pytest.raises(PipelineError) as ei:
        clf.classify("hi", "weekly_harmony", new_id())
    assert ei.value.code == "missing_env"
    assert ei.value.retryable is False


def test_classify_in_mock_mode(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", True)
    out = clf.handle_classifier_body(json.dumps({
        "original_text": "The dishes again.",
        "surface": "weekly_harmony",
        "sender_user_id": new_id(),
    }).encode("utf-8"))
    assert out["topics"] == ["other"]
    assert out["safety_flags"] == ["none"]
    assert out["rewrite_strength"] == "full_reframe"
