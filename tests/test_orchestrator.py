# tests/test_orchestrator.py
"""
End-to-end orchestrator flow against a real (SQLite) store with the
classifier patched out.
"""
import json

import pytest

import rewrite_pipeline.orchestrator as orch_mod
from rewrite_pipeline import state
from rewrite_pipeline import store
from rewrite_pipeline.errors import PipelineError
from rewrite_pipeline.orchestrator import RewriteOrchestrator
from rewrite_pipeline.utils import new_id


def fake_classify_factory(detected_language="en", topics=None, strength="full_reframe", calls=None):
    def fake_classify(original_text, surface, sender_user_id, request_id=None):
        if calls is not None:
            calls.append({"original_text": original_text, "surface": surface, "sender_user_id": sender_user_id})
        return {
            "classifier_version": "v1",
            "detected_language": detected_language,
            "topics": topics or ["noise"],
            "intent": "request",
            "rewrite_strength": strength,
            "safety_flags": ["none"],
            "model": "gpt-4o-mini",
        }
    return fake_classify


@pytest.fixture
def orchestrator(monkeypatch):
    monkeypatch.setattr(orch_mod._classifier, "classify", fake_classify_factory())
    return RewriteOrchestrator()


def _call(orchestrator, payload):
    return orchestrator.handle_body(json.dumps(payload).encode("utf-8"), request_id="req-test")


def _with_trigger(payload):
    store.enqueue_trigger(payload["entry_id"], payload["home_id"], payload["sender_user_id"],
                          payload["recipient_user_id"])
    return payload


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------
def test_enqueues_same_language_request(orchestrator, make_entry):
    payload = _with_trigger(make_entry(locale="EN", preferences={"communication_directness": "gentle"}))
    status, body = _call(orchestrator, payload)

    assert status == 200
    assert body["ok"] is True
    assert body["request_id"] == "req-test"
    assert body["rewrite_request_id"] == payload["entry_id"]
    assert body["enqueue"]["created"] is True
    assert body["routing_decision"]["provider"] == "openai"

    req = store.fetch_request(payload["entry_id"])
    assert req["lane"] == "same_language"
    assert req["target_locale"] == "en"
    blob = req["rewrite_request"]
    assert blob["context_pack_version"] == "v1.1"
    assert blob["policy"]["tone"] == "gentle"
    assert blob["context_pack"]["recipient_signals"][0]["preference_id"] == "communication_directness"

    jobs = store.list_jobs(payload["entry_id"])
    assert len(jobs) == 1
    assert jobs[0]["max_attempts"] == 2
    assert store.get_trigger(payload["entry_id"])["status"] == state.TRG_COMPLETED
    assert store.get_trigger(payload["entry_id"])["note"] == "enqueued"


def test_english_sender_spanish_recipient_is_cross_language(orchestrator, make_entry):
    payload = make_entry(locale="es")
    status, body = _call(orchestrator, payload)
    assert status == 200
    req = store.fetch_request(payload["entry_id"])
    assert req["lane"] == "cross_language"
    assert req["source_locale"] == "en"
    assert req["target_locale"] == "es"


def test_region_tag_differs_from_bare_language(orchestrator, make_entry):
    payload = make_entry(locale="en-NZ")
    assert _call(orchestrator, payload)[0] == 200
    req = store.fetch_request(payload["entry_id"])
    assert req["target_locale"] == "en-nz"
    assert req["lane"] == "cross_language"


def test_missing_recipient_locale_defaults_to_en(orchestrator, make_entry):
    payload = make_entry(locale=None)
    status, _ = _call(orchestrator, payload)
    assert status == 200
    assert store.fetch_request(payload["entry_id"])["lane"] == "same_language"


def test_second_call_observes_already_enqueued(orchestrator, make_entry):
    payload = make_entry()
    assert _call(orchestrator, payload)[0] == 200

    status, body = _call(orchestrator, payload)
    assert status == 200
    assert body["already_enqueued"] is True
    assert len(store.list_jobs(payload["entry_id"])) == 1


def test_call_losing_enqueue_race_observes_already_enqueued(orchestrator, make_entry, monkeypatch):
    payload = make_entry()
    assert _call(orchestrator, payload)[0] == 200

    # both calls passed the existence check before either enqueued
    monkeypatch.setattr(store, "request_exists", lambda rewrite_request_id: False)
    status, body = _call(orchestrator, payload)

    assert status == 200
    assert body["already_enqueued"] is True
    assert body["rewrite_request_id"] == payload["entry_id"]
    assert "enqueue" not in body
    assert len(store.list_jobs(payload["entry_id"])) == 1


def test_lost_enqueue_race_completes_trigger_as_already_enqueued(orchestrator, make_entry, monkeypatch):
    payload = _with_trigger(make_entry())
    monkeypatch.setattr(store, "enqueue_rewrite",
                        lambda **kw: {"rewrite_request_id": kw["rewrite_request_id"], "job_id": None,
                                      "created": False})
    status, body = _call(orchestrator, payload)

    assert status == 200
    assert body["already_enqueued"] is True
    trg = store.get_trigger(payload["entry_id"])
    assert trg["status"] == state.TRG_COMPLETED
    assert trg["note"] == "already_enqueued"


def test_classifier_over_http_when_url_configured(monkeypatch, make_entry):
    monkeypatch.setenv("CLASSIFIER_FUNCTION_URL", "https://classifier.internal/api/classifier")
    seen = {}

    def fake_call(url, secret, payload, timeout_seconds, request_id=None):
        seen.update(url=url, secret=secret, payload=payload, timeout=timeout_seconds)
        return fake_classify_factory(detected_language="fr")(**payload)

    monkeypatch.setattr(orch_mod._service_client, "call_classifier_service", fake_call)
    payload = make_entry(locale="en")
    status, _ = _call(RewriteOrchestrator(classifier_timeout_ms=100), payload)

    assert status == 200
    assert seen["secret"] == "test-secret"
    assert seen["timeout"] == 2.0  # clamped to the 2 s floor
    assert seen["payload"]["sender_user_id"] == payload["sender_user_id"]
    assert store.fetch_request(payload["entry_id"])["lane"] == "cross_language"


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------
def test_empty_text_is_skipped_and_trigger_canceled(orchestrator, make_entry):
    payload = _with_trigger(make_entry(text="   "))
    status, body = _call(orchestrator, payload)
    assert status == 200
    assert body["ok"] is True
    assert body["skipped"] == "no_text_to_rewrite"
    assert not store.request_exists(payload["entry_id"])
    trg = store.get_trigger(payload["entry_id"])
    assert trg["status"] == state.TRG_CANCELED
    assert trg["note"] == "no_text_to_rewrite"


def test_long_text_is_skipped_with_413(orchestrator, make_entry):
    payload = _with_trigger(make_entry(text="a" * 5000))
    status, body = _call(orchestrator, payload)
    assert status == 413
    assert body["skipped"] == "text_too_long"
    assert store.get_trigger(payload["entry_id"])["note"] == "text_too_long_4000"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def test_missing_field(orchestrator):
    status, body = orchestrator.handle_body(b"")
    assert status == 400
    assert body["ok"] is False
    assert body["error"] == "entry_id_missing"
    assert body["code"] == "missing_field"
    assert body["retryable"] is False


def test_invalid_uuid_and_surface(orchestrator, make_entry):
    payload = make_entry()
    status, body = _call(orchestrator, {**payload, "home_id": "nope"})
    assert (status, body["error"], body["code"]) == (400, "home_id_invalid_uuid", "invalid_uuid")

    status, body = _call(orchestrator, {**payload, "surface": "group_chat"})
    assert (status, body["error"]) == (400, "surface_invalid")


def test_invalid_json_and_oversized_body(orchestrator):
    assert orchestrator.handle_body(b"{nope")[1]["error"] == "invalid_json_payload"
    assert orchestrator.handle_body(b"[]")[1]["error"] == "invalid_payload"
    assert orchestrator.handle_body(b" " * 64_001)[0] == 413


def test_unknown_entry_is_404(orchestrator):
    payload = {"entry_id": new_id(), "home_id": new_id(), "sender_user_id": new_id(),
               "recipient_user_id": new_id(), "surface": "weekly_harmony"}
    status, body = _call(orchestrator, payload)
    assert (status, body["error"]) == (404, "mood_entry_not_found")


@pytest.mark.parametrize("field,error", [
    ("home_id", "home_id_mismatch"),
    ("sender_user_id", "sender_user_id_mismatch"),
])
def test_entry_mismatch_is_403_and_cancels_trigger(orchestrator, make_entry, field, error):
    payload = _with_trigger(make_entry())
    status, body = _call(orchestrator, {**payload, field: new_id()})
    assert (status, body["error"], body["retryable"]) == (403, error, False)
    assert store.get_trigger(payload["entry_id"])["status"] == state.TRG_CANCELED


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------
def test_retryable_classifier_failure_requeues_trigger(monkeypatch, make_entry):
    def boom(*args, **kwargs):
        raise PipelineError(504, "provider call timed out", retryable=True, code="timeout")

    monkeypatch.setattr(orch_mod._classifier, "classify", boom)
    payload = _with_trigger(make_entry())
    status, body = _call(RewriteOrchestrator(), payload)

    assert status == 504
    assert body == {"ok": False, "request_id": "req-test", "error": "provider call timed out",
                    "code": "timeout", "retryable": True}
    trg = store.get_trigger(payload["entry_id"])
    assert trg["status"] == state.TRG_QUEUED
    assert trg["retry_after"] is not None
    assert trg["error"] == "provider call timed out"
    assert not store.request_exists(payload["entry_id"])


def test_unexpected_exception_is_enveloped(monkeypatch, make_entry):
    def broken(*args, **kwargs):
        raise KeyError("detected_language")

    monkeypatch.setattr(orch_mod._classifier, "classify", broken)
    payload = _with_trigger(make_entry())
    status, body = _call(RewriteOrchestrator(), payload)
    assert status == 500
    assert body["code"] == "internal_error"
    assert body["retryable"] is False
    assert store.get_trigger(payload["entry_id"])["status"] == state.TRG_CANCELED


def test_routing_not_found(orchestrator, monkeypatch, make_entry):
    monkeypatch.setattr(orch_mod.store, "route", lambda surface, lane, strength: None)
    payload = make_entry()
    status, body = _call(orchestrator, payload)
    assert (status, body["error"], body["retryable"]) == (500, "routing_not_found", False)
