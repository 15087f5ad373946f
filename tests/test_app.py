# tests/test_app.py
"""
HTTP surface: shared-secret gate, envelopes, health and metrics.
"""
import json

from fastapi.testclient import TestClient

import rewrite_pipeline.llm_wrapper as llm
from rewrite_pipeline.app import app
from rewrite_pipeline.utils import new_id

client = TestClient(app)
AUTH = {"x-internal-secret": "test-secret"}


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_metrics_endpoint_returns_prometheus_format():
    r = client.get("/metrics")
    assert r.status_code in (200, 404)
    if r.status_code == 200:
        assert "text/plain" in r.headers.get("content-type", "")
        assert "rewrite_http_requests_total" in r.text


def test_missing_secret_is_401():
    r = client.post("/api/orchestrator", content=b"{}")
    assert r.status_code == 401
    body = r.json()
    assert body["ok"] is False
    assert body["code"] == "unauthorized"
    assert body["retryable"] is False
    assert body["request_id"]


def test_wrong_tier_secret_is_401(monkeypatch):
    monkeypatch.setenv("WORKER_SHARED_SECRET", "worker-only")
    r = client.post("/api/cron/run", headers=AUTH)
    assert r.status_code == 401


def test_unconfigured_secret_is_500_missing_env(monkeypatch):
    monkeypatch.delenv("CLASSIFIER_SHARED_SECRET")
    r = client.post("/api/classifier", content=b"{}", headers=AUTH)
    assert r.status_code == 500
    assert r.json()["code"] == "missing_env"


def test_classifier_endpoint_envelope(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", True)
    payload = {"original_text": "The bins again.", "surface": "weekly_harmony", "sender_user_id": new_id()}
    r = client.post("/api/classifier", content=json.dumps(payload),
                    headers={**AUTH, "x-request-id": "req-123"})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["request_id"] == "req-123"
    assert body["classifier_result"]["topics"] == ["other"]


def test_classifier_endpoint_bad_json():
    r = client.post("/api/classifier", content=b"{oops", headers=AUTH)
    assert r.status_code == 400
    body = r.json()
    assert body == {"ok": False, "error": "invalid_json_payload", "code": "invalid_json_payload",
                    "retryable": False, "request_id": body["request_id"]}


def test_orchestrator_endpoint_missing_field():
    r = client.post("/api/orchestrator", content=b"", headers=AUTH)
    assert r.status_code == 400
    assert r.json()["error"] == "entry_id_missing"
    assert r.json()["code"] == "missing_field"


def test_orchestrator_endpoint_enqueues(monkeypatch, make_entry):
    monkeypatch.setattr(llm, "MOCK_LLM", True)
    payload = make_entry()
    r = client.post("/api/orchestrator", content=json.dumps(payload), headers=AUTH)
    assert r.status_code == 200
    assert r.json()["rewrite_request_id"] == payload["entry_id"]

    again = client.post("/api/orchestrator", content=json.dumps(payload), headers=AUTH)
    assert again.json()["already_enqueued"] is True


def test_worker_endpoints_with_empty_queues():
    r = client.post("/api/batch/submit", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["submitted"] == 0

    r = client.post("/api/batch/collect", headers=AUTH)
    assert r.json()["checked"] == 0

    r = client.post("/api/cron/run", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["claimed"] == 0


def test_realtime_without_api_key_reports_missing_env(monkeypatch):
    monkeypatch.setattr(llm, "MOCK_LLM", False)
    monkeypatch.delenv("OPENAI_REWRITE_API_KEY", raising=False)
    r = client.post("/api/realtime/run", headers=AUTH)
    assert r.status_code == 500
    assert r.json()["code"] == "missing_env"
