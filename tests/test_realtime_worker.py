# tests/test_realtime_worker.py
import json

import pytest

import rewrite_pipeline.llm_wrapper as llm
from rewrite_pipeline import realtime_worker
from rewrite_pipeline import state
from rewrite_pipeline import store
from rewrite_pipeline.errors import PipelineError


@pytest.fixture(autouse=True)
def rewrite_key(monkeypatch):
    monkeypatch.setenv("OPENAI_REWRITE_API_KEY", "sk-rewrite")
    monkeypatch.setattr(llm, "MOCK_LLM", False)


def test_realtime_job_completes(make_job, monkeypatch):
    job = make_job(execution_mode="realtime")
    sent = {}

    def fake_create(body, api_key, timeout=30.0):
        sent.update(body=body, api_key=api_key)
        return {"output_text": json.dumps({"rewritten_text": "Could you please knock before coming in?"})}

    monkeypatch.setattr(llm, "responses_create", fake_create)
    status, body = realtime_worker.run(request_id="r1")

    assert status == 200
    assert body == {"ok": True, "request_id": "r1", "claimed": 1, "completed": 1, "requeued": 0, "failed": 0}
    assert sent["api_key"] == "sk-rewrite"
    assert sent["body"]["text"]["format"]["name"] == "complaint_rewrite_output_v1"
    assert store.fetch_job(job["job_id"])["status"] == state.JOB_COMPLETED
    assert store.fetch_request(job["rewrite_request_id"])["status"] == state.REQ_COMPLETED


def test_batch_jobs_are_not_claimed(make_job, monkeypatch):
    job = make_job(execution_mode="async")
    monkeypatch.setattr(llm, "responses_create", lambda *a, **k: pytest.fail("no provider call expected"))
    status, body = realtime_worker.run()
    assert body["claimed"] == 0
    assert store.fetch_job(job["job_id"])["status"] == state.JOB_QUEUED


def test_retryable_provider_error_requeues(make_job, monkeypatch):
    job = make_job(execution_mode="realtime")

    def boom(body, api_key, timeout=30.0):
        raise PipelineError(504, "provider call timed out", retryable=True, code="timeout")

    monkeypatch.setattr(llm, "responses_create", boom)
    _, body = realtime_worker.run()
    assert body["requeued"] == 1
    fetched = store.fetch_job(job["job_id"])
    assert fetched["status"] == state.JOB_QUEUED
    assert fetched["last_error"].startswith("provider_error:")


def test_non_retryable_provider_error_fails(make_job, monkeypatch):
    job = make_job(execution_mode="realtime")

    def rejected(body, api_key, timeout=30.0):
        raise PipelineError(502, "provider_error 400: bad request", retryable=False, code="provider_error")

    monkeypatch.setattr(llm, "responses_create", rejected)
    _, body = realtime_worker.run()
    assert body["failed"] == 1
    assert store.fetch_job(job["job_id"])["status"] == state.JOB_FAILED
    assert store.fetch_request(job["rewrite_request_id"])["status"] == state.REQ_COMPLETED


def test_non_openai_realtime_route_is_requeued(make_job, monkeypatch):
    job = make_job(execution_mode="realtime", provider="qwen")
    monkeypatch.setattr(llm, "responses_create", lambda *a, **k: pytest.fail("no provider call expected"))
    _, body = realtime_worker.run()
    assert body["requeued"] == 1
    assert store.fetch_job(job["job_id"])["last_error"] == "realtime_provider_not_supported"
