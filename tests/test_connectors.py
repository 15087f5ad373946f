# tests/test_connectors.py
from types import SimpleNamespace

import httpx
import openai
import pytest

import rewrite_pipeline.connectors.service_client as sc
from rewrite_pipeline.connectors.openai_batch import OpenAIBatchClient, map_openai_status
from rewrite_pipeline.errors import PipelineError


# ---------------------------------------------------------------------------
# OpenAI batch connector
# ---------------------------------------------------------------------------
class FakeFiles:
    def __init__(self):
        self.created = None

    def create(self, file, purpose):
        self.created = (file, purpose)
        return SimpleNamespace(id="file_abc")

    def content(self, file_id):
        return SimpleNamespace(text='{"custom_id": "x"}\n')


class FakeBatches:
    def __init__(self, fail=None):
        self.fail = fail
        self.kwargs = None

    def create(self, **kwargs):
        if self.fail:
            raise self.fail
        self.kwargs = kwargs
        return SimpleNamespace(id="batch_abc")

    def retrieve(self, batch_id):
        return SimpleNamespace(status="finalizing", output_file_id=None, error_file_id="err_1")


def _client(fail=None):
    sdk = SimpleNamespace(files=FakeFiles(), batches=FakeBatches(fail))
    return OpenAIBatchClient(api_key="sk", client=sdk), sdk


@pytest.mark.parametrize("raw,mapped", [
    ("completed", "completed"), ("failed", "failed"), ("cancelled", "canceled"),
    ("canceled", "canceled"), ("validating", "running"), (None, "running"),
])
def test_map_openai_status(raw, mapped):
    assert map_openai_status(raw) == mapped


def test_upload_and_create_batch():
    client, sdk = _client()
    assert client.upload_jsonl('{"a":1}') == "file_abc"
    (filename, data), purpose = sdk.files.created
    assert purpose == "batch"
    assert data == b'{"a":1}'

    assert client.create_batch("file_abc", "/v1/responses") == "batch_abc"
    assert sdk.batches.kwargs["completion_window"] == "24h"
    assert sdk.batches.kwargs["metadata"] == {"system": "complaint_rewrite", "mode": "batch"}


def test_get_batch_and_download():
    client, _ = _client()
    assert client.get_batch("batch_abc") == {"status": "finalizing", "output_file_id": None,
                                             "error_file_id": "err_1"}
    assert client.download_file("file_out").startswith('{"custom_id"')


def test_sdk_errors_become_pipeline_errors():
    req = httpx.Request("POST", "https://api.openai.com/v1/batches")
    client, _ = _client(fail=openai.APIStatusError("rate limited", response=httpx.Response(429, request=req),
                                                   body=None))
    with pytest.raises(PipelineError) as ei:
        client.create_batch("file_abc", "/v1/responses")
    assert ei.value.retryable is True
    assert ei.value.code == "provider_error"


# ---------------------------------------------------------------------------
# Classifier service client
# ---------------------------------------------------------------------------
def test_call_classifier_service_unwraps_envelope(monkeypatch):
    monkeypatch.setattr(sc, "post_json", lambda *a, **k: (200, {"ok": True, "classifier_result": {"intent": "x"}},
                                                         "{}"))
    assert sc.call_classifier_service("https://c", "s", {}, 1.0) == {"intent": "x"}


def test_call_classifier_service_keeps_remote_code(monkeypatch):
    body = {"ok": False, "error": "missing_field:surface", "code": "missing_field", "retryable": False}
    monkeypatch.setattr(sc, "post_json", lambda *a, **k: (400, body, "{}"))
    with pytest.raises(PipelineError) as ei:
        sc.call_classifier_service("https://c", "s", {}, 1.0)
    assert ei.value.status == 400
    assert ei.value.code == "missing_field"
    assert ei.value.message == "missing_field:missing_field:surface"
    assert ei.value.retryable is False


def test_call_classifier_service_5xx_is_retryable(monkeypatch):
    monkeypatch.setattr(sc, "post_json", lambda *a, **k: (503, None, "Service Unavailable"))
    with pytest.raises(PipelineError) as ei:
        sc.call_classifier_service("https://c", "s", {}, 1.0)
    assert ei.value.retryable is True
    assert ei.value.code == "classifier_service_failed"


def test_call_classifier_service_timeout(monkeypatch):
    def slow(*a, **k):
        raise httpx.ReadTimeout("timed out")

    monkeypatch.setattr(sc, "post_json", slow)
    with pytest.raises(PipelineError) as ei:
        sc.call_classifier_service("https://c", "s", {}, 1.0)
    assert (ei.value.status, ei.value.code, ei.value.retryable) == (504, "classifier_timeout", True)
