# rewrite_pipeline/connectors/openai_batch.py
"""
OpenAI Batch API connector (files + batches), on the openai SDK.

All SDK failures are re-raised as PipelineError through
llm_wrapper.provider_error_from_exception, so callers see one error type.
"""

from typing import Any, Dict, Optional

import openai

from rewrite_pipeline import state
from rewrite_pipeline.llm_wrapper import provider_error_from_exception

BATCH_COMPLETION_WINDOW = "24h"
BATCH_METADATA = {"system": "complaint_rewrite", "mode": "batch"}


def map_openai_status(status: Optional[str]) -> str:
    s = str(status or "").lower()
    if s == "completed":
        return state.BATCH_COMPLETED
    if s == "failed":
        return state.BATCH_FAILED
    if s in ("canceled", "cancelled"):
        return state.BATCH_CANCELED
    # validating / in_progress / finalizing / expired are all still polled
    return state.BATCH_RUNNING


class OpenAIBatchClient:
    def __init__(self, api_key: str, timeout: float = 60.0, client: Any = None):
        self._client = client or openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=1)

    def upload_jsonl(self, jsonl: str, filename: str = "rewrite_batch.jsonl") -> str:
        try:
            f = self._client.files.create(file=(filename, jsonl.encode("utf-8")), purpose="batch")
        except Exception as e:
            raise provider_error_from_exception(e) from e
        if not getattr(f, "id", None):
            raise provider_error_from_exception(RuntimeError("openai_files_missing_id"))
        return f.id

    def create_batch(self, input_file_id: str, endpoint: str,
                     completion_window: str = BATCH_COMPLETION_WINDOW) -> str:
        try:
            b = self._client.batches.create(
                input_file_id=input_file_id,
                endpoint=endpoint,
                completion_window=completion_window,
                metadata=dict(BATCH_METADATA),
            )
        except Exception as e:
            raise provider_error_from_exception(e) from e
        if not getattr(b, "id", None):
            raise provider_error_from_exception(RuntimeError("openai_batch_missing_id"))
        return b.id

    def get_batch(self, provider_batch_id: str) -> Dict[str, Any]:
        """{status, output_file_id, error_file_id} as reported by the provider (status unmapped)."""
        try:
            b = self._client.batches.retrieve(provider_batch_id)
        except Exception as e:
            raise provider_error_from_exception(e) from e
        return {
            "status": getattr(b, "status", None),
            "output_file_id": getattr(b, "output_file_id", None),
            "error_file_id": getattr(b, "error_file_id", None),
        }

    def download_file(self, file_id: str) -> str:
        try:
            content = self._client.files.content(file_id)
        except Exception as e:
            raise provider_error_from_exception(e) from e
        return content.text
