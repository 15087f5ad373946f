# rewrite_pipeline/config.py
"""
Environment access.

Module-level knobs are read with os.getenv where they are used (tests
monkeypatch the module attributes). Secrets and keys are read per call
through env() so a missing value fails the request, not the import.
"""

import os
from typing import Optional

from rewrite_pipeline.errors import PipelineError


def env(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise PipelineError(500, f"Missing env {name}", retryable=False, code="missing_env")
    return value


def env_optional(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or default
