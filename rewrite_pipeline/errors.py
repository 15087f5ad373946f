# rewrite_pipeline/errors.py
"""
Typed errors shared by every pipeline component.

Every failure that crosses a component boundary is a PipelineError carrying:
  status     HTTP status used for the response envelope (observability only)
  code       stable machine code (part of the envelope contract)
  retryable  whether the caller should requeue instead of giving up

Free-text retryability sniffing (is_retryable_text) only runs for exceptions
that are not PipelineError instances.
"""

from typing import Any, Optional, Tuple


class PipelineError(Exception):
    def __init__(self, status: int, message: str, retryable: bool = False,
                 code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.retryable = retryable
        self.code = code or message

    def __repr__(self) -> str:
        return (f"PipelineError(status={self.status}, code={self.code!r}, "
                f"retryable={self.retryable}, message={self.message!r})")


class StoreError(PipelineError):
    """Datastore call failure. Contention and unavailability dominate, so retryable by default."""

    def __init__(self, message: str, retryable: bool = True, code: str = "datastore_error"):
        super().__init__(500, message, retryable=retryable, code=code)


class IllegalTransition(PipelineError):
    def __init__(self, kind: str, current: str, target: str):
        super().__init__(
            409,
            f"illegal_{kind}_transition:{current}->{target}",
            retryable=False,
            code="illegal_transition",
        )
        self.kind = kind
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "rate limit",
    "429",
    "502",
    "503",
    "504",
    "deadlock",
    "could not serialize",
    "temporarily",
    "unavailable",
)


def is_retryable_text(message: Any) -> bool:
    m = str(message or "").lower()
    return any(marker in m for marker in _RETRYABLE_MARKERS)


def to_error_message(exc: Any) -> str:
    if isinstance(exc, PipelineError):
        return exc.message
    if isinstance(exc, BaseException):
        return str(exc) or exc.__class__.__name__
    return str(exc)


def normalize_error(exc: BaseException) -> Tuple[str, int, bool, Optional[str]]:
    """Return (message, status, retryable, code) for any exception."""
    if isinstance(exc, PipelineError):
        return exc.message, exc.status, exc.retryable, exc.code
    msg = to_error_message(exc)
    return msg, 500, is_retryable_text(msg), "internal_error"


def prefer_retryable_status(status: int) -> int:
    # retryable responses surface as 502 unless the call already timed out
    if status == 504:
        return 504
    return 502
