# rewrite_pipeline/utils.py
import re
import json
import uuid
import datetime
from typing import Any, Optional

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
LOCALE_RE = re.compile(r"^[a-zA-Z]{2,3}(-[a-zA-Z0-9]{2,8})*$")


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value.strip()))


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_locale(value: Any) -> Optional[str]:
    """Lower-cased locale tag ("en", "en-nz", "zh-hant") or None when it doesn't look like one."""
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s or not LOCALE_RE.match(s):
        return None
    return s.lower()


def locale_primary(value: Optional[str]) -> str:
    return (value or "").split("-", 1)[0].lower()


def clamp_int(value: Any, lo: int, hi: int, fallback: int) -> int:
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return max(lo, min(hi, n))


def truncate(s: str, n: int) -> str:
    return s if len(s) <= n else s[:n] + "…"


def safe_short(value: Any, n: int = 240) -> str:
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = str(value)
    return truncate(text, n)


def utf8_len(s: str) -> int:
    return len(s.encode("utf-8"))


def utcnow() -> datetime.datetime:
    # naive UTC, matches what SQLite hands back
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def iso(ts: Optional[datetime.datetime]) -> Optional[str]:
    return ts.isoformat() + "Z" if ts is not None else None
