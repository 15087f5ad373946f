# rewrite_pipeline/schemas.py
from typing import List, Optional, Any, Dict
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rewrite_pipeline.utils import clamp_int

TOPICS = ("noise", "cleanliness", "privacy", "guests", "schedule", "communication", "other")
INTENTS = ("request", "boundary", "concern", "clarification")
STRENGTHS = ("light_touch", "full_reframe")


class ClassifierResult(BaseModel):
    """Normalized classifier output. Unknown values fall back instead of failing validation."""
    model_config = ConfigDict(extra="ignore")

    classifier_version: str = "v1"
    detected_language: str = "en"
    topics: List[str] = Field(default_factory=lambda: ["other"])
    intent: str = "concern"
    rewrite_strength: str = "full_reframe"
    safety_flags: List[str] = Field(default_factory=lambda: ["none"])

    @field_validator("topics", mode="before")
    @classmethod
    def known_topics(cls, v):
        out = []
        for t in v if isinstance(v, list) else []:
            if t in TOPICS and t not in out:
                out.append(t)
        return out[:3] or ["other"]

    @field_validator("intent", mode="before")
    @classmethod
    def known_intent(cls, v):
        return v if v in INTENTS else "concern"

    @field_validator("rewrite_strength", mode="before")
    @classmethod
    def known_strength(cls, v):
        return v if v in STRENGTHS else "full_reframe"

    @field_validator("safety_flags", mode="before")
    @classmethod
    def short_flags(cls, v):
        flags = [f.strip()[:48] for f in (v if isinstance(v, list) else []) if isinstance(f, str) and f.strip()]
        return flags[:12] or ["none"]


class RoutingDecision(BaseModel):
    """Frozen into every job at enqueue time."""
    model_config = ConfigDict(extra="allow")

    route_id: Optional[str] = None
    provider: str = "openai"
    adapter_kind: str = "openai_responses"
    base_url: Optional[str] = None
    model: str
    prompt_version: str = "v1"
    policy_version: str = "v1"
    execution_mode: str = "async"
    supports_translation: bool = True
    cache_eligible: bool = False
    max_retries: Optional[int] = 2

    def max_attempts(self) -> int:
        return clamp_int(self.max_retries if self.max_retries is not None else 2, 1, 10, 2)


class PolicySnapshot(BaseModel):
    tone: str
    directness: str = "soft"
    emotional_temperature: str = "cool_down"
    rewrite_strength: str

    @classmethod
    def for_strength(cls, rewrite_strength: str) -> "PolicySnapshot":
        return cls(
            tone="gentle" if rewrite_strength == "full_reframe" else "neutral",
            rewrite_strength=rewrite_strength,
        )


class RewriteRequestBlob(BaseModel):
    """Everything a rewrite worker needs, stored verbatim on the request row."""
    rewrite_request_id: str
    entry_id: str
    home_id: str
    sender_user_id: str
    recipient_user_id: str
    recipient_snapshot_id: str
    recipient_preference_snapshot_id: str
    surface: str
    original_text: str
    topics: List[str]
    intent: str
    rewrite_strength: str
    source_locale: str
    target_locale: str
    lane: str
    classifier_result: Dict[str, Any]
    context_pack: Dict[str, Any]
    policy: Dict[str, Any]
    classifier_version: str
    context_pack_version: str
    policy_version: str
    request_id: str
    created_at: str
