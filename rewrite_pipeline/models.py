# rewrite_pipeline/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, JSON, ForeignKey, UniqueConstraint, Index,
)

from rewrite_pipeline.db import Base
from rewrite_pipeline.utils import utcnow


# ---------------------------------------------------------------------------
# Source data the orchestrator reads (owned by the rest of the app)
# ---------------------------------------------------------------------------
class JournalEntry(Base):
    __tablename__ = "journal_entries"

    entry_id = Column(String(36), primary_key=True)
    home_id = Column(String(36), nullable=False, index=True)
    author_user_id = Column(String(36), nullable=False)
    recipient_user_id = Column(String(36), nullable=True)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class MemberProfile(Base):
    __tablename__ = "member_profiles"

    user_id = Column(String(36), primary_key=True)
    locale = Column(String(32), nullable=True)


class PreferencePublication(Base):
    """Published preference report; payload is either a flat {pref_id: value_key} map
    or {"resolved": {pref_id: {"value_key": ...}}}."""
    __tablename__ = "preference_publications"

    user_id = Column(String(36), primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Trigger backlog
# ---------------------------------------------------------------------------
class ComplaintTrigger(Base):
    __tablename__ = "complaint_rewrite_triggers"

    entry_id = Column(String(36), primary_key=True)
    home_id = Column(String(36), nullable=False)
    author_user_id = Column(String(36), nullable=False)
    recipient_user_id = Column(String(36), nullable=False)
    status = Column(String(16), nullable=False, default="queued")
    request_id = Column(String(64), nullable=True)
    note = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    retry_after = Column(DateTime, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_triggers_status_retry", "status", "retry_after"),)


# ---------------------------------------------------------------------------
# Snapshots (immutable, one per request / per request+recipient)
# ---------------------------------------------------------------------------
class RecipientSnapshot(Base):
    __tablename__ = "recipient_snapshots"

    recipient_snapshot_id = Column(String(36), primary_key=True)
    rewrite_request_id = Column(String(36), nullable=False, unique=True)
    home_id = Column(String(36), nullable=False)
    recipient_user_ids = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class RecipientPreferenceSnapshot(Base):
    __tablename__ = "recipient_preference_snapshots"

    recipient_preference_snapshot_id = Column(String(36), primary_key=True)
    rewrite_request_id = Column(String(36), nullable=False, index=True)
    recipient_user_id = Column(String(36), nullable=False)
    preference_payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("rewrite_request_id", "recipient_user_id",
                                       name="ux_pref_snapshot_req_recipient"),)


# ---------------------------------------------------------------------------
# Requests, jobs, outputs
# ---------------------------------------------------------------------------
class RewriteRequest(Base):
    __tablename__ = "rewrite_requests"

    rewrite_request_id = Column(String(36), primary_key=True)
    home_id = Column(String(36), nullable=False)
    sender_user_id = Column(String(36), nullable=False)
    recipient_user_id = Column(String(36), nullable=False)
    recipient_snapshot_id = Column(String(36), nullable=True)
    recipient_preference_snapshot_id = Column(String(36), nullable=True)
    surface = Column(String(32), nullable=False)
    original_text = Column(Text, nullable=False)
    source_locale = Column(String(32), nullable=False)
    target_locale = Column(String(32), nullable=False)
    lane = Column(String(32), nullable=False)
    topics = Column(JSON, nullable=False)
    intent = Column(String(32), nullable=False)
    rewrite_strength = Column(String(32), nullable=False)
    classifier_result = Column(JSON, nullable=False)
    context_pack = Column(JSON, nullable=False)
    routing_decision = Column(JSON, nullable=False)
    policy = Column(JSON, nullable=False)
    rewrite_request = Column(JSON, nullable=False)
    classifier_version = Column(String(16), nullable=False)
    context_pack_version = Column(String(16), nullable=False)
    policy_version = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="queued")
    rewrite_completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class RewriteJob(Base):
    __tablename__ = "rewrite_jobs"

    job_id = Column(String(36), primary_key=True)
    rewrite_request_id = Column(String(36), ForeignKey("rewrite_requests.rewrite_request_id",
                                                       ondelete="CASCADE"), nullable=False)
    recipient_user_id = Column(String(36), nullable=False)
    recipient_snapshot_id = Column(String(36), nullable=False)
    recipient_preference_snapshot_id = Column(String(36), nullable=False)
    task = Column(String(32), nullable=False, default="complaint_rewrite")
    surface = Column(String(32), nullable=False)
    rewrite_strength = Column(String(32), nullable=False)
    lane = Column(String(32), nullable=False)
    language_pair = Column(JSON, nullable=False)
    routing_decision = Column(JSON, nullable=False)
    execution_mode = Column(String(16), nullable=False, default="async")
    status = Column(String(16), nullable=False, default="queued")
    not_before_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=2)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)
    provider_batch_id = Column(String(128), nullable=True, index=True)
    submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("rewrite_request_id", "recipient_user_id", name="ux_rewrite_jobs_execution_unit"),
        Index("ix_rewrite_jobs_status_window", "status", "not_before_at", "created_at"),
    )


class RewriteOutput(Base):
    __tablename__ = "rewrite_outputs"

    rewrite_request_id = Column(String(36), ForeignKey("rewrite_requests.rewrite_request_id",
                                                       ondelete="CASCADE"), primary_key=True)
    recipient_user_id = Column(String(36), primary_key=True)
    rewritten_text = Column(Text, nullable=False)
    output_language = Column(String(32), nullable=False)
    target_locale = Column(String(32), nullable=False)
    model = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    prompt_version = Column(String(16), nullable=False)
    policy_version = Column(String(16), nullable=False)
    lexicon_version = Column(String(64), nullable=False)
    eval_result = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Provider batches + routing tables
# ---------------------------------------------------------------------------
class ProviderBatch(Base):
    __tablename__ = "rewrite_provider_batches"

    provider_batch_id = Column(String(128), primary_key=True)
    endpoint = Column(String(64), nullable=False, default="/v1/responses")
    status = Column(String(16), nullable=False, default="submitted")
    input_file_id = Column(String(128), nullable=True)
    output_file_id = Column(String(128), nullable=True)
    error_file_id = Column(String(128), nullable=True)
    job_count = Column(Integer, nullable=False, default=0)
    last_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AIProvider(Base):
    __tablename__ = "complaint_ai_providers"

    provider = Column(String(32), primary_key=True)
    adapter_kind = Column(String(48), nullable=False)
    base_url = Column(String(256), nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class RewriteRoute(Base):
    __tablename__ = "complaint_rewrite_routes"

    route_id = Column(String(36), primary_key=True)
    surface = Column(String(32), nullable=False)
    lane = Column(String(32), nullable=False)
    rewrite_strength = Column(String(32), nullable=False)
    provider = Column(String(32), nullable=False)
    model = Column(String(64), nullable=False)
    prompt_version = Column(String(16), nullable=False, default="v1")
    policy_version = Column(String(16), nullable=False, default="v1")
    execution_mode = Column(String(16), nullable=False, default="async")
    cache_eligible = Column(Boolean, nullable=False, default=False)
    max_retries = Column(Integer, nullable=False, default=2)
    priority = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_routes_lookup", "surface", "lane", "rewrite_strength", "active", "priority"),)
