# rewrite_pipeline/store.py
"""
Transactional datastore surface for the rewrite pipeline.

Each public function is one transaction (db.session_scope) and is safe to call
twice with the same arguments: calls that no longer apply to a row's current
state are no-ops. Status writes go through state.check_transition(): row-level
writes check the row's current status, bulk compare-and-set UPDATEs check the
status their WHERE clause filters on.

SQLAlchemy failures surface as StoreError (retryable).
"""

import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import IntegrityError

from rewrite_pipeline import db as dbmod
from rewrite_pipeline import monitoring
from rewrite_pipeline import state
from rewrite_pipeline.errors import PipelineError, StoreError
from rewrite_pipeline.models import (
    AIProvider,
    ComplaintTrigger,
    JournalEntry,
    MemberProfile,
    PreferencePublication,
    ProviderBatch,
    RecipientPreferenceSnapshot,
    RecipientSnapshot,
    RewriteJob,
    RewriteOutput,
    RewriteRequest,
    RewriteRoute,
)
from rewrite_pipeline.processors import context_pack as _context_pack
from rewrite_pipeline.utils import iso, locale_primary, new_id, truncate, utcnow

MIN_JOB_BACKOFF_SECONDS = 30
MAX_JOB_BACKOFF_SECONDS = 6 * 3600
MIN_TRIGGER_RETRY_SECONDS = 10
TRIGGER_MAX_ATTEMPTS = 10

SURFACES = ("weekly_harmony", "direct_message", "other")
LANES = ("same_language", "cross_language")
STRENGTHS = ("light_touch", "full_reframe")


def _seconds(n: int) -> datetime.timedelta:
    return datetime.timedelta(seconds=n)


def _clamp_backoff(seconds: Any) -> int:
    try:
        n = int(seconds)
    except (TypeError, ValueError):
        n = MIN_JOB_BACKOFF_SECONDS
    return max(MIN_JOB_BACKOFF_SECONDS, min(MAX_JOB_BACKOFF_SECONDS, n))


# ---------------------------------------------------------------------------
# Row -> dict
# ---------------------------------------------------------------------------
def _trigger_dict(t: ComplaintTrigger) -> Dict[str, Any]:
    return {
        "entry_id": t.entry_id,
        "home_id": t.home_id,
        "author_user_id": t.author_user_id,
        "recipient_user_id": t.recipient_user_id,
        "status": t.status,
        "request_id": t.request_id,
        "note": t.note,
        "error": t.error,
        "attempts": t.attempts,
        "retry_after": iso(t.retry_after),
        "processed_at": iso(t.processed_at),
    }


def _job_dict(j: RewriteJob) -> Dict[str, Any]:
    return {
        "job_id": j.job_id,
        "rewrite_request_id": j.rewrite_request_id,
        "recipient_user_id": j.recipient_user_id,
        "recipient_snapshot_id": j.recipient_snapshot_id,
        "recipient_preference_snapshot_id": j.recipient_preference_snapshot_id,
        "task": j.task,
        "surface": j.surface,
        "rewrite_strength": j.rewrite_strength,
        "lane": j.lane,
        "language_pair": j.language_pair,
        "routing_decision": j.routing_decision or {},
        "execution_mode": j.execution_mode,
        "status": j.status,
        "attempt_count": j.attempt_count,
        "max_attempts": j.max_attempts,
        "not_before_at": j.not_before_at,
        "provider_batch_id": j.provider_batch_id,
        "last_error": j.last_error,
    }


def _request_dict(r: RewriteRequest) -> Dict[str, Any]:
    return {
        "rewrite_request_id": r.rewrite_request_id,
        "rewrite_request": r.rewrite_request or {},
        "home_id": r.home_id,
        "sender_user_id": r.sender_user_id,
        "recipient_user_id": r.recipient_user_id,
        "source_locale": r.source_locale,
        "target_locale": r.target_locale,
        "lane": r.lane,
        "policy_version": r.policy_version,
        "status": r.status,
    }


def _batch_dict(b: ProviderBatch) -> Dict[str, Any]:
    return {
        "provider_batch_id": b.provider_batch_id,
        "endpoint": b.endpoint,
        "status": b.status,
        "input_file_id": b.input_file_id,
        "output_file_id": b.output_file_id,
        "error_file_id": b.error_file_id,
        "job_count": b.job_count,
    }


def _set_job_status(job: RewriteJob, target: str) -> None:
    state.check_transition("job", job.status, target)
    job.status = target
    monitoring.inc_job_transition(target)


def _set_trigger_status(trigger: ComplaintTrigger, target: str) -> None:
    state.check_transition("trigger", trigger.status, target)
    trigger.status = target


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------
def enqueue_trigger(entry_id: str, home_id: str, author_user_id: str, recipient_user_id: str) -> Dict[str, Any]:
    """Register an entry for rewriting. Re-registering an existing entry is a no-op."""
    try:
        with dbmod.session_scope() as s:
            t = s.get(ComplaintTrigger, entry_id)
            if t is None:
                t = ComplaintTrigger(
                    entry_id=entry_id,
                    home_id=home_id,
                    author_user_id=author_user_id,
                    recipient_user_id=recipient_user_id,
                    status=state.TRG_QUEUED,
                    attempts=0,
                )
                s.add(t)
                s.flush()
            return _trigger_dict(t)
    except StoreError as e:
        if isinstance(e.__cause__, IntegrityError):
            return get_trigger(entry_id)
        raise


def get_trigger(entry_id: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        t = s.get(ComplaintTrigger, entry_id)
        return _trigger_dict(t) if t else None


def pop_pending_triggers(limit: int = 20, max_attempts: int = TRIGGER_MAX_ATTEMPTS) -> List[Dict[str, Any]]:
    """Claim due queued triggers: queued -> processing, attempts + 1, fresh claim token."""
    now = utcnow()
    state.check_transition("trigger", state.TRG_QUEUED, state.TRG_PROCESSING)
    claimed: List[str] = []
    with dbmod.session_scope() as s:
        candidates = s.execute(
            select(ComplaintTrigger.entry_id)
            .where(
                ComplaintTrigger.status == state.TRG_QUEUED,
                ComplaintTrigger.attempts < max_attempts,
                or_(ComplaintTrigger.retry_after.is_(None), ComplaintTrigger.retry_after <= now),
            )
            .order_by(ComplaintTrigger.retry_after, ComplaintTrigger.created_at)
            .limit(max(0, int(limit)))
        ).scalars().all()

        for entry_id in candidates:
            token = new_id()
            res = s.execute(
                update(ComplaintTrigger)
                .where(ComplaintTrigger.entry_id == entry_id, ComplaintTrigger.status == state.TRG_QUEUED)
                .values(
                    status=state.TRG_PROCESSING,
                    attempts=ComplaintTrigger.attempts + 1,
                    request_id=token,
                    retry_after=None,
                    processing_started_at=now,
                    last_attempt_at=now,
                )
            )
            if res.rowcount == 1:
                claimed.append(entry_id)

        if not claimed:
            return []
        s.flush()
        rows = s.execute(
            select(ComplaintTrigger).where(ComplaintTrigger.entry_id.in_(claimed))
        ).scalars().all()
        for t in rows:
            s.refresh(t)
        return [_trigger_dict(t) for t in rows]


def mark_trigger_processing(entry_id: str, request_id: Optional[str] = None) -> bool:
    now = utcnow()
    with dbmod.session_scope() as s:
        t = s.get(ComplaintTrigger, entry_id)
        if t is None:
            return False
        if t.status == state.TRG_QUEUED:
            _set_trigger_status(t, state.TRG_PROCESSING)
            t.attempts = (t.attempts or 0) + 1
            t.processing_started_at = now
            t.last_attempt_at = now
            t.retry_after = None
        elif t.status != state.TRG_PROCESSING:
            return False
        if request_id:
            t.request_id = request_id
        return True


def mark_trigger_completed(entry_id: str, note: Optional[str] = None) -> bool:
    with dbmod.session_scope() as s:
        t = s.get(ComplaintTrigger, entry_id)
        if t is None or t.status != state.TRG_PROCESSING:
            return False
        _set_trigger_status(t, state.TRG_COMPLETED)
        t.processed_at = utcnow()
        t.note = note
        t.error = None
        t.retry_after = None
        t.request_id = None
        return True


def mark_trigger_retry(entry_id: str, error: str, note: Optional[str] = None,
                       retry_after_seconds: int = 600) -> bool:
    """processing -> queued with a due time (at least 10 s out)."""
    now = utcnow()
    with dbmod.session_scope() as s:
        t = s.get(ComplaintTrigger, entry_id)
        if t is None or t.status != state.TRG_PROCESSING:
            return False
        _set_trigger_status(t, state.TRG_QUEUED)
        t.retry_after = now + _seconds(max(MIN_TRIGGER_RETRY_SECONDS, int(retry_after_seconds or 0)))
        t.error = truncate(error or "", 512)
        t.note = note
        t.last_error_at = now
        t.request_id = None
        t.processing_started_at = None
        return True


def mark_trigger_failed(entry_id: str, error: str, backoff_seconds: int = 600,
                        max_attempts: int = TRIGGER_MAX_ATTEMPTS) -> Optional[str]:
    """
    Retryable orchestrator failure. Requeues with backoff while attempts remain,
    otherwise the trigger is failed for good. Returns the resulting status.
    """
    now = utcnow()
    with dbmod.session_scope() as s:
        t = s.get(ComplaintTrigger, entry_id)
        if t is None or t.status != state.TRG_PROCESSING:
            return None
        t.error = truncate(error or "", 512)
        t.last_error_at = now
        t.request_id = None
        t.processing_started_at = None
        if (t.attempts or 0) >= max_attempts:
            _set_trigger_status(t, state.TRG_FAILED)
            t.processed_at = now
            t.retry_after = None
        else:
            _set_trigger_status(t, state.TRG_QUEUED)
            t.retry_after = now + _seconds(max(MIN_TRIGGER_RETRY_SECONDS, int(backoff_seconds or 0)))
        return t.status


def mark_trigger_canceled(entry_id: str, reason: str) -> bool:
    with dbmod.session_scope() as s:
        t = s.get(ComplaintTrigger, entry_id)
        if t is None or t.status != state.TRG_PROCESSING:
            return False
        _set_trigger_status(t, state.TRG_CANCELED)
        t.note = truncate(reason or "", 256)
        t.processed_at = utcnow()
        t.retry_after = None
        t.request_id = None
        return True


def requeue_stale_triggers(stale_seconds: int = 600, retry_delay_seconds: int = 30, limit: int = 100) -> int:
    """Watchdog: triggers stuck in processing (crashed orchestrator) go back to queued."""
    now = utcnow()
    cutoff = now - _seconds(stale_seconds)
    with dbmod.session_scope() as s:
        rows = s.execute(
            select(ComplaintTrigger)
            .where(
                ComplaintTrigger.status == state.TRG_PROCESSING,
                ComplaintTrigger.processing_started_at < cutoff,
            )
            .limit(limit)
        ).scalars().all()
        for t in rows:
            _set_trigger_status(t, state.TRG_QUEUED)
            t.retry_after = now + _seconds(retry_delay_seconds)
            t.note = "requeued_stale_processing"
            t.request_id = None
            t.processing_started_at = None
        return len(rows)


def fail_exhausted_triggers(max_attempts: int = TRIGGER_MAX_ATTEMPTS, limit: int = 100) -> int:
    now = utcnow()
    with dbmod.session_scope() as s:
        rows = s.execute(
            select(ComplaintTrigger)
            .where(ComplaintTrigger.status == state.TRG_QUEUED, ComplaintTrigger.attempts >= max_attempts)
            .limit(limit)
        ).scalars().all()
        for t in rows:
            _set_trigger_status(t, state.TRG_FAILED)
            t.error = truncate(t.error or "max_attempts_exhausted", 512)
            t.note = "failed_exhausted_attempts" if not t.note else f"{t.note} | failed_exhausted_attempts"
            t.processed_at = now
            t.retry_after = None
        return len(rows)


# ---------------------------------------------------------------------------
# Entry, preferences, snapshots, context, routing
# ---------------------------------------------------------------------------
def request_exists(rewrite_request_id: str) -> bool:
    with dbmod.session_scope() as s:
        return s.get(RewriteRequest, rewrite_request_id) is not None


def fetch_entry(entry_id: str, recipient_user_id: str) -> Optional[Dict[str, Any]]:
    """Authoritative entry data plus the recipient's locale (raw, unnormalized)."""
    with dbmod.session_scope() as s:
        e = s.get(JournalEntry, entry_id)
        if e is None:
            return None
        recipient = e.recipient_user_id or recipient_user_id
        profile = s.get(MemberProfile, recipient)
        return {
            "entry_id": e.entry_id,
            "home_id": e.home_id,
            "author_user_id": e.author_user_id,
            "recipient_user_id": recipient,
            "original_text": e.comment or "",
            "recipient_locale": profile.locale if profile else None,
        }


def fetch_preference_payload(recipient_user_id: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        pub = s.get(PreferencePublication, recipient_user_id)
        return dict(pub.payload) if pub and isinstance(pub.payload, dict) else None


def build_recipient_snapshots(rewrite_request_id: str, home_id: str, recipient_user_id: str,
                              preference_payload: Dict[str, Any]) -> Dict[str, str]:
    """Create (or return the existing) identity + preference snapshots for a request."""
    try:
        return _build_snapshots(rewrite_request_id, home_id, recipient_user_id, preference_payload)
    except StoreError as e:
        if not isinstance(e.__cause__, IntegrityError):
            raise
    # concurrent builder won; second pass reads theirs
    return _build_snapshots(rewrite_request_id, home_id, recipient_user_id, preference_payload)


def _build_snapshots(rewrite_request_id: str, home_id: str, recipient_user_id: str,
                     preference_payload: Dict[str, Any]) -> Dict[str, str]:
    with dbmod.session_scope() as s:
        rs = s.execute(
            select(RecipientSnapshot).where(RecipientSnapshot.rewrite_request_id == rewrite_request_id)
        ).scalar_one_or_none()
        if rs is None:
            rs = RecipientSnapshot(
                recipient_snapshot_id=new_id(),
                rewrite_request_id=rewrite_request_id,
                home_id=home_id,
                recipient_user_ids=[recipient_user_id],
            )
            s.add(rs)

        rps = s.execute(
            select(RecipientPreferenceSnapshot).where(
                RecipientPreferenceSnapshot.rewrite_request_id == rewrite_request_id,
                RecipientPreferenceSnapshot.recipient_user_id == recipient_user_id,
            )
        ).scalar_one_or_none()
        if rps is None:
            rps = RecipientPreferenceSnapshot(
                recipient_preference_snapshot_id=new_id(),
                rewrite_request_id=rewrite_request_id,
                recipient_user_id=recipient_user_id,
                preference_payload=preference_payload or {},
            )
            s.add(rps)
        s.flush()
        return {
            "recipient_snapshot_id": rs.recipient_snapshot_id,
            "recipient_preference_snapshot_id": rps.recipient_preference_snapshot_id,
        }


def build_context_pack(recipient_user_id: str, recipient_preference_snapshot_id: str, topics: List[str],
                       target_language: str, power_mode: str = "peer") -> Dict[str, Any]:
    with dbmod.session_scope() as s:
        rps = s.get(RecipientPreferenceSnapshot, recipient_preference_snapshot_id)
        payload = dict(rps.preference_payload) if rps and isinstance(rps.preference_payload, dict) else {}
    prefs = payload.get("preferences") if isinstance(payload.get("preferences"), dict) else {}
    value_map = {k: v for k, v in prefs.items() if isinstance(v, str)}
    return _context_pack.build_context_pack(
        recipient_user_id=recipient_user_id,
        topics=topics,
        target_language=target_language,
        value_map=value_map,
        preference_payload=payload,
        power_mode=power_mode,
    )


def route(surface: str, lane: str, rewrite_strength: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        row = s.execute(
            select(RewriteRoute, AIProvider)
            .join(AIProvider, AIProvider.provider == RewriteRoute.provider)
            .where(
                RewriteRoute.surface == surface,
                RewriteRoute.lane == lane,
                RewriteRoute.rewrite_strength == rewrite_strength,
                RewriteRoute.active.is_(True),
                AIProvider.active.is_(True),
            )
            .order_by(RewriteRoute.priority, RewriteRoute.created_at)
            .limit(1)
        ).first()
        if row is None:
            return None
        r, p = row
        return {
            "route_id": r.route_id,
            "provider": r.provider,
            "adapter_kind": p.adapter_kind,
            "base_url": p.base_url,
            "model": r.model,
            "prompt_version": r.prompt_version,
            "policy_version": r.policy_version,
            "execution_mode": r.execution_mode,
            "supports_translation": True,
            "cache_eligible": bool(r.cache_eligible),
            "max_retries": r.max_retries,
        }


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------
def enqueue_rewrite(
    *,
    rewrite_request_id: str,
    home_id: str,
    sender_user_id: str,
    recipient_user_id: str,
    recipient_snapshot_id: str,
    recipient_preference_snapshot_id: str,
    surface: str,
    original_text: str,
    rewrite_request: Dict[str, Any],
    classifier_result: Dict[str, Any],
    context_pack: Dict[str, Any],
    policy: Dict[str, Any],
    source_locale: str,
    target_locale: str,
    lane: str,
    topics: List[str],
    intent: str,
    rewrite_strength: str,
    classifier_version: str,
    context_pack_version: str,
    policy_version: str,
    routing_decision: Dict[str, Any],
    max_attempts: int,
) -> Dict[str, Any]:
    """
    Create the request and its single job atomically. Keyed by rewrite_request_id:
    a second call returns the existing ids with created=False.
    """
    try:
        with dbmod.session_scope() as s:
            existing = s.get(RewriteRequest, rewrite_request_id)
            if existing is not None:
                job = s.execute(
                    select(RewriteJob).where(RewriteJob.rewrite_request_id == rewrite_request_id)
                ).scalars().first()
                return {"rewrite_request_id": rewrite_request_id,
                        "job_id": job.job_id if job else None, "created": False}

            s.add(RewriteRequest(
                rewrite_request_id=rewrite_request_id,
                home_id=home_id,
                sender_user_id=sender_user_id,
                recipient_user_id=recipient_user_id,
                recipient_snapshot_id=recipient_snapshot_id,
                recipient_preference_snapshot_id=recipient_preference_snapshot_id,
                surface=surface,
                original_text=original_text,
                source_locale=source_locale,
                target_locale=target_locale,
                lane=lane,
                topics=list(topics),
                intent=intent,
                rewrite_strength=rewrite_strength,
                classifier_result=classifier_result,
                context_pack=context_pack,
                routing_decision=routing_decision,
                policy=policy,
                rewrite_request=rewrite_request,
                classifier_version=classifier_version,
                context_pack_version=context_pack_version,
                policy_version=policy_version,
                status=state.REQ_QUEUED,
            ))
            s.flush()
            job_id = new_id()
            s.add(RewriteJob(
                job_id=job_id,
                rewrite_request_id=rewrite_request_id,
                recipient_user_id=recipient_user_id,
                recipient_snapshot_id=recipient_snapshot_id,
                recipient_preference_snapshot_id=recipient_preference_snapshot_id,
                task="complaint_rewrite",
                surface=surface,
                rewrite_strength=rewrite_strength,
                lane=lane,
                language_pair={"from": source_locale, "to": target_locale},
                routing_decision=routing_decision,
                execution_mode=str(routing_decision.get("execution_mode") or "async"),
                status=state.JOB_QUEUED,
                attempt_count=0,
                max_attempts=max_attempts,
            ))
            monitoring.inc_job_transition(state.JOB_QUEUED)
            return {"rewrite_request_id": rewrite_request_id, "job_id": job_id, "created": True}
    except StoreError as e:
        if isinstance(e.__cause__, IntegrityError) and request_exists(rewrite_request_id):
            return {"rewrite_request_id": rewrite_request_id,
                    "job_id": _first_job_id(rewrite_request_id), "created": False}
        raise


def _first_job_id(rewrite_request_id: str) -> Optional[str]:
    with dbmod.session_scope() as s:
        return s.execute(
            select(RewriteJob.job_id).where(RewriteJob.rewrite_request_id == rewrite_request_id)
        ).scalars().first()


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------
def fetch_request(rewrite_request_id: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        r = s.get(RewriteRequest, rewrite_request_id)
        return _request_dict(r) if r else None


def fetch_job(job_id: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        j = s.get(RewriteJob, job_id)
        return _job_dict(j) if j else None


def list_jobs(rewrite_request_id: str) -> List[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        rows = s.execute(
            select(RewriteJob).where(RewriteJob.rewrite_request_id == rewrite_request_id)
        ).scalars().all()
        return [_job_dict(j) for j in rows]


def fetch_output(rewrite_request_id: str, recipient_user_id: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        o = s.get(RewriteOutput, (rewrite_request_id, recipient_user_id))
        if o is None:
            return None
        return {
            "rewritten_text": o.rewritten_text,
            "output_language": o.output_language,
            "target_locale": o.target_locale,
            "model": o.model,
            "provider": o.provider,
            "lexicon_version": o.lexicon_version,
            "eval_result": o.eval_result,
        }


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------
def claim_jobs(limit: int, execution_mode: str = "batch") -> List[Dict[str, Any]]:
    """
    Atomically claim due queued jobs: queued -> processing, attempt_count + 1.
    execution_mode "batch" takes everything not routed to the realtime lane,
    "realtime" takes only realtime jobs. Parent requests move to processing.
    """
    now = utcnow()
    state.check_transition("job", state.JOB_QUEUED, state.JOB_PROCESSING)
    state.check_transition("request", state.REQ_QUEUED, state.REQ_PROCESSING)
    mode_filter = (RewriteJob.execution_mode == "realtime") if execution_mode == "realtime" \
        else (RewriteJob.execution_mode != "realtime")

    with dbmod.session_scope() as s:
        candidates = s.execute(
            select(RewriteJob.job_id)
            .where(
                RewriteJob.status == state.JOB_QUEUED,
                RewriteJob.provider_batch_id.is_(None),
                RewriteJob.attempt_count < RewriteJob.max_attempts,
                or_(RewriteJob.not_before_at.is_(None), RewriteJob.not_before_at <= now),
                mode_filter,
            )
            .order_by(RewriteJob.not_before_at, RewriteJob.created_at)
            .limit(max(0, int(limit)))
        ).scalars().all()

        claimed_ids: List[str] = []
        for job_id in candidates:
            res = s.execute(
                update(RewriteJob)
                .where(RewriteJob.job_id == job_id, RewriteJob.status == state.JOB_QUEUED)
                .values(
                    status=state.JOB_PROCESSING,
                    attempt_count=RewriteJob.attempt_count + 1,
                    claimed_at=now,
                    not_before_at=None,
                )
            )
            if res.rowcount == 1:
                claimed_ids.append(job_id)

        if not claimed_ids:
            return []
        monitoring.inc_job_transition(state.JOB_PROCESSING, len(claimed_ids))

        rows = s.execute(select(RewriteJob).where(RewriteJob.job_id.in_(claimed_ids))).scalars().all()
        jobs = []
        for j in rows:
            s.refresh(j)
            jobs.append(_job_dict(j))

        request_ids = sorted({j["rewrite_request_id"] for j in jobs})
        s.execute(
            update(RewriteRequest)
            .where(RewriteRequest.rewrite_request_id.in_(request_ids), RewriteRequest.status == state.REQ_QUEUED)
            .values(status=state.REQ_PROCESSING)
        )
        order = {jid: i for i, jid in enumerate(claimed_ids)}
        return sorted(jobs, key=lambda j: order[j["job_id"]])


def mark_jobs_batch_submitted(job_ids: List[str], provider_batch_id: str) -> int:
    """Link processing jobs to a provider batch. Jobs in any other state are left alone."""
    state.check_transition("job", state.JOB_PROCESSING, state.JOB_BATCH_SUBMITTED)
    now = utcnow()
    with dbmod.session_scope() as s:
        res = s.execute(
            update(RewriteJob)
            .where(RewriteJob.job_id.in_(list(job_ids)), RewriteJob.status == state.JOB_PROCESSING)
            .values(status=state.JOB_BATCH_SUBMITTED, provider_batch_id=provider_batch_id, submitted_at=now)
        )
        monitoring.inc_job_transition(state.JOB_BATCH_SUBMITTED, res.rowcount)
        return res.rowcount


def fail_or_requeue_job(job_id: str, error: str, backoff_seconds: int) -> Optional[str]:
    """
    Transient failure for an in-flight job. Requeues with a clamped backoff
    (30 s .. 6 h) while attempts remain, otherwise fails it. Returns the new
    status, or None when the job is missing or not in flight.
    """
    now = utcnow()
    with dbmod.session_scope() as s:
        j = s.get(RewriteJob, job_id)
        if j is None or j.status not in (state.JOB_PROCESSING, state.JOB_BATCH_SUBMITTED):
            return None
        j.last_error = truncate(error or "", 1000)
        j.last_error_at = now
        j.provider_batch_id = None
        j.submitted_at = None
        if j.attempt_count >= j.max_attempts:
            _set_job_status(j, state.JOB_FAILED)
            j.not_before_at = None
        else:
            _set_job_status(j, state.JOB_QUEUED)
            j.not_before_at = now + _seconds(_clamp_backoff(backoff_seconds))
        return j.status


def fail_job(job_id: str, error: str) -> bool:
    """Permanent failure. No-op for jobs already terminal."""
    with dbmod.session_scope() as s:
        j = s.get(RewriteJob, job_id)
        if j is None or j.status in state.JOB_TERMINAL:
            return False
        _set_job_status(j, state.JOB_FAILED)
        j.last_error = truncate(error or "", 1000)
        j.last_error_at = utcnow()
        j.not_before_at = None
        return True


def requeue_jobs_by_provider_batch(provider_batch_id: str, reason: str, backoff_seconds: int,
                                   limit: int = 1000) -> List[Dict[str, str]]:
    """Batch-level recovery: every batch_submitted job of the batch goes back to queued (or failed if exhausted)."""
    now = utcnow()
    backoff = _clamp_backoff(backoff_seconds)
    out: List[Dict[str, str]] = []
    with dbmod.session_scope() as s:
        rows = s.execute(
            select(RewriteJob)
            .where(RewriteJob.provider_batch_id == provider_batch_id,
                   RewriteJob.status == state.JOB_BATCH_SUBMITTED)
            .limit(limit)
        ).scalars().all()
        for j in rows:
            j.last_error = truncate(reason or "", 1000)
            j.last_error_at = now
            j.provider_batch_id = None
            j.submitted_at = None
            if j.attempt_count >= j.max_attempts:
                _set_job_status(j, state.JOB_FAILED)
                j.not_before_at = None
            else:
                _set_job_status(j, state.JOB_QUEUED)
                j.not_before_at = now + _seconds(backoff)
            out.append({"job_id": j.job_id, "status": j.status})
    return out


def complete_job(
    job_id: str,
    *,
    rewritten_text: str,
    output_language: str,
    target_locale: str,
    model: str,
    provider: str,
    prompt_version: str,
    policy_version: str,
    lexicon_version: str,
    eval_result: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Persist the output + evaluation and complete the job, then finalize the
    request if nothing is left in flight. A job already terminal is a no-op.
    """
    if locale_primary(output_language) != locale_primary(target_locale):
        raise PipelineError(422, "output_language_mismatch", retryable=False, code="output_language_mismatch")

    with dbmod.session_scope() as s:
        j = s.get(RewriteJob, job_id)
        if j is None:
            raise PipelineError(404, "rewrite_job_not_found", retryable=False, code="rewrite_job_not_found")
        if j.status in state.JOB_TERMINAL:
            return {"completed": False, "status": j.status, "request_status": None}

        out = s.get(RewriteOutput, (j.rewrite_request_id, j.recipient_user_id))
        if out is None:
            out = RewriteOutput(rewrite_request_id=j.rewrite_request_id, recipient_user_id=j.recipient_user_id)
            s.add(out)
        out.rewritten_text = rewritten_text
        out.output_language = output_language
        out.target_locale = target_locale
        out.model = model
        out.provider = provider
        out.prompt_version = prompt_version
        out.policy_version = policy_version
        out.lexicon_version = lexicon_version
        out.eval_result = eval_result

        _set_job_status(j, state.JOB_COMPLETED)
        j.not_before_at = None
        j.last_error = None
        s.flush()
        request_status = _finalize(s, j.rewrite_request_id)
        return {"completed": True, "status": j.status, "request_status": request_status}


def _finalize(s, rewrite_request_id: str) -> Optional[str]:
    r = s.get(RewriteRequest, rewrite_request_id)
    if r is None:
        return None
    if r.status in (state.REQ_COMPLETED, state.REQ_CANCELED):
        return r.status
    statuses = s.execute(
        select(RewriteJob.status).where(RewriteJob.rewrite_request_id == rewrite_request_id)
    ).scalars().all()
    if any(st in state.JOB_IN_FLIGHT for st in statuses):
        return r.status
    target = state.REQ_CANCELED if statuses and all(st == state.JOB_CANCELED for st in statuses) \
        else state.REQ_COMPLETED
    state.check_transition("request", r.status, target)
    r.status = target
    r.rewrite_completed_at = utcnow()
    return r.status


def finalize_request(rewrite_request_id: str) -> Optional[str]:
    """Mark the request terminal once all of its jobs are terminal. Returns the request status."""
    with dbmod.session_scope() as s:
        return _finalize(s, rewrite_request_id)


# ---------------------------------------------------------------------------
# Provider batches
# ---------------------------------------------------------------------------
def register_batch(provider_batch_id: str, input_file_id: str, job_count: int,
                   endpoint: str = "/v1/responses") -> Dict[str, Any]:
    with dbmod.session_scope() as s:
        b = s.get(ProviderBatch, provider_batch_id)
        if b is None:
            b = ProviderBatch(provider_batch_id=provider_batch_id, status=state.BATCH_SUBMITTED)
            s.add(b)
        b.input_file_id = input_file_id
        b.job_count = job_count
        b.endpoint = endpoint
        s.flush()
        return _batch_dict(b)


def update_batch(provider_batch_id: str, status: str, output_file_id: Optional[str] = None,
                 error_file_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        b = s.get(ProviderBatch, provider_batch_id)
        if b is None:
            return None
        if status != b.status:
            state.check_transition("batch", b.status, status)
            b.status = status
        b.output_file_id = output_file_id or b.output_file_id
        b.error_file_id = error_file_id or b.error_file_id
        b.last_checked_at = utcnow()
        return _batch_dict(b)


def get_batch(provider_batch_id: str) -> Optional[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        b = s.get(ProviderBatch, provider_batch_id)
        return _batch_dict(b) if b else None


def list_pending_batches(limit: int = 10) -> List[Dict[str, Any]]:
    with dbmod.session_scope() as s:
        rows = s.execute(
            select(ProviderBatch)
            .where(ProviderBatch.status.in_(list(state.BATCH_PENDING)))
            .order_by(ProviderBatch.last_checked_at.is_not(None), ProviderBatch.last_checked_at,
                      ProviderBatch.created_at)
            .limit(limit)
        ).scalars().all()
        return [_batch_dict(b) for b in rows]


# ---------------------------------------------------------------------------
# Seeds
# ---------------------------------------------------------------------------
DEFAULT_PROVIDERS = (
    ("openai", "openai_responses", "https://api.openai.com"),
    ("gemini", "gemini", None),
    ("qwen", "openai_compat_chat_completions", "https://dashscope-intl.aliyuncs.com/compatible-mode"),
    ("stub", "stub", None),
)


def seed_defaults(model: str = "gpt-5-nano", execution_mode: str = "async") -> int:
    """Insert the provider registry and one openai route per (surface, lane, strength). Idempotent."""
    added = 0
    with dbmod.session_scope() as s:
        for provider, adapter_kind, base_url in DEFAULT_PROVIDERS:
            if s.get(AIProvider, provider) is None:
                s.add(AIProvider(provider=provider, adapter_kind=adapter_kind, base_url=base_url, active=True))
        s.flush()
        for surface in SURFACES:
            for lane in LANES:
                for strength in STRENGTHS:
                    exists = s.execute(
                        select(RewriteRoute.route_id).where(and_(
                            RewriteRoute.surface == surface,
                            RewriteRoute.lane == lane,
                            RewriteRoute.rewrite_strength == strength,
                        ))
                    ).first()
                    if exists:
                        continue
                    s.add(RewriteRoute(
                        route_id=new_id(),
                        surface=surface,
                        lane=lane,
                        rewrite_strength=strength,
                        provider="openai",
                        model=model,
                        execution_mode=execution_mode,
                        max_retries=2,
                        priority=100,
                        active=True,
                    ))
                    added += 1
    return added
