# rewrite_pipeline/orchestrator.py
import os
import json
from typing import Dict, Any, Optional, Tuple

# Import modules (not bare functions) so monkeypatching in tests works correctly
import rewrite_pipeline.processors.classifier as _classifier
import rewrite_pipeline.processors.context_pack as _context_pack
import rewrite_pipeline.connectors.service_client as _service_client
from rewrite_pipeline import config
from rewrite_pipeline import monitoring
from rewrite_pipeline import store
from rewrite_pipeline.errors import PipelineError, normalize_error, prefer_retryable_status
from rewrite_pipeline.schemas import ClassifierResult, PolicySnapshot, RewriteRequestBlob, RoutingDecision
from rewrite_pipeline.utils import clamp_int, is_uuid, iso, new_id, normalize_locale, utcnow

MAX_BODY_BYTES = 64_000
MAX_ORIGINAL_TEXT_CHARS = 4000
DEFAULT_CLASSIFIER_TIMEOUT_MS = 8000
TRIGGER_RETRY_BACKOFF_SECONDS = 600

CONTEXT_PACK_VERSION = "v1.1"
POLICY_VERSION = "v1"
DEFAULT_POWER_MODE = "peer"

REQUIRED_UUID_FIELDS = ("entry_id", "home_id", "sender_user_id", "recipient_user_id")


class RewriteOrchestrator:
    """
    Turns one journal entry into one queued rewrite request + job.

    handle_body() never raises: it answers (http_status, envelope) and always
    leaves the entry's trigger in a terminal or requeued state.
    """

    def __init__(self, classifier_timeout_ms: Optional[int] = None):
        raw = classifier_timeout_ms if classifier_timeout_ms is not None \
            else os.getenv("CLASSIFIER_TIMEOUT_MS", str(DEFAULT_CLASSIFIER_TIMEOUT_MS))
        self.classifier_timeout_ms = clamp_int(raw, 2000, 30000, DEFAULT_CLASSIFIER_TIMEOUT_MS)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------
    def _parse(self, raw: bytes) -> Any:
        if len(raw or b"") > MAX_BODY_BYTES:
            raise PipelineError(413, "payload_too_large", retryable=False)
        if not raw:
            return {}
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise PipelineError(400, "invalid_json_payload", retryable=False)

    def _validate(self, body: Any) -> Dict[str, str]:
        if not isinstance(body, dict):
            raise PipelineError(400, "invalid_payload", retryable=False)
        out: Dict[str, str] = {}
        for key in REQUIRED_UUID_FIELDS + ("surface",):
            v = body.get(key)
            if not isinstance(v, str) or not v.strip():
                raise PipelineError(400, f"{key}_missing", retryable=False, code="missing_field")
            out[key] = v.strip()
        for key in REQUIRED_UUID_FIELDS:
            if not is_uuid(out[key]):
                raise PipelineError(400, f"{key}_invalid_uuid", retryable=False, code="invalid_uuid")
        if out["surface"] not in store.SURFACES:
            raise PipelineError(400, "surface_invalid", retryable=False, code="surface_invalid")
        return out

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _check_entry(self, inp: Dict[str, str]) -> Dict[str, Any]:
        entry = store.fetch_entry(inp["entry_id"], inp["recipient_user_id"])
        if entry is None:
            raise PipelineError(404, "mood_entry_not_found", retryable=False)

        home_id = str(entry.get("home_id") or "").strip()
        author = str(entry.get("author_user_id") or "").strip()
        recipient = str(entry.get("recipient_user_id") or inp["recipient_user_id"]).strip()
        if not (is_uuid(home_id) and is_uuid(author) and is_uuid(recipient)):
            raise PipelineError(500, "entry_locale_rpc_invalid_shape", retryable=False)
        if home_id != inp["home_id"]:
            raise PipelineError(403, "home_id_mismatch", retryable=False)
        if author != inp["sender_user_id"]:
            raise PipelineError(403, "sender_user_id_mismatch", retryable=False)
        if recipient != inp["recipient_user_id"]:
            raise PipelineError(403, "recipient_user_id_mismatch", retryable=False)
        return entry

    def _snapshots(self, inp: Dict[str, str], rewrite_request_id: str) -> Dict[str, str]:
        published = store.fetch_preference_payload(inp["recipient_user_id"])
        normalized = _context_pack.normalize_preference_payload(published)
        snapshot_payload = {"preferences": _context_pack.build_snapshot_preferences(normalized)}
        snap = store.build_recipient_snapshots(rewrite_request_id, inp["home_id"], inp["recipient_user_id"],
                                               snapshot_payload)
        if not (is_uuid(snap.get("recipient_snapshot_id")) and is_uuid(snap.get("recipient_preference_snapshot_id"))):
            raise PipelineError(500, "snapshot_ids_invalid_uuid", retryable=False)
        return snap

    def _classify(self, original_text: str, inp: Dict[str, str], request_id: str) -> Dict[str, Any]:
        url = config.env_optional("CLASSIFIER_FUNCTION_URL")
        if url:
            raw = _service_client.call_classifier_service(
                url,
                config.env("CLASSIFIER_SHARED_SECRET"),
                {"original_text": original_text, "surface": inp["surface"], "sender_user_id": inp["sender_user_id"]},
                timeout_seconds=self.classifier_timeout_ms / 1000.0,
                request_id=request_id,
            )
        else:
            raw = _classifier.classify(original_text, inp["surface"], inp["sender_user_id"], request_id=request_id)
        return ClassifierResult(**raw).model_dump()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def _already_enqueued(self, entry_id: str, rewrite_request_id: str, request_id: str) -> Tuple[int, Dict[str, Any]]:
        store.mark_trigger_completed(entry_id, "already_enqueued")
        monitoring.inc_orchestrator_outcome("already_enqueued")
        return 200, {"ok": True, "already_enqueued": True,
                     "rewrite_request_id": rewrite_request_id, "request_id": request_id}

    def handle_body(self, raw: bytes, request_id: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
        request_id = request_id or new_id()
        entry_id: Optional[str] = None
        terminal_marked = False
        log_extra: Dict[str, Any] = {"request_id": request_id}

        try:
            inp = self._validate(self._parse(raw))
            entry_id = inp["entry_id"]
            log_extra["entry_id"] = entry_id

            try:
                store.mark_trigger_processing(entry_id, request_id)
            except PipelineError as e:
                monitoring.logger.warning("mark_trigger_processing failed", extra={**log_extra, "error": e.message})

            rewrite_request_id = entry_id

            if store.request_exists(rewrite_request_id):
                out = self._already_enqueued(entry_id, rewrite_request_id, request_id)
                terminal_marked = True
                return out

            entry = self._check_entry(inp)

            original_text = str(entry.get("original_text") or "").strip()
            if not original_text:
                store.mark_trigger_canceled(entry_id, "no_text_to_rewrite")
                terminal_marked = True
                monitoring.inc_orchestrator_outcome("skipped")
                return 200, {"ok": True, "skipped": "no_text_to_rewrite",
                             "rewrite_request_id": rewrite_request_id, "request_id": request_id}
            if len(original_text) > MAX_ORIGINAL_TEXT_CHARS:
                store.mark_trigger_canceled(entry_id, f"text_too_long_{MAX_ORIGINAL_TEXT_CHARS}")
                terminal_marked = True
                monitoring.inc_orchestrator_outcome("skipped")
                return 413, {"ok": True, "skipped": "text_too_long",
                             "rewrite_request_id": rewrite_request_id, "request_id": request_id}

            target_locale = normalize_locale(entry.get("recipient_locale")) or "en"
            snap = self._snapshots(inp, rewrite_request_id)

            classifier_result = self._classify(original_text, inp, request_id)
            source_locale = normalize_locale(classifier_result["detected_language"]) or "en"
            lane = "same_language" if source_locale == target_locale else "cross_language"

            context_pack = store.build_context_pack(
                inp["recipient_user_id"],
                snap["recipient_preference_snapshot_id"],
                classifier_result["topics"],
                target_locale,
                power_mode=DEFAULT_POWER_MODE,
            )

            route = store.route(inp["surface"], lane, classifier_result["rewrite_strength"])
            if not route:
                raise PipelineError(500, "routing_not_found", retryable=False)
            routing = RoutingDecision(**route)
            routing_decision = routing.model_dump()

            policy = PolicySnapshot.for_strength(classifier_result["rewrite_strength"]).model_dump()

            blob = RewriteRequestBlob(
                rewrite_request_id=rewrite_request_id,
                entry_id=entry_id,
                home_id=inp["home_id"],
                sender_user_id=inp["sender_user_id"],
                recipient_user_id=inp["recipient_user_id"],
                recipient_snapshot_id=snap["recipient_snapshot_id"],
                recipient_preference_snapshot_id=snap["recipient_preference_snapshot_id"],
                surface=inp["surface"],
                original_text=original_text,
                topics=classifier_result["topics"],
                intent=classifier_result["intent"],
                rewrite_strength=classifier_result["rewrite_strength"],
                source_locale=source_locale,
                target_locale=target_locale,
                lane=lane,
                classifier_result=classifier_result,
                context_pack=context_pack,
                policy=policy,
                classifier_version=classifier_result["classifier_version"],
                context_pack_version=CONTEXT_PACK_VERSION,
                policy_version=POLICY_VERSION,
                request_id=request_id,
                created_at=iso(utcnow()),
            ).model_dump()

            enqueue = store.enqueue_rewrite(
                rewrite_request_id=rewrite_request_id,
                home_id=inp["home_id"],
                sender_user_id=inp["sender_user_id"],
                recipient_user_id=inp["recipient_user_id"],
                recipient_snapshot_id=snap["recipient_snapshot_id"],
                recipient_preference_snapshot_id=snap["recipient_preference_snapshot_id"],
                surface=inp["surface"],
                original_text=original_text,
                rewrite_request=blob,
                classifier_result=classifier_result,
                context_pack=context_pack,
                policy=policy,
                source_locale=source_locale,
                target_locale=target_locale,
                lane=lane,
                topics=classifier_result["topics"],
                intent=classifier_result["intent"],
                rewrite_strength=classifier_result["rewrite_strength"],
                classifier_version=classifier_result["classifier_version"],
                context_pack_version=CONTEXT_PACK_VERSION,
                policy_version=POLICY_VERSION,
                routing_decision=routing_decision,
                max_attempts=routing.max_attempts(),
            )
            if enqueue.get("created") is False:
                # a concurrent call for the same entry enqueued first
                out = self._already_enqueued(entry_id, rewrite_request_id, request_id)
                terminal_marked = True
                return out

            store.mark_trigger_completed(entry_id, "enqueued")
            terminal_marked = True
            monitoring.inc_orchestrator_outcome("enqueued")
            monitoring.logger.info("Rewrite enqueued", extra={**log_extra, "lane": lane,
                                                              "job_id": enqueue.get("job_id")})
            return 200, {
                "ok": True,
                "request_id": request_id,
                "rewrite_request_id": rewrite_request_id,
                "recipient_snapshot_id": snap["recipient_snapshot_id"],
                "recipient_preference_snapshot_id": snap["recipient_preference_snapshot_id"],
                "routing_decision": routing_decision,
                "enqueue": enqueue,
            }

        except Exception as e:
            msg, status, retryable, code = normalize_error(e)
            if not isinstance(e, PipelineError):
                monitoring.logger.exception("Unexpected orchestrator error", extra=log_extra)

            if entry_id and not terminal_marked:
                try:
                    if retryable:
                        store.mark_trigger_failed(entry_id, msg[:512], backoff_seconds=TRIGGER_RETRY_BACKOFF_SECONDS)
                    else:
                        store.mark_trigger_canceled(entry_id, msg[:256])
                    terminal_marked = True
                except PipelineError as mark_err:
                    monitoring.logger.warning("Trigger terminal mark failed",
                                              extra={**log_extra, "error": mark_err.message})

            monitoring.inc_orchestrator_outcome("retryable_error" if retryable else "error")
            return (prefer_retryable_status(status) if retryable else status), {
                "ok": False, "request_id": request_id, "error": msg, "code": code, "retryable": retryable,
            }

        finally:
            if entry_id and not terminal_marked:
                try:
                    store.mark_trigger_failed(entry_id, "orchestrator_exit_without_terminal_state",
                                              backoff_seconds=TRIGGER_RETRY_BACKOFF_SECONDS)
                except PipelineError as e:
                    monitoring.logger.warning("Trigger safety-net mark failed", extra={**log_extra, "error": e.message})
