# rewrite_pipeline/app.py
import time
from typing import Any, Callable, Dict, Tuple

# Load .env BEFORE any pipeline imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from rewrite_pipeline.orchestrator import RewriteOrchestrator
from rewrite_pipeline.processors import classifier as _classifier
from rewrite_pipeline import batch_collector
from rewrite_pipeline import batch_submitter
from rewrite_pipeline import cron_runner
from rewrite_pipeline import realtime_worker
from rewrite_pipeline import monitoring
from rewrite_pipeline import auth as authmod
from rewrite_pipeline import db as dbmod
from rewrite_pipeline import store
from rewrite_pipeline.errors import PipelineError
from rewrite_pipeline.utils import new_id

app = FastAPI(title="Complaint Rewrite Pipeline")

# Initialize DB tables + default routing rows on startup
dbmod.init_db()
store.seed_defaults()

orchestrator = RewriteOrchestrator()

REQUEST_ID_HEADER = "x-request-id"


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return rid or request.headers.get(REQUEST_ID_HEADER) or new_id()


def error_response(request_id: str, status: int, error: str, code: str, retryable: bool) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"ok": False, "error": error, "code": code, "retryable": retryable, "request_id": request_id},
    )


def _envelope(request_id: str, endpoint: str, fn: Callable[[], Tuple[int, Dict[str, Any]]]) -> JSONResponse:
    try:
        status, body = fn()
        return JSONResponse(status_code=status, content=body)
    except PipelineError as e:
        monitoring.logger.warning(f"{endpoint} failed",
                                  extra={"request_id": request_id, "code": e.code, "error": e.message[:300]})
        return error_response(request_id, e.status, e.message, e.code, e.retryable)
    except Exception as e:
        monitoring.logger.exception(f"Unexpected error in {endpoint} handler", extra={"request_id": request_id})
        return error_response(request_id, 500, str(e) or e.__class__.__name__, "internal_error", False)


# ---------------------------------------------------------------------------
# Shared-secret middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def internal_secret_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    request_id = request.headers.get(REQUEST_ID_HEADER) or new_id()
    request.state.request_id = request_id
    try:
        authmod.check_internal_secret(path, request.headers.get(authmod.SECRET_HEADER))
    except PipelineError as e:
        return error_response(request_id, e.status, e.message, e.code, e.retryable)

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/api/classifier")
async def api_classifier(request: Request):
    """
    POST /api/classifier
    Body: { "original_text": "...", "surface": "...", "sender_user_id": "<uuid>" }
    """
    request_id = _request_id(request)
    raw = await request.body()

    def _run():
        result = _classifier.handle_classifier_body(raw, request_id=request_id)
        return 200, {"ok": True, "classifier_result": result, "request_id": request_id}

    return _envelope(request_id, "/api/classifier", _run)


@app.post("/api/orchestrator")
async def api_orchestrator(request: Request):
    """
    POST /api/orchestrator
    Body: { "entry_id", "home_id", "sender_user_id", "recipient_user_id", "surface" }
    """
    request_id = _request_id(request)
    raw = await request.body()
    return _envelope(request_id, "/api/orchestrator", lambda: orchestrator.handle_body(raw, request_id=request_id))


@app.post("/api/batch/submit")
async def api_batch_submit(request: Request):
    request_id = _request_id(request)
    return _envelope(request_id, "/api/batch/submit", lambda: batch_submitter.run(request_id=request_id))


@app.post("/api/batch/collect")
async def api_batch_collect(request: Request):
    request_id = _request_id(request)
    return _envelope(request_id, "/api/batch/collect", lambda: batch_collector.run(request_id=request_id))


@app.post("/api/realtime/run")
async def api_realtime_run(request: Request):
    request_id = _request_id(request)
    return _envelope(request_id, "/api/realtime/run", lambda: realtime_worker.run(request_id=request_id))


@app.post("/api/cron/run")
async def api_cron_run(request: Request):
    request_id = _request_id(request)
    return _envelope(request_id, "/api/cron/run", lambda: cron_runner.run(request_id=request_id))


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
