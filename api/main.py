#!/usr/bin/env python3
import base64
import binascii
import functools
import hmac
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional

import anyio
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import iterate_in_threadpool
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.identity import Identity, client_info, require_admin, require_user
from engine.core import build_services
from engine.errors import InternalError, NotFoundError, RateLimited, StreamgateError, ValidationError
from engine.extractor import CancelledError
from engine.json_utils import json_sanity_check, safe_json
from engine.logging_setup import setup_logging
from engine.paths import build_engine_paths, resolve_config_path
from engine.runtime import get_runtime_info

logger = logging.getLogger(__name__)

APP_NAME = "Streamgate API"
STATUS_SCHEMA_VERSION = 1
STREAM_PATH = "/api/streaming/stream"
_BASIC_AUTH_USER = os.environ.get("STREAMGATE_BASIC_AUTH_USER")
_BASIC_AUTH_PASS = os.environ.get("STREAMGATE_BASIC_AUTH_PASS")
_BASIC_AUTH_ENABLED = bool(_BASIC_AUTH_USER and _BASIC_AUTH_PASS)
_TRUST_PROXY = os.environ.get("STREAMGATE_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}
_MAX_HISTORY_HOURS = 24
_DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499


class AnalyzeRequest(BaseModel):
    url: str


class TokenRequest(BaseModel):
    videoUrl: str
    formatId: str
    title: Optional[str] = None
    ttlMinutes: Optional[float] = None
    resumable: bool = False


class RefreshRequest(BaseModel):
    extraMinutes: float = Field(default=30)


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


def _check_basic_auth(header_value):
    if not header_value or not header_value.startswith("Basic "):
        return False
    token = header_value[6:].strip()
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    if ":" not in decoded:
        return False
    user, password = decoded.split(":", 1)
    return hmac.compare_digest(user, _BASIC_AUTH_USER) and hmac.compare_digest(password, _BASIC_AUTH_PASS)


def _iso(timestamp):
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


app = FastAPI(
    title=APP_NAME,
    description="Token-gated extraction and streaming proxy for third-party video URLs.",
    default_response_class=SafeJSONResponse,
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def basic_auth_middleware(request: Request, call_next):
    if not _BASIC_AUTH_ENABLED:
        return await call_next(request)
    if request.method == "OPTIONS":
        return await call_next(request)
    auth_header = request.headers.get("authorization")
    if not _check_basic_auth(auth_header):
        return PlainTextResponse(
            "Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )
    return await call_next(request)


@app.exception_handler(StreamgateError)
async def streamgate_error_handler(request: Request, exc: StreamgateError):
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
            headers["X-RateLimit-Remaining"] = str(exc.remaining)
    if exc.http_status >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return SafeJSONResponse(exc.to_payload(), status_code=exc.http_status, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg") or "Invalid request"
    error = ValidationError(f"{location}: {message}" if location else message)
    return SafeJSONResponse(error.to_payload(), status_code=error.http_status)


@app.exception_handler(CancelledError)
async def cancelled_handler(request: Request, exc: CancelledError):
    logger.info("%s %s abandoned by client: %s", request.method, request.url.path, exc)
    return PlainTextResponse("Client closed request", status_code=CLIENT_CLOSED_REQUEST)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError("Internal server error")
    return SafeJSONResponse(error.to_payload(), status_code=error.http_status)


@app.on_event("startup")
async def startup():
    app.state.paths = build_engine_paths()
    app.state.log_path = setup_logging(app.state.paths.log_dir)
    try:
        app.state.config_path = resolve_config_path(os.environ.get("STREAMGATE_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        app.state.config_path = resolve_config_path(None)
    json_sanity_check()
    app.state.services = build_services(app.state.config_path, app.state.paths)
    app.state.services.start()
    logging.info("Streamgate started (config=%s)", app.state.config_path)


@app.on_event("shutdown")
async def shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        await anyio.to_thread.run_sync(services.stop)
    logging.shutdown()


def _services():
    return app.state.services


async def _watch_disconnect(request, disconnected):
    while not disconnected.is_set():
        if await request.is_disconnected():
            disconnected.set()
            return
        await anyio.sleep(_DISCONNECT_POLL_SECONDS)


def _job_payload(job):
    payload = {
        "requestId": job.request_id,
        "jobId": job.id,
        "status": job.public_status,
        "progress": job.progress,
    }
    if job.result is not None:
        payload["result"] = job.result
    if job.error:
        payload["error"] = job.error
        payload["errorKind"] = job.error_kind
    return payload


# --- streaming -------------------------------------------------------------

@app.post("/api/streaming/analyze", status_code=202)
def analyze(payload: AnalyzeRequest, identity: Identity = Depends(require_user)):
    job = _services().submit_analysis(identity.user_id, payload.url)
    return {"requestId": job.request_id, "jobId": job.id, "status": job.public_status}


@app.get("/api/streaming/analyze/{request_id}")
def analyze_status(request_id: str, identity: Identity = Depends(require_user)):
    job = _services().jobs.find_by_request(request_id)
    if job is None or (job.user_id != identity.user_id and not identity.is_admin):
        raise NotFoundError("Analysis request not found")
    return _job_payload(job)


@app.post("/api/streaming/token")
def create_token(payload: TokenRequest, request: Request, identity: Identity = Depends(require_user)):
    value, token = _services().issue_token(
        identity.user_id,
        payload.videoUrl,
        payload.formatId,
        client_info(request),
        title=payload.title,
        ttl_minutes=payload.ttlMinutes,
        resumable=payload.resumable,
    )
    return {
        "token": value,
        "tokenId": token.id,
        "expiresAt": _iso(token.expires_at),
        "streamUrl": f"{STREAM_PATH}/{value}",
    }


@app.get(STREAM_PATH + "/{token}")
async def stream_media(token: str, request: Request):
    services = _services()
    disconnected = threading.Event()
    error = None
    # Errors are carried out of the task group so handlers see them unwrapped.
    async with anyio.create_task_group() as tg:
        tg.start_soon(_watch_disconnect, request, disconnected)
        try:
            session = await anyio.to_thread.run_sync(
                functools.partial(
                    services.open_stream,
                    token,
                    client_info(request),
                    range_header=request.headers.get("range"),
                    disconnect_check=disconnected.is_set,
                )
            )
        except Exception as exc:
            error = exc
        finally:
            tg.cancel_scope.cancel()
    if error is not None:
        raise error

    async def body():
        try:
            async for chunk in iterate_in_threadpool(iter(session)):
                yield chunk
        finally:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(session.close)

    return StreamingResponse(
        body(),
        status_code=session.status_code,
        media_type=session.media_type,
        headers=session.headers,
    )


@app.post("/api/streaming/token/{token}/refresh")
def refresh_token(token: str, payload: RefreshRequest, identity: Identity = Depends(require_user)):
    refreshed = _services().tokens.refresh(token, payload.extraMinutes, user_id=identity.user_id)
    return {"tokenId": refreshed.id, "expiresAt": _iso(refreshed.expires_at)}


@app.delete("/api/streaming/token/{token}")
def revoke_token(token: str, identity: Identity = Depends(require_user)):
    _services().tokens.revoke(token, user_id=identity.user_id)
    return {"revoked": True}


@app.get("/api/streaming/tokens")
def list_tokens(identity: Identity = Depends(require_user)):
    tokens = _services().tokens.list_active(identity.user_id)
    items = []
    for token in tokens:
        item = token.to_public_dict()
        item["issuedAt"] = _iso(token.issued_at)
        item["expiresAt"] = _iso(token.expires_at)
        item["lastAccess"] = _iso(token.last_access)
        items.append(item)
    return {"tokens": items, "count": len(items)}


# --- monitoring ------------------------------------------------------------

@app.get("/api/monitoring/health")
def health():
    report = _services().metrics.health()
    status_code = 503 if report["status"] == "critical" else 200
    return SafeJSONResponse(report, status_code=status_code)


@app.get("/api/monitoring/metrics")
def metrics(identity: Identity = Depends(require_admin)):
    return _services().metrics.current_metrics()


@app.get("/api/monitoring/metrics/history")
def metrics_history(
    hours: float = Query(default=1.0, gt=0, le=_MAX_HISTORY_HOURS),
    identity: Identity = Depends(require_admin),
):
    history = _services().metrics.history(hours)
    return {"hours": hours, "count": len(history), "history": history}


@app.get("/api/monitoring/queues")
def queues(identity: Identity = Depends(require_admin)):
    return _services().jobs.stats()


@app.get("/api/monitoring/tokens")
def token_statistics(identity: Identity = Depends(require_admin)):
    services = _services()
    return {
        "tokens": services.tokens.statistics(),
        "rate_limits": services.rate_limiter.stats(),
        "recent_issuances": services.recent_issuances(),
    }


@app.post("/api/monitoring/cleanup")
def cleanup(identity: Identity = Depends(require_admin)):
    return {"ok": True, **_services().run_housekeeping()}


@app.get("/api/status")
def api_status():
    services = _services()
    return {
        "schema_version": STATUS_SCHEMA_VERSION,
        "runtime": get_runtime_info(services.config),
        "services": services.status_snapshot(),
        "cookies": services.cookies.status(),
    }
