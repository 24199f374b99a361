# GoClaw API
# FastAPI. Stripe webhook, deployment records, provider blacklist admin.

import hmac
import json
import os
import time
from collections import defaultdict, deque

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from blacklist import get_blacklist
from channels import resolve_channel_link
from config import API_TOKEN, GOCLAW_ENV, log
from deployments import DeploymentStatus, get_repository
from errors import (
    ConfigurationError,
    DecryptionError,
    GoclawError,
    ValidationError,
    WebhookSignatureError,
)
from events import EventType, get_event_store
from payments import handle_payment_event, parse_webhook
from vault import get_vault
from worker import get_dispatcher

app = FastAPI(title="GoClaw", version="1.0.0")

AUTH_REQUIRED = GOCLAW_ENV not in {"dev", "development", "test"}
RATE_LIMIT_REQUESTS = int(os.environ.get("GOCLAW_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = int(os.environ.get("GOCLAW_RATE_LIMIT_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)

# Stripe authenticates with its own signature, not our bearer token
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/webhooks/stripe"}


# ── Middleware ────────────────────────────────────────────────────────


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """Bearer token auth outside dev/test. Public routes are always open."""

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        api_token = os.environ.get("GOCLAW_API_TOKEN", API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "GOCLAW_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One JSON access-log line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """In-memory per-IP sliding window."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={"ok": False, "error": {"code": "rate_limited", "message": "Too many requests"}},
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)
app.add_middleware(RequestLogMiddleware)
app.add_middleware(RateLimitMiddleware)


# ── Error bodies ──────────────────────────────────────────────────────


def _error_status(exc: GoclawError):
    if isinstance(exc, (ValidationError, WebhookSignatureError)):
        return 400
    if isinstance(exc, (ConfigurationError, DecryptionError)):
        return 500
    return 502


@app.exception_handler(GoclawError)
async def goclaw_error_handler(_: Request, exc: GoclawError):
    status = _error_status(exc)
    if status >= 500:
        log.error("%s: %s", exc.code.value, exc.message)
    return JSONResponse(status_code=status, content={"ok": False, "error": exc.to_dict()})


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class DeploymentIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    email: str | None = None
    model: str
    channel: str
    channel_token: str = Field(min_length=1)
    channel_api_key: str | None = None
    stripe_session_id: str | None = None


class BlacklistIn(BaseModel):
    provider: str = Field(min_length=1)
    reason: str = "Provider blacklisted"
    ttl_sec: float | None = Field(default=None, gt=0)


# ── Deployment endpoints ──────────────────────────────────────────────


def _get_record(deployment_id):
    record = get_repository().get(deployment_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Deployment {deployment_id} not found")
    return record


@app.post("/deployments")
def api_create_deployment(d: DeploymentIn):
    """Create a pending deployment. Credentials are sealed before they touch the database."""
    vault = get_vault()
    record = get_repository().create(
        user_id=d.user_id,
        email=d.email,
        model=d.model,
        channel=d.channel,
        channel_token=vault.encrypt(d.channel_token.strip()),
        channel_api_key=vault.encrypt(d.channel_api_key) if d.channel_api_key else None,
        stripe_session_id=d.stripe_session_id,
    )
    get_event_store().record(
        EventType.DEPLOYMENT_CREATED, "deployment", record.id,
        actor=f"user:{d.user_id}", model=d.model, channel=d.channel,
    )
    return {"ok": True, "deployment": record.to_public_dict()}


@app.get("/deployments/{deployment_id}")
def api_get_deployment(deployment_id: str):
    record = _get_record(deployment_id)
    body = record.to_public_dict()
    body["channel_link"] = None
    if record.status == DeploymentStatus.ACTIVE.value:
        try:
            token = get_vault().decrypt(record.channel_token)
        except DecryptionError as e:
            log.warning("Cannot resolve channel link for %s: %s", deployment_id, e.message)
        else:
            body["channel_link"] = resolve_channel_link(record.channel, token)
    return {"ok": True, "deployment": body}


@app.get("/users/{user_id}/deployments")
def api_list_user_deployments(user_id: str, limit: int = 50):
    records = get_repository().list_by_user(user_id, limit=min(max(limit, 1), 200))
    return {"ok": True, "deployments": [r.to_public_dict() for r in records]}


@app.get("/deployments/{deployment_id}/events")
def api_deployment_events(deployment_id: str):
    _get_record(deployment_id)
    return {"ok": True, "events": get_event_store().deployment_timeline(deployment_id)}


# ── Payment webhook ───────────────────────────────────────────────────


@app.post("/webhooks/stripe")
async def api_stripe_webhook(request: Request):
    """Verify, enqueue, acknowledge. Provisioning never runs on this request."""
    payload = await request.body()
    event = parse_webhook(payload, request.headers.get("stripe-signature", ""))
    result = handle_payment_event(
        event, get_repository(), get_dispatcher(), events=get_event_store(),
    )
    log.info("Stripe webhook %s handled=%s", event.event_type, result.get("handled"))
    return {"received": True}


# ── Provider blacklist ────────────────────────────────────────────────


@app.get("/blacklist")
def api_list_blacklist():
    return {"ok": True, "providers": [e.to_dict() for e in get_blacklist().list_entries()]}


@app.post("/blacklist")
def api_add_blacklist(b: BlacklistIn):
    blacklist = get_blacklist()
    if b.ttl_sec is None:
        entry = blacklist.add(b.provider, b.reason)
    else:
        entry = blacklist.add_for(b.provider, b.reason, b.ttl_sec)
    get_event_store().record(
        EventType.PROVIDER_BLACKLISTED, "provider", b.provider,
        actor="admin", reason=entry.reason, expires_at=entry.expires_at,
    )
    return {"ok": True, "entry": entry.to_dict()}


@app.delete("/blacklist/{provider}")
def api_remove_blacklist(provider: str):
    if not get_blacklist().remove(provider):
        raise HTTPException(status_code=404, detail=f"Provider {provider} is not blacklisted")
    get_event_store().record(
        EventType.PROVIDER_UNBLACKLISTED, "provider", provider, actor="admin",
    )
    return {"ok": True, "removed": provider}


@app.post("/blacklist/cleanup")
def api_cleanup_blacklist():
    return {"ok": True, "removed": get_blacklist().cleanup_expired()}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": GOCLAW_ENV}


@app.get("/")
def root():
    return {"name": "GoClaw", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
