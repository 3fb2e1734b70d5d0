from __future__ import annotations

import asyncio
import hmac
import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from sessionward.api.schemas import (
    ActivityRequest,
    AuditEntryResponse,
    AuditQueryResponse,
    Envelope,
    EventPublishRequest,
    EventResponse,
    LockoutResponse,
    LoginRequest,
    LoginResponse,
    NavigationRequest,
    SessionCreateRequest,
    SessionResponse,
    SessionStatusResponse,
)
from sessionward.logging import get_correlation_id, get_logger
from sessionward.service.auth import LoginStatus
from sessionward.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from sessionward.service.runtime import Runtime
from sessionward.storage.models import SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_AUDIT_PAGE = 1000


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ServerError("runtime not initialized", status_code=503)
    return runtime


async def require_admin(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> str:
    """Admit callers presenting ``Authorization: Bearer <ADMIN_TOKEN>``.

    Raises:
        401: If no bearer token was sent
        403: If the token is wrong or no admin token is configured
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("admin credentials required")
    expected = runtime.settings.admin_token
    if not expected or not hmac.compare_digest(token.strip().encode(), expected.encode()):
        logger.warning("admin_auth_rejected", configured=bool(expected))
        raise ForbiddenError("admin access required")
    return "admin"


def _session_response(record: SessionRecord) -> SessionResponse:
    return SessionResponse(
        session_id=record.session_id,
        created_at=record.created_at,
        expires_at=record.expires_at,
        claims=record.claims,
    )


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


@router.get("/health", response_model=Envelope, tags=["system"])
async def health(runtime: Runtime = Depends(get_runtime)):
    return _ok(
        {
            "status": "ok",
            "store_backend": type(runtime.store).__name__,
            "context_id": runtime.store.context_id,
        }
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Check credentials behind the lockout guard and mint a session.

    Raises:
        401: If credentials are invalid
        429: If the account is locked; ``retry_after_seconds`` says for how long
    """
    authenticator = runtime.authenticator
    if authenticator is None:
        raise ServerError("no authenticator configured", status_code=503)

    outcome = await asyncio.to_thread(
        runtime.login_gate.attempt,
        body.account,
        lambda: authenticator(body.account, body.password),
    )
    if outcome.status is LoginStatus.LOCKED:
        retry_after = max(1, math.ceil(outcome.remaining_lockout.total_seconds()))
        raise AccountLockedError(body.account, retry_after)
    if outcome.status is LoginStatus.FAILED:
        raise AuthenticationError("invalid credentials", detail={"attempts": outcome.attempts})
    return _ok(
        LoginResponse(
            status=outcome.status.value,
            account=outcome.account,
            session=_session_response(outcome.session) if outcome.session else None,
        ).model_dump(mode="json")
    )


def _lockout_state(runtime: Runtime, account: str) -> LockoutResponse:
    record = runtime.guard.get_record(account)
    return LockoutResponse(
        account=account,
        locked=runtime.guard.is_locked(account),
        attempts=record.attempts if record else 0,
        remaining_seconds=math.ceil(runtime.guard.remaining_lockout(account).total_seconds()),
    )


@router.get("/auth/lockout/{account}", response_model=Envelope, tags=["auth"])
async def get_lockout(
    account: str,
    runtime: Runtime = Depends(get_runtime),
    _admin: str = Depends(require_admin),
):
    state = await asyncio.to_thread(_lockout_state, runtime, account)
    return _ok(state.model_dump())


@router.post("/auth/lockout/{account}/failures", response_model=Envelope, tags=["auth"])
async def record_login_failure(
    account: str,
    runtime: Runtime = Depends(get_runtime),
    _admin: str = Depends(require_admin),
):
    await asyncio.to_thread(runtime.guard.record_failure, account)
    state = await asyncio.to_thread(_lockout_state, runtime, account)
    return _ok(state.model_dump())


@router.delete("/auth/lockout/{account}", response_model=Envelope, tags=["auth"])
async def reset_lockout(
    account: str,
    runtime: Runtime = Depends(get_runtime),
    _admin: str = Depends(require_admin),
):
    await asyncio.to_thread(runtime.guard.reset, account)
    state = await asyncio.to_thread(_lockout_state, runtime, account)
    return _ok(state.model_dump())


@router.post("/session", response_model=Envelope, status_code=201, tags=["session"])
async def create_session(
    body: SessionCreateRequest,
    runtime: Runtime = Depends(get_runtime),
    _admin: str = Depends(require_admin),
):
    record = await asyncio.to_thread(runtime.sessions.create, body.claims)
    await asyncio.to_thread(runtime.activity.record_activity)
    return _ok(_session_response(record).model_dump(mode="json"))


@router.get("/session", response_model=Envelope, tags=["session"])
async def get_session(runtime: Runtime = Depends(get_runtime)):
    def _check() -> SessionStatusResponse:
        if runtime.activity.closed_too_long():
            runtime.sessions.destroy()
            return SessionStatusResponse(valid=False)
        if not runtime.sessions.validate():
            return SessionStatusResponse(valid=False)
        record = runtime.sessions.current()
        if record is None:
            return SessionStatusResponse(valid=False)
        return SessionStatusResponse(valid=True, session=_session_response(record))

    status = await asyncio.to_thread(_check)
    return _ok(status.model_dump(mode="json"))


@router.delete("/session", response_model=Envelope, tags=["session"])
async def destroy_session(runtime: Runtime = Depends(get_runtime)):
    await asyncio.to_thread(runtime.sessions.destroy)
    await asyncio.to_thread(runtime.activity.clear)
    return _ok({"destroyed": True})


@router.get("/session/health", response_model=Envelope, tags=["session"])
async def session_health(runtime: Runtime = Depends(get_runtime)):
    report = await asyncio.to_thread(runtime.activity.health)
    if report is None:
        raise NotFoundError("no recorded activity for this session")
    return _ok(report.to_dict())


@router.post("/session/activity", response_model=Envelope, tags=["session"])
async def extend_session(
    body: Optional[ActivityRequest] = None, runtime: Runtime = Depends(get_runtime)
):
    record = await asyncio.to_thread(runtime.sessions.require)
    actor_id = body.actor_id if body else "anonymous"
    if actor_id == "anonymous":
        actor_id = str(record.claims.get("user_id") or actor_id)
    await asyncio.to_thread(runtime.activity.extend, actor_id)
    report = await asyncio.to_thread(runtime.activity.health)
    return _ok(report.to_dict() if report else None)


@router.post("/session/close", response_model=Envelope, tags=["session"])
async def close_context(runtime: Runtime = Depends(get_runtime)):
    """Record that a context went away; a long absence expires the session on the next check."""
    await asyncio.to_thread(runtime.activity.mark_closed)
    return _ok({"closed": True})


@router.post("/session/tabs", response_model=Envelope, tags=["session"])
async def open_tab(runtime: Runtime = Depends(get_runtime)):
    count = await asyncio.to_thread(runtime.suspicious.register_tab)
    return _ok({"tab_count": count})


@router.delete("/session/tabs", response_model=Envelope, tags=["session"])
async def close_tab(runtime: Runtime = Depends(get_runtime)):
    count = await asyncio.to_thread(runtime.suspicious.unregister_tab)
    return _ok({"tab_count": count})


@router.post("/session/navigation", response_model=Envelope, tags=["session"])
async def record_navigation(body: NavigationRequest, runtime: Runtime = Depends(get_runtime)):
    def _record() -> bool:
        runtime.suspicious.record_navigation(body.tab)
        record = runtime.sessions.current()
        actor_id = str(record.claims.get("user_id") or "anonymous") if record else "anonymous"
        return runtime.suspicious.check(actor_id)

    suspicious = await asyncio.to_thread(_record)
    return _ok({"suspicious": suspicious})


@router.get("/audit", response_model=Envelope, tags=["audit"])
async def query_audit(
    user_id: Optional[str] = Query(default=None, max_length=320),
    action: Optional[str] = Query(default=None, max_length=128),
    resource: Optional[str] = Query(default=None, max_length=128),
    limit: int = Query(default=100, ge=1, le=MAX_AUDIT_PAGE),
    runtime: Runtime = Depends(get_runtime),
    _admin: str = Depends(require_admin),
):
    entries = runtime.audit.query(user_id=user_id, action=action, resource=resource, limit=limit)
    items = [AuditEntryResponse(**entry.to_dict()) for entry in entries]
    return _ok(AuditQueryResponse(items=items, total=len(items)).model_dump(mode="json"))


@router.delete("/audit", response_model=Envelope, tags=["audit"])
async def clear_audit(
    runtime: Runtime = Depends(get_runtime),
    _admin: str = Depends(require_admin),
):
    await asyncio.to_thread(runtime.audit.clear)
    return _ok({"cleared": True})


@router.post("/events/{event_type}", response_model=Envelope, status_code=202, tags=["events"])
async def publish_event(
    event_type: str,
    body: Optional[EventPublishRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    event_type = event_type.strip()
    if not event_type or len(event_type) > 64:
        raise ValidationError("event_type must be 1-64 characters")
    body = body or EventPublishRequest()
    event = await asyncio.to_thread(
        runtime.events.publish, event_type, body.payload, body.origin_actor_id
    )
    return _ok(EventResponse(**event.to_dict()).model_dump(mode="json"))
