from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)

from toolgate.api.schemas import (
    ApprovalDecisionRequest,
    ApprovalRejectRequest,
    BatchApprovalRequest,
    Envelope,
    ExecutionCancelRequest,
    ExecutionCreateRequest,
    LoginRequest,
    PasswordChangeRequest,
    SessionResponse,
    TokenRefreshRequest,
)
from toolgate.logging import get_logger
from toolgate.service.approvals import ApprovalDecision
from toolgate.service.errors import AuthError
from toolgate.service.executions import ExecutionFilters, ExecutionRequest
from toolgate.service.runtime import Runtime
from toolgate.service.sessions import AuthContext
from toolgate.storage.models import ExecutionStatus, ToolExecution, UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Close code sent to websocket clients whose token does not authenticate
WS_UNAUTHORIZED = 4401
# How often an idle websocket re-checks that its session is still live
WS_SESSION_RECHECK_SECONDS = 30.0


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return runtime.auth.authenticate(authorization)


async def get_admin_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return runtime.auth.authenticate(authorization, required_role=UserRole.ADMIN.value)


def _is_admin(principal: AuthContext) -> bool:
    return principal.role == UserRole.ADMIN.value


def _get_visible_execution(runtime: Runtime, execution_id: str, principal: AuthContext) -> ToolExecution:
    execution = runtime.executions.get(execution_id)
    # Other users' executions are reported as missing rather than forbidden
    if execution is None or (execution.user_id != principal.user_id and not _is_admin(principal)):
        raise _http_error("not_found", "execution not found", status_code=404)
    return execution


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with username and password and open a session.

    When the user already holds the maximum number of sessions the oldest
    one is evicted.
    """
    user, session = runtime.auth.login(
        body.username,
        body.password,
        remember_me=body.remember_me,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    data = SessionResponse(
        user_id=user.id,
        username=user.username,
        role=user.role,
        session_id=session.id,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_in=session.expires_in,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    """Rotate the access and refresh tokens of a session.

    A refresh token can be used once; presenting it again fails.
    """
    tokens = runtime.sessions.refresh_access_token(body.refresh_token)
    if tokens is None:
        raise _http_error("unauthorized", "session is no longer active", status_code=401)
    return Envelope(status="ok", data=tokens.to_payload())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)):
    runtime.auth.logout(principal.session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the current user's password; every other session is ended."""
    revoked = runtime.auth.change_password(principal, body.current_password, body.new_password)
    return Envelope(status="ok", data={"status": "changed", "sessionsRevoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    authorization: Optional[str] = Header(None),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    token = runtime.auth.extract_bearer(authorization) or ""
    threshold = runtime.settings.token_refresh_threshold_seconds
    return Envelope(
        status="ok",
        data={
            "userId": principal.user_id,
            "username": principal.username,
            "role": principal.role,
            "sessionId": principal.session_id,
            "tokenExpiringSoon": runtime.tokens.is_expiring_soon(token, timedelta(seconds=threshold)),
        },
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)):
    sessions = runtime.sessions.get_user_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data={
            "items": [
                s.to_payload(is_current=s.id == principal.session_id, include_tokens=False)
                for s in sessions
            ]
        },
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_own_session(
    session_id: str,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    session = runtime.sessions.get_session(session_id)
    if session is None or session.user_id != principal.user_id:
        raise _http_error("not_found", "session not found", status_code=404)
    runtime.sessions.destroy_session(session_id)
    return Envelope(status="ok", data={"revoked": True})


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    revoked = runtime.sessions.destroy_other_sessions(principal.user_id, principal.session_id)
    return Envelope(status="ok", data={"revoked": revoked})


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@router.post("/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_user_sessions(
    user_id: str,
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = runtime.sessions.destroy_all_sessions(user_id)
    logger.info("admin_sessions_revoked", admin_id=principal.user_id, user_id=user_id, count=revoked)
    return Envelope(status="ok", data={"revoked": revoked})


@router.delete("/admin/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def admin_revoke_session(
    session_id: str,
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    if not runtime.sessions.destroy_session(session_id):
        raise _http_error("not_found", "session not found", status_code=404)
    logger.info("admin_session_revoked", admin_id=principal.user_id, session_id=session_id)
    return Envelope(status="ok", data={"revoked": True})


@router.get("/admin/sessions/stats", response_model=Envelope, tags=["admin"])
async def admin_session_stats(
    principal: AuthContext = Depends(get_admin_user), runtime: Runtime = Depends(get_runtime)
):
    return Envelope(status="ok", data=runtime.sessions.stats())


@router.get("/admin/executions/stats", response_model=Envelope, tags=["admin"])
async def admin_execution_stats(
    principal: AuthContext = Depends(get_admin_user), runtime: Runtime = Depends(get_runtime)
):
    return Envelope(
        status="ok",
        data={
            "executions": runtime.executions.stats(),
            "approvals": runtime.approvals.stats(),
            "subscribers": runtime.events.subscriber_count,
        },
    )


# ----------------------------------------------------------------------
# Tools and executions
# ----------------------------------------------------------------------


@router.get("/tools", response_model=Envelope, tags=["tools"])
async def list_tools(principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)):
    items = []
    for tool in runtime.catalog.list(enabled_only=True):
        payload = tool.to_payload()
        payload["effectivePermission"] = runtime.policy.classify(tool, principal.role).value
        items.append(payload)
    return Envelope(status="ok", data={"items": items})


@router.post("/tools/executions", response_model=Envelope, status_code=201, tags=["tools"])
async def create_execution(
    body: ExecutionCreateRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Request a tool execution.

    Auto-approved tools start immediately; everything else waits for an
    approval, which is returned alongside the execution.
    """
    execution = await runtime.executions.submit(
        ExecutionRequest(
            tool_id=body.tool_id,
            user_id=principal.user_id,
            input=body.input,
            conversation_id=body.conversation_id,
            message_id=body.message_id,
        ),
        role=principal.role,
    )
    approval = runtime.approvals.get_for_execution(execution.id)
    return Envelope(
        status="ok",
        data={
            "execution": execution.to_payload(),
            "approval": approval.to_payload() if approval else None,
        },
    )


@router.get("/tools/executions", response_model=Envelope, tags=["tools"])
async def list_executions(
    tool_id: Optional[str] = Query(None, alias="toolId"),
    status: Optional[ExecutionStatus] = Query(None),
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    if not _is_admin(principal):
        user_id = principal.user_id
    items, total = runtime.executions.list_history(
        ExecutionFilters(
            user_id=user_id,
            tool_id=tool_id,
            status=status,
            conversation_id=conversation_id,
            limit=limit,
            offset=offset,
        )
    )
    return Envelope(
        status="ok",
        data={"items": [e.to_payload() for e in items], "total": total, "limit": limit, "offset": offset},
    )


@router.get("/tools/executions/active", response_model=Envelope, tags=["tools"])
async def list_active_executions(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    user_id = None if _is_admin(principal) else principal.user_id
    items = runtime.executions.list_active(user_id)
    return Envelope(status="ok", data={"items": [e.to_payload() for e in items]})


@router.get("/tools/executions/{execution_id}", response_model=Envelope, tags=["tools"])
async def get_execution(
    execution_id: str,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    execution = _get_visible_execution(runtime, execution_id, principal)
    approval = runtime.approvals.get_for_execution(execution_id)
    return Envelope(
        status="ok",
        data={
            "execution": execution.to_payload(),
            "approval": approval.to_payload() if approval else None,
        },
    )


@router.post("/tools/executions/{execution_id}/cancel", response_model=Envelope, tags=["tools"])
async def cancel_execution(
    execution_id: str,
    body: Optional[ExecutionCancelRequest] = None,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    _get_visible_execution(runtime, execution_id, principal)
    reason = (body.reason if body else None) or "cancelled by user"
    cancelled = await runtime.executions.cancel(
        execution_id, actor_id=principal.user_id, reason=reason
    )
    if not cancelled:
        raise _http_error("conflict", "execution has already finished", status_code=409)
    return Envelope(status="ok", data=runtime.executions.get(execution_id).to_payload())


# ----------------------------------------------------------------------
# Approvals
# ----------------------------------------------------------------------


@router.get("/approvals", response_model=Envelope, tags=["approvals"])
async def list_approvals(principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)):
    pending = runtime.approvals.list_pending(principal.user_id, role=principal.role)
    return Envelope(status="ok", data={"items": [r.to_payload() for r in pending]})


@router.get("/approvals/stats", response_model=Envelope, tags=["approvals"])
async def approval_stats(principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)):
    return Envelope(status="ok", data=runtime.approvals.stats(principal.user_id, role=principal.role))


async def _decide(
    runtime: Runtime,
    approval_id: str,
    decision: ApprovalDecision,
    principal: AuthContext,
    reason: Optional[str],
) -> Envelope:
    applied = await runtime.approvals.resolve(
        approval_id, decision, principal.user_id, actor_role=principal.role, reason=reason
    )
    if not applied:
        raise _http_error("conflict", "approval request was already resolved", status_code=409)
    approval = runtime.approvals.get(approval_id)
    execution = runtime.executions.get(approval.tool_execution_id)
    return Envelope(
        status="ok",
        data={
            "approval": approval.to_payload(),
            "execution": execution.to_payload() if execution else None,
        },
    )


@router.post("/approvals/batch", response_model=Envelope, tags=["approvals"])
async def batch_approvals(
    body: BatchApprovalRequest,
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    if body.decision == ApprovalDecision.REJECT.value and not (body.reason or "").strip():
        raise _http_error("validation_error", "a rejection reason is required", status_code=400)
    outcomes = await runtime.approvals.resolve_batch(
        body.approval_ids,
        body.decision,
        principal.user_id,
        actor_role=principal.role,
        reason=body.reason,
    )
    return Envelope(status="ok", data={"results": outcomes})


@router.post("/approvals/{approval_id}/approve", response_model=Envelope, tags=["approvals"])
async def approve(
    approval_id: str,
    body: Optional[ApprovalDecisionRequest] = None,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    reason = body.reason if body else None
    return await _decide(runtime, approval_id, ApprovalDecision.APPROVE, principal, reason)


@router.post("/approvals/{approval_id}/reject", response_model=Envelope, tags=["approvals"])
async def reject(
    approval_id: str,
    body: ApprovalRejectRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await _decide(runtime, approval_id, ApprovalDecision.REJECT, principal, body.reason)


# ----------------------------------------------------------------------
# Realtime
# ----------------------------------------------------------------------


async def _wait_for_disconnect(ws: WebSocket) -> None:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/events")
async def websocket_events(ws: WebSocket, token: Optional[str] = Query(None)):
    """Stream lifecycle events for the caller; admins receive every event."""
    runtime: Runtime = ws.app.state.runtime
    try:
        principal = runtime.sessions.authenticate(token or "")
    except AuthError as exc:
        await ws.accept()
        logger.info("websocket_auth_failed", reason=exc.message)
        await ws.close(code=WS_UNAUTHORIZED)
        return

    # Subscribe before accepting so nothing emitted after the handshake is missed
    subscription = runtime.events.subscribe(None if _is_admin(principal) else principal.user_id)
    await ws.accept()
    receiver = asyncio.create_task(_wait_for_disconnect(ws))
    logger.info("websocket_subscribed", user_id=principal.user_id)
    getter: Optional[asyncio.Future] = None
    try:
        await ws.send_json({"type": "subscribed", "data": {"userId": principal.user_id}})
        while True:
            if getter is None:
                getter = asyncio.ensure_future(subscription.get())
            done, _ = await asyncio.wait(
                {getter, receiver},
                timeout=WS_SESSION_RECHECK_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if receiver in done:
                break
            # Logout, revocation and password changes end the stream too
            if runtime.sessions.get_session(principal.session_id) is None:
                logger.info(
                    "websocket_session_ended",
                    user_id=principal.user_id,
                    session_id=principal.session_id,
                )
                await ws.close(code=WS_UNAUTHORIZED)
                break
            if getter in done:
                event = getter.result()
                getter = None
                await ws.send_json(event.to_payload())
    except WebSocketDisconnect:
        pass
    finally:
        if getter is not None:
            getter.cancel()
        receiver.cancel()
        subscription.close()
        logger.info("websocket_unsubscribed", user_id=principal.user_id)
