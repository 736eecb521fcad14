"""FastAPI application exposing the IAM service over HTTP."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from bastion_iam.audit.models import AuditEventType, AuditQuery
from bastion_iam.auth.authorizer import (
    AuthContext,
    Policy,
    authenticated,
    evaluate,
    require_mfa,
    require_roles,
)
from bastion_iam.auth.mfa import mask_destination
from bastion_iam.auth.models import LoginRequest, MFAMethodType, RequestContext
from bastion_iam.errors import (
    AccountLocked,
    ConfigurationError,
    IAMError,
    InvalidCredentials,
    MFASetupError,
    MFAVerificationFailed,
    PermissionDenied,
    PrincipalNotFound,
    SessionError,
    SessionNotFound,
)
from bastion_iam.service import ELEVATED_ROLES, IAMService
from bastion_iam.web.schemas import (
    AuditPageOut,
    LoginBody,
    LoginResponse,
    MFAChallengeBody,
    MFAChallengeResponse,
    MFASetupBody,
    MFASetupResponse,
    MFAVerifyBody,
    PermissionCheckBody,
    PermissionCheckResponse,
    PrincipalSummary,
    RefreshBody,
    SessionOut,
    SessionsResponse,
    TokenBundleOut,
)

logger = logging.getLogger(__name__)

_BEARER = {"WWW-Authenticate": "Bearer"}


def request_context(request: Request, device_id: str = "") -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent", "unknown"),
        device_id=device_id,
    )


def create_app(service: IAMService) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: The process's IAM service. The app does not own it; the
            caller closes it on shutdown.

    Returns:
        Configured FastAPI application ready to be passed to uvicorn.run().
    """
    from bastion_iam import __version__

    app = FastAPI(
        title="Bastion-IAM",
        description="Authentication, MFA, sessions, RBAC and audit",
        version=__version__,
    )
    app.state.service = service

    # -------------------------------------------------------------------------
    # Error mapping
    # -------------------------------------------------------------------------

    @app.exception_handler(AccountLocked)
    async def _locked(request: Request, exc: AccountLocked) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": str(exc), "retryAfter": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after), **_BEARER},
        )

    @app.exception_handler(InvalidCredentials)
    @app.exception_handler(MFAVerificationFailed)
    @app.exception_handler(SessionError)
    async def _unauthenticated(request: Request, exc: IAMError) -> JSONResponse:
        return JSONResponse(
            status_code=401, content={"success": False, "error": str(exc)}, headers=_BEARER
        )

    @app.exception_handler(PermissionDenied)
    async def _forbidden(request: Request, exc: PermissionDenied) -> JSONResponse:
        return JSONResponse(status_code=403, content={"success": False, "error": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def _bad_config(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"success": False, "error": str(exc)})

    @app.exception_handler(MFASetupError)
    async def _bad_setup(request: Request, exc: MFASetupError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(PrincipalNotFound)
    async def _not_found(request: Request, exc: PrincipalNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(IAMError)
    async def _internal(request: Request, exc: IAMError) -> JSONResponse:
        logger.error(
            "Unhandled IAM error on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Internal error"}
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unexpected error on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Internal error"}
        )

    # -------------------------------------------------------------------------
    # Authentication dependency
    # -------------------------------------------------------------------------

    async def _resolve(request: Request) -> AuthContext:
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise SessionNotFound()
        principal, session = await run_in_threadpool(
            service.authenticator.resolve, token.strip()
        )
        return await run_in_threadpool(service.auth_context, principal, session)

    def guard(*policies: Policy):
        """Dependency: resolve the bearer token, then run *policies* in order."""
        chain = [authenticated(), *policies]

        async def dependency(request: Request) -> AuthContext:
            ctx = await _resolve(request)
            decision = await run_in_threadpool(evaluate, chain, ctx)
            if not decision.allowed:
                if decision.status == 401:
                    raise SessionNotFound()
                raise PermissionDenied()
            return ctx

        return dependency

    signed_in = guard()
    verified = guard(require_mfa())
    elevated = guard(require_mfa(), require_roles(*ELEVATED_ROLES))
    admin = guard(require_mfa(), require_roles("admin"))

    # -------------------------------------------------------------------------
    # Login flow
    # -------------------------------------------------------------------------

    @app.post("/login")
    async def login(request: Request, body: LoginBody) -> dict[str, Any]:
        """Password step; returns tokens or ``mfaRequired``."""
        result = await run_in_threadpool(
            service.authenticator.login,
            LoginRequest(
                username=body.username,
                password=body.password,
                mfa_token=body.mfa_token,
                mfa_method=body.mfa_method,
                device_id=body.device_id,
            ),
            request_context(request, body.device_id),
        )
        return LoginResponse.from_result(result).wire(exclude_none=True)

    @app.post("/mfa/challenge")
    async def mfa_challenge(body: MFAChallengeBody) -> dict[str, Any]:
        """Select the factor for a pending challenge."""
        challenge = await run_in_threadpool(
            service.authenticator.select_mfa_method, body.challenge, body.method
        )
        principal = await run_in_threadpool(service.users.get, challenge.principal_id)
        masked = None
        if principal is not None and body.method.uses_one_time_code:
            method = principal.method(body.method)
            masked = mask_destination(method.destination) if method else None
        return MFAChallengeResponse(
            challenge=challenge.challenge_id,
            method=body.method,
            expires_at=challenge.expires_at,
            masked_destination=masked,
        ).wire(exclude_none=True)

    @app.post("/mfa/verify")
    async def mfa_verify(body: MFAVerifyBody) -> dict[str, Any]:
        result = await run_in_threadpool(
            service.authenticator.verify_mfa, body.challenge, body.code, body.method
        )
        return LoginResponse.from_result(result).wire(exclude_none=True)

    @app.post("/token/refresh")
    async def token_refresh(body: RefreshBody) -> dict[str, Any]:
        bundle = await run_in_threadpool(service.authenticator.refresh, body.refresh_token)
        return TokenBundleOut.from_bundle(bundle).wire()

    @app.post("/logout")
    async def logout(request: Request, ctx: AuthContext = Depends(signed_in)) -> dict[str, Any]:
        await run_in_threadpool(
            service.authenticator.logout, ctx.session.session_id, request_context(request)
        )
        return {"success": True}

    # -------------------------------------------------------------------------
    # Self service
    # -------------------------------------------------------------------------

    @app.get("/profile")
    async def profile(ctx: AuthContext = Depends(signed_in)) -> dict[str, Any]:
        principal = await run_in_threadpool(service.get_profile, ctx.principal.principal_id)
        return PrincipalSummary.from_principal(principal).wire()

    @app.post("/mfa/setup")
    async def mfa_setup(
        request: Request, body: MFASetupBody, ctx: AuthContext = Depends(signed_in)
    ) -> dict[str, Any]:
        """Enroll a factor; the payload is only shown once."""
        enrollment = await run_in_threadpool(
            lambda: service.setup_mfa(
                ctx.principal,
                body.method,
                enabled=body.enabled,
                priority=body.priority,
                destination=body.destination,
                reference=body.reference,
                context=request_context(request),
            )
        )
        return MFASetupResponse.from_enrollment(enrollment).wire(exclude_none=True)

    @app.delete("/mfa/{method}")
    async def mfa_revoke(
        request: Request, method: MFAMethodType, ctx: AuthContext = Depends(verified)
    ) -> Any:
        removed = await run_in_threadpool(
            service.revoke_mfa, ctx.principal, method, request_context(request)
        )
        if not removed:
            return JSONResponse(
                status_code=404, content={"success": False, "error": "MFA method not enrolled"}
            )
        return {"success": True}

    @app.post("/permissions/check")
    async def permissions_check(
        request: Request, body: PermissionCheckBody, ctx: AuthContext = Depends(verified)
    ) -> dict[str, Any]:
        decision = await run_in_threadpool(
            lambda: service.check_permission(
                ctx.principal,
                body.resource,
                body.action,
                session=ctx.session,
                context=request_context(request),
            )
        )
        return PermissionCheckResponse(allowed=decision.allowed, reason=decision.reason).wire()

    @app.get("/sessions")
    async def sessions(
        principal_id: str | None = Query(default=None, alias="principalId"),
        ctx: AuthContext = Depends(verified),
    ) -> dict[str, Any]:
        active = await run_in_threadpool(service.list_sessions, ctx.principal, principal_id)
        items = [SessionOut.from_session(s, ctx.session.session_id) for s in active]
        return SessionsResponse(sessions=items, total=len(items)).wire()

    @app.delete("/sessions/{session_id}")
    async def revoke_session(
        request: Request, session_id: str, ctx: AuthContext = Depends(verified)
    ) -> Any:
        revoked = await run_in_threadpool(
            service.revoke_session, ctx.principal, session_id, request_context(request)
        )
        if not revoked:
            return JSONResponse(
                status_code=404, content={"success": False, "error": "Session not found"}
            )
        return {"success": True}

    # -------------------------------------------------------------------------
    # Audit / administration
    # -------------------------------------------------------------------------

    @app.get("/audit/events")
    async def audit_events(
        principal_id: str | None = Query(default=None, alias="principalId"),
        event_type: list[AuditEventType] | None = Query(default=None, alias="eventType"),
        since: datetime | None = None,
        until: datetime | None = None,
        order: Literal["asc", "desc"] = "asc",
        limit: int | None = Query(default=None, ge=1),
        cursor: str | None = None,
        ctx: AuthContext = Depends(elevated),
    ) -> dict[str, Any]:
        """Page through the audit trail (admin or auditor)."""
        query = AuditQuery(
            principal_id=principal_id,
            event_types=event_type or [],
            since=since,
            until=until,
            order=order,
            limit=limit,
            cursor=cursor,
        )
        page = await run_in_threadpool(service.query_audit, query)
        return AuditPageOut.from_page(page).wire()

    @app.get("/config")
    async def config_get(ctx: AuthContext = Depends(admin)) -> dict[str, Any]:
        policy = await run_in_threadpool(service.get_policy)
        return policy.model_dump(by_alias=True)

    @app.put("/config")
    async def config_put(
        patch: dict[str, Any] = Body(...), ctx: AuthContext = Depends(admin)
    ) -> dict[str, Any]:
        """Partially update the live IAM policy."""
        policy = await run_in_threadpool(
            service.update_policy, patch, ctx.principal.principal_id
        )
        return policy.model_dump(by_alias=True)

    @app.get("/health")
    async def health() -> Any:
        status = await run_in_threadpool(service.health)
        code = 200 if status["database"] else 503
        return JSONResponse(status_code=code, content=status)

    return app
