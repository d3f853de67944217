from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from trialguard.api.error_handling import AuthRejected
from trialguard.api.schemas import (
    Envelope,
    LogoutResponse,
    MeResponse,
    RefreshResponse,
    SessionResponse,
    UserContextResponse,
)
from trialguard.service.errors import AccountNotActiveError, AccountNotFoundError
from trialguard.service.middleware import AuthRequest, MiddlewareResult
from trialguard.service.rbac import require_permissions
from trialguard.service.runtime import get_runtime
from trialguard.service.tokens import extract_token
from trialguard.storage.models import AccountStatus, AccountType

router = APIRouter(prefix="/v1")
health_router = APIRouter()


async def get_authenticated(request: Request) -> MiddlewareResult:
    """Run the auth middleware chain for the current request."""
    runtime = get_runtime()
    result = await runtime.middleware.authenticate(AuthRequest.from_starlette(request))
    if not result.is_valid:
        raise AuthRejected(result)
    return result


def _me_response(result: MiddlewareResult) -> MeResponse:
    user = result.user
    session = result.session
    return MeResponse(
        user=UserContextResponse(
            id=user.id,
            email=user.email,
            user_type=user.user_type,
            permissions=list(user.permissions),
            token_id=user.token_id,
        ),
        session=(
            SessionResponse(
                id=session.id,
                token_id=session.token_id,
                last_activity_at=session.last_activity_at,
                created_at=session.created_at,
            )
            if session
            else None
        ),
        rate_limit=result.rate_limit,
    )


@health_router.get("/healthz", response_model=Envelope)
async def healthz():
    return Envelope(status="ok", data={"status": "ok"})


@router.get("/auth/me", response_model=Envelope)
async def me(auth: MiddlewareResult = Depends(get_authenticated)):
    return Envelope(status="ok", data=_me_response(auth))


@router.post("/auth/logout", response_model=Envelope)
async def logout(request: Request, auth: MiddlewareResult = Depends(get_authenticated)):
    runtime = get_runtime()
    token = extract_token(dict(request.headers), dict(request.query_params))
    source_ip = request.client.host if request.client else None
    token_id = await runtime.token_revoker.revoke(token, source_ip=source_ip)
    return Envelope(status="ok", data=LogoutResponse(token_id=token_id))


@router.post("/auth/refresh", response_model=Envelope)
async def refresh(request: Request, auth: MiddlewareResult = Depends(get_authenticated)):
    """Swap the presented token for a fresh one; the old token is revoked."""
    runtime = get_runtime()
    user = auth.user
    account = runtime.store.get_account(AccountType(user.user_type), user.email)
    if account is None:
        raise AccountNotFoundError("User not found")
    if account.status != AccountStatus.ACTIVE.value:
        raise AccountNotActiveError(f"Account is {account.status}")

    token = extract_token(dict(request.headers), dict(request.query_params))
    source_ip = request.client.host if request.client else None
    revoked = await runtime.token_revoker.revoke(token, source_ip=source_ip)
    issued = runtime.token_issuer.issue(account, source_ip=source_ip)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            token=issued.token,
            token_id=issued.token_id,
            expires_at=issued.expires_at,
            revoked_token_id=revoked,
        ),
    )


@router.get("/physician/ping", response_model=Envelope)
async def physician_ping(auth: MiddlewareResult = Depends(get_authenticated)):
    runtime = get_runtime()
    await require_permissions(
        auth.user, ["read:patients"], runtime.audit, resource="physician_ping"
    )
    return Envelope(status="ok", data={"pong": True, "user_type": auth.user.user_type})
