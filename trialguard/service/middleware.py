from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.service.errors import RateLimitExceededError, ServiceError
from trialguard.service.rate_limit import LimitType, RateLimiter
from trialguard.service.sessions import SessionGuard
from trialguard.service.tokens import TokenValidator, UserContext, extract_token
from trialguard.storage.models import UserSession

logger = get_logger(__name__)

RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
}
RETRY_AFTER_SECONDS = "3600"
_AUTH_PATH_MARKERS = ("/auth/", "/mfa/")


@dataclass
class AuthRequest:
    """Transport-neutral view of an incoming API call."""

    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, str] = field(default_factory=dict)
    source_ip: str = "unknown"
    path: str = "unknown"

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> "AuthRequest":
        """Build from an API-Gateway proxy event (REST or HTTP API payloads)."""
        context = event.get("requestContext") or {}
        http = context.get("http") or {}
        identity = context.get("identity") or {}
        return cls(
            headers=dict(event.get("headers") or {}),
            query_params=dict(event.get("queryStringParameters") or {}),
            source_ip=http.get("sourceIp") or identity.get("sourceIp") or "unknown",
            path=http.get("path") or event.get("path") or event.get("rawPath") or "unknown",
        )

    @classmethod
    def from_starlette(cls, request: Any) -> "AuthRequest":
        client = getattr(request, "client", None)
        return cls(
            headers=dict(request.headers),
            query_params=dict(request.query_params),
            source_ip=(client.host if client and client.host else "unknown"),
            path=request.url.path,
        )


@dataclass
class MiddlewareResult:
    is_valid: bool
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    user: Optional[UserContext] = None
    session: Optional[UserSession] = None
    rate_limit: Optional[Dict[str, int]] = None

    @classmethod
    def rejected(cls, status_code: int, message: str) -> "MiddlewareResult":
        headers = dict(RESPONSE_HEADERS)
        if status_code == 429:
            headers["Retry-After"] = RETRY_AFTER_SECONDS
        return cls(
            is_valid=False,
            status_code=status_code,
            headers=headers,
            body={"error": message},
        )

    def to_lambda_response(self) -> Dict[str, Any]:
        if not self.is_valid:
            return {
                "statusCode": self.status_code,
                "headers": dict(self.headers),
                "body": json.dumps(self.body),
            }
        session = None
        if self.session:
            session = {
                "id": self.session.id,
                "userId": self.session.user_id,
                "tokenId": self.session.token_id,
                "lastActivity": self.session.last_activity_at.isoformat(),
            }
        return {
            "isValid": True,
            "user": self.user.as_dict() if self.user else None,
            "session": session,
            "rateLimit": self.rate_limit,
        }


class AuthMiddleware:
    """Token validation, request rate limits, then session checks, in that order."""

    def __init__(
        self,
        token_validator: TokenValidator,
        rate_limiter: RateLimiter,
        session_guard: SessionGuard,
        settings: Settings,
    ) -> None:
        self.token_validator = token_validator
        self.rate_limiter = rate_limiter
        self.session_guard = session_guard
        self.settings = settings
        self.logger = logger

    async def authenticate(self, request: AuthRequest) -> MiddlewareResult:
        try:
            token = extract_token(request.headers, request.query_params)
            user = await self.token_validator.validate(token)
            rate_limit = await self._check_rate_limits(user, request)
            session = await self.session_guard.check(user)
        except RateLimitExceededError as exc:
            return MiddlewareResult.rejected(429, exc.message)
        except ServiceError as exc:
            return MiddlewareResult.rejected(401, exc.message)
        except Exception as exc:
            self.logger.error("auth_middleware_error", error=str(exc))
            return MiddlewareResult.rejected(401, "Authentication failed")
        return MiddlewareResult(
            is_valid=True, user=user, session=session, rate_limit=rate_limit
        )

    async def _check_rate_limits(
        self, user: UserContext, request: AuthRequest
    ) -> Optional[Dict[str, int]]:
        try:
            return await self._apply_rate_limits(user, request)
        except RateLimitExceededError:
            raise
        except Exception as exc:
            # The stage as a whole fails open
            self.logger.warning("rate_limit_stage_failed", error=str(exc))
            return None

    async def _apply_rate_limits(
        self, user: UserContext, request: AuthRequest
    ) -> Dict[str, int]:
        settings = self.settings
        email = user.email or "anonymous"
        source_ip = request.source_ip or "unknown"

        user_limit = await self.rate_limiter.check(
            LimitType.USER,
            email,
            settings.user_rate_limit,
            settings.user_rate_limit_window_seconds,
        )
        if user_limit.exceeded:
            raise RateLimitExceededError("User rate limit exceeded", scope="user")

        ip_limit = await self.rate_limiter.check(
            LimitType.IP,
            source_ip,
            settings.ip_rate_limit,
            settings.ip_rate_limit_window_seconds,
        )
        if ip_limit.exceeded:
            raise RateLimitExceededError("IP rate limit exceeded", scope="ip")

        if any(marker in (request.path or "") for marker in _AUTH_PATH_MARKERS):
            auth_limit = await self.rate_limiter.check(
                LimitType.AUTH,
                f"{email}:{source_ip}",
                settings.auth_rate_limit,
                settings.auth_rate_limit_window_seconds,
            )
            if auth_limit.exceeded:
                raise RateLimitExceededError(
                    "Authentication rate limit exceeded", scope="auth"
                )

        return {"user": user_limit.remaining, "ip": ip_limit.remaining}
