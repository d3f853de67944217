from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import jwt

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.service.audit import AuditLogSink
from trialguard.service.errors import UnauthorizedError
from trialguard.service.rbac import token_permissions_for
from trialguard.storage.common import AuthStore
from trialguard.storage.models import Account, AccountType, UserSession
from trialguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "email", "userType")


@dataclass(frozen=True)
class UserContext:
    """Authenticated identity extracted from a verified access token."""

    id: str
    email: str
    user_type: str
    permissions: List[str] = field(default_factory=list)
    token_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "userType": self.user_type,
            "permissions": list(self.permissions),
            "tokenId": self.token_id,
        }


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime
    session: Optional[UserSession] = None


def extract_token(
    headers: Optional[Mapping[str, Any]],
    query_params: Optional[Mapping[str, Any]] = None,
) -> Optional[str]:
    """Bearer token from the Authorization header, else the ``token`` query parameter."""
    for name, value in (headers or {}).items():
        if name.lower() != "authorization" or not value:
            continue
        scheme, _, credentials = str(value).partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    token = (query_params or {}).get("token")
    return token or None


class TokenValidator:
    """Verifies HS256 access tokens and rejects revoked ones.

    A token whose ``exp`` equals the current whole second is already expired.
    Blacklist lookups fail open.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _reject(self, message: str, reason: str) -> UnauthorizedError:
        self.logger.info("token_rejected", reason=reason)
        return UnauthorizedError(message, detail={"reason": reason})

    async def validate(self, token: Optional[str]) -> UserContext:
        if not token:
            raise self._reject("Authorization token required", "missing")
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
            )
        except jwt.ExpiredSignatureError:
            raise self._reject("Token expired", "expired")
        except jwt.ImmatureSignatureError:
            raise self._reject("Token not active yet", "not_before")
        except jwt.InvalidTokenError:
            raise self._reject("Invalid token", "invalid")

        exp = payload.get("exp")
        if exp is not None and exp <= math.floor(time.time()):
            raise self._reject("Token expired", "expired")

        if any(not payload.get(claim) for claim in _REQUIRED_CLAIMS):
            raise self._reject("Invalid token claims", "claims")

        jti = payload.get("jti")
        if jti and await self._is_blacklisted(str(jti)):
            raise self._reject("Token revoked", "revoked")

        return UserContext(
            id=str(payload["sub"]),
            email=payload["email"],
            user_type=payload["userType"],
            permissions=list(payload.get("permissions") or []),
            token_id=str(jti) if jti else None,
        )

    async def _is_blacklisted(self, jti: str) -> bool:
        try:
            if self.cache:
                return await self.cache.is_token_blacklisted(jti, self._now())
            return self.store.is_token_blacklisted(jti, self._now())
        except Exception as exc:
            self.logger.warning("token_blacklist_check_failed", error=str(exc))
            return False


class TokenIssuer:
    """Mints access tokens for accounts that completed authentication."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _ttl_seconds(self, account_type: AccountType) -> int:
        if account_type is AccountType.PHYSICIAN:
            return self.settings.physician_token_ttl_seconds
        return self.settings.patient_token_ttl_seconds

    def issue(
        self,
        account: Account,
        *,
        open_session: bool = True,
        source_ip: Optional[str] = None,
    ) -> IssuedToken:
        issued_at = int(time.time())
        expires_at = issued_at + self._ttl_seconds(account.account_type)
        jti = str(uuid.uuid4())
        payload = {
            "sub": account.id,
            "email": account.email,
            "userType": account.account_type.value,
            "permissions": token_permissions_for(account.account_type.value),
            "iat": issued_at,
            "exp": expires_at,
            "jti": jti,
        }
        token = jwt.encode(
            payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm
        )

        session = None
        if open_session:
            session = self.store.create_session(account.id, jti)
        try:
            self.store.record_successful_login(account.account_type, account.email, source_ip)
        except Exception as exc:
            self.logger.warning(
                "login_bookkeeping_failed",
                account_type=account.account_type.value,
                error=str(exc),
            )
        self.logger.info("token_issued", account_type=account.account_type.value, jti=jti)
        return IssuedToken(
            token=token,
            token_id=jti,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            session=session,
        )


class TokenRevoker:
    """Logout: blacklist the presented token and end its session."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        audit: AuditLogSink,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.audit = audit
        self.settings = settings
        self.logger = logger

    async def revoke(self, token: Optional[str], *, source_ip: Optional[str] = None) -> str:
        if not token:
            raise UnauthorizedError("Authorization token required")
        try:
            # Expired tokens may still be logged out
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                options={"verify_exp": False},
            )
        except jwt.InvalidTokenError:
            raise UnauthorizedError("Invalid token")

        jti = payload.get("jti")
        if not jti:
            raise UnauthorizedError("Invalid token claims")
        exp = payload.get("exp")
        now = datetime.now(timezone.utc)
        expires_at = (
            datetime.fromtimestamp(exp, tz=timezone.utc)
            if exp is not None
            else now + timedelta(seconds=self.settings.physician_token_ttl_seconds)
        )

        if self.cache:
            await self.cache.blacklist_token(str(jti), expires_at)
        else:
            self.store.blacklist_token(str(jti), expires_at)
        if payload.get("sub"):
            self.store.end_session(str(payload["sub"]), str(jti), now)

        await self.audit.record(
            "logout",
            payload.get("email"),
            {
                "user_id": payload.get("sub"),
                "user_type": payload.get("userType"),
                "source_ip": source_ip or "unknown",
            },
        )
        self.logger.info("token_revoked", jti=jti)
        return str(jti)
