from __future__ import annotations

from typing import Optional

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.service.account_status import (
    AccountStatusGate,
    resolve_account_type_by_probing,
)
from trialguard.service.audit import AuditLogSink
from trialguard.service.errors import (
    AccountNotFoundError,
    RateLimitExceededError,
    ServiceError,
)
from trialguard.service.mfa import MfaPolicyGate
from trialguard.service.rate_limit import LimitType, RateLimiter
from trialguard.storage.common import AuthStore
from trialguard.storage.models import Account, AccountType

logger = get_logger(__name__)


class PreAuthenticationValidator:
    """Runs the login gates in order and short-circuits on the first rejection.

    Account status, then the per-IP and per-email login limits, then the MFA
    policy. Every outcome is audited; a rejection also bumps the account's
    failed attempt counter before it is re-raised.
    """

    def __init__(
        self,
        store: AuthStore,
        audit: AuditLogSink,
        status_gate: AccountStatusGate,
        rate_limiter: RateLimiter,
        mfa_gate: MfaPolicyGate,
        settings: Settings,
    ) -> None:
        self.store = store
        self.audit = audit
        self.status_gate = status_gate
        self.rate_limiter = rate_limiter
        self.mfa_gate = mfa_gate
        self.settings = settings
        self.logger = logger

    async def validate(
        self,
        email: str,
        account_type: Optional[AccountType],
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        source_ip = source_ip or "unknown"
        user_agent = user_agent or "unknown"
        resolved_type = account_type
        try:
            if resolved_type is None:
                resolved_type = resolve_account_type_by_probing(self.store, email)
                if resolved_type is None:
                    raise AccountNotFoundError("Account not found")
            account = await self.status_gate.validate(email, resolved_type)
            await self._check_login_limits(email, source_ip)
            await self.mfa_gate.validate(email, resolved_type)
        except ServiceError as exc:
            self.logger.info(
                "pre_authentication_rejected",
                account_type=resolved_type.value if resolved_type else None,
                error_kind=exc.kind.value,
            )
            await self.audit.record(
                "pre_authentication_failed",
                email,
                {
                    "error": exc.message,
                    "error_kind": exc.kind.value,
                    "source_ip": source_ip,
                    "user_agent": user_agent,
                },
            )
            await self._record_failed_attempt(email, resolved_type, source_ip)
            raise

        await self.audit.record(
            "pre_authentication",
            email,
            {
                "user_type": resolved_type.value,
                "source_ip": source_ip,
                "user_agent": user_agent,
                "success": True,
            },
        )
        self.logger.info("pre_authentication_passed", account_type=resolved_type.value)
        return account

    async def _check_login_limits(self, email: str, source_ip: str) -> None:
        ip_result = await self.rate_limiter.check(
            LimitType.PREAUTH_IP,
            source_ip,
            self.settings.preauth_ip_limit,
            self.settings.preauth_ip_window_seconds,
        )
        if ip_result.exceeded:
            raise RateLimitExceededError(
                "Too many login attempts from this IP address", scope="ip"
            )

        # The email tier counts failures only; rows are written on the failure path
        email_result = await self.rate_limiter.check(
            LimitType.PREAUTH_EMAIL,
            email,
            self.settings.preauth_email_limit,
            self.settings.preauth_email_window_seconds,
            record=False,
        )
        if email_result.exceeded:
            raise RateLimitExceededError(
                "Too many failed login attempts. Please wait before trying again.",
                scope="email",
            )

    async def _record_failed_attempt(
        self,
        email: Optional[str],
        account_type: Optional[AccountType],
        source_ip: str,
    ) -> None:
        if not email:
            return
        await self.rate_limiter.record(LimitType.PREAUTH_EMAIL, email)
        if account_type is None:
            account_type = resolve_account_type_by_probing(self.store, email)
            if account_type is None:
                return
        try:
            self.store.increment_failed_attempts(account_type, email, source_ip)
        except Exception as exc:
            self.logger.error(
                "failed_attempt_record_failed",
                account_type=account_type.value,
                error=str(exc),
            )
