from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.service.audit import AuditLogSink
from trialguard.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    AccountNotFoundError,
    EmailNotVerifiedError,
    InvalidConfigurationError,
)
from trialguard.storage.common import AuthStore
from trialguard.storage.models import Account, AccountStatus, AccountType

logger = get_logger(__name__)


def resolve_account_type(user_pool_id: Optional[str]) -> AccountType:
    """Map an identity-provider user pool id onto the account variant it serves."""
    pool = (user_pool_id or "").lower()
    if "physician" in pool:
        return AccountType.PHYSICIAN
    if "patient" in pool:
        return AccountType.PATIENT
    raise InvalidConfigurationError(
        "Invalid user pool configuration", detail={"user_pool_id": user_pool_id}
    )


def resolve_account_type_by_probing(store: AuthStore, email: str) -> Optional[AccountType]:
    """Find which variant holds ``email``, physicians first.

    Lookup errors count as "not found" so failure bookkeeping stays best effort.
    """
    for account_type in (AccountType.PHYSICIAN, AccountType.PATIENT):
        try:
            if store.account_exists(account_type, email):
                return account_type
        except Exception as exc:
            logger.warning(
                "account_type_probe_failed",
                account_type=account_type.value,
                error=str(exc),
            )
            return None
    return None


class AccountStatusGate:
    """Decides whether an account may attempt to log in.

    Order of checks: lock expiry (self-heal), status, active lock, failed
    attempt threshold, email verification. Lock and unlock writes are best
    effort; a failed write is logged and the validation outcome stands.
    """

    def __init__(self, store: AuthStore, audit: AuditLogSink, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def validate(self, email: str, account_type: AccountType) -> Account:
        account = self.store.get_account(account_type, email)
        if not account:
            raise AccountNotFoundError("Account not found")

        now = self._now()
        if account.locked_until and account.locked_until <= now:
            account = await self._heal(account)

        if account.status != AccountStatus.ACTIVE.value:
            if account.status == AccountStatus.LOCKED.value and account.locked_until:
                raise AccountLockedError(
                    "Account is temporarily locked due to multiple failed login attempts",
                    detail={"locked_until": account.locked_until.isoformat()},
                )
            raise AccountNotActiveError(
                f"Account is {account.status}. Please contact support.",
                detail={"status": account.status},
            )

        if account.locked_until:
            raise AccountLockedError(
                "Account is temporarily locked due to multiple failed login attempts",
                detail={"locked_until": account.locked_until.isoformat()},
            )

        if account.failed_login_attempts >= self.settings.max_login_attempts:
            lock_until = now + timedelta(seconds=self.settings.lockout_duration_seconds)
            await self._lock(account, lock_until)
            raise AccountLockedError(
                "Account locked due to too many failed login attempts",
                detail={"locked_until": lock_until.isoformat()},
            )

        if not account.email_verified:
            raise EmailNotVerifiedError("Email address must be verified before login")

        return account

    async def _heal(self, account: Account) -> Account:
        # Suspended and pending accounts keep their status; only the lock is lifted
        restore_active = account.status in (
            AccountStatus.ACTIVE.value,
            AccountStatus.LOCKED.value,
        )
        try:
            self.store.unlock_account(
                account.account_type, account.email, restore_active=restore_active
            )
        except Exception as exc:
            self.logger.error(
                "account_unlock_failed",
                account_type=account.account_type.value,
                error=str(exc),
            )
        else:
            self.logger.info("account_unlocked", account_type=account.account_type.value)
            await self.audit.record(
                "account_unlocked",
                account.email,
                {"reason": "lock_period_expired", "user_type": account.account_type.value},
            )
        account.locked_until = None
        account.failed_login_attempts = 0
        if restore_active:
            account.status = AccountStatus.ACTIVE.value
        return account

    async def _lock(self, account: Account, lock_until: datetime) -> None:
        try:
            self.store.lock_account(account.account_type, account.email, lock_until)
        except Exception as exc:
            self.logger.error(
                "account_lock_failed",
                account_type=account.account_type.value,
                error=str(exc),
            )
            return
        self.logger.warning(
            "account_locked",
            account_type=account.account_type.value,
            locked_until=lock_until.isoformat(),
        )
        await self.audit.record(
            "account_locked",
            account.email,
            {
                "reason": "too_many_failed_attempts",
                "lock_until": lock_until.isoformat(),
                "user_type": account.account_type.value,
            },
        )
