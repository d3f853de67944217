from __future__ import annotations

from datetime import datetime, timezone

from trialguard.logging import get_logger
from trialguard.service.errors import AccountNotFoundError, MfaNotConfiguredError
from trialguard.storage.common import AuthStore
from trialguard.storage.models import Account, AccountType

logger = get_logger(__name__)


class MfaPolicyGate:
    """Every login requires configured MFA, except physicians inside an emergency-access window."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def validate(self, email: str, account_type: AccountType) -> Account:
        account = self.store.get_account(account_type, email)
        if not account:
            raise AccountNotFoundError("User account not found for MFA validation")

        if (
            account.is_physician
            and account.emergency_access_until
            and account.emergency_access_until > self._now()
        ):
            self.logger.info(
                "mfa_bypassed_emergency_access",
                emergency_access_until=account.emergency_access_until.isoformat(),
            )
            return account

        if not account.mfa_enabled or not account.mfa_methods:
            raise MfaNotConfiguredError(
                "Multi-factor authentication must be configured before login"
            )
        return account
