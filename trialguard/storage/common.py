"""Store contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from trialguard.storage.models import (
    Account,
    AccountType,
    AuditLogEntry,
    Invitation,
    UserSession,
)

# Columns an update may touch; anything else is rejected before reaching SQL
UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "status",
        "email",
        "email_verified",
        "external_user_id",
        "first_name",
        "last_name",
        "organization_id",
        "medical_license",
        "patient_code",
        "mfa_enabled",
        "mfa_methods",
        "emergency_access_until",
    }
)


class AuthStore(Protocol):
    # accounts
    def get_account(self, account_type: AccountType, email: str) -> Optional[Account]: ...

    def account_exists(self, account_type: AccountType, email: str) -> bool: ...

    def create_account(self, account: Account) -> Account: ...

    def update_account(
        self, account_type: AccountType, account_id: str, **fields: Any
    ) -> Optional[Account]: ...

    def lock_account(
        self, account_type: AccountType, email: str, locked_until: datetime
    ) -> None: ...

    def unlock_account(
        self, account_type: AccountType, email: str, *, restore_active: bool = True
    ) -> None: ...

    def increment_failed_attempts(
        self, account_type: AccountType, email: str, source_ip: Optional[str]
    ) -> None: ...

    def record_successful_login(
        self, account_type: AccountType, email: str, source_ip: Optional[str]
    ) -> None: ...

    # invitations
    def create_invitation(self, invitation: Invitation) -> Invitation: ...

    def list_physician_invitations(self, email: str) -> List[Invitation]: ...

    def get_patient_invitation_by_hash(self, token_hash: str) -> Optional[Invitation]: ...

    def mark_invitation_used(
        self, account_type: AccountType, invitation_id: str, used_by: str
    ) -> None: ...

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> None: ...

    def list_audit_logs(
        self,
        *,
        subject_email: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]: ...

    # rate limiting
    def count_rate_limit_requests(
        self, limit_type: str, identifier: str, since: datetime
    ) -> int: ...

    def record_rate_limit_request(self, limit_type: str, identifier: str) -> None: ...

    def purge_rate_limit_records(self, before: datetime) -> int: ...

    # token blacklist
    def blacklist_token(self, jti: str, expires_at: datetime) -> None: ...

    def is_token_blacklisted(self, jti: str, now: datetime) -> bool: ...

    # sessions
    def create_session(self, user_id: str, token_id: str) -> UserSession: ...

    def get_active_session(self, user_id: str, token_id: str) -> Optional[UserSession]: ...

    def touch_session(self, user_id: str, token_id: str, at: datetime) -> None: ...

    def end_session(self, user_id: str, token_id: str, at: datetime) -> None: ...


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from the database as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_account_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_ACCOUNT_FIELDS
    if unknown:
        raise ValueError(f"unsupported account fields: {', '.join(sorted(unknown))}")


def parse_json_details(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    return {"value": raw}


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict_row, tolerating columns absent from a variant table."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError):
        return default
    return default if value is None else value
