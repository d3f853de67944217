from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountType(str, Enum):
    """Account variant; each variant lives in its own table."""

    PHYSICIAN = "physician"
    PATIENT = "patient"

    @property
    def table(self) -> str:
        return "physicians" if self is AccountType.PHYSICIAN else "patients"

    @property
    def invitation_table(self) -> str:
        return (
            "physician_invitations"
            if self is AccountType.PHYSICIAN
            else "patient_invitations"
        )


class AccountStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    SUSPENDED = "suspended"
    PENDING = "pending"


class InvitationStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    USED = "used"


@dataclass
class Account:
    id: str
    email: str
    account_type: AccountType
    status: str = AccountStatus.ACTIVE.value
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    email_verified: bool = False
    mfa_enabled: bool = False
    mfa_methods: Optional[Any] = None
    # Physicians only
    emergency_access_until: Optional[datetime] = None
    external_user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_id: Optional[str] = None
    medical_license: Optional[str] = None
    patient_code: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    last_failed_login_at: Optional[datetime] = None
    last_failed_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_physician(self) -> bool:
        return self.account_type is AccountType.PHYSICIAN


@dataclass(frozen=True)
class AuditLogEntry:
    event_type: str
    subject_email: str
    details: Dict[str, Any]
    source_ip: str = "unknown"
    user_agent: str = "unknown"
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RateLimitRecord:
    limit_type: str
    identifier: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    id: str
    account_type: AccountType
    expires_at: datetime
    email: Optional[str] = None
    token_hash: Optional[str] = None
    organization_id: Optional[str] = None
    # Pre-created patient record the invitation was issued for, if any
    patient_id: Optional[str] = None
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None
    status: str = InvitationStatus.ACTIVE.value
    created_at: datetime = field(default_factory=utcnow)

    def is_consumable(self, now: Optional[datetime] = None) -> bool:
        """Active, unused and unexpired."""
        current = now or utcnow()
        return (
            self.status == InvitationStatus.ACTIVE.value
            and self.used_at is None
            and self.expires_at > current
        )


@dataclass(frozen=True)
class TokenBlacklistEntry:
    jti: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    id: str
    user_id: str
    token_id: str
    last_activity_at: datetime
    created_at: datetime
    is_active: bool = True
    ended_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, token_id: str) -> "UserSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_id=token_id,
            last_activity_at=now,
            created_at=now,
        )
