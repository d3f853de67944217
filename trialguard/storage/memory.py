from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from trialguard.logging import get_logger
from trialguard.storage.common import check_account_fields
from trialguard.storage.errors import ConstraintViolation
from trialguard.storage.models import (
    Account,
    AccountStatus,
    AccountType,
    AuditLogEntry,
    Invitation,
    InvitationStatus,
    RateLimitRecord,
    TokenBlacklistEntry,
    UserSession,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used by tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[AccountType, Dict[str, Account]] = {
            AccountType.PHYSICIAN: {},
            AccountType.PATIENT: {},
        }
        self.invitations: Dict[AccountType, Dict[str, Invitation]] = {
            AccountType.PHYSICIAN: {},
            AccountType.PATIENT: {},
        }
        self.audit_logs: List[AuditLogEntry] = []
        self.rate_limit_log: List[RateLimitRecord] = []
        self.token_blacklist: Dict[str, TokenBlacklistEntry] = {}
        self.sessions: Dict[Tuple[str, str], UserSession] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # accounts
    def _find_account(self, account_type: AccountType, email: str) -> Optional[Account]:
        return next(
            (a for a in self.accounts[account_type].values() if a.email == email),
            None,
        )

    def get_account(self, account_type: AccountType, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account(account_type, email)
            # Hand out copies so callers cannot mutate stored state
            return replace(account) if account else None

    def account_exists(self, account_type: AccountType, email: str) -> bool:
        with self._data_lock:
            return self._find_account(account_type, email) is not None

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if self._find_account(account.account_type, account.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if not account.id:
                account.id = str(uuid.uuid4())
            self.accounts[account.account_type][account.id] = replace(account)
            return replace(account)

    def update_account(
        self, account_type: AccountType, account_id: str, **fields: Any
    ) -> Optional[Account]:
        check_account_fields(fields)
        with self._data_lock:
            account = self.accounts[account_type].get(account_id)
            if not account:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            return replace(account)

    def lock_account(
        self, account_type: AccountType, email: str, locked_until: datetime
    ) -> None:
        with self._data_lock:
            account = self._find_account(account_type, email)
            if not account:
                return
            account.locked_until = locked_until
            account.status = AccountStatus.LOCKED.value
            account.updated_at = utcnow()

    def unlock_account(
        self, account_type: AccountType, email: str, *, restore_active: bool = True
    ) -> None:
        with self._data_lock:
            account = self._find_account(account_type, email)
            if not account:
                return
            account.locked_until = None
            account.failed_login_attempts = 0
            if restore_active:
                account.status = AccountStatus.ACTIVE.value
            account.updated_at = utcnow()

    def increment_failed_attempts(
        self, account_type: AccountType, email: str, source_ip: Optional[str]
    ) -> None:
        with self._data_lock:
            account = self._find_account(account_type, email)
            if not account:
                return
            account.failed_login_attempts += 1
            account.last_failed_login_at = utcnow()
            account.last_failed_ip = source_ip or "unknown"
            account.updated_at = account.last_failed_login_at

    def record_successful_login(
        self, account_type: AccountType, email: str, source_ip: Optional[str]
    ) -> None:
        with self._data_lock:
            account = self._find_account(account_type, email)
            if not account:
                return
            account.failed_login_attempts = 0
            account.last_login_at = utcnow()
            account.last_login_ip = source_ip or "unknown"
            account.updated_at = account.last_login_at

    # invitations
    def create_invitation(self, invitation: Invitation) -> Invitation:
        with self._data_lock:
            if not invitation.id:
                invitation.id = str(uuid.uuid4())
            self.invitations[invitation.account_type][invitation.id] = replace(invitation)
            return replace(invitation)

    def list_physician_invitations(self, email: str) -> List[Invitation]:
        with self._data_lock:
            found = [
                replace(inv)
                for inv in self.invitations[AccountType.PHYSICIAN].values()
                if inv.email == email
            ]
            return sorted(found, key=lambda inv: inv.created_at, reverse=True)

    def get_patient_invitation_by_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._data_lock:
            for inv in self.invitations[AccountType.PATIENT].values():
                if inv.token_hash == token_hash:
                    return replace(inv)
            return None

    def mark_invitation_used(
        self, account_type: AccountType, invitation_id: str, used_by: str
    ) -> None:
        with self._data_lock:
            inv = self.invitations[account_type].get(invitation_id)
            if not inv:
                return
            inv.used_at = utcnow()
            inv.used_by = used_by
            inv.status = InvitationStatus.USED.value

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_logs.append(entry)

    def list_audit_logs(
        self,
        *,
        subject_email: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            results = [
                entry
                for entry in self.audit_logs
                if (subject_email is None or entry.subject_email == subject_email)
                and (event_type is None or entry.event_type == event_type)
            ]
            return sorted(results, key=lambda e: e.created_at, reverse=True)[:limit]

    # rate limiting
    def count_rate_limit_requests(
        self, limit_type: str, identifier: str, since: datetime
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for record in self.rate_limit_log
                if record.limit_type == limit_type
                and record.identifier == identifier
                and record.created_at > since
            )

    def record_rate_limit_request(self, limit_type: str, identifier: str) -> None:
        with self._data_lock:
            self.rate_limit_log.append(RateLimitRecord(limit_type, identifier))

    def purge_rate_limit_records(self, before: datetime) -> int:
        with self._data_lock:
            kept = [r for r in self.rate_limit_log if r.created_at >= before]
            purged = len(self.rate_limit_log) - len(kept)
            self.rate_limit_log = kept
            return purged

    # token blacklist
    def blacklist_token(self, jti: str, expires_at: datetime) -> None:
        with self._data_lock:
            self.token_blacklist[jti] = TokenBlacklistEntry(jti=jti, expires_at=expires_at)

    def is_token_blacklisted(self, jti: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.token_blacklist.get(jti)
            return bool(entry and entry.expires_at > now)

    # sessions
    def create_session(self, user_id: str, token_id: str) -> UserSession:
        with self._data_lock:
            existing = self.sessions.get((user_id, token_id))
            if existing and existing.is_active:
                raise ConstraintViolation(
                    "active session already exists",
                    {"user_id": user_id, "token_id": token_id},
                )
            session = UserSession.new(user_id, token_id)
            self.sessions[(user_id, token_id)] = session
            return replace(session)

    def get_active_session(self, user_id: str, token_id: str) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get((user_id, token_id))
            if not session or not session.is_active:
                return None
            return replace(session)

    def touch_session(self, user_id: str, token_id: str, at: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get((user_id, token_id))
            if session:
                session.last_activity_at = at

    def end_session(self, user_id: str, token_id: str, at: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get((user_id, token_id))
            if session and session.is_active:
                session.is_active = False
                session.ended_at = at
