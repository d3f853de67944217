from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from trialguard.logging import get_logger
from trialguard.storage.common import (
    check_account_fields,
    ensure_aware,
    parse_json_details,
    safe_row_value,
)
from trialguard.storage.errors import ConstraintViolation
from trialguard.storage.models import (
    Account,
    AccountType,
    AuditLogEntry,
    Invitation,
    UserSession,
    utcnow,
)

_REQUIRED_TABLES = [
    "physicians",
    "patients",
    "physician_invitations",
    "patient_invitations",
    "audit_logs",
    "rate_limit_log",
    "token_blacklist",
    "user_sessions",
]


class PostgresStore:
    """Postgres-backed store; every call is one parameterized statement."""

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run the database migrations first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _table(account_type: AccountType) -> sql.Identifier:
        return sql.Identifier(account_type.table)

    @staticmethod
    def _account_from_row(account_type: AccountType, row: dict) -> Account:
        mfa_methods = row.get("mfa_methods")
        if isinstance(mfa_methods, str):
            try:
                mfa_methods = json.loads(mfa_methods)
            except ValueError:
                pass
        return Account(
            id=str(row["id"]),
            email=row["email"],
            account_type=account_type,
            status=row.get("status") or "pending",
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=ensure_aware(row.get("locked_until")),
            email_verified=bool(row.get("email_verified")),
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_methods=mfa_methods or None,
            emergency_access_until=ensure_aware(
                safe_row_value(row, "emergency_access_until")
            ),
            external_user_id=row.get("cognito_user_id"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            organization_id=safe_row_value(row, "organization_id"),
            medical_license=safe_row_value(row, "medical_license"),
            patient_code=safe_row_value(row, "patient_code"),
            last_login_at=ensure_aware(row.get("last_login")),
            last_login_ip=row.get("last_login_ip"),
            last_failed_login_at=ensure_aware(row.get("last_failed_login")),
            last_failed_ip=row.get("last_failed_ip"),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _invitation_from_row(account_type: AccountType, row: dict) -> Invitation:
        return Invitation(
            id=str(row["id"]),
            account_type=account_type,
            email=row.get("email"),
            token_hash=safe_row_value(row, "token_hash"),
            organization_id=safe_row_value(row, "organization_id"),
            patient_id=(
                str(row["patient_id"]) if safe_row_value(row, "patient_id") else None
            ),
            expires_at=ensure_aware(row["expires_at"]),
            used_at=ensure_aware(row.get("used_at")),
            used_by=safe_row_value(row, "used_by_id"),
            status=row.get("status") or "active",
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    # accounts
    def get_account(self, account_type: AccountType, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                sql.SQL("SELECT * FROM {} WHERE email = %s").format(self._table(account_type)),
                (email,),
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(account_type, row)

    def account_exists(self, account_type: AccountType, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                sql.SQL("SELECT 1 AS found FROM {} WHERE email = %s").format(
                    self._table(account_type)
                ),
                (email,),
            ).fetchone()
        return row is not None

    def create_account(self, account: Account) -> Account:
        columns = {
            "cognito_user_id": account.external_user_id,
            "email": account.email,
            "first_name": account.first_name or "",
            "last_name": account.last_name or "",
            "email_verified": account.email_verified,
            "status": account.status,
            "mfa_enabled": account.mfa_enabled,
            "mfa_methods": (
                json.dumps(account.mfa_methods) if account.mfa_methods is not None else None
            ),
        }
        if account.account_type is AccountType.PHYSICIAN:
            columns["medical_license"] = account.medical_license or ""
            columns["organization_id"] = account.organization_id
        else:
            columns["patient_code"] = account.patient_code
        query = sql.SQL(
            "INSERT INTO {table} ({cols}, created_at, updated_at) "
            "VALUES ({vals}, now(), now()) RETURNING *"
        ).format(
            table=self._table(account.account_type),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, tuple(columns.values())).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(account.account_type, row)

    def update_account(
        self, account_type: AccountType, account_id: str, **fields: Any
    ) -> Optional[Account]:
        check_account_fields(fields)
        if not fields:
            return None
        columns = {
            ("cognito_user_id" if name == "external_user_id" else name): (
                json.dumps(value) if name == "mfa_methods" and value is not None else value
            )
            for name, value in fields.items()
        }
        query = sql.SQL(
            "UPDATE {table} SET {assignments}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(
            table=self._table(account_type),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
            ),
        )
        with self._connect() as conn:
            row = conn.execute(query, (*columns.values(), account_id)).fetchone()
        if not row:
            return None
        return self._account_from_row(account_type, row)

    def lock_account(
        self, account_type: AccountType, email: str, locked_until: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    """
                    UPDATE {} SET
                        locked_until = %s,
                        status = 'locked',
                        updated_at = now()
                    WHERE email = %s
                    """
                ).format(self._table(account_type)),
                (locked_until, email),
            )

    def unlock_account(
        self, account_type: AccountType, email: str, *, restore_active: bool = True
    ) -> None:
        status_clause = "status = 'active'," if restore_active else ""
        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    """
                    UPDATE {} SET
                        locked_until = NULL,
                        failed_login_attempts = 0,
                        """
                    + status_clause
                    + """
                        updated_at = now()
                    WHERE email = %s
                    """
                ).format(self._table(account_type)),
                (email,),
            )

    def increment_failed_attempts(
        self, account_type: AccountType, email: str, source_ip: Optional[str]
    ) -> None:
        # Atomic increment; the gate's threshold read remains race-prone
        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    """
                    UPDATE {} SET
                        failed_login_attempts = failed_login_attempts + 1,
                        last_failed_login = now(),
                        last_failed_ip = %s,
                        updated_at = now()
                    WHERE email = %s
                    """
                ).format(self._table(account_type)),
                (source_ip or "unknown", email),
            )

    def record_successful_login(
        self, account_type: AccountType, email: str, source_ip: Optional[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    """
                    UPDATE {} SET
                        last_login = now(),
                        last_login_ip = %s,
                        failed_login_attempts = 0,
                        updated_at = now()
                    WHERE email = %s
                    """
                ).format(self._table(account_type)),
                (source_ip or "unknown", email),
            )

    # invitations
    def create_invitation(self, invitation: Invitation) -> Invitation:
        inv_id = invitation.id or str(uuid.uuid4())
        with self._connect() as conn:
            if invitation.account_type is AccountType.PHYSICIAN:
                conn.execute(
                    """
                    INSERT INTO physician_invitations
                        (id, email, organization_id, expires_at, used_at, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, now())
                    """,
                    (
                        inv_id,
                        invitation.email,
                        invitation.organization_id,
                        invitation.expires_at,
                        invitation.used_at,
                        invitation.status,
                    ),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO patient_invitations
                        (id, email, token_hash, organization_id, patient_id, expires_at, used_at, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                    """,
                    (
                        inv_id,
                        invitation.email,
                        invitation.token_hash,
                        invitation.organization_id,
                        invitation.patient_id,
                        invitation.expires_at,
                        invitation.used_at,
                        invitation.status,
                    ),
                )
        invitation.id = inv_id
        return invitation

    def list_physician_invitations(self, email: str) -> List[Invitation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM physician_invitations WHERE email = %s ORDER BY created_at DESC",
                (email,),
            ).fetchall()
        return [self._invitation_from_row(AccountType.PHYSICIAN, row) for row in rows]

    def get_patient_invitation_by_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM patient_invitations WHERE token_hash = %s ORDER BY created_at DESC LIMIT 1",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._invitation_from_row(AccountType.PATIENT, row)

    def mark_invitation_used(
        self, account_type: AccountType, invitation_id: str, used_by: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    "UPDATE {} SET used_at = now(), used_by_id = %s, status = 'used' WHERE id = %s"
                ).format(sql.Identifier(account_type.invitation_table)),
                (used_by, invitation_id),
            )

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (event_type, user_email, details, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.event_type,
                    entry.subject_email,
                    json.dumps(entry.details, default=str),
                    entry.source_ip,
                    entry.user_agent,
                    entry.created_at,
                ),
            )

    def list_audit_logs(
        self,
        *,
        subject_email: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses = []
        params: list[Any] = []
        if subject_email is not None:
            clauses.append("user_email = %s")
            params.append(subject_email)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [
            AuditLogEntry(
                event_type=row["event_type"],
                subject_email=row["user_email"],
                details=parse_json_details(row.get("details")),
                source_ip=row.get("ip_address") or "unknown",
                user_agent=row.get("user_agent") or "unknown",
                created_at=ensure_aware(row.get("created_at")) or utcnow(),
            )
            for row in rows
        ]

    # rate limiting
    def count_rate_limit_requests(
        self, limit_type: str, identifier: str, since: datetime
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS request_count
                FROM rate_limit_log
                WHERE rate_limit_type = %s
                AND identifier = %s
                AND created_at > %s
                """,
                (limit_type, identifier, since),
            ).fetchone()
        return int(row["request_count"]) if row else 0

    def record_rate_limit_request(self, limit_type: str, identifier: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO rate_limit_log (rate_limit_type, identifier, created_at) VALUES (%s, %s, now())",
                (limit_type, identifier),
            )

    def purge_rate_limit_records(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM rate_limit_log WHERE created_at < %s", (before,)
            )
            return result.rowcount

    # token blacklist
    def blacklist_token(self, jti: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO token_blacklist (jti, expires_at, created_at)
                VALUES (%s, %s, now())
                ON CONFLICT (jti) DO NOTHING
                """,
                (jti, expires_at),
            )

    def is_token_blacklisted(self, jti: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM token_blacklist WHERE jti = %s AND expires_at > %s",
                (jti, now),
            ).fetchone()
        return bool(row and row["count"] > 0)

    # sessions
    @staticmethod
    def _session_from_row(row: dict) -> UserSession:
        return UserSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_id=str(row["token_id"]),
            last_activity_at=ensure_aware(row["last_activity"]),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            is_active=bool(row.get("is_active", True)),
            ended_at=ensure_aware(row.get("ended_at")),
        )

    def create_session(self, user_id: str, token_id: str) -> UserSession:
        sess = UserSession.new(user_id, token_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_sessions (user_id, token_id, last_activity, created_at, is_active)
                    VALUES (%s, %s, %s, %s, true)
                    RETURNING *
                    """,
                    (user_id, token_id, sess.last_activity_at, sess.created_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "active session already exists",
                {"user_id": user_id, "token_id": token_id},
            )
        return self._session_from_row(row)

    def get_active_session(self, user_id: str, token_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, token_id, last_activity, created_at, is_active, ended_at
                FROM user_sessions
                WHERE user_id = %s
                AND token_id = %s
                AND is_active = true
                """,
                (user_id, token_id),
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def touch_session(self, user_id: str, token_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_sessions SET last_activity = %s WHERE user_id = %s AND token_id = %s",
                (at, user_id, token_id),
            )

    def end_session(self, user_id: str, token_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_sessions SET
                    is_active = false,
                    ended_at = %s
                WHERE user_id = %s
                AND token_id = %s
                AND is_active = true
                """,
                (at, user_id, token_id),
            )
