from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.service.errors import InvalidSessionError, SessionExpiredError
from trialguard.storage.common import AuthStore
from trialguard.storage.models import AccountType, UserSession

if TYPE_CHECKING:
    from trialguard.service.tokens import UserContext

logger = get_logger(__name__)


class SessionGuard:
    """Enforces per-type inactivity timeouts on server-side sessions.

    Sessions move Active -> Ended only; an ended session is never revived.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timeout_seconds(self, user_type: str) -> int:
        # Unknown user types get the stricter patient timeout
        if user_type == AccountType.PHYSICIAN.value:
            return self.settings.physician_session_timeout_seconds
        return self.settings.patient_session_timeout_seconds

    async def check(self, user: "UserContext") -> UserSession:
        if not user.token_id:
            raise InvalidSessionError("Invalid session")
        session = self.store.get_active_session(user.id, user.token_id)
        if not session:
            raise InvalidSessionError("Invalid session")

        now = self._now()
        inactive_seconds = (now - session.last_activity_at).total_seconds()
        timeout = self.timeout_seconds(user.user_type)
        if inactive_seconds > timeout:
            self.store.end_session(user.id, user.token_id, now)
            self.logger.info(
                "session_expired",
                user_type=user.user_type,
                inactive_seconds=int(inactive_seconds),
                timeout_seconds=timeout,
            )
            raise SessionExpiredError(
                "Session expired due to inactivity",
                detail={"timeout_seconds": timeout},
            )

        self.store.touch_session(user.id, user.token_id, now)
        session.last_activity_at = now
        return session

    async def invalidate(self, user_id: str, token_id: str) -> None:
        self.store.end_session(user_id, token_id, self._now())
        self.logger.info("session_invalidated")
