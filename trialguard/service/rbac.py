from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from trialguard.logging import get_logger
from trialguard.service.audit import AuditLogSink
from trialguard.service.errors import ForbiddenError

if TYPE_CHECKING:
    from trialguard.service.tokens import UserContext

logger = get_logger(__name__)

# Permission catalog per user type, with the human readable grant
PERMISSIONS: Dict[str, Dict[str, str]] = {
    "physician": {
        "patients:read": "Read patient information",
        "patients:write": "Create and update patient records",
        "patients:invite": "Send patient invitations",
        "patients:archive": "Archive patient records",
        "questionnaires:read": "Read questionnaires",
        "questionnaires:write": "Create and update questionnaires",
        "questionnaires:publish": "Publish questionnaires",
        "questionnaires:archive": "Archive questionnaires",
        "responses:read": "Read patient responses",
        "responses:export": "Export response data",
        "responses:analyze": "Analyze response data",
        "studies:read": "Read study information",
        "studies:write": "Create and update studies",
        "studies:manage": "Manage study participants",
        "analytics:read": "Access analytics dashboards",
        "reports:generate": "Generate reports",
        "reports:export": "Export reports",
        "users:manage": "Manage user accounts",
        "settings:write": "Modify system settings",
        "audit:read": "Access audit logs",
    },
    "patient": {
        "profile:read": "Read own profile",
        "profile:write": "Update own profile",
        "questionnaires:read": "Read assigned questionnaires",
        "responses:write": "Submit questionnaire responses",
        "responses:read": "Read own responses",
        "files:upload": "Upload media files",
        "files:read": "Access own uploaded files",
        "studies:read": "Read assigned study information",
        "consent:manage": "Manage consent forms",
    },
    "admin": {
        "system:admin": "Full system administration",
        "users:admin": "Full user management",
        "data:admin": "Full data access and management",
        "security:admin": "Security administration",
    },
}

# Permissions embedded in issued access tokens
TOKEN_PERMISSIONS: Dict[str, List[str]] = {
    "physician": [
        "read:patients",
        "write:patients",
        "read:questionnaires",
        "write:questionnaires",
        "read:analytics",
    ],
    "patient": [
        "read:own_data",
        "write:own_responses",
        "read:questionnaires",
    ],
}


def token_permissions_for(user_type: str) -> List[str]:
    return list(TOKEN_PERMISSIONS.get(user_type, []))


def has_permissions(user: "UserContext", required: Iterable[str]) -> bool:
    granted = set(user.permissions or [])
    return all(permission in granted for permission in required)


async def require_permissions(
    user: "UserContext",
    required: Iterable[str],
    audit: Optional[AuditLogSink] = None,
    *,
    resource: Optional[str] = None,
) -> None:
    required = list(required)
    if has_permissions(user, required):
        return
    missing = sorted(set(required) - set(user.permissions or []))
    logger.warning(
        "permission_denied", user_type=user.user_type, missing=missing, resource=resource
    )
    if audit:
        await audit.record(
            "permission_denied",
            user.email,
            {
                "user_id": user.id,
                "user_type": user.user_type,
                "required_permissions": required,
                "resource": resource,
            },
        )
    raise ForbiddenError("Insufficient permissions", detail={"missing": missing})
