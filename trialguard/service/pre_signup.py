from __future__ import annotations

import hashlib
import re
import secrets
import time
from typing import Any, Dict, Mapping, Optional

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.service.audit import AuditLogSink
from trialguard.service.errors import (
    DuplicateAccountError,
    InvalidInvitationError,
    InvalidMedicalLicenseError,
    ServiceError,
    ValidationError,
)
from trialguard.storage.common import AuthStore
from trialguard.storage.models import AccountType, Invitation

logger = get_logger(__name__)

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_INVALID_LICENSE_PATTERNS = (
    re.compile(r"^0+$"),
    re.compile(r"^1+$"),
    re.compile(r"test", re.IGNORECASE),
    re.compile(r"demo", re.IGNORECASE),
)
EXTERNAL_PROVIDER_TRIGGER = "PreSignUp_ExternalProvider"


def hash_invitation_token(token: str) -> str:
    """Invitations store only the SHA-256 hex digest of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def validate_medical_license(license_number: Optional[str]) -> None:
    """Basic format screening; registry verification happens outside this service."""
    if not license_number or len(license_number) < 5:
        raise InvalidMedicalLicenseError("Invalid medical license format")
    for pattern in _INVALID_LICENSE_PATTERNS:
        if pattern.search(license_number):
            raise InvalidMedicalLicenseError("Invalid medical license number")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_patient_id() -> str:
    """``PAT-<base36 ms timestamp>-<6 random base36 chars>``, uppercased."""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(6))
    return f"PAT-{timestamp}-{suffix}".upper()


def apply_signup_side_effects(event: Dict[str, Any], account_type: AccountType) -> Dict[str, Any]:
    """Mutate the hook event after a successful validation and return it."""
    request = event.get("request") or {}
    response = event.setdefault("response", {})
    if event.get("triggerSource") == EXTERNAL_PROVIDER_TRIGGER:
        response["autoConfirmUser"] = True
        response["autoVerifyEmail"] = True
    if account_type is AccountType.PATIENT:
        response["userAttributes"] = {
            **(request.get("userAttributes") or {}),
            "custom:patient_id": generate_patient_id(),
        }
    return event


class PreSignupValidator:
    """Admits a registration only with a valid invitation and no existing account."""

    def __init__(self, store: AuthStore, audit: AuditLogSink, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings
        self.logger = logger

    async def validate(
        self, account_type: AccountType, user_attributes: Mapping[str, Any]
    ) -> None:
        email = (user_attributes.get("email") or "").strip()
        try:
            if not email:
                raise ValidationError("Email address is required")
            if account_type is AccountType.PHYSICIAN:
                self._validate_physician(email, user_attributes)
            else:
                self._validate_patient(email, user_attributes)
        except ServiceError as exc:
            self.logger.info(
                "signup_rejected",
                account_type=account_type.value,
                error_kind=exc.kind.value,
            )
            await self.audit.record(
                "signup_rejected",
                email or None,
                {"user_type": account_type.value, "error": exc.message},
            )
            raise
        await self.audit.record(
            "signup_validated", email, {"user_type": account_type.value}
        )

    def _validate_physician(self, email: str, attributes: Mapping[str, Any]) -> None:
        domain = email.rsplit("@", 1)[-1].lower()
        whitelist = self.settings.physician_domain_whitelist
        if whitelist and domain not in whitelist:
            raise ValidationError(
                "Email domain not authorized for physician registration",
                detail={"domain": domain},
            )

        try:
            invitations = self.store.list_physician_invitations(email)
        except Exception as exc:
            self.logger.error("physician_invitation_lookup_failed", error=str(exc))
            raise InvalidInvitationError("Unable to validate physician invitation")
        if not any(inv.is_consumable() for inv in invitations):
            raise InvalidInvitationError(
                "Valid physician invitation required for registration"
            )

        license_number = attributes.get("custom:medical_license")
        if license_number:
            validate_medical_license(license_number)

        if self._account_exists(AccountType.PHYSICIAN, email):
            raise DuplicateAccountError("Physician account already exists with this email")

    def _validate_patient(self, email: str, attributes: Mapping[str, Any]) -> None:
        token = attributes.get("custom:invitation_token")
        if not token:
            raise InvalidInvitationError("Patient invitation token is required")

        invitation = self._find_patient_invitation(token)
        if invitation is None or not invitation.is_consumable():
            raise InvalidInvitationError("Invalid or expired patient invitation")
        if invitation.email and invitation.email != email:
            raise InvalidInvitationError("Email does not match invitation")

        if self._account_exists(AccountType.PATIENT, email):
            raise DuplicateAccountError("Patient account already exists with this email")

    def _find_patient_invitation(self, token: str) -> Optional[Invitation]:
        try:
            return self.store.get_patient_invitation_by_hash(hash_invitation_token(token))
        except Exception as exc:
            self.logger.error("patient_invitation_lookup_failed", error=str(exc))
            raise InvalidInvitationError("Unable to validate patient invitation")

    def _account_exists(self, account_type: AccountType, email: str) -> bool:
        try:
            return self.store.account_exists(account_type, email)
        except Exception as exc:
            # Registration proceeds when the duplicate check itself fails
            self.logger.warning(
                "duplicate_account_check_failed",
                account_type=account_type.value,
                error=str(exc),
            )
            return False
