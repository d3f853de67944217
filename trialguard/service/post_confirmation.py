from __future__ import annotations

from typing import Any, Mapping, Optional

from trialguard.logging import get_logger
from trialguard.service.audit import AuditLogSink
from trialguard.service.pre_signup import hash_invitation_token
from trialguard.storage.common import AuthStore
from trialguard.storage.models import Account, AccountStatus, AccountType, Invitation

logger = get_logger(__name__)


def _attribute_true(value: Any) -> bool:
    return str(value).lower() == "true" if value is not None else False


class PostConfirmationProvisioner:
    """Creates or activates the local account once the identity provider confirms a user.

    Never raises: a failed provisioning is logged and audited, and the
    confirmation itself proceeds.
    """

    def __init__(self, store: AuthStore, audit: AuditLogSink) -> None:
        self.store = store
        self.audit = audit
        self.logger = logger

    async def provision(
        self,
        account_type: AccountType,
        user_attributes: Mapping[str, Any],
        source_ip: Optional[str] = None,
    ) -> Optional[Account]:
        email = user_attributes.get("email")
        external_user_id = user_attributes.get("sub")
        try:
            if account_type is AccountType.PHYSICIAN:
                account = self._provision_physician(user_attributes)
            else:
                account = self._provision_patient(user_attributes)
        except Exception as exc:
            self.logger.error(
                "post_confirmation_failed",
                account_type=account_type.value,
                error=str(exc),
            )
            await self.audit.record(
                "user_confirmation_error",
                email,
                {"error": str(exc), "external_user_id": external_user_id},
            )
            return None

        await self.audit.record(
            "user_confirmation",
            email,
            {
                "user_type": account_type.value,
                "external_user_id": external_user_id,
                "source_ip": source_ip or "unknown",
            },
        )
        self.logger.info("user_provisioned", account_type=account_type.value)
        return account

    def _provision_physician(self, attributes: Mapping[str, Any]) -> Account:
        email = attributes["email"]
        invitation = self._physician_invitation(email)
        account = self.store.create_account(
            Account(
                id="",
                email=email,
                account_type=AccountType.PHYSICIAN,
                status=AccountStatus.ACTIVE.value,
                email_verified=_attribute_true(attributes.get("email_verified")),
                external_user_id=attributes.get("sub"),
                first_name=attributes.get("given_name") or "",
                last_name=attributes.get("family_name") or "",
                medical_license=attributes.get("custom:medical_license") or "",
                organization_id=(
                    attributes.get("custom:organization_id")
                    or (invitation.organization_id if invitation else None)
                ),
            )
        )
        if invitation:
            self.store.mark_invitation_used(AccountType.PHYSICIAN, invitation.id, account.id)
        return account

    def _provision_patient(self, attributes: Mapping[str, Any]) -> Account:
        email = attributes["email"]
        invitation = self._patient_invitation(attributes.get("custom:invitation_token"))

        account = None
        if invitation and invitation.patient_id:
            fields = {
                "external_user_id": attributes.get("sub"),
                "email": email,
                "email_verified": _attribute_true(attributes.get("email_verified")),
                "status": AccountStatus.ACTIVE.value,
            }
            if attributes.get("given_name"):
                fields["first_name"] = attributes["given_name"]
            if attributes.get("family_name"):
                fields["last_name"] = attributes["family_name"]
            if attributes.get("custom:patient_id"):
                fields["patient_code"] = attributes["custom:patient_id"]
            account = self.store.update_account(
                AccountType.PATIENT, invitation.patient_id, **fields
            )
        if account is None:
            account = self.store.create_account(
                Account(
                    id="",
                    email=email,
                    account_type=AccountType.PATIENT,
                    status=AccountStatus.ACTIVE.value,
                    email_verified=_attribute_true(attributes.get("email_verified")),
                    external_user_id=attributes.get("sub"),
                    first_name=attributes.get("given_name") or "",
                    last_name=attributes.get("family_name") or "",
                    patient_code=attributes.get("custom:patient_id"),
                )
            )
        if invitation:
            self.store.mark_invitation_used(AccountType.PATIENT, invitation.id, account.id)
        return account

    def _physician_invitation(self, email: str) -> Optional[Invitation]:
        try:
            invitations = self.store.list_physician_invitations(email)
        except Exception as exc:
            self.logger.warning("physician_invitation_lookup_failed", error=str(exc))
            return None
        return next((inv for inv in invitations if inv.is_consumable()), None)

    def _patient_invitation(self, token: Optional[str]) -> Optional[Invitation]:
        if not token:
            return None
        try:
            invitation = self.store.get_patient_invitation_by_hash(hash_invitation_token(token))
        except Exception as exc:
            self.logger.warning("patient_invitation_lookup_failed", error=str(exc))
            return None
        if invitation and invitation.is_consumable():
            return invitation
        return None
