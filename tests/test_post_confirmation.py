from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from trialguard.service.post_confirmation import PostConfirmationProvisioner
from trialguard.service.pre_signup import hash_invitation_token
from trialguard.storage.models import Account, AccountType, Invitation


def _expires():
    return datetime.now(timezone.utc) + timedelta(days=3)


@pytest.fixture
def provisioner(memory_store, audit):
    return PostConfirmationProvisioner(memory_store, audit)


class TestPhysicianProvisioning:
    async def test_creates_account_and_consumes_invitation(self, provisioner, memory_store):
        invitation = memory_store.create_invitation(
            Invitation(
                id="",
                account_type=AccountType.PHYSICIAN,
                email="doc@clinic.org",
                organization_id="org-7",
                expires_at=_expires(),
            )
        )

        account = await provisioner.provision(
            AccountType.PHYSICIAN,
            {
                "email": "doc@clinic.org",
                "sub": "idp-123",
                "email_verified": "true",
                "given_name": "Ada",
                "custom:medical_license": "MD12345",
            },
        )

        assert account.status == "active"
        assert account.email_verified is True
        assert account.organization_id == "org-7"
        assert account.external_user_id == "idp-123"
        used = memory_store.invitations[AccountType.PHYSICIAN][invitation.id]
        assert used.status == "used"
        assert used.used_by == account.id
        assert len(memory_store.list_audit_logs(event_type="user_confirmation")) == 1


class TestPatientProvisioning:
    async def test_activates_precreated_record(self, provisioner, memory_store):
        existing = memory_store.create_account(
            Account(
                id="",
                email="placeholder@example.org",
                account_type=AccountType.PATIENT,
                status="pending",
            )
        )
        memory_store.create_invitation(
            Invitation(
                id="",
                account_type=AccountType.PATIENT,
                token_hash=hash_invitation_token("tok-9"),
                patient_id=existing.id,
                expires_at=_expires(),
            )
        )

        account = await provisioner.provision(
            AccountType.PATIENT,
            {
                "email": "pat@example.org",
                "sub": "idp-9",
                "email_verified": "true",
                "custom:invitation_token": "tok-9",
                "custom:patient_id": "PAT-ABC-123456",
            },
        )

        assert account.id == existing.id
        assert account.status == "active"
        assert account.email == "pat@example.org"
        assert account.patient_code == "PAT-ABC-123456"
        assert len(memory_store.accounts[AccountType.PATIENT]) == 1

    async def test_creates_new_patient_without_invitation_record(self, provisioner, memory_store):
        account = await provisioner.provision(
            AccountType.PATIENT, {"email": "pat@example.org", "sub": "idp-1"}
        )

        assert account.email_verified is False
        assert memory_store.account_exists(AccountType.PATIENT, "pat@example.org")


class TestFailureHandling:
    async def test_failure_is_audited_and_swallowed(self, provisioner, memory_store):
        with patch.object(memory_store, "create_account", side_effect=RuntimeError("db down")):
            result = await provisioner.provision(
                AccountType.PHYSICIAN, {"email": "doc@clinic.org", "sub": "idp-1"}
            )

        assert result is None
        errors = memory_store.list_audit_logs(event_type="user_confirmation_error")
        assert len(errors) == 1
        assert errors[0].details["error"] == "db down"

    async def test_duplicate_account_is_swallowed(self, provisioner, make_account):
        make_account("doc@clinic.org", AccountType.PHYSICIAN)

        result = await provisioner.provision(AccountType.PHYSICIAN, {"email": "doc@clinic.org"})

        assert result is None
