"""Tests for registration screening and signup side effects."""

import hashlib
import itertools
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from trialguard.service.errors import (
    DuplicateAccountError,
    InvalidInvitationError,
    InvalidMedicalLicenseError,
    ValidationError,
)
from trialguard.service.pre_signup import (
    PreSignupValidator,
    apply_signup_side_effects,
    generate_patient_id,
    hash_invitation_token,
    validate_medical_license,
)
from trialguard.storage.models import AccountType, Invitation


def _now():
    return datetime.now(timezone.utc)


@pytest.fixture
def validator(memory_store, audit, settings):
    return PreSignupValidator(memory_store, audit, settings)


def _physician_invitation(memory_store, email, **fields):
    values = {
        "id": "",
        "account_type": AccountType.PHYSICIAN,
        "email": email,
        "expires_at": _now() + timedelta(days=7),
    }
    values.update(fields)
    return memory_store.create_invitation(Invitation(**values))


def _patient_invitation(memory_store, token, **fields):
    values = {
        "id": "",
        "account_type": AccountType.PATIENT,
        "token_hash": hash_invitation_token(token),
        "expires_at": _now() + timedelta(days=7),
    }
    values.update(fields)
    return memory_store.create_invitation(Invitation(**values))


class TestMedicalLicense:
    @pytest.mark.parametrize("value", ["00000", "11111", "TEST123", "demo01", "MD12", "", None])
    def test_rejected(self, value):
        with pytest.raises(InvalidMedicalLicenseError):
            validate_medical_license(value)

    def test_short_license_message(self):
        with pytest.raises(InvalidMedicalLicenseError) as exc_info:
            validate_medical_license("AB1")
        assert exc_info.value.message == "Invalid medical license format"

    def test_pattern_message(self):
        with pytest.raises(InvalidMedicalLicenseError) as exc_info:
            validate_medical_license("DeMo-9988")
        assert exc_info.value.message == "Invalid medical license number"

    def test_accepts_realistic_license(self):
        validate_medical_license("MD12345")


class TestHelpers:
    def test_token_hash_is_sha256_hex(self):
        assert hash_invitation_token("abc") == hashlib.sha256(b"abc").hexdigest()

    def test_patient_id_format(self):
        patient_id = generate_patient_id()
        assert re.fullmatch(r"PAT-[0-9A-Z]+-[0-9A-Z]{6}", patient_id)

    def test_patient_ids_differ(self):
        assert generate_patient_id() != generate_patient_id()

    def test_external_provider_auto_confirms(self):
        event = {
            "triggerSource": "PreSignUp_ExternalProvider",
            "request": {"userAttributes": {"email": "doc@example.org"}},
            "response": {},
        }
        result = apply_signup_side_effects(event, AccountType.PHYSICIAN)
        assert result["response"]["autoConfirmUser"] is True
        assert result["response"]["autoVerifyEmail"] is True
        assert "userAttributes" not in result["response"]

    def test_patient_gets_patient_id(self):
        event = {
            "triggerSource": "PreSignUp_SignUp",
            "request": {"userAttributes": {"email": "pat@example.org"}},
            "response": {},
        }
        result = apply_signup_side_effects(event, AccountType.PATIENT)
        attributes = result["response"]["userAttributes"]
        assert attributes["email"] == "pat@example.org"
        assert attributes["custom:patient_id"].startswith("PAT-")
        assert "autoConfirmUser" not in result["response"]


class TestPhysicianSignup:
    async def test_valid_signup(self, validator, memory_store):
        _physician_invitation(memory_store, "doc@clinic.org")

        await validator.validate(
            AccountType.PHYSICIAN,
            {"email": "doc@clinic.org", "custom:medical_license": "MD12345"},
        )

        assert len(memory_store.list_audit_logs(event_type="signup_validated")) == 1

    async def test_domain_not_whitelisted(self, memory_store, audit, settings):
        strict = settings.model_copy(update={"physician_domain_whitelist": ["clinic.org"]})
        validator = PreSignupValidator(memory_store, audit, strict)
        _physician_invitation(memory_store, "doc@gmail.com")

        with pytest.raises(ValidationError) as exc_info:
            await validator.validate(AccountType.PHYSICIAN, {"email": "doc@gmail.com"})
        assert exc_info.value.message == "Email domain not authorized for physician registration"

    async def test_whitelisted_domain_case_insensitive(self, memory_store, audit, settings):
        strict = settings.model_copy(update={"physician_domain_whitelist": ["clinic.org"]})
        validator = PreSignupValidator(memory_store, audit, strict)
        _physician_invitation(memory_store, "doc@Clinic.ORG")

        await validator.validate(AccountType.PHYSICIAN, {"email": "doc@Clinic.ORG"})

    async def test_invitation_required(self, validator, memory_store):
        with pytest.raises(InvalidInvitationError) as exc_info:
            await validator.validate(AccountType.PHYSICIAN, {"email": "doc@clinic.org"})
        assert exc_info.value.message == "Valid physician invitation required for registration"
        assert len(memory_store.list_audit_logs(event_type="signup_rejected")) == 1

    async def test_used_invitation_rejected(self, validator, memory_store):
        _physician_invitation(memory_store, "doc@clinic.org", used_at=_now())

        with pytest.raises(InvalidInvitationError):
            await validator.validate(AccountType.PHYSICIAN, {"email": "doc@clinic.org"})

    async def test_bad_license_rejected(self, validator, memory_store):
        _physician_invitation(memory_store, "doc@clinic.org")

        with pytest.raises(InvalidMedicalLicenseError):
            await validator.validate(
                AccountType.PHYSICIAN,
                {"email": "doc@clinic.org", "custom:medical_license": "TEST123"},
            )

    async def test_duplicate_physician(self, validator, memory_store, make_account):
        _physician_invitation(memory_store, "doc@clinic.org")
        make_account("doc@clinic.org", AccountType.PHYSICIAN)

        with pytest.raises(DuplicateAccountError):
            await validator.validate(AccountType.PHYSICIAN, {"email": "doc@clinic.org"})

    async def test_duplicate_lookup_failure_allows_signup(self, validator, memory_store):
        _physician_invitation(memory_store, "doc@clinic.org")

        with patch.object(memory_store, "account_exists", side_effect=RuntimeError("db down")):
            await validator.validate(AccountType.PHYSICIAN, {"email": "doc@clinic.org"})

    async def test_invitation_lookup_failure_rejects(self, validator, memory_store):
        with patch.object(
            memory_store, "list_physician_invitations", side_effect=RuntimeError("db down")
        ):
            with pytest.raises(InvalidInvitationError) as exc_info:
                await validator.validate(AccountType.PHYSICIAN, {"email": "doc@clinic.org"})
        assert exc_info.value.message == "Unable to validate physician invitation"


class TestPatientSignup:
    async def test_valid_signup(self, validator, memory_store):
        _patient_invitation(memory_store, "tok-1", email="pat@example.org")

        await validator.validate(
            AccountType.PATIENT,
            {"email": "pat@example.org", "custom:invitation_token": "tok-1"},
        )

    async def test_token_required(self, validator):
        with pytest.raises(InvalidInvitationError) as exc_info:
            await validator.validate(AccountType.PATIENT, {"email": "pat@example.org"})
        assert exc_info.value.message == "Patient invitation token is required"

    async def test_unknown_token(self, validator):
        with pytest.raises(InvalidInvitationError) as exc_info:
            await validator.validate(
                AccountType.PATIENT,
                {"email": "pat@example.org", "custom:invitation_token": "nope"},
            )
        assert exc_info.value.message == "Invalid or expired patient invitation"

    @pytest.mark.parametrize(
        "used,expired,inactive",
        list(itertools.product([False, True], repeat=3)),
    )
    async def test_invitation_state_combinations(
        self, validator, memory_store, used, expired, inactive
    ):
        _patient_invitation(
            memory_store,
            "tok-combo",
            used_at=_now() - timedelta(hours=1) if used else None,
            expires_at=_now() - timedelta(minutes=1) if expired else _now() + timedelta(days=1),
            status="revoked" if inactive else "active",
        )
        attributes = {"email": "pat@example.org", "custom:invitation_token": "tok-combo"}

        if used or expired or inactive:
            with pytest.raises(InvalidInvitationError):
                await validator.validate(AccountType.PATIENT, attributes)
        else:
            await validator.validate(AccountType.PATIENT, attributes)

    async def test_email_mismatch(self, validator, memory_store):
        _patient_invitation(memory_store, "tok-1", email="someone@example.org")

        with pytest.raises(InvalidInvitationError) as exc_info:
            await validator.validate(
                AccountType.PATIENT,
                {"email": "pat@example.org", "custom:invitation_token": "tok-1"},
            )
        assert exc_info.value.message == "Email does not match invitation"

    async def test_invitation_without_email_accepts_any(self, validator, memory_store):
        _patient_invitation(memory_store, "tok-1")

        await validator.validate(
            AccountType.PATIENT,
            {"email": "anyone@example.org", "custom:invitation_token": "tok-1"},
        )

    async def test_duplicate_patient(self, validator, memory_store, make_account):
        _patient_invitation(memory_store, "tok-1")
        make_account("pat@example.org", AccountType.PATIENT)

        with pytest.raises(DuplicateAccountError):
            await validator.validate(
                AccountType.PATIENT,
                {"email": "pat@example.org", "custom:invitation_token": "tok-1"},
            )

    async def test_lookup_failure_rejects(self, validator, memory_store):
        with patch.object(
            memory_store, "get_patient_invitation_by_hash", side_effect=RuntimeError("db down")
        ):
            with pytest.raises(InvalidInvitationError) as exc_info:
                await validator.validate(
                    AccountType.PATIENT,
                    {"email": "pat@example.org", "custom:invitation_token": "tok-1"},
                )
        assert exc_info.value.message == "Unable to validate patient invitation"
