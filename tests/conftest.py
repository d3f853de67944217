import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("RATE_LIMIT_BACKEND", "database")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trialguard.config import Settings  # noqa: E402
from trialguard.service.audit import AuditLogSink  # noqa: E402
from trialguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from trialguard.storage.memory import MemoryStore  # noqa: E402
from trialguard.storage.models import Account, AccountType  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings with the documented defaults and a fixed signing secret."""
    return Settings(jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def audit(memory_store):
    return AuditLogSink(memory_store)


@pytest.fixture
def make_account(memory_store):
    """Create an active, verified, MFA-enabled account; override any field."""

    def _make(email: str, account_type: AccountType = AccountType.PATIENT, **fields):
        values = {
            "id": "",
            "email": email,
            "account_type": account_type,
            "status": "active",
            "email_verified": True,
            "mfa_enabled": True,
            "mfa_methods": ["totp"],
        }
        values.update(fields)
        return memory_store.create_account(Account(**values))

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
