"""Shared pytest fixtures for trust core tests."""
import os
import sys
from datetime import datetime, timezone

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Deterministic test environment, set BEFORE any settings are read.
# TESTING lifts the JWT_SECRET requirement; a fixed secret keeps tokens
# issued by one fixture valid in the next.
# ---------------------------------------------------------------------------
os.environ.setdefault('TESTING', 'true')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret-for-pytest-32chars!')
os.environ.setdefault('AUDIT_SINK', 'memory')
os.environ.setdefault('LOG_FORMAT', 'text')

from config.settings import get_settings  # noqa: E402
from core.timestamps import ManualClock  # noqa: E402
from trust.audit import AuditLog  # noqa: E402
from trust.mfa import MFAService  # noqa: E402
from trust.rbac import RBACEngine  # noqa: E402
from trust.services import TrustServices  # noqa: E402

# 2024-01-01 00:00:00 UTC, aligned to a 30 second TOTP step
EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_settings():
    """Settings are cached; start every test from the environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock():
    return ManualClock(EPOCH)


@pytest.fixture
def audit(clock):
    return AuditLog(clock=clock)


@pytest.fixture
def rbac(audit, clock):
    return RBACEngine(audit_log=audit, clock=clock)


@pytest.fixture
def mfa(audit, rbac, clock):
    return MFAService(audit_log=audit, rbac=rbac, clock=clock)


@pytest.fixture
def services(audit, rbac, mfa):
    return TrustServices(audit=audit, rbac=rbac, mfa=mfa)


@pytest.fixture
def app(services):
    from dashboard.app import create_app
    return create_app(services=services, config={'TESTING': True})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    """Build Authorization headers for a user id."""
    from dashboard.auth import create_token

    def _headers(user_id, **extra):
        headers = {'Authorization': f'Bearer {create_token(user_id)}'}
        headers.update(extra)
        return headers
    return _headers
