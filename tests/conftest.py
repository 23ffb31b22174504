"""Pytest configuration and fixtures for test suite."""

import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict

import pytest

# Set test environment BEFORE any other imports
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("DB_DRIVER", "sqlite+aiosqlite")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from config.settings import Settings, VerificationSettings  # noqa: E402
from efiling.authority import SandboxFilingAuthority  # noqa: E402
from efiling.factory import build_workflow  # noqa: E402
from efiling.models import (  # noqa: E402
    CertificateDetails,
    SubjectIdentity,
    SubjectRelationship,
)
from efiling.providers import SandboxIdentityProvider  # noqa: E402
from efiling.repository import InMemoryFilingRepository  # noqa: E402
from tests.helpers.filing_flow import FakeClock  # noqa: E402


def _reset_db_modules():
    """Reset database module globals to ensure clean state."""
    import database.async_engine as module
    module._async_engine = None
    module._async_session_factory = None


@pytest.fixture(autouse=True)
def reset_database_globals():
    """Reset database module globals before and after each test."""
    _reset_db_modules()
    yield
    _reset_db_modules()


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def provider():
    return SandboxIdentityProvider()


@pytest.fixture
def authority():
    return SandboxFilingAuthority()


@pytest.fixture
def repository(clock):
    return InMemoryFilingRepository(clock=clock)


@pytest.fixture
def verification_settings():
    return VerificationSettings()


@pytest.fixture
def settings():
    return Settings(environment="test", storage_backend="memory")


@pytest.fixture
def workflow(settings, repository, provider, authority, clock):
    """Workflow wired to sandbox collaborators and the fake clock."""
    return build_workflow(
        settings,
        repository=repository,
        provider=provider,
        authority=authority,
        clock=clock,
    )


# =============================================================================
# SUBJECTS
# =============================================================================

@pytest.fixture
def subject(clock):
    """Taxpayer with credentials for every verification method."""
    return SubjectIdentity(
        taxpayer_id="ABCPK1234F",
        name="Priya Kumar",
        relationship=SubjectRelationship.SELF,
        aadhaar_number="123456789012",
        bank_account_number="000123456789",
        ifsc="HDFC0001234",
        bank_code="HDFC",
        demat_dp_id="IN301234",
        demat_client_id="10456789",
        certificate=CertificateDetails(
            serial_number="5A3F19",
            subject_name="PRIYA KUMAR",
            issuer="Sandbox CA",
            valid_from=clock() - timedelta(days=365),
            valid_to=clock() + timedelta(days=365),
        ),
    )


@pytest.fixture
def spouse():
    return SubjectIdentity(
        taxpayer_id="ABCPS5678K",
        name="Arjun Sharma",
        relationship=SubjectRelationship.SPOUSE,
        aadhaar_number="987654321098",
    )


@pytest.fixture
def liability() -> Dict[str, Any]:
    return {"total_income": 1250000, "tax_payable": 117000, "refund_due": 0}

