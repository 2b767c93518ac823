"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp-file store.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("IDENTITY_SIGNING_KEY", "fake-signing-key-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("FCM_PROJECT_ID", "")

from datetime import datetime, timezone

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_household.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a HouseholdStore backed by a temp file."""
    from src.data.db import HouseholdStore
    return HouseholdStore(db_path=tmp_db_path)


@pytest.fixture
def identity():
    """Return a JWT identity issuer with a test key."""
    from src.adapters.jwt_identity import JwtIdentityIssuer
    return JwtIdentityIssuer("test-signing-key", issuer="test-issuer")


@pytest.fixture
def now():
    """A fixed evaluation instant."""
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def add_member(store):
    """Factory: create a household (if needed) and a member in it."""
    from src.data.models import Household, Member

    def _add(
        household_id: str,
        member_id: str,
        qr_id: str | None = "qr-initial",
        tokens: list[str] | None = None,
        points: int = 0,
    ):
        if store.get_household(household_id) is None:
            store.batch().create_household(
                Household(id=household_id, created_at=datetime.now(timezone.utc))
            ).commit()
        member = Member(
            household_id=household_id,
            id=member_id,
            uid=member_id,
            display_name=member_id.title(),
            qr_id=qr_id,
            notification_tokens=tokens or [],
            points=points,
        )
        store.batch().create_member(member).commit()
        return member

    return _add
