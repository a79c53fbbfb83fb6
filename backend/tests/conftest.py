"""Shared test fixtures and configuration for backend tests."""
from datetime import timedelta
from typing import Callable, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from taskchat.auth.schemas import Identity, Role
from taskchat.auth.service import TokenVerifier
from taskchat.config import AppSettings, DatabaseSettings, JWTSecrets, Secrets
from taskchat.database import Database
from taskchat.main import create_app
from taskchat.users.schemas import User
from taskchat.users.service import UserDirectory

TEST_SECRET = "test-secret"


@pytest.fixture
def settings() -> AppSettings:
    """In-memory database and a fixed signing secret."""
    return AppSettings(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def client(settings):
    """TestClient with the lifespan running (channel, verifier and DB wired)."""
    Database.reset_instance()
    with TestClient(create_app(settings)) as test_client:
        yield test_client
    Database.reset_instance()


@pytest.fixture
def users(client) -> Dict[str, User]:
    """Seed accounts: the support admin (id 1) and three students."""
    directory = UserDirectory(Database.get_instance())
    return {
        "admin": directory.create("support", Role.ADMIN),
        "alice": directory.create("alice", Role.STUDENT, university_id="s1001"),
        "bob": directory.create("bob", Role.STUDENT, university_id="s1002"),
        "carol": directory.create("carol", Role.STUDENT, university_id="s1003"),
    }


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(secret_key=TEST_SECRET)


@pytest.fixture
def token_for(verifier) -> Callable[..., str]:
    """Mint a token for a seeded user."""

    def _token(user: User, expires_in: Optional[timedelta] = None) -> str:
        return verifier.issue(Identity(id=user.id, role=user.role), expires_in=expires_in)

    return _token


@pytest.fixture
def auth_headers(token_for) -> Callable[[User], dict]:
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {token_for(user)}"}

    return _headers
