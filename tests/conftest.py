"""Shared test fixtures for the identity service test suite.

Storage is the in-memory AuthStore and Valkey is fakeredis, so the suite
runs without external services. Time-dependent modules read the clock
through their own `now_utc` name, which the `clock` fixture replaces.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock

import fakeredis
import pytest
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module.reset_vault_cache()

from auth.access_gate import AccessGate
from auth.config import AuthConfig
from auth.credentials import CredentialStore
from auth.memory_store import MemoryAuthStore
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import SessionManager
from auth.tokens import TokenIssuer
from auth.types import ProfileFields, User
from auth.verification import VerificationCodeManager
from clients.email_client import EmailGatewayClient
from clients.valkey_client import ValkeyClient


# =============================================================================
# TEST CONSTANTS
# =============================================================================

ACCESS_SECRET = "test-access-secret-0123456789abcdef"
REFRESH_SECRET = "test-refresh-secret-fedcba9876543210"
TEST_PASSWORD = "Abc123!@#"
TEST_EMAIL = "user@example.com"

# Modules whose `now_utc` the clock fixture replaces. auth.tokens is left on
# real time because python-jose checks exp against the real clock.
CLOCKED_MODULES = (
    "auth.credentials",
    "auth.verification",
    "auth.session",
)


class Clock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock(monkeypatch):
    """Frozen clock starting at the real current time."""
    clock = Clock(datetime.now(timezone.utc).replace(microsecond=0))
    for module in CLOCKED_MODULES:
        monkeypatch.setattr(f"{module}.now_utc", clock)
    return clock


# =============================================================================
# INFRASTRUCTURE FIXTURES
# =============================================================================


@pytest.fixture
def config():
    """Rate limiting active (development), cheap bcrypt."""
    return AuthConfig(environment="development", bcrypt_rounds=4)


@pytest.fixture
def store():
    return MemoryAuthStore()


@pytest.fixture
def valkey():
    """ValkeyClient over an in-process fake server."""
    client = ValkeyClient(client=fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True))
    yield client
    client.close()


@pytest.fixture
def notifier():
    """Mock email client - no actual emails sent in tests."""
    mock = Mock(spec=EmailGatewayClient)
    mock.send_verification_code.return_value = None
    mock.send_welcome.return_value = None
    return mock


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================


@pytest.fixture
def credentials(store, config):
    return CredentialStore(store, bcrypt_rounds=config.bcrypt_rounds)


@pytest.fixture
def codes(store, notifier, config):
    return VerificationCodeManager(store, notifier, config)


@pytest.fixture
def tokens(config):
    return TokenIssuer(ACCESS_SECRET, REFRESH_SECRET, config)


@pytest.fixture
def sessions(store, config):
    return SessionManager(store, config)


@pytest.fixture
def limiter(valkey, config):
    return RateLimiter(valkey, config)


@pytest.fixture
def security_logger():
    return Mock(spec=SecurityLogger)


@pytest.fixture
def auth_service(config, store, credentials, codes, tokens, sessions, notifier, security_logger):
    return AuthService(
        config=config,
        store=store,
        credentials=credentials,
        codes=codes,
        tokens=tokens,
        sessions=sessions,
        notifier=notifier,
        security_logger=security_logger,
    )


@pytest.fixture
def gate(tokens, sessions, credentials):
    return AccessGate(tokens, sessions, credentials)


@pytest.fixture
def make_user(credentials):
    """Create users directly through the CredentialStore.

    active=True also verifies the email and activates the account.
    """

    def _make(
        email: str = TEST_EMAIL,
        password: str = TEST_PASSWORD,
        active: bool = True,
        first_name: str = "Alice",
        last_name: str = "Baker",
    ) -> User:
        user = credentials.create(
            email,
            password,
            ProfileFields(first_name=first_name, last_name=last_name),
        )
        if active:
            user = credentials.mark_email_verified(user.id)
        return user

    return _make
