"""
Shared fixtures: a controllable clock, fast Argon2 parameters and a wired
orchestrator backed by in-memory stores.
"""

import pytest

from authguard.auth.orchestrator import AuthOrchestrator
from authguard.auth.registration import CredentialHasher
from authguard.auth.totp import base32_to_secret, totp
from authguard.config import Settings
from authguard.integration.event_logger import EventLogger
from authguard.integration.notifications import NotificationOutbox
from authguard.storage.memory import InMemoryAccountStore, InMemoryRateLimitStore


START_TIME = 1_700_000_000.0

ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Str0ng!Pass"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def hasher():
    # Minimal Argon2 cost so the suite stays fast
    return CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def accounts():
    return InMemoryAccountStore()


@pytest.fixture
def rate_limits():
    return InMemoryRateLimitStore()


@pytest.fixture
def outbox():
    return NotificationOutbox()


@pytest.fixture
def events(clock):
    return EventLogger(clock=clock)


@pytest.fixture
def auth(accounts, rate_limits, settings, outbox, events, hasher, clock):
    return AuthOrchestrator(
        accounts,
        rate_limits,
        settings,
        notifier=outbox,
        event_logger=events,
        hasher=hasher,
        clock=clock,
    )


@pytest.fixture
def alice(auth):
    """Registered, unverified account id."""
    return auth.register(ALICE_EMAIL, ALICE_PASSWORD).account_id


def sign_in(auth, email=ALICE_EMAIL, password=ALICE_PASSWORD, **kwargs) -> str:
    """Log in and return the session token, pending or not."""
    return auth.login(email, password, **kwargs).session_token


@pytest.fixture
def alice_session(auth, alice):
    """Fully signed-in session token for alice (2FA not enabled)."""
    return sign_in(auth)


@pytest.fixture
def enrolled_alice(auth, alice, alice_session, clock):
    """
    Alice with TOTP enabled.

    Returns:
        Tuple of (account_id, raw secret, recovery codes)
    """
    ticket = auth.enroll_totp(alice_session)
    secret = base32_to_secret(ticket.secret_base32)
    result = auth.verify_totp_enrollment(ticket.staged_secret_ref, totp(secret, clock()))
    return alice, secret, result.recovery_codes
