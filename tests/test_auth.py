"""
Unit tests for Authentication module.

Tests:
- Password hashing (Argon2id)
- Password and email validation
- Password history
- Rate limiting and lockout
- Session tokens
"""

import base64
import hashlib
import hmac
import json

import pytest

from authguard.auth.devices import TrustedDeviceRegistry
from authguard.auth.history import PasswordHistoryGuard
from authguard.auth.login import LockoutPolicy, RateLimiter
from authguard.auth.registration import (
    CredentialHasher,
    calculate_password_score,
    hash_reset_token,
    hash_verification_token,
    validate_email,
    validate_name,
    validate_password_strength,
)
from authguard.auth.sessions import SessionManager
from authguard.errors import ConflictError, LockedError, RateLimitedError
from authguard.storage.memory import InMemoryRateLimitStore
from authguard.storage.models import Account, TwoFactorEnabled

from .conftest import FakeClock


def fast_hasher():
    return CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)


class TestPasswordHashing:
    """Unit tests for password hashing."""

    def test_hash_is_argon2id(self):
        """Hashes should use Argon2id."""
        hasher = fast_hasher()
        assert hasher.hash_password("SecureP@ss123!").startswith("$argon2id$")

    def test_verify_correct_password(self):
        """Correct password should verify."""
        hasher = fast_hasher()
        stored = hasher.hash_password("MySecurePassword123!")
        assert hasher.verify_password("MySecurePassword123!", stored)

    def test_verify_wrong_password(self):
        """Wrong password should fail verification."""
        hasher = fast_hasher()
        stored = hasher.hash_password("SecureP@ss123!Correct")
        assert not hasher.verify_password("SecureP@ss123!Wrong", stored)

    def test_same_password_different_hashes(self):
        """Same password should have different hashes (random salt)."""
        hasher = fast_hasher()
        assert hasher.hash_password("SecureP@ss123!") != hasher.hash_password("SecureP@ss123!")

    def test_malformed_hash_is_mismatch(self):
        """Garbage hashes fail closed instead of raising."""
        hasher = fast_hasher()
        assert not hasher.verify_password("SecureP@ss123!", "not-a-hash")
        assert not hasher.verify_password("", "not-a-hash")

    def test_needs_rehash_on_parameter_change(self):
        """Hashes made with weaker parameters should be upgraded."""
        weak = fast_hasher().hash_password("SecureP@ss123!")
        stronger = CredentialHasher(time_cost=2, memory_cost=16, parallelism=1)
        assert stronger.needs_rehash(weak)
        assert not fast_hasher().needs_rehash(weak)

    def test_burn_verification(self):
        """Dummy verification runs without a real account."""
        fast_hasher().burn_verification("whatever")


class TestPasswordValidation:
    """Unit tests for password and email rules."""

    def test_strong_password(self):
        """Password meeting every rule is valid."""
        result = validate_password_strength("Str0ng!Pass")
        assert result['valid']
        assert result['errors'] == []

    @pytest.mark.parametrize("password", [
        "Sh0rt!",            # too short
        "alllower0!",        # no upper
        "ALLUPPER0!",        # no lower
        "NoDigits!!",        # no digit
        "NoSpecial00",       # no special
    ])
    def test_weak_passwords(self, password):
        """Each missing class is reported."""
        result = validate_password_strength(password)
        assert not result['valid']
        assert len(result['errors']) == 1

    def test_empty_password(self):
        """Empty input is invalid, not an exception."""
        assert not validate_password_strength(None)['valid']

    def test_score_range(self):
        """Scores stay within 0-100 and reward length."""
        assert calculate_password_score("") == 0
        assert calculate_password_score("Str0ng!Pass") < calculate_password_score("Str0ng!Pass-Much-L0nger")
        assert 0 <= calculate_password_score("aaaa1234abc") <= 100

    @pytest.mark.parametrize("email", [
        "alice@example.com",
        "first.last+tag@sub.example.co",
    ])
    def test_valid_emails(self, email):
        assert validate_email(email)

    @pytest.mark.parametrize("email", [
        "",
        "plainaddress",
        "@example.com",
        "alice@",
        "alice..bob@example.com",
        "alice@example.c",
        "a" * 65 + "@example.com",
        "alice@" + "a" * 250 + ".com",
    ])
    def test_invalid_emails(self, email):
        assert not validate_email(email)

    def test_names(self):
        """Names are trimmed; blank means absent."""
        assert validate_name("  Alice ") == "Alice"
        assert validate_name("   ") is None
        assert validate_name("x" * 50) == "x" * 50

    def test_name_errors(self):
        """Over-long names and non-text values raise instead of being dropped."""
        with pytest.raises(ValueError, match="cannot exceed 50"):
            validate_name("x" * 51)
        with pytest.raises(ValueError):
            validate_name("  " + "x" * 51 + "  ")
        for value in (42, ["Alice"], {"first": "Alice"}):
            with pytest.raises(TypeError, match="text only"):
                validate_name(value)

    def test_token_hashes(self):
        """Verification tokens are keyed, reset tokens plain SHA-256."""
        assert hash_verification_token("t", b"k1") != hash_verification_token("t", b"k2")
        assert hash_reset_token("t") == hashlib.sha256(b"t").hexdigest()


class TestPasswordHistory:
    """Unit tests for the password history guard."""

    PASSWORDS = [f"Passw0rd!{i}" for i in range(7)]

    def rotate(self, guard, hasher, account, password):
        guard.ensure_not_reused(account, password)
        guard.apply(account, hasher.hash_password(password), TrustedDeviceRegistry())

    def test_last_five_rejected_sixth_accepted(self):
        """Passwords 1-5 generations old are rejected; 6 generations old is fine."""
        hasher = fast_hasher()
        guard = PasswordHistoryGuard(hasher)
        account = Account(id="a", email="a@example.com",
                          password_hash=hasher.hash_password(self.PASSWORDS[0]))
        for password in self.PASSWORDS[1:7]:
            self.rotate(guard, hasher, account, password)

        assert len(account.password_history) == 5
        with pytest.raises(ConflictError, match="different from current"):
            guard.ensure_not_reused(account, self.PASSWORDS[6])
        for password in self.PASSWORDS[1:6]:
            with pytest.raises(ConflictError, match="last 5"):
                guard.ensure_not_reused(account, password)

        # PASSWORDS[0] was evicted
        self.rotate(guard, hasher, account, self.PASSWORDS[0])
        assert hasher.verify_password(self.PASSWORDS[0], account.password_hash)

    def test_size_below_one_rejected(self):
        """A history of zero would match every password ever remembered."""
        for size in (0, -1):
            with pytest.raises(ValueError):
                PasswordHistoryGuard(fast_hasher(), size)

    def test_size_one(self):
        """Only the immediately previous password is remembered."""
        hasher = fast_hasher()
        guard = PasswordHistoryGuard(hasher, 1)
        account = Account(id="a", email="a@example.com",
                          password_hash=hasher.hash_password(self.PASSWORDS[0]))
        self.rotate(guard, hasher, account, self.PASSWORDS[1])
        self.rotate(guard, hasher, account, self.PASSWORDS[2])

        with pytest.raises(ConflictError, match="last 1 passwords"):
            guard.ensure_not_reused(account, self.PASSWORDS[1])
        guard.ensure_not_reused(account, self.PASSWORDS[0])

    def test_history_oldest_first(self):
        """The superseded hash is appended at the end."""
        hasher = fast_hasher()
        guard = PasswordHistoryGuard(hasher)
        account = Account(id="a", email="a@example.com", password_hash="old-hash")
        guard.apply(account, "new-hash", TrustedDeviceRegistry())
        assert account.password_history == ["old-hash"]
        assert account.password_hash == "new-hash"

    def test_devices_revoked_only_with_two_factor(self):
        """Trusted devices are cleared when 2FA is on."""
        guard = PasswordHistoryGuard(fast_hasher())
        registry = TrustedDeviceRegistry()

        plain = Account(id="a", email="a@example.com", password_hash="h")
        registry.issue(plain, 0)
        guard.apply(plain, "h2", registry)
        assert len(plain.trusted_devices) == 1

        protected = Account(id="b", email="b@example.com", password_hash="h",
                            two_factor=TwoFactorEnabled("v1:x"))
        registry.issue(protected, 0)
        guard.apply(protected, "h2", registry)
        assert protected.trusted_devices == []


class BrokenStore:
    """Rate-limit store that always fails."""

    def hit(self, *args):
        raise ConnectionError("store down")

    def get(self, *args):
        raise ConnectionError("store down")

    def delete(self, *args):
        raise ConnectionError("store down")


class TestRateLimiter:
    """Unit tests for rate limiting."""

    def test_limit_exceeded(self):
        """The attempt after the maximum is rejected with a wait time."""
        clock = FakeClock()
        limiter = RateLimiter(InMemoryRateLimitStore(), max_attempts=5,
                              window_seconds=900, clock=clock)
        for _ in range(5):
            limiter.check("acct", "totp-challenge")

        clock.advance(100)
        with pytest.raises(RateLimitedError) as exc:
            limiter.check("acct", "totp-challenge")
        assert exc.value.retry_after == 800
        assert exc.value.status == "LOCKED"

    def test_window_resets(self):
        """After the window a fresh count starts."""
        clock = FakeClock()
        limiter = RateLimiter(InMemoryRateLimitStore(), max_attempts=2,
                              window_seconds=60, clock=clock)
        limiter.check("acct", "x")
        limiter.check("acct", "x")
        clock.advance(61)
        limiter.check("acct", "x")
        limiter.check("acct", "x")
        with pytest.raises(RateLimitedError):
            limiter.check("acct", "x")

    def test_endpoints_independent(self):
        """Counters are per (identity, endpoint)."""
        limiter = RateLimiter(InMemoryRateLimitStore(), max_attempts=1, clock=FakeClock())
        limiter.check("acct", "a")
        limiter.check("acct", "b")
        limiter.check("other", "a")
        with pytest.raises(RateLimitedError):
            limiter.check("acct", "a")

    def test_reset(self):
        """Reset forgets the attempts."""
        limiter = RateLimiter(InMemoryRateLimitStore(), max_attempts=1, clock=FakeClock())
        limiter.check("acct", "change-password")
        limiter.reset("acct", "change-password")
        limiter.check("acct", "change-password")

    def test_fails_open(self):
        """A broken counter store allows the attempt."""
        limiter = RateLimiter(BrokenStore(), max_attempts=1, clock=FakeClock())
        for _ in range(10):
            limiter.check("acct", "totp-challenge")
        limiter.reset("acct", "totp-challenge")

    def test_per_call_override(self):
        """Limits can be tightened per endpoint."""
        limiter = RateLimiter(InMemoryRateLimitStore(), max_attempts=5, clock=FakeClock())
        limiter.check("acct", "resend", max_attempts=1, window_seconds=3600)
        with pytest.raises(RateLimitedError):
            limiter.check("acct", "resend", max_attempts=1, window_seconds=3600)


class TestLockoutPolicy:
    """Unit tests for escalating lockout."""

    def account(self):
        return Account(id="a", email="a@example.com", password_hash="h")

    def test_backoff_doubles_and_caps(self):
        """Cooldown doubles per lockout up to the cap."""
        policy = LockoutPolicy(base_seconds=900, max_seconds=86400)
        assert policy.backoff(0) == 900
        assert policy.backoff(1) == 1800
        assert policy.backoff(2) == 3600
        assert policy.backoff(10) == 86400

    def test_fifth_failure_locks(self):
        """Lock is set on the threshold failure."""
        policy = LockoutPolicy()
        account = self.account()
        results = [policy.register_failure(account, 1000.0) for _ in range(5)]

        assert results == [False, False, False, False, True]
        assert account.locked_until == 1000.0 + 900
        assert account.lockout_escalation_count == 1
        with pytest.raises(LockedError) as exc:
            policy.ensure_not_locked(account, 1100.0)
        assert exc.value.retry_after == 800

    def test_old_failures_forgotten(self):
        """Failures outside the window start a new count."""
        policy = LockoutPolicy(window_seconds=900)
        account = self.account()
        for _ in range(4):
            policy.register_failure(account, 0.0)
        assert not policy.register_failure(account, 1000.0)
        assert account.failed_login_attempts == 1

    def test_escalation(self):
        """The second lockout lasts twice as long."""
        policy = LockoutPolicy()
        account = self.account()
        for _ in range(5):
            policy.register_failure(account, 0.0)
        for _ in range(5):
            policy.register_failure(account, 1000.0)
        assert account.locked_until == 1000.0 + 1800
        assert account.lockout_escalation_count == 2

    def test_clear(self):
        """Success resets attempts and escalation."""
        policy = LockoutPolicy()
        account = self.account()
        for _ in range(5):
            policy.register_failure(account, 0.0)
        policy.clear(account)
        assert account.failed_login_attempts == 0
        assert account.locked_until is None
        assert account.lockout_escalation_count == 0


class TestSessionManager:
    """Unit tests for session tokens."""

    SECRET = b"s" * 32

    def manager(self, clock=None):
        return SessionManager(self.SECRET, default_ttl=3600,
                              remember_ttl=30 * 86400, clock=clock or FakeClock())

    def forge(self, payload):
        body = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b'=').decode()
        signed = f"v1.{body}"
        signature = hmac.new(self.SECRET, signed.encode(), hashlib.sha256).hexdigest()
        return f"{signed}.{signature}"

    def test_issue_and_validate(self):
        """A fresh token validates to the same session."""
        manager = self.manager()
        token, session = manager.issue("acct", two_factor_verified=True, email_verified=True)
        assert manager.validate(token) == session
        assert session.is_authenticated

    def test_ttl_selection(self):
        """Remembered sessions last 30 days, others an hour."""
        manager = self.manager()
        _, short = manager.issue("acct")
        _, long = manager.issue("acct", remember=True)
        assert short.ttl == 3600
        assert long.ttl == 30 * 86400

    def test_expiry(self):
        """Expired tokens are no session."""
        clock = FakeClock()
        manager = self.manager(clock)
        token, _ = manager.issue("acct")
        clock.advance(3601)
        assert manager.validate(token) is None

    def test_tampered_token(self):
        """Any modification breaks the signature."""
        manager = self.manager()
        token, _ = manager.issue("acct", two_factor_verified=False)
        prefix, body, signature = token.split('.')
        payload = json.loads(base64.urlsafe_b64decode(body + '=' * (-len(body) % 4)))
        payload['tfv'] = True
        body = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b'=').decode()
        assert manager.validate(f"{prefix}.{body}.{signature}") is None

    def test_wrong_secret(self):
        """Tokens from another key are rejected."""
        token, _ = SessionManager(b"x" * 32, clock=FakeClock()).issue("acct")
        assert self.manager().validate(token) is None

    @pytest.mark.parametrize("token", [None, "", "garbage", "v1.a.b", "v2.a.b", "v1..", "v1.a.b.c"])
    def test_malformed_tokens(self, token):
        """Malformed input never raises."""
        assert self.manager().validate(token) is None

    def test_unknown_and_missing_fields_rejected(self):
        """Only the exact versioned field set is accepted."""
        manager = self.manager()
        good = {'v': 1, 'sid': 's', 'aid': 'a', 'tfv': True, 'ev': False,
                'iat': 1_700_000_000.0, 'ttl': 3600}
        assert manager.validate(self.forge(good)) is not None

        assert manager.validate(self.forge(dict(good, admin=True))) is None
        missing = dict(good)
        del missing['ev']
        assert manager.validate(self.forge(missing)) is None
        assert manager.validate(self.forge(dict(good, tfv="yes"))) is None
        assert manager.validate(self.forge(dict(good, v=2))) is None
        assert manager.validate(self.forge(dict(good, ttl=True))) is None

    def test_destroy(self):
        """Destroyed tokens stop validating; other sessions continue."""
        manager = self.manager()
        token, _ = manager.issue("acct")
        other, _ = manager.issue("acct")
        assert manager.destroy(token)
        assert manager.validate(token) is None
        assert manager.validate(other) is not None
        assert not manager.destroy(token)

    def test_revoke_account(self):
        """Account revocation kills existing sessions but not later ones."""
        manager = self.manager()
        token, _ = manager.issue("acct")
        bystander, _ = manager.issue("someone-else")
        manager.revoke_account("acct")
        fresh, _ = manager.issue("acct")

        assert manager.validate(token) is None
        assert manager.validate(bystander) is not None
        assert manager.validate(fresh) is not None

    def test_revoke_account_keeps_caller(self):
        """The session named by keep survives account revocation."""
        manager = self.manager()
        own, own_session = manager.issue("acct")
        other, _ = manager.issue("acct")

        assert manager.revoke_account("acct", keep=own_session.session_id) == 1
        assert manager.validate(own) is not None
        assert manager.validate(other) is None

        manager.revoke_account("acct")
        assert manager.validate(own) is None

    def test_upgrade(self):
        """A pending session is exchanged for a new authenticated one."""
        manager = self.manager()
        pending_token, pending = manager.issue("acct", two_factor_verified=False)
        assert not pending.is_authenticated

        token, upgraded = manager.upgrade(pending, email_verified=True, remember=True)
        assert upgraded.session_id != pending.session_id
        assert upgraded.email_verified
        assert upgraded.ttl == 30 * 24 * 60 * 60
        assert manager.validate(token).is_authenticated
        assert manager.validate(pending_token) is None

    def test_upgrade_single_use(self):
        """A pending session can be exchanged only once."""
        manager = self.manager()
        _, pending = manager.issue("acct", two_factor_verified=False)
        assert manager.upgrade(pending) is not None
        assert manager.upgrade(pending) is None

    def test_upgrade_after_revocation(self):
        manager = self.manager()
        _, pending = manager.issue("acct", two_factor_verified=False)
        manager.revoke_account("acct")
        assert manager.upgrade(pending) is None

    def test_expired_bookkeeping_purged(self):
        """Expired sessions do not accumulate in the manager."""
        clock = FakeClock()
        manager = SessionManager(b"k" * 32, default_ttl=60, clock=clock)
        for i in range(500):
            token, _ = manager.issue(f"acct-{i}")
            manager.destroy(token)
        for i in range(500):
            manager.issue(f"other-{i}")
        assert manager.tracked_count() == 500

        clock.advance(10 * 24 * 60 * 60)
        manager.issue("late")
        assert manager.tracked_count() == 1
        assert len(manager._denylist) == 0
