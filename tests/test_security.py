"""
Security tests for AuthGuard.

Tests specifically for security-related scenarios:
- Brute force (lockout and rate limiting)
- Races on single-use state
- Tampering and cross-account reuse
- Error shapes that must not leak
"""

import threading

import pytest

from authguard.auth.orchestrator import AuthStatus
from authguard.auth.totp import totp
from authguard.errors import (
    AuthenticationError,
    InternalError,
    LockedError,
    RateLimitedError,
    ValidationError,
)
from authguard.integration.event_logger import EventType
from authguard.storage.models import TwoFactorDisabled, TwoFactorEnabled

from .conftest import ALICE_EMAIL, ALICE_PASSWORD, sign_in


WRONG_PASSWORD = "Wr0ng!Pass"


def fail_login(auth, times):
    for _ in range(times):
        with pytest.raises(AuthenticationError):
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)


class TestLockout:
    """Account lockout after failed logins."""

    def test_fifth_failure_locks(self, auth, alice, accounts):
        """Five failures inside the window lock the account."""
        fail_login(auth, 4)
        with pytest.raises(LockedError) as exc:
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)

        assert exc.value.status == "LOCKED"
        assert exc.value.retry_after == 900
        assert accounts.get(alice).failed_login_attempts == 5

    def test_locked_account_rejects_without_counting(self, auth, alice, accounts):
        """While locked even the right password fails, and nothing is counted."""
        fail_login(auth, 4)
        with pytest.raises(LockedError):
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)

        for password in (WRONG_PASSWORD, ALICE_PASSWORD):
            with pytest.raises(LockedError):
                auth.login(ALICE_EMAIL, password)
        account = accounts.get(alice)
        assert account.failed_login_attempts == 5
        assert account.lockout_escalation_count == 1

    def test_attempts_resume_after_lockout(self, auth, alice, accounts, clock):
        """After the cooldown failures are counted from zero again."""
        fail_login(auth, 4)
        with pytest.raises(LockedError):
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)

        clock.advance(901)
        fail_login(auth, 1)
        assert accounts.get(alice).failed_login_attempts == 1
        assert auth.login(ALICE_EMAIL, ALICE_PASSWORD).status is AuthStatus.SESSION_ISSUED

    def test_repeated_lockouts_escalate(self, auth, alice, clock):
        """The second lockout lasts twice as long."""
        fail_login(auth, 4)
        with pytest.raises(LockedError):
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)

        clock.advance(901)
        fail_login(auth, 4)
        with pytest.raises(LockedError) as exc:
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)
        assert exc.value.retry_after == 1800

    def test_success_resets_counter(self, auth, alice, accounts):
        fail_login(auth, 4)
        auth.login(ALICE_EMAIL, ALICE_PASSWORD)
        assert accounts.get(alice).failed_login_attempts == 0
        fail_login(auth, 4)

    def test_lock_event_logged(self, auth, alice, events):
        fail_login(auth, 4)
        with pytest.raises(LockedError):
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)
        assert events.get_events_by_type(EventType.ACCOUNT_LOCKED)


class TestChallengeBruteForce:
    """Rate limiting of second-factor attempts."""

    def wrong(self, secret, t):
        valid = {totp(secret, t + step * 30) for step in (-1, 0, 1)}
        return next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)

    def test_challenge_rate_limited(self, auth, enrolled_alice, clock, events):
        """The sixth bad code in the window is refused outright."""
        _, secret, _ = enrolled_alice
        pending = sign_in(auth)
        bad = self.wrong(secret, clock())
        for _ in range(5):
            with pytest.raises(AuthenticationError, match="Invalid authentication code"):
                auth.verify_totp_challenge(pending, bad)

        with pytest.raises(RateLimitedError) as exc:
            auth.verify_totp_challenge(pending, totp(secret, clock()))
        assert exc.value.status == "LOCKED"
        assert exc.value.retry_after > 0
        assert events.get_events_by_type(EventType.RATE_LIMITED)

        clock.advance(901)
        pending = sign_in(auth)
        result = auth.verify_totp_challenge(pending, totp(secret, clock()))
        assert result.status is AuthStatus.SESSION_ISSUED

    def test_recovery_code_rate_limited(self, auth, enrolled_alice):
        _, _, codes = enrolled_alice
        pending = sign_in(auth)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth.redeem_recovery_code(pending, "00000000")
        with pytest.raises(RateLimitedError):
            auth.redeem_recovery_code(pending, codes[0])

    def test_success_resets_challenge_limit(self, auth, enrolled_alice, clock):
        _, secret, _ = enrolled_alice
        bad = self.wrong(secret, clock())
        pending = sign_in(auth)
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                auth.verify_totp_challenge(pending, bad)
        auth.verify_totp_challenge(pending, totp(secret, clock()))

        pending = sign_in(auth)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth.verify_totp_challenge(pending, bad)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "١٢٣٤٥٦"])
    def test_malformed_codes(self, auth, enrolled_alice, code):
        pending = sign_in(auth)
        with pytest.raises((AuthenticationError, ValidationError)):
            auth.verify_totp_challenge(pending, code)


class TestChallengeRequiresPendingSession:
    """A second factor is only accepted after a correct password."""

    def test_challenge_without_login(self, auth, enrolled_alice, clock):
        """A valid TOTP code alone does not open a session."""
        account_id, secret, _ = enrolled_alice
        code = totp(secret, clock())
        for token in (None, "", account_id, "v1.e30.deadbeef"):
            with pytest.raises((AuthenticationError, ValidationError)):
                auth.verify_totp_challenge(token, code)

    def test_recovery_code_without_login(self, auth, enrolled_alice, accounts):
        """A recovery code alone neither opens a session nor disables 2FA."""
        account_id, _, codes = enrolled_alice
        with pytest.raises(AuthenticationError):
            auth.redeem_recovery_code(account_id, codes[0])
        assert accounts.get(account_id).two_factor_enabled

    def test_authenticated_session_is_not_a_challenge(self, auth, enrolled_alice, alice_session, clock):
        """Only a challenge-pending session can be exchanged."""
        _, secret, codes = enrolled_alice
        with pytest.raises(AuthenticationError):
            auth.verify_totp_challenge(alice_session, totp(secret, clock()))
        with pytest.raises(AuthenticationError):
            auth.redeem_recovery_code(alice_session, codes[0])

    def test_pending_token_single_use(self, auth, enrolled_alice, clock):
        """After a successful challenge the pending token is spent."""
        _, secret, _ = enrolled_alice
        login = auth.login(ALICE_EMAIL, ALICE_PASSWORD)
        pending = login.session_token
        result = auth.verify_totp_challenge(pending, totp(secret, clock()))

        assert auth.current_session(pending) is None
        assert result.session.session_id != login.session.session_id
        assert auth.current_session(result.session_token).is_authenticated
        clock.advance(30)
        with pytest.raises(AuthenticationError):
            auth.verify_totp_challenge(pending, totp(secret, clock()))

    def test_pending_token_of_other_account(self, auth, enrolled_alice, clock):
        """The challenge is resolved for the account that logged in, never another."""
        _, secret, _ = enrolled_alice
        auth.register("bob@example.com", "Str0ng!Pass")
        bob_session = sign_in(auth, "bob@example.com", "Str0ng!Pass")
        with pytest.raises(AuthenticationError):
            auth.verify_totp_challenge(bob_session, totp(secret, clock()))

    def test_challenge_for_account_without_two_factor(self, auth, enrolled_alice, accounts, clock):
        """A pending session whose account lost 2FA meanwhile cannot be upgraded."""
        account_id, secret, _ = enrolled_alice
        pending = sign_in(auth)
        accounts.update(account_id, lambda a: setattr(a, 'two_factor', TwoFactorDisabled()))
        with pytest.raises(AuthenticationError):
            auth.verify_totp_challenge(pending, totp(secret, clock()))

    def test_challenge_for_deleted_account(self, auth, enrolled_alice, accounts, clock):
        account_id, secret, _ = enrolled_alice
        pending = sign_in(auth)
        accounts.delete(account_id)
        with pytest.raises(AuthenticationError):
            auth.verify_totp_challenge(pending, totp(secret, clock()))

    def test_challenge_respects_lockout(self, auth, enrolled_alice, accounts, clock):
        """A lock set after the password step blocks the challenge and stays set."""
        account_id, secret, codes = enrolled_alice
        pending = sign_in(auth)
        fail_login(auth, 4)
        with pytest.raises(LockedError):
            auth.login(ALICE_EMAIL, WRONG_PASSWORD)

        with pytest.raises(LockedError):
            auth.verify_totp_challenge(pending, totp(secret, clock()))
        with pytest.raises(LockedError):
            auth.redeem_recovery_code(pending, codes[0])

        account = accounts.get(account_id)
        assert account.is_locked(clock())
        assert account.failed_login_attempts == 5
        assert account.two_factor_enabled


class TestRaces:
    """Single-use state under concurrent requests."""

    def test_recovery_code_redeemed_once(self, auth, enrolled_alice):
        """Of many concurrent redemptions of one code exactly one wins."""
        _, _, codes = enrolled_alice
        pending_tokens = [sign_in(auth) for _ in range(4)]
        barrier = threading.Barrier(4)
        outcomes = []
        lock = threading.Lock()

        def redeem(pending):
            barrier.wait()
            try:
                auth.redeem_recovery_code(pending, codes[0])
                result = "ok"
            except AuthenticationError:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=redeem, args=(p,)) for p in pending_tokens]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 3

    def test_pending_session_upgraded_once(self, auth, enrolled_alice, clock):
        """Concurrent challenges on one pending token yield a single session."""
        _, secret, _ = enrolled_alice
        pending = sign_in(auth)
        code = totp(secret, clock())
        barrier = threading.Barrier(4)
        outcomes = []
        lock = threading.Lock()

        def challenge():
            barrier.wait()
            try:
                auth.verify_totp_challenge(pending, code)
                result = "ok"
            except AuthenticationError:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=challenge) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 3


class TestTampering:
    """Forged or transplanted credentials."""

    def test_pending_session_is_not_authenticated(self, auth, enrolled_alice):
        """The challenge-pending token does not count as signed in."""
        result = auth.login(ALICE_EMAIL, ALICE_PASSWORD)
        session = auth.current_session(result.session_token)
        assert session is not None
        assert not session.is_authenticated

    def test_pending_session_cannot_manage_account(self, auth, enrolled_alice, clock):
        """Settings operations refuse a session that has not passed the challenge."""
        _, secret, _ = enrolled_alice
        pending = sign_in(auth)
        with pytest.raises(AuthenticationError):
            auth.change_password(pending, ALICE_PASSWORD, "N3w!Passw0rd")
        with pytest.raises(AuthenticationError):
            auth.disable_totp(pending, totp(secret, clock()))
        with pytest.raises(AuthenticationError):
            auth.two_factor_status(pending)
        with pytest.raises(AuthenticationError):
            auth.delete_account(pending)

    def test_forged_session_rejected(self, auth, alice):
        token = auth.login(ALICE_EMAIL, ALICE_PASSWORD).session_token
        assert auth.current_session(token[:-1] + ("0" if token[-1] != "0" else "1")) is None
        assert auth.current_session("v1.e30.deadbeef") is None

    def test_ciphertext_moved_between_accounts(self, auth, accounts, enrolled_alice):
        """A secret copied onto another account does not decrypt."""
        account_id, secret, _ = enrolled_alice
        bob = auth.register("bob@example.com", "Str0ng!Pass").account_id
        ciphertext = accounts.get(account_id).two_factor.secret_ciphertext

        def transplant(account):
            account.two_factor = TwoFactorEnabled(ciphertext)

        accounts.update(bob, transplant)
        pending = sign_in(auth, "bob@example.com", "Str0ng!Pass")
        with pytest.raises(InternalError):
            auth.verify_totp_challenge(pending, "123456")

    def test_trusted_device_of_other_account(self, auth, enrolled_alice):
        """A device token only works for the account it was issued to."""
        bob = auth.register("bob@example.com", "Str0ng!Pass").account_id
        device = auth.login("bob@example.com", "Str0ng!Pass", remember=True).trusted_device_token
        assert bob and device

        result = auth.login(ALICE_EMAIL, ALICE_PASSWORD, device_token=device)
        assert result.status is AuthStatus.CHALLENGE_PENDING


class TestErrorShapes:
    """Errors carry only what the caller may see."""

    def test_internal_error_is_generic(self):
        body = InternalError().to_dict()
        assert body == {'error': "An internal error occurred"}

    def test_lock_discloses_wait_only(self):
        body = LockedError(locked_until=1_000.4, now=100.0).to_dict()
        assert body['retry_after'] == 901
        assert set(body) == {'error', 'retry_after'}

    def test_validation_details(self):
        body = ValidationError("Bad password", ["Must contain at least one digit"]).to_dict()
        assert body['details'] == ["Must contain at least one digit"]

    def test_store_failure_becomes_internal_error(self, auth, accounts, alice, monkeypatch):
        def broken(*args):
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(accounts, "find_by_email", broken)
        with pytest.raises(InternalError) as exc:
            auth.login(ALICE_EMAIL, ALICE_PASSWORD)
        assert "database" not in exc.value.message
