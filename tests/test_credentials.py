"""Unit tests for password hashing, verification and lockout."""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher, Type

from tutorgate.config import Settings
from tutorgate.service.credentials import (
    PASSWORD_ALGO,
    CredentialVerifier,
    check_password_strength,
    normalize_email,
)
from tutorgate.service.errors import InvalidCredentialsError, ValidationError
from tutorgate.storage.memory import MemoryStore

START = datetime(2026, 2, 2, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        max_login_attempts=3,
        login_lockout_minutes=30,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier(store, settings, clock):
    fast = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    return CredentialVerifier(store, settings, clock=clock, hasher=fast)


@pytest.fixture
def user(store, verifier):
    user = store.create_user("a@x.com")
    verifier.set_password(user.id, "Good@123")
    return user


class TestHashing:
    def test_hash_is_argon2id_and_salted(self, verifier):
        first, algo = verifier.hash_password("Good@123")
        second, _ = verifier.hash_password("Good@123")

        assert algo == PASSWORD_ALGO
        assert first.startswith("$argon2id$")
        assert first != second
        assert "Good@123" not in first

    def test_plaintext_never_stored(self, store, user):
        password_hash, algo = store.get_password_record(user.id)
        assert password_hash != "Good@123"
        assert algo == "argon2id"


class TestVerify:
    def test_correct_password_returns_user(self, verifier, user):
        assert verifier.verify("a@x.com", "Good@123").id == user.id

    def test_email_is_case_insensitive(self, verifier, user):
        assert verifier.verify("  A@X.com ", "Good@123").id == user.id

    def test_wrong_password_and_unknown_email_look_identical(self, verifier, user):
        with pytest.raises(InvalidCredentialsError) as wrong:
            verifier.verify("a@x.com", "Bad@1234")
        with pytest.raises(InvalidCredentialsError) as unknown:
            verifier.verify("nobody@x.com", "Good@123")

        assert str(wrong.value) == str(unknown.value)
        assert wrong.value.error_code == unknown.value.error_code == "invalid_credentials"
        assert wrong.value.detail == unknown.value.detail == {}

    def test_every_rejection_writes_login_state_once(self, verifier, store, user, monkeypatch):
        writes = []
        original = store.set_login_state

        def counting(user_id, **kwargs):
            writes.append(user_id)
            return original(user_id, **kwargs)

        monkeypatch.setattr(store, "set_login_state", counting)

        with pytest.raises(InvalidCredentialsError):
            verifier.verify("a@x.com", "Bad@1234")
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("nobody@x.com", "Bad@1234")
        store.set_user_active(user.id, False)
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("a@x.com", "Good@123")

        assert len(writes) == 3
        assert writes[0] == writes[2] == user.id
        assert store.get_user(writes[1]) is None
        assert store.get_user(user.id).failed_login_attempts == 1

    def test_inactive_user_rejected_even_with_right_password(self, verifier, store, user):
        store.set_user_active(user.id, False)
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("a@x.com", "Good@123")

    def test_oauth_only_account_cannot_password_login(self, verifier, store):
        oauth_user = store.create_user("o@x.com")
        store.save_password(oauth_user.id, "random-marker", "oauth")
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("o@x.com", "random-marker")


class TestLockout:
    def test_lock_after_max_attempts(self, verifier, store, user):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                verifier.verify("a@x.com", "nope")

        locked = store.get_user(user.id)
        assert locked.failed_login_attempts == 3
        assert locked.locked_until == START + timedelta(minutes=30)
        # correct password is refused while locked, with the same error
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("a@x.com", "Good@123")

    def test_lock_lapses(self, verifier, store, user, clock):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                verifier.verify("a@x.com", "nope")
        clock.now = START + timedelta(minutes=30)

        assert verifier.verify("a@x.com", "Good@123").id == user.id
        cleared = store.get_user(user.id)
        assert cleared.failed_login_attempts == 0
        assert cleared.locked_until is None

    def test_failure_after_lapse_starts_fresh_window(self, verifier, store, user, clock):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                verifier.verify("a@x.com", "nope")
        clock.now = START + timedelta(hours=1)
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("a@x.com", "nope")

        after = store.get_user(user.id)
        assert after.failed_login_attempts == 1
        assert after.locked_until is None

    def test_success_resets_counter(self, verifier, store, user):
        with pytest.raises(InvalidCredentialsError):
            verifier.verify("a@x.com", "nope")
        verifier.verify("a@x.com", "Good@123")
        assert store.get_user(user.id).failed_login_attempts == 0


class TestPasswordRules:
    @pytest.mark.parametrize("password", ["Good@123", "lowerUPPER1", "abc 123 XYZ"])
    def test_strong_enough(self, password):
        assert check_password_strength(password) == password

    @pytest.mark.parametrize("password", ["short1A", "alllowercase", "lowercase123", "x" * 129])
    def test_too_weak(self, password):
        with pytest.raises(ValidationError) as excinfo:
            check_password_strength(password)
        assert excinfo.value.detail["password"]

    def test_normalize_email(self):
        assert normalize_email("  Mixed@Example.COM ") == "mixed@example.com"
        assert normalize_email(None) == ""
