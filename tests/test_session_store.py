"""Tests for the file-backed memory store's session operations."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from tutorgate.storage.errors import ConstraintViolation
from tutorgate.storage.memory import MemoryStore

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(store):
    return store.create_user("student@example.com", "Student")


def _hash(n: int) -> str:
    return f"{n:064x}"


class TestCreateAndFind:
    def test_create_session_sets_timestamps(self, store, user):
        session = store.create_session(user.id, _hash(1), ttl_minutes=60, now=T0)

        assert session.created_at == T0
        assert session.last_used_at == T0
        assert session.expires_at == T0 + timedelta(minutes=60)
        assert session.revoked is False

    def test_find_by_hash(self, store, user):
        session = store.create_session(user.id, _hash(1))
        assert store.find_session_by_hash(_hash(1)).id == session.id
        assert store.find_session_by_hash(_hash(2)) is None

    def test_explicit_session_id_is_kept(self, store, user):
        session_id = str(uuid.uuid4())
        session = store.create_session(user.id, _hash(1), session_id=session_id)
        assert session.id == session_id
        with pytest.raises(ConstraintViolation):
            store.create_session(user.id, _hash(2), session_id=session_id)

    def test_session_for_unknown_user_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(str(uuid.uuid4()), _hash(1))


class TestListing:
    def test_list_orders_newest_first(self, store, user):
        first = store.create_session(user.id, _hash(1), now=T0)
        second = store.create_session(user.id, _hash(2), now=T0 + timedelta(minutes=5))
        third = store.create_session(user.id, _hash(3), now=T0 + timedelta(minutes=10))

        listed = store.list_user_sessions(user.id, now=T0 + timedelta(minutes=11))
        assert [s.id for s in listed] == [third.id, second.id, first.id]

    def test_list_hides_revoked_and_expired(self, store, user):
        live = store.create_session(user.id, _hash(1), ttl_minutes=60, now=T0)
        revoked = store.create_session(user.id, _hash(2), ttl_minutes=60, now=T0)
        expired = store.create_session(user.id, _hash(3), ttl_minutes=1, now=T0)
        store.revoke_session(revoked.id)

        now = T0 + timedelta(minutes=1)
        assert [s.id for s in store.list_user_sessions(user.id, now=now)] == [live.id]
        everything = store.list_user_sessions(user.id, include_inactive=True, now=now)
        assert {s.id for s in everything} == {live.id, revoked.id, expired.id}

    def test_list_is_scoped_to_user(self, store, user):
        other = store.create_user("other@example.com")
        store.create_session(other.id, _hash(9))
        assert store.list_user_sessions(user.id) == []


class TestRevocation:
    def test_revoke_is_idempotent(self, store, user):
        session = store.create_session(user.id, _hash(1))

        assert store.revoke_session(session.id) is True
        revoked_at = store.get_session(session.id).revoked_at
        assert store.revoke_session(session.id) is False
        assert store.get_session(session.id).revoked_at == revoked_at

    def test_revoke_missing_session_is_noop(self, store):
        assert store.revoke_session(str(uuid.uuid4())) is False

    def test_revoke_all_counts_only_active(self, store, user):
        a = store.create_session(user.id, _hash(1))
        store.create_session(user.id, _hash(2))
        store.revoke_session(a.id)

        assert store.revoke_user_sessions(user.id) == 1
        assert store.revoke_user_sessions(user.id) == 0

    def test_revoke_all_except_current(self, store, user):
        keep = store.create_session(user.id, _hash(1))
        drop = store.create_session(user.id, _hash(2))

        assert store.revoke_user_sessions(user.id, except_session_id=keep.id) == 1
        assert store.get_session(keep.id).revoked is False
        assert store.get_session(drop.id).revoked is True


class TestRotateHash:
    def test_compare_and_swap_succeeds_once(self, store, user):
        session = store.create_session(user.id, _hash(1), now=T0)
        later = T0 + timedelta(minutes=3)

        updated = store.rotate_session_hash(session.id, _hash(1), _hash(2), later)
        assert updated.refresh_token_hash == _hash(2)
        assert updated.last_used_at == later
        assert store.find_session_by_rotated_hash(_hash(1)).id == session.id

        assert store.rotate_session_hash(session.id, _hash(1), _hash(3), later) is None
        assert store.get_session(session.id).refresh_token_hash == _hash(2)

    def test_revoked_session_cannot_swap(self, store, user):
        session = store.create_session(user.id, _hash(1))
        store.revoke_session(session.id)
        assert store.rotate_session_hash(session.id, _hash(1), _hash(2), T0) is None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path, store, user):
        session = store.create_session(user.id, _hash(1), now=T0)
        store.rotate_session_hash(session.id, _hash(1), _hash(2), T0 + timedelta(minutes=1))
        store.revoke_session(session.id)

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_session(session.id)
        assert restored.revoked is True
        assert restored.refresh_token_hash == _hash(2)
        assert reloaded.find_session_by_rotated_hash(_hash(1)).id == session.id
        assert reloaded.get_user_by_email("STUDENT@example.com").id == user.id

    def test_purge_drops_stale_sessions(self, store, user):
        old = store.create_session(user.id, _hash(1), ttl_minutes=1, now=T0)
        fresh = store.create_session(user.id, _hash(2), ttl_minutes=60 * 24, now=T0)
        store.rotate_session_hash(old.id, _hash(1), _hash(3), T0)

        assert store.purge_expired_sessions(T0 + timedelta(hours=1)) == 1
        assert store.get_session(old.id) is None
        assert store.get_session(fresh.id) is not None
        assert store.find_session_by_rotated_hash(_hash(1)) is None
