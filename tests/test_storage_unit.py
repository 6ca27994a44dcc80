"""Unit tests for the in-memory store.

Tests for:
- User CRUD operations
- Refresh token insert, lookup and revocation
- Expired token sweep
- Atomic rotation
"""

from datetime import timedelta

import pytest

from khscrm.storage.errors import ConstraintViolation
from khscrm.storage.memory import MemoryStore
from khscrm.storage.models import RefreshToken, RevokeReason, Role, hash_token, utcnow


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def test_user(memory_store):
    """Create a test user."""
    return memory_store.create_user("test@example.com", name="Test User")


def _token(user_id, value="value", ttl=timedelta(days=7), now=None):
    return RefreshToken.new(user_id, value, ttl, now=now)


class TestUsers:
    def test_email_is_stored_lower_case(self, memory_store):
        user = memory_store.create_user("  Mixed@Example.COM ", name="Mixed")
        assert user.email == "mixed@example.com"
        assert memory_store.get_user_by_email("MIXED@example.com").id == user.id

    def test_default_role_is_worker(self, test_user):
        assert test_user.role is Role.WORKER

    def test_duplicate_email_rejected(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("TEST@example.com")
        assert exc_info.value.field == "email"

    def test_update_role(self, memory_store, test_user):
        updated = memory_store.update_user_role(test_user.id, Role.OWNER)
        assert updated.role is Role.OWNER
        assert memory_store.get_user(test_user.id).role is Role.OWNER

    def test_update_missing_user_returns_none(self, memory_store):
        assert memory_store.update_user_role("missing", Role.OWNER) is None
        assert memory_store.set_user_active("missing", False) is None

    def test_returned_user_is_a_copy(self, memory_store, test_user):
        test_user.name = "Changed"
        assert memory_store.get_user(test_user.id).name == "Test User"

    def test_password_for_unknown_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password("missing", "hash", "argon2id")

    def test_password_record_round_trip(self, memory_store, test_user):
        memory_store.save_password(test_user.id, "hash", "argon2id")
        assert memory_store.get_password_record(test_user.id) == ("hash", "argon2id")

    def test_list_users_respects_limit(self, memory_store, test_user):
        memory_store.create_user("second@example.com")
        assert len(memory_store.list_users(limit=1)) == 1
        assert len(memory_store.list_users()) == 2


class TestRefreshTokens:
    def test_insert_and_find_by_value(self, memory_store, test_user):
        stored = memory_store.insert_refresh_token(_token(test_user.id, "secret"))

        found = memory_store.find_refresh_token(hash_token("secret"))
        assert found.id == stored.id
        assert found.user_id == test_user.id
        assert not found.is_revoked

    def test_duplicate_hash_rejected(self, memory_store, test_user):
        memory_store.insert_refresh_token(_token(test_user.id, "secret"))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_refresh_token(_token(test_user.id, "secret"))

    def test_token_for_unknown_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.insert_refresh_token(_token("missing"))

    def test_mark_revoked_is_idempotent(self, memory_store, test_user):
        stored = memory_store.insert_refresh_token(_token(test_user.id))

        assert memory_store.mark_refresh_revoked(stored.id, RevokeReason.LOGOUT) is True
        assert memory_store.mark_refresh_revoked(stored.id, RevokeReason.LOGOUT) is False
        record = memory_store.find_refresh_token(stored.token_hash)
        assert record.is_revoked
        assert record.revoked_reason == RevokeReason.LOGOUT

    def test_list_active_only(self, memory_store, test_user):
        active = memory_store.insert_refresh_token(_token(test_user.id, "a"))
        revoked = memory_store.insert_refresh_token(_token(test_user.id, "b"))
        memory_store.mark_refresh_revoked(revoked.id)

        all_tokens = memory_store.list_user_refresh_tokens(test_user.id)
        active_tokens = memory_store.list_user_refresh_tokens(test_user.id, active_only=True)
        assert {t.id for t in all_tokens} == {active.id, revoked.id}
        assert [t.id for t in active_tokens] == [active.id]

    def test_revoke_user_tokens(self, memory_store, test_user):
        other = memory_store.create_user("other@example.com")
        memory_store.insert_refresh_token(_token(test_user.id, "a"))
        memory_store.insert_refresh_token(_token(test_user.id, "b"))
        untouched = memory_store.insert_refresh_token(_token(other.id, "c"))

        assert memory_store.revoke_user_refresh_tokens(test_user.id) == 2
        assert not memory_store.get_refresh_token(untouched.id).is_revoked

    def test_delete_expired(self, memory_store, test_user):
        now = utcnow()
        expired = memory_store.insert_refresh_token(
            _token(test_user.id, "old", ttl=timedelta(seconds=10), now=now - timedelta(minutes=1))
        )
        fresh = memory_store.insert_refresh_token(_token(test_user.id, "new", now=now))

        assert memory_store.delete_expired_refresh_tokens(now) == 1
        assert memory_store.get_refresh_token(expired.id) is None
        assert memory_store.find_refresh_token(hash_token("old")) is None
        assert memory_store.get_refresh_token(fresh.id) is not None

    def test_token_expired_at_exact_expiry(self, test_user):
        now = utcnow()
        token = _token(test_user.id, now=now, ttl=timedelta(seconds=30))
        assert token.is_expired(now + timedelta(seconds=30))
        assert not token.is_expired(now + timedelta(seconds=29))


class TestRotation:
    def test_rotate_links_old_and_new(self, memory_store, test_user):
        old = memory_store.insert_refresh_token(_token(test_user.id, "old"))

        new = memory_store.rotate_refresh_token(hash_token("old"), _token(test_user.id, "new"))

        assert new is not None
        old_record = memory_store.get_refresh_token(old.id)
        assert old_record.revoked_reason == RevokeReason.ROTATED
        assert old_record.replaced_by == new.id
        assert memory_store.find_refresh_token(hash_token("new")).id == new.id

    def test_rotate_twice_fails(self, memory_store, test_user):
        memory_store.insert_refresh_token(_token(test_user.id, "old"))
        assert memory_store.rotate_refresh_token(hash_token("old"), _token(test_user.id, "n1"))
        assert (
            memory_store.rotate_refresh_token(hash_token("old"), _token(test_user.id, "n2"))
            is None
        )
        assert memory_store.find_refresh_token(hash_token("n2")) is None

    def test_rotate_expired_fails(self, memory_store, test_user):
        now = utcnow()
        old = memory_store.insert_refresh_token(
            _token(test_user.id, "old", ttl=timedelta(seconds=5), now=now)
        )

        result = memory_store.rotate_refresh_token(
            hash_token("old"), _token(test_user.id, "new"), now + timedelta(seconds=5)
        )

        assert result is None
        assert not memory_store.get_refresh_token(old.id).is_revoked

    def test_rotate_unknown_returns_none(self, memory_store, test_user):
        assert (
            memory_store.rotate_refresh_token(hash_token("nope"), _token(test_user.id))
            is None
        )

    def test_rotate_rejects_other_user(self, memory_store, test_user):
        other = memory_store.create_user("other@example.com")
        memory_store.insert_refresh_token(_token(test_user.id, "old"))

        with pytest.raises(ConstraintViolation):
            memory_store.rotate_refresh_token(hash_token("old"), _token(other.id, "new"))
