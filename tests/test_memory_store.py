import threading
import uuid
from datetime import timedelta

import pytest

from sessionguard.storage.errors import ConstraintViolation, DuplicateRefreshTokenId
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import (
    RevokeReason,
    TokenMetadata,
    UserRole,
    UserStatus,
    utcnow,
)


def _record(store, user_id, *, lifetime=timedelta(days=7), issued_at=None, refresh_id=None):
    issued = issued_at or utcnow()
    return store.record_refresh_token(
        refresh_id or uuid.uuid4().hex,
        user_id,
        issued_at=issued,
        expires_at=issued + lifetime,
        metadata=TokenMetadata(ip_address="10.0.0.1", user_agent="pytest"),
    )


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("Bob@Example.com", roles=[UserRole.MANAGER])


class TestUserDirectory:
    def test_email_is_normalized(self, memory_store, user):
        assert user.email == "bob@example.com"
        assert memory_store.get_user_by_email("  BOB@example.COM ").id == user.id

    def test_duplicate_email_rejected(self, memory_store, user):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("bob@example.com")

    def test_status_and_roles_updates(self, memory_store, user):
        memory_store.update_user_status(user.id, UserStatus.INACTIVE)
        memory_store.set_user_roles(user.id, [UserRole.CLEANER, UserRole.ADMIN, UserRole.ADMIN])

        loaded = memory_store.get_user(user.id)
        assert loaded.status == UserStatus.INACTIVE
        assert loaded.roles == [UserRole.CLEANER, UserRole.ADMIN]
        assert loaded.primary_role is UserRole.ADMIN

    def test_password_hash_roundtrip(self, memory_store, user):
        assert memory_store.get_password_hash(user.id) is None
        assert memory_store.set_password_hash(user.id, "hash") is True
        assert memory_store.get_password_hash(user.id) == "hash"
        assert memory_store.set_password_hash("missing", "hash") is False

    def test_record_login_stamps_user(self, memory_store, user):
        at = utcnow()
        memory_store.record_login(user.id, at)
        assert memory_store.get_user(user.id).last_login_at == at


class TestRefreshTokens:
    def test_record_and_lookup(self, memory_store, user):
        record = _record(memory_store, user.id)
        stored = memory_store.get_refresh_token(record.id)

        assert stored.user_id == user.id
        assert stored.ip_address == "10.0.0.1"
        assert stored.user_agent == "pytest"
        assert not stored.is_revoked
        assert memory_store.is_refresh_token_revoked(record.id) is False

    def test_duplicate_identifier_is_fatal(self, memory_store, user):
        record = _record(memory_store, user.id)
        with pytest.raises(DuplicateRefreshTokenId):
            _record(memory_store, user.id, refresh_id=record.id)

    def test_unknown_identifier_follows_flag(self, memory_store):
        assert memory_store.is_refresh_token_revoked("nope") is False
        assert memory_store.is_refresh_token_revoked("nope", unknown_is_revoked=True) is True

    def test_revoke_transitions_exactly_once(self, memory_store, user):
        record = _record(memory_store, user.id)

        assert memory_store.revoke_refresh_token(record.id, RevokeReason.LOGOUT) is True
        first = memory_store.get_refresh_token(record.id)
        revoked_at = first.revoked_at

        assert memory_store.revoke_refresh_token(record.id, RevokeReason.SECURITY) is False
        again = memory_store.get_refresh_token(record.id)
        assert again.revoked_at == revoked_at
        assert again.revoked_reason is RevokeReason.LOGOUT
        assert memory_store.is_refresh_token_revoked(record.id) is True

    def test_revoke_missing_returns_false(self, memory_store):
        assert memory_store.revoke_refresh_token("missing", RevokeReason.LOGOUT) is False

    def test_concurrent_revokes_have_one_winner(self, memory_store, user):
        record = _record(memory_store, user.id)
        results = []
        barrier = threading.Barrier(8)

        def _revoke():
            barrier.wait()
            results.append(memory_store.revoke_refresh_token(record.id, RevokeReason.LOGOUT))

        threads = [threading.Thread(target=_revoke) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_bulk_revoke_only_touches_active_rows(self, memory_store, user):
        other = memory_store.create_user("carol@example.com")
        active = [_record(memory_store, user.id) for _ in range(3)]
        already = _record(memory_store, user.id)
        memory_store.revoke_refresh_token(already.id, RevokeReason.LOGOUT)
        expired = _record(
            memory_store,
            user.id,
            issued_at=utcnow() - timedelta(days=8),
        )
        foreign = _record(memory_store, other.id)

        assert [r.id for r in memory_store.list_active_refresh_tokens(user.id)] == [
            r.id for r in active
        ]
        assert memory_store.bulk_revoke_refresh_tokens(user.id, RevokeReason.LOGOUT_ALL) == 3
        assert memory_store.list_active_refresh_tokens(user.id) == []
        assert memory_store.get_refresh_token(already.id).revoked_reason is RevokeReason.LOGOUT
        assert memory_store.get_refresh_token(expired.id).revoked_at is None
        assert memory_store.is_refresh_token_revoked(foreign.id) is False
        assert memory_store.bulk_revoke_refresh_tokens(user.id, RevokeReason.LOGOUT_ALL) == 0

    def test_sweep_deletes_expired_regardless_of_revocation(self, memory_store, user):
        now = utcnow()
        stale = _record(memory_store, user.id, issued_at=now - timedelta(days=7, seconds=1))
        stale_revoked = _record(memory_store, user.id, issued_at=now - timedelta(days=9))
        memory_store.revoke_refresh_token(stale_revoked.id, RevokeReason.LOGOUT)
        fresh = _record(memory_store, user.id)

        assert memory_store.sweep_expired_refresh_tokens(now) == 2
        assert memory_store.get_refresh_token(stale.id) is None
        assert memory_store.get_refresh_token(stale_revoked.id) is None
        assert memory_store.get_refresh_token(fresh.id) is not None

    def test_record_for_missing_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            _record(memory_store, "ghost")


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("dave@example.com", roles=[UserRole.OWNER], password_hash="h")
        record = _record(store, user.id)
        store.revoke_refresh_token(record.id, RevokeReason.ADMIN_ACTION)
        store.record_login(user.id)

        reloaded = MemoryStore(fs_root=str(tmp_path))
        loaded_user = reloaded.get_user_by_email("dave@example.com")
        assert loaded_user.roles == [UserRole.OWNER]
        assert loaded_user.last_login_at is not None
        assert reloaded.get_password_hash(user.id) == "h"
        loaded_record = reloaded.get_refresh_token(record.id)
        assert loaded_record.revoked_reason is RevokeReason.ADMIN_ACTION
        assert loaded_record.expires_at == record.expires_at
        assert (tmp_path / "state" / "memory_store.json").exists()

    def test_without_fs_root_nothing_is_written(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        store = MemoryStore()
        store.create_user("erin@example.com")
        assert list(tmp_path.iterdir()) == []
