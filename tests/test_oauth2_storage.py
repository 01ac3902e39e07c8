"""
Tests for the SQLite OAuth 2.1 storage layer.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from reader_oauth.oauth2_crypto import hash_token
from reader_oauth.oauth2_storage import (
    AccessTokenRecord,
    AuthorizationCodeRecord,
    OAuth2Storage,
    OAuth2StorageError,
    OAuthClientRecord,
    RefreshTokenRecord,
    get_oauth2_storage,
    new_id,
    oauth2_transaction,
    reset_oauth2_storage,
)


def _code(user_id, **overrides):
    now = datetime.now(timezone.utc)
    values = dict(
        id=new_id(),
        code_hash=hash_token(new_id()),
        client_id="reader-desktop",
        user_id=user_id,
        redirect_uri="https://app.example.com/callback",
        scopes=["mcp"],
        code_challenge="x" * 43,
        expires_at=now + timedelta(minutes=10),
    )
    values.update(overrides)
    return AuthorizationCodeRecord(**values)


def _access(user_id, **overrides):
    values = dict(
        id=new_id(),
        token_hash=hash_token(new_id()),
        client_id="reader-desktop",
        user_id=user_id,
        scopes=["mcp"],
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    values.update(overrides)
    return AccessTokenRecord(**values)


class TestSchema:
    def test_schema_version_recorded(self, storage):
        stats = storage.get_storage_stats()
        assert stats["schema_version"] == OAuth2Storage.SCHEMA_VERSION
        assert stats["oauth_clients"] == 0

    def test_reopen_does_not_reapply_migrations(self, storage, user):
        reopened = OAuth2Storage(db_path=storage.db_path)
        assert reopened.get_user(user.id).email == "reader@example.com"

    def test_code_challenge_method_must_be_s256(self, storage, user):
        with pytest.raises(OAuth2StorageError):
            storage.insert_authorization_code(_code(user.id, code_challenge_method="plain"))

    def test_code_hash_is_unique(self, storage, user):
        record = _code(user.id)
        storage.insert_authorization_code(record)
        with pytest.raises(OAuth2StorageError):
            storage.insert_authorization_code(_code(user.id, code_hash=record.code_hash))


class TestClients:
    def test_insert_and_get(self, storage):
        record = OAuthClientRecord(
            id=new_id(),
            client_id="abc",
            name="ABC",
            redirect_uris=["https://abc.example.com/cb"],
            grant_types=["authorization_code"],
            scopes=None,
            is_public=True,
            metadata={"client_uri": "https://abc.example.com"},
        )
        storage.insert_client(record)

        loaded = storage.get_client("abc")
        assert loaded.redirect_uris == ["https://abc.example.com/cb"]
        assert loaded.scopes is None
        assert loaded.is_public is True
        assert loaded.metadata == {"client_uri": "https://abc.example.com"}
        assert storage.get_client("ABC") is None

    def test_duplicate_client_id_rejected(self, storage, public_client):
        duplicate = OAuthClientRecord(
            id=new_id(),
            client_id=public_client.client_id,
            name="Again",
            redirect_uris=[],
            grant_types=[],
            scopes=None,
            is_public=True,
        )
        with pytest.raises(OAuth2StorageError):
            storage.insert_client(duplicate)


class TestAuthorizationCodes:
    def test_find_requires_exact_binding(self, storage, user):
        record = storage.insert_authorization_code(_code(user.id))
        now = datetime.now(timezone.utc)

        assert storage.find_active_authorization_code(
            record.code_hash, "reader-desktop", "https://app.example.com/callback", now
        ).id == record.id
        assert storage.find_active_authorization_code(
            record.code_hash, "other-client", "https://app.example.com/callback", now
        ) is None
        assert storage.find_active_authorization_code(
            record.code_hash, "reader-desktop", "https://app.example.com/other", now
        ) is None

    def test_mark_used_is_compare_and_set(self, storage, user):
        record = storage.insert_authorization_code(_code(user.id))
        now = datetime.now(timezone.utc)

        assert storage.mark_authorization_code_used(record.id, now) is True
        assert storage.mark_authorization_code_used(record.id, now) is False
        assert storage.get_authorization_code_by_hash(record.code_hash).used_at is not None

    def test_mark_used_refuses_expired_code(self, storage, user):
        record = storage.insert_authorization_code(_code(user.id))
        later = record.expires_at + timedelta(seconds=1)
        assert storage.mark_authorization_code_used(record.id, later) is False

    def test_concurrent_consumption_has_single_winner(self, storage, user):
        record = storage.insert_authorization_code(_code(user.id))
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def consume():
            barrier.wait()
            won = storage.mark_authorization_code_used(record.id, datetime.now(timezone.utc))
            with lock:
                results.append(won)

        threads = [threading.Thread(target=consume) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestTokens:
    def test_access_token_lookup_joins_user(self, storage, user):
        record = storage.insert_access_token(_access(user.id))
        found = storage.find_active_access_token(record.token_hash, datetime.now(timezone.utc))
        assert found is not None
        token, token_user = found
        assert token.id == record.id
        assert token_user.email == "reader@example.com"

    def test_expired_and_revoked_access_tokens_not_found(self, storage, user):
        now = datetime.now(timezone.utc)
        expired = storage.insert_access_token(_access(user.id, expires_at=now - timedelta(seconds=1)))
        revoked = storage.insert_access_token(_access(user.id))
        storage.revoke_access_token(revoked.id, now)

        assert storage.find_active_access_token(expired.token_hash, now) is None
        assert storage.find_active_access_token(revoked.token_hash, now) is None

    def test_revoke_refresh_token_is_conditional(self, storage, user):
        now = datetime.now(timezone.utc)
        access = storage.insert_access_token(_access(user.id))
        refresh = storage.insert_refresh_token(RefreshTokenRecord(
            id=new_id(),
            token_hash=hash_token(new_id()),
            client_id="reader-desktop",
            user_id=user.id,
            scopes=["mcp"],
            access_token_id=access.id,
            expires_at=now + timedelta(days=30),
        ))

        assert storage.revoke_refresh_token(refresh.id, now) is True
        assert storage.revoke_refresh_token(refresh.id, now) is False

    def test_bulk_revocation_counts_rows(self, storage, user):
        now = datetime.now(timezone.utc)
        storage.insert_access_token(_access(user.id))
        storage.insert_access_token(_access(user.id))
        storage.insert_access_token(_access(user.id, client_id="someone-else"))

        assert storage.revoke_tokens_for_user_client(user.id, "reader-desktop", now) == 2
        assert storage.revoke_tokens_for_user_client(user.id, "reader-desktop", now) == 0
        assert storage.count_active_tokens(user.id, "someone-else")["access_tokens"] == 1


class TestTransactions:
    def test_exception_rolls_back(self, storage, user):
        record = _access(user.id)
        with pytest.raises(RuntimeError):
            with storage.transaction() as conn:
                storage.insert_access_token(record, conn=conn)
                raise RuntimeError("boom")

        assert storage.get_access_token(record.id) is None

    def test_commit_on_success(self, storage, user):
        record = _access(user.id)
        with oauth2_transaction(storage) as conn:
            storage.insert_access_token(record, conn=conn)
        assert storage.get_access_token(record.id) is not None

    def test_sqlite_errors_are_wrapped(self, storage):
        with pytest.raises(OAuth2StorageError) as exc_info:
            with storage.transaction() as conn:
                conn.execute("SELECT * FROM missing_table")
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)


class TestConsentAndCleanup:
    def test_consent_upsert_clears_revocation(self, storage, user):
        now = datetime.now(timezone.utc)
        storage.upsert_consent_grant(user.id, "reader-desktop", ["mcp"], now)
        assert storage.revoke_consent_grant(user.id, "reader-desktop", now)

        grant = storage.upsert_consent_grant(user.id, "reader-desktop", ["mcp", "saved:write"], now)
        assert grant.revoked_at is None
        assert grant.scopes == ["mcp", "saved:write"]
        assert len(storage.list_active_consent_grants(user.id)) == 1

    def test_cleanup_removes_expired_and_used(self, storage, user):
        now = datetime.now(timezone.utc)
        used = storage.insert_authorization_code(_code(user.id))
        storage.mark_authorization_code_used(used.id, now)
        storage.insert_authorization_code(_code(user.id, expires_at=now - timedelta(seconds=1)))
        live = storage.insert_authorization_code(_code(user.id))
        storage.insert_access_token(_access(user.id, expires_at=now - timedelta(seconds=1)))

        counts = storage.cleanup_expired_data(now)

        assert counts["authorization_codes"] == 2
        assert counts["access_tokens"] == 1
        assert storage.get_authorization_code_by_hash(live.code_hash) is not None


class TestGlobalStorage:
    @pytest.fixture(autouse=True)
    def fresh_global(self):
        reset_oauth2_storage()
        yield
        reset_oauth2_storage()

    def test_instance_is_shared_until_reset(self, tmp_path):
        first = get_oauth2_storage(str(tmp_path / "first.db"))
        assert get_oauth2_storage(str(tmp_path / "second.db")) is first

        reset_oauth2_storage()
        second = get_oauth2_storage(str(tmp_path / "second.db"))

        assert second is not first
        assert second.db_path == str(tmp_path / "second.db")
