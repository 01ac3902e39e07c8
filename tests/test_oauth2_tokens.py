"""
Tests for the OAuth 2.1 token service: issuance, validation, rotation and revocation.
"""

import asyncio

import pytest

from conftest import PUBLIC_CLIENT_ID
from reader_oauth.oauth2_crypto import generate_token, hash_token
from reader_oauth.oauth2_tokens import TokenParams, TokenService


@pytest.fixture
def tokens(storage, config, clock):
    return TokenService(storage, config, clock=clock)


def _params(user, **overrides):
    values = dict(
        client_id=PUBLIC_CLIENT_ID,
        user_id=user.id,
        scopes=["mcp", "saved:write"],
        resource="https://reader.example.com/api/mcp",
    )
    values.update(overrides)
    return TokenParams(**values)


async def _drain_background(service: TokenService):
    while service._background_tasks:
        await asyncio.sleep(0)


class TestIssuance:
    @pytest.mark.asyncio
    async def test_create_tokens(self, tokens, storage, user):
        pair = await tokens.create_tokens(_params(user))

        assert pair.token_type == "Bearer"
        assert pair.expires_in == 3600
        assert pair.scope == "mcp saved:write"
        assert pair.access_token != pair.refresh_token

        access = storage.get_access_token_by_hash(hash_token(pair.access_token))
        refresh = storage.get_refresh_token_by_hash(hash_token(pair.refresh_token))
        assert refresh.access_token_id == access.id
        assert access.resource == "https://reader.example.com/api/mcp"
        assert storage.get_access_token_by_hash(pair.access_token) is None

    @pytest.mark.asyncio
    async def test_to_response_shape(self, tokens, user):
        pair = await tokens.create_tokens(_params(user))
        body = pair.to_response().model_dump()
        assert set(body) == {"access_token", "token_type", "expires_in", "refresh_token", "scope"}
        assert body["token_type"] == "Bearer"


class TestValidation:
    @pytest.mark.asyncio
    async def test_valid_token(self, tokens, storage, user):
        pair = await tokens.create_tokens(_params(user))

        data = await tokens.validate_access_token(pair.access_token)

        assert data.user_id == user.id
        assert data.user.email == "reader@example.com"
        assert data.client_id == PUBLIC_CLIENT_ID
        assert data.has_scope("saved:write")

        await _drain_background(tokens)
        assert storage.get_access_token(data.token_id).last_used_at is not None

    @pytest.mark.asyncio
    async def test_unknown_token(self, tokens):
        assert await tokens.validate_access_token(generate_token()) is None
        assert await tokens.validate_access_token("") is None

    @pytest.mark.asyncio
    async def test_expired_token(self, tokens, user, clock):
        pair = await tokens.create_tokens(_params(user))
        clock.advance(seconds=3601)
        assert await tokens.validate_access_token(pair.access_token) is None

    @pytest.mark.asyncio
    async def test_touch_failure_does_not_propagate(self, tokens, storage, user, monkeypatch, caplog):
        pair = await tokens.create_tokens(_params(user))

        def fail(token_id, now):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(storage, "touch_access_token", fail)

        assert await tokens.validate_access_token(pair.access_token) is not None
        await _drain_background(tokens)
        assert "Failed to update last_used_at" in caplog.text


class TestRotation:
    @pytest.mark.asyncio
    async def test_rotation_chain(self, tokens, storage, user):
        first = await tokens.create_tokens(_params(user))

        second = await tokens.rotate_refresh_token(first.refresh_token, PUBLIC_CLIENT_ID)

        assert second is not None
        assert second.refresh_token != first.refresh_token
        assert second.scope == "mcp saved:write"

        old_refresh = storage.get_refresh_token(first.refresh_token_id)
        assert old_refresh.revoked_at is not None
        assert old_refresh.replaced_by_id == second.refresh_token_id
        assert storage.get_access_token(first.access_token_id).revoked_at is not None
        assert await tokens.validate_access_token(first.access_token) is None
        assert await tokens.validate_access_token(second.access_token) is not None

    @pytest.mark.asyncio
    async def test_resource_carried_over(self, tokens, storage, user):
        first = await tokens.create_tokens(_params(user))
        second = await tokens.rotate_refresh_token(first.refresh_token, PUBLIC_CLIENT_ID)
        assert storage.get_access_token(second.access_token_id).resource == "https://reader.example.com/api/mcp"

    @pytest.mark.asyncio
    async def test_replay_of_rotated_token_fails(self, tokens, user):
        first = await tokens.create_tokens(_params(user))
        second = await tokens.rotate_refresh_token(first.refresh_token, PUBLIC_CLIENT_ID)
        third = await tokens.rotate_refresh_token(second.refresh_token, PUBLIC_CLIENT_ID)

        assert await tokens.rotate_refresh_token(first.refresh_token, PUBLIC_CLIENT_ID) is None
        assert tokens.detect_refresh_token_reuse(first.refresh_token) == [
            first.refresh_token_id,
            second.refresh_token_id,
            third.refresh_token_id,
        ]
        assert tokens.detect_refresh_token_reuse(third.refresh_token) is None

    @pytest.mark.asyncio
    async def test_wrong_client(self, tokens, user):
        pair = await tokens.create_tokens(_params(user))
        assert await tokens.rotate_refresh_token(pair.refresh_token, "another-client") is None
        assert await tokens.rotate_refresh_token(pair.refresh_token, PUBLIC_CLIENT_ID) is not None

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, tokens, user, clock):
        pair = await tokens.create_tokens(_params(user))
        clock.advance(days=30, seconds=1)
        assert await tokens.rotate_refresh_token(pair.refresh_token, PUBLIC_CLIENT_ID) is None

    @pytest.mark.asyncio
    async def test_concurrent_rotation_single_winner(self, tokens, user):
        pair = await tokens.create_tokens(_params(user))
        results = await asyncio.gather(*[
            tokens.rotate_refresh_token(pair.refresh_token, PUBLIC_CLIENT_ID) for _ in range(4)
        ])
        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_lost_race_rolls_back(self, tokens, storage, user, monkeypatch):
        pair = await tokens.create_tokens(_params(user))
        before = storage.get_storage_stats()

        monkeypatch.setattr(storage, "revoke_refresh_token", lambda *args, **kwargs: False)

        assert await tokens.rotate_refresh_token(pair.refresh_token, PUBLIC_CLIENT_ID) is None
        after = storage.get_storage_stats()
        assert after["oauth_access_tokens"] == before["oauth_access_tokens"]
        assert after["oauth_refresh_tokens"] == before["oauth_refresh_tokens"]


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke_client_tokens(self, tokens, storage, user):
        await tokens.create_tokens(_params(user))
        await tokens.create_tokens(_params(user))
        other = await tokens.create_tokens(_params(user, client_id="other-client"))

        assert await tokens.revoke_client_tokens(user.id, PUBLIC_CLIENT_ID) == 4
        assert storage.count_active_tokens(user.id, PUBLIC_CLIENT_ID) == {"access_tokens": 0, "refresh_tokens": 0}
        assert await tokens.validate_access_token(other.access_token) is not None

    @pytest.mark.asyncio
    async def test_revoke_access_token(self, tokens, user):
        pair = await tokens.create_tokens(_params(user))
        assert await tokens.revoke_token(pair.access_token) is True
        assert await tokens.revoke_token(pair.access_token) is False
        assert await tokens.validate_access_token(pair.access_token) is None

    @pytest.mark.asyncio
    async def test_revoke_refresh_token_revokes_its_access_token(self, tokens, user):
        pair = await tokens.create_tokens(_params(user))
        assert await tokens.revoke_token(pair.refresh_token, "refresh_token") is True
        assert await tokens.rotate_refresh_token(pair.refresh_token, PUBLIC_CLIENT_ID) is None
        assert await tokens.validate_access_token(pair.access_token) is None

    @pytest.mark.asyncio
    async def test_revoke_unknown_token(self, tokens):
        assert await tokens.revoke_token(generate_token()) is False

    @pytest.mark.asyncio
    async def test_revoke_is_scoped_to_requesting_client(self, tokens, user):
        pair = await tokens.create_tokens(_params(user))

        assert await tokens.revoke_token(pair.access_token, client_id="other-client") is False
        assert await tokens.revoke_token(pair.refresh_token, "refresh_token", client_id="other-client") is False
        assert await tokens.validate_access_token(pair.access_token) is not None

        assert await tokens.revoke_token(pair.refresh_token, "refresh_token", client_id=PUBLIC_CLIENT_ID) is True
        assert await tokens.validate_access_token(pair.access_token) is None
