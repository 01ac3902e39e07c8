"""
Tests for client resolution (registry and Client ID Metadata Documents).
"""

import asyncio
import time

import httpx
import pytest

from conftest import CONFIDENTIAL_SECRET, PUBLIC_CLIENT_ID, REDIRECT_URI
from reader_oauth.oauth2_clients import (
    DEFAULT_CLIENT_NAME,
    MAX_METADATA_BYTES,
    ClientResolver,
    authenticate_client,
    upsert_client,
)
from reader_oauth.oauth2_crypto import hash_token

CIMD_URL = "https://client.example.com/oauth/client.json"


def _transport(payload=None, status_code=200, calls=None, raw=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if raw is not None:
            return httpx.Response(status_code, content=raw)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


class TestDatabaseClients:
    @pytest.mark.asyncio
    async def test_database_hit_never_fetches(self, storage, config, public_client):
        calls = []
        resolver = ClientResolver(storage, config, transport=_transport({}, calls=calls))

        client = await resolver.resolve_client(PUBLIC_CLIENT_ID)

        assert client.from_database is True
        assert client.redirect_uris == [REDIRECT_URI]
        assert client.is_public is True
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_plain_id_is_none(self, storage, config):
        resolver = ClientResolver(storage, config, transport=_transport({}))
        assert await resolver.resolve_client("nobody") is None
        assert await resolver.resolve_client("") is None

    @pytest.mark.asyncio
    async def test_non_https_url_is_not_fetched(self, storage, config):
        calls = []
        resolver = ClientResolver(storage, config, transport=_transport({}, calls=calls))
        assert await resolver.resolve_client("http://client.example.com/oauth/client.json") is None
        assert calls == []

    def test_upsert_updates_existing_registration(self, storage, public_client):
        updated = upsert_client(
            storage,
            client_id=PUBLIC_CLIENT_ID,
            name="Reader Desktop 2",
            redirect_uris=["http://localhost:9999/cb"],
            scopes=["mcp"],
        )
        assert updated.id == public_client.id
        assert updated.name == "Reader Desktop 2"
        assert updated.redirect_uris == ["http://localhost:9999/cb"]
        assert updated.scopes == ["mcp"]
        assert updated.grant_types == ["authorization_code", "refresh_token"]

    def test_upsert_hashes_secret(self, confidential_client):
        assert confidential_client.client_secret_hash == hash_token(CONFIDENTIAL_SECRET)
        assert confidential_client.is_public is False


class TestMetadataDocumentClients:
    @pytest.mark.asyncio
    async def test_valid_document(self, storage, config):
        calls = []
        payload = {
            "client_id": CIMD_URL,
            "client_name": "Example Client",
            "redirect_uris": ["https://client.example.com/cb"],
            "scope": "mcp saved:write",
        }
        resolver = ClientResolver(storage, config, transport=_transport(payload, calls=calls))

        client = await resolver.resolve_client(CIMD_URL)

        assert client.client_id == CIMD_URL
        assert client.name == "Example Client"
        assert client.is_public is True
        assert client.from_database is False
        assert client.scopes == ["mcp", "saved:write"]
        assert client.grant_types == ["authorization_code", "refresh_token"]
        assert calls[0].headers["accept"] == "application/json"
        assert calls[0].headers["user-agent"] == config.user_agent
        # never persisted
        assert storage.get_client(CIMD_URL) is None

    @pytest.mark.asyncio
    async def test_defaults(self, storage, config):
        payload = {"client_id": CIMD_URL, "redirect_uris": ["https://client.example.com/cb"]}
        resolver = ClientResolver(storage, config, transport=_transport(payload))

        client = await resolver.resolve_client(CIMD_URL)

        assert client.name == DEFAULT_CLIENT_NAME
        assert client.scopes is None

    @pytest.mark.asyncio
    async def test_mismatched_client_id(self, storage, config):
        payload = {"client_id": "https://evil.example.com/client.json", "redirect_uris": ["https://evil.example.com/cb"]}
        resolver = ClientResolver(storage, config, transport=_transport(payload))
        assert await resolver.resolve_client(CIMD_URL) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"client_id": CIMD_URL},
        {"client_id": CIMD_URL, "redirect_uris": []},
        {"client_id": CIMD_URL, "redirect_uris": "https://client.example.com/cb"},
        {"client_id": CIMD_URL, "redirect_uris": [42]},
        {"redirect_uris": ["https://client.example.com/cb"]},
        ["not", "an", "object"],
    ])
    async def test_invalid_documents(self, storage, config, payload):
        resolver = ClientResolver(storage, config, transport=_transport(payload))
        assert await resolver.resolve_client(CIMD_URL) is None

    @pytest.mark.asyncio
    async def test_non_2xx(self, storage, config):
        payload = {"client_id": CIMD_URL, "redirect_uris": ["https://client.example.com/cb"]}
        resolver = ClientResolver(storage, config, transport=_transport(payload, status_code=404))
        assert await resolver.resolve_client(CIMD_URL) is None

    @pytest.mark.asyncio
    async def test_invalid_json(self, storage, config):
        resolver = ClientResolver(storage, config, transport=_transport(raw=b"<html>nope</html>"))
        assert await resolver.resolve_client(CIMD_URL) is None

    @pytest.mark.asyncio
    async def test_network_error(self, storage, config):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        resolver = ClientResolver(storage, config, transport=httpx.MockTransport(handler))
        assert await resolver.resolve_client(CIMD_URL) is None

    @pytest.mark.asyncio
    async def test_slow_document_is_cut_off(self, storage, config):
        async def drip():
            yield b'{"client_id": '
            while True:
                await asyncio.sleep(0.1)
                yield b" "

        def handler(request):
            return httpx.Response(200, content=drip())

        config.cimd_timeout_seconds = 0.3
        resolver = ClientResolver(storage, config, transport=httpx.MockTransport(handler))

        started = time.monotonic()
        assert await resolver.resolve_client(CIMD_URL) is None
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_oversized_document(self, storage, config):
        payload = {
            "client_id": CIMD_URL,
            "redirect_uris": ["https://client.example.com/cb"],
            "client_name": "x" * MAX_METADATA_BYTES,
        }
        resolver = ClientResolver(storage, config, transport=_transport(payload))
        assert await resolver.resolve_client(CIMD_URL) is None


class TestClientAuthentication:
    @pytest.mark.asyncio
    async def test_public_client_always_passes(self, storage, config, public_client):
        client = await ClientResolver(storage, config).resolve_client(PUBLIC_CLIENT_ID)
        assert authenticate_client(client, None)

    @pytest.mark.asyncio
    async def test_confidential_client_requires_matching_secret(self, storage, config, confidential_client):
        client = await ClientResolver(storage, config).resolve_client(confidential_client.client_id)
        assert authenticate_client(client, CONFIDENTIAL_SECRET)
        assert not authenticate_client(client, "wrong")
        assert not authenticate_client(client, None)
