"""
OAuth 2.1 client resolution

Clients are either registered in the database (pre-registered or created by
dynamic registration) or identified by an ``https://`` URL that serves a
Client ID Metadata Document (CIMD). CIMD clients are fetched per request,
never cached and never persisted, and are always treated as public clients.
"""

import asyncio
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .config import OAuthConfig, get_config
from .oauth2_crypto import hash_token, is_client_id_url
from .oauth2_storage import OAuth2Storage, OAuthClientRecord, new_id

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "Unknown Application"
DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
MAX_METADATA_BYTES = 64 * 1024


@dataclass
class ResolvedClient:
    """A client as seen by the authorization and token endpoints."""
    client_id: str
    name: str
    redirect_uris: list[str]
    grant_types: list[str] = field(default_factory=lambda: list(DEFAULT_GRANT_TYPES))
    scopes: Optional[list[str]] = None
    is_public: bool = True
    client_secret_hash: Optional[str] = None
    token_endpoint_auth_method: str = "none"
    from_database: bool = False

    @classmethod
    def from_record(cls, record: OAuthClientRecord) -> "ResolvedClient":
        return cls(
            client_id=record.client_id,
            name=record.name,
            redirect_uris=list(record.redirect_uris),
            grant_types=list(record.grant_types),
            scopes=list(record.scopes) if record.scopes is not None else None,
            is_public=record.is_public,
            client_secret_hash=record.client_secret_hash,
            token_endpoint_auth_method=record.token_endpoint_auth_method,
            from_database=True,
        )


class ClientResolver:
    """Resolve client ids against the registry, falling back to CIMD fetch."""

    def __init__(
        self,
        storage: OAuth2Storage,
        config: Optional[OAuthConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.config = config or get_config()
        self._transport = transport

    async def resolve_client(self, client_id: str) -> Optional[ResolvedClient]:
        """
        Resolve a client id.

        Returns:
            The database client when registered, the CIMD client when the id
            is an https URL serving a valid document, otherwise None.
        """
        if not client_id:
            return None

        record = self.storage.get_client(client_id)
        if record:
            return ResolvedClient.from_record(record)

        if is_client_id_url(client_id):
            return await self._fetch_client_metadata(client_id)

        return None

    async def _fetch_client_metadata(self, client_id: str) -> Optional[ResolvedClient]:
        """
        Fetch and validate a Client ID Metadata Document.

        The whole fetch, body included, runs under ``cimd_timeout_seconds``;
        httpx timeouts alone only bound each individual read.
        """
        try:
            body = await asyncio.wait_for(
                self._download_metadata(client_id),
                timeout=self.config.cimd_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Client metadata fetch for {client_id} exceeded {self.config.cimd_timeout_seconds}s"
            )
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch client metadata from {client_id}: {e}")
            return None

        if body is None:
            return None

        try:
            metadata = json.loads(body)
        except ValueError:
            logger.warning(f"Client metadata at {client_id} is not valid JSON")
            return None

        return self._client_from_metadata(client_id, metadata)

    async def _download_metadata(self, client_id: str) -> Optional[bytes]:
        headers = {
            "Accept": "application/json",
            "User-Agent": self.config.user_agent,
        }
        async with httpx.AsyncClient(
            timeout=self.config.cimd_timeout_seconds,
            transport=self._transport,
        ) as client:
            async with client.stream("GET", client_id, headers=headers) as response:
                if not response.is_success:
                    logger.warning(f"Client metadata fetch for {client_id} returned {response.status_code}")
                    return None

                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > MAX_METADATA_BYTES:
                        logger.warning(f"Client metadata at {client_id} exceeds {MAX_METADATA_BYTES} bytes")
                        return None
                return bytes(body)

    @staticmethod
    def _client_from_metadata(client_id: str, metadata: Any) -> Optional[ResolvedClient]:
        if not isinstance(metadata, dict):
            logger.warning(f"Client metadata at {client_id} is not a JSON object")
            return None

        document_id = metadata.get("client_id")
        redirect_uris = metadata.get("redirect_uris")
        if not isinstance(document_id, str) or not isinstance(redirect_uris, list) or not redirect_uris:
            logger.warning(f"Client metadata at {client_id} is missing client_id or redirect_uris")
            return None
        if not all(isinstance(uri, str) for uri in redirect_uris):
            logger.warning(f"Client metadata at {client_id} has non-string redirect_uris")
            return None

        # The document must describe the URL it was fetched from
        if document_id != client_id:
            logger.warning(f"Client metadata client_id mismatch: expected {client_id}, got {document_id}")
            return None

        grant_types = metadata.get("grant_types")
        if not isinstance(grant_types, list) or not grant_types:
            grant_types = list(DEFAULT_GRANT_TYPES)

        scope = metadata.get("scope")
        scopes = scope.split() if isinstance(scope, str) and scope.strip() else None

        name = metadata.get("client_name")
        return ResolvedClient(
            client_id=client_id,
            name=name if isinstance(name, str) and name else DEFAULT_CLIENT_NAME,
            redirect_uris=list(redirect_uris),
            grant_types=grant_types,
            scopes=scopes,
            is_public=True,
            token_endpoint_auth_method="none",
            from_database=False,
        )


def upsert_client(
    storage: OAuth2Storage,
    client_id: str,
    name: str,
    redirect_uris: list[str],
    grant_types: Optional[list[str]] = None,
    scopes: Optional[list[str]] = None,
    is_public: bool = True,
    client_secret: Optional[str] = None,
) -> OAuthClientRecord:
    """Pre-register a client, or update the registration with the same client_id."""
    record = OAuthClientRecord(
        id=new_id(),
        client_id=client_id,
        name=name,
        redirect_uris=list(redirect_uris),
        grant_types=list(grant_types or DEFAULT_GRANT_TYPES),
        scopes=scopes,
        is_public=is_public,
        client_secret_hash=hash_token(client_secret) if client_secret else None,
        token_endpoint_auth_method="none" if is_public else "client_secret_basic",
        client_id_issued_at=int(time.time()),
    )
    stored = storage.upsert_client(record)
    logger.info(f"Upserted OAuth client {client_id} (public={is_public})")
    return stored


def authenticate_client(client: ResolvedClient, client_secret: Optional[str]) -> bool:
    """Check a confidential client's secret; public clients always pass."""
    if client.is_public:
        return True
    if not client_secret or not client.client_secret_hash:
        return False
    return hmac.compare_digest(hash_token(client_secret), client.client_secret_hash)
