"""
Dynamic Client Registration (DCR) for OAuth 2.0 Clients - RFC 7591

Features:
- Redirect URI validation (absolute, no fragment, https except loopback)
- Token endpoint auth method selection (public vs confidential clients)
- Grant type / response type normalization
- Scope restriction against the supported scope set
- Server-generated client_id and, for confidential clients, a one-time
  client_secret (only its hash is stored)

Validation failures never raise; they are reported through
``RegistrationResult`` so the HTTP layer can render an RFC 7591 error body.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel

from .config import OAuthConfig, get_config
from .oauth2_crypto import generate_token, hash_token, is_valid_redirect_uri_format
from .oauth2_errors import ErrorCode
from .oauth2_storage import OAuth2Storage, OAuth2StorageError, OAuthClientRecord, new_id

logger = logging.getLogger(__name__)

SUPPORTED_AUTH_METHODS = ("none", "client_secret_basic", "client_secret_post")
SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")

# Optional RFC 7591 metadata echoed back and kept with the registration
DISPLAY_METADATA_FIELDS = (
    "client_uri",
    "logo_uri",
    "contacts",
    "tos_uri",
    "policy_uri",
    "software_id",
    "software_version",
)


class ClientRegistrationResponse(BaseModel):
    """Client registration response as defined in RFC 7591."""

    client_id: str
    client_id_issued_at: int
    client_secret: Optional[str] = None
    client_secret_expires_at: Optional[int] = None
    client_name: Optional[str] = None
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str
    scope: Optional[str] = None
    client_uri: Optional[str] = None
    logo_uri: Optional[str] = None
    contacts: Optional[list[str]] = None
    tos_uri: Optional[str] = None
    policy_uri: Optional[str] = None
    software_id: Optional[str] = None
    software_version: Optional[str] = None


@dataclass
class RegistrationResult:
    success: bool
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def failure(cls, error: ErrorCode, description: str) -> "RegistrationResult":
        return cls(success=False, error=error.value, error_description=description)


class ClientRegistrar:
    """Dynamic Client Registration implementing RFC 7591."""

    def __init__(self, storage: OAuth2Storage, config: Optional[OAuthConfig] = None):
        self.storage = storage
        self.config = config or get_config()

    def _generate_client_id(self) -> str:
        return secrets.token_hex(16)

    def _generate_client_secret(self) -> str:
        """Generate a 256-bit client secret (unpadded base64url)."""
        return generate_token()

    def _validate_redirect_uris(self, redirect_uris: Any) -> Optional[str]:
        if not isinstance(redirect_uris, list) or not redirect_uris:
            return "redirect_uris is required and must be a non-empty array"
        for uri in redirect_uris:
            if not isinstance(uri, str) or not is_valid_redirect_uri_format(uri):
                return f"Invalid redirect URI: {uri}"
        return None

    @staticmethod
    def _display_metadata(request: dict[str, Any]) -> dict[str, Any]:
        """Keep well-typed optional metadata, silently dropping anything else."""
        metadata = {}
        for key in DISPLAY_METADATA_FIELDS:
            value = request.get(key)
            if key == "contacts":
                if isinstance(value, list) and all(isinstance(c, str) for c in value):
                    metadata[key] = list(value)
            elif isinstance(value, str) and value:
                metadata[key] = value
        return metadata

    async def register_client(self, request: dict[str, Any]) -> RegistrationResult:
        """Validate registration metadata and persist a new client."""
        if not isinstance(request, dict):
            return RegistrationResult.failure(
                ErrorCode.INVALID_CLIENT_METADATA, "Registration request must be a JSON object"
            )

        redirect_uris = request.get("redirect_uris")
        problem = self._validate_redirect_uris(redirect_uris)
        if problem:
            return RegistrationResult.failure(ErrorCode.INVALID_REDIRECT_URI, problem)

        auth_method = request.get("token_endpoint_auth_method") or "none"
        if auth_method not in SUPPORTED_AUTH_METHODS:
            return RegistrationResult.failure(
                ErrorCode.INVALID_CLIENT_METADATA,
                f"Unsupported token_endpoint_auth_method: {auth_method}",
            )
        is_public = auth_method == "none"

        requested_grants = request.get("grant_types", ["authorization_code"])
        if not isinstance(requested_grants, list):
            return RegistrationResult.failure(
                ErrorCode.INVALID_CLIENT_METADATA, "grant_types must be an array"
            )
        grant_types = [g for g in SUPPORTED_GRANT_TYPES if g in requested_grants]
        if not grant_types:
            return RegistrationResult.failure(
                ErrorCode.INVALID_CLIENT_METADATA,
                "No supported grant types requested (supported: authorization_code, refresh_token)",
            )

        response_types = request.get("response_types")
        if not isinstance(response_types, list):
            response_types = []
        response_types = [r for r in response_types if r == "code"]
        if "authorization_code" in grant_types and "code" not in response_types:
            response_types.append("code")

        scopes = None
        scope = request.get("scope")
        if isinstance(scope, str) and scope.strip():
            requested = scope.split()
            scopes = [s for s in requested if s in self.config.scopes_supported] or None

        client_name = request.get("client_name")
        if not isinstance(client_name, str) or not client_name.strip():
            client_name = None

        display_metadata = self._display_metadata(request)

        client_id = self._generate_client_id()
        client_secret = None if is_public else self._generate_client_secret()
        issued_at = int(time.time())

        record = OAuthClientRecord(
            id=new_id(),
            client_id=client_id,
            name=client_name or "Unknown Application",
            redirect_uris=list(redirect_uris),
            grant_types=grant_types,
            scopes=scopes,
            is_public=is_public,
            client_secret_hash=hash_token(client_secret) if client_secret else None,
            token_endpoint_auth_method=auth_method,
            response_types=response_types,
            metadata=display_metadata,
            client_id_issued_at=issued_at,
        )

        try:
            self.storage.insert_client(record)
        except OAuth2StorageError as e:
            logger.error(f"Failed to store client registration {client_id}: {e}", exc_info=True)
            return RegistrationResult.failure(ErrorCode.SERVER_ERROR, "Failed to store client registration")

        logger.info(
            f"Registered OAuth client {client_id} "
            f"(name={client_name!r}, auth_method={auth_method}, grants={grant_types})"
        )

        response = ClientRegistrationResponse(
            client_id=client_id,
            client_id_issued_at=issued_at,
            client_secret=client_secret,
            client_secret_expires_at=0 if client_secret else None,
            client_name=client_name,
            redirect_uris=list(redirect_uris),
            grant_types=grant_types,
            response_types=response_types,
            token_endpoint_auth_method=auth_method,
            scope=" ".join(scopes) if scopes else None,
            **display_metadata,
        )
        return RegistrationResult(success=True, response=response.model_dump(exclude_none=True))
