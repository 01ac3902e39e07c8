"""
Discovery documents: RFC 8414 authorization server metadata and RFC 9728
protected resource metadata.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .config import OAuthConfig, get_config


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    revocation_endpoint: str
    scopes_supported: list[str]
    response_types_supported: list[str] = Field(default_factory=lambda: ["code"])
    grant_types_supported: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    code_challenge_methods_supported: list[str] = Field(default_factory=lambda: ["S256"])
    token_endpoint_auth_methods_supported: list[str] = Field(
        default_factory=lambda: ["none", "client_secret_basic"]
    )
    client_id_metadata_document_supported: bool = True


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""

    resource: str
    authorization_servers: list[str]
    scopes_supported: list[str]
    bearer_methods_supported: list[str] = Field(default_factory=lambda: ["header"])


def build_authorization_server_metadata(config: Optional[OAuthConfig] = None) -> AuthorizationServerMetadata:
    config = config or get_config()
    return AuthorizationServerMetadata(
        issuer=config.issuer,
        authorization_endpoint=config.endpoint("/oauth/authorize"),
        token_endpoint=config.endpoint("/oauth/token"),
        registration_endpoint=config.endpoint("/oauth/register"),
        revocation_endpoint=config.endpoint("/oauth/revoke"),
        scopes_supported=list(config.scopes_supported),
    )


def build_protected_resource_metadata(config: Optional[OAuthConfig] = None) -> ProtectedResourceMetadata:
    config = config or get_config()
    return ProtectedResourceMetadata(
        resource=config.resource_identifier,
        authorization_servers=[config.issuer],
        scopes_supported=list(config.scopes_supported),
    )
