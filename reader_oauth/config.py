"""
Configuration for the reader OAuth 2.1 authorization server

Settings are read from environment variables with sensible defaults and
exposed through a process-wide accessor, mirroring how the rest of the
server loads its configuration.

Features:
- Token and code lifetimes
- Supported scope set
- Issuer / protected resource identifiers
- Client ID Metadata Document fetch limits
- Policy switches for open protocol decisions
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["mcp", "saved:write"]

SCOPE_DESCRIPTIONS = {
    "mcp": "Read and manage your feeds and articles",
    "saved:write": "Save articles to your library",
}


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: Optional[str], default: list[str]) -> list[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.replace(",", " ").split() if item.strip()]


@dataclass
class OAuthConfig:
    """Settings for the OAuth 2.1 authorization server core."""

    issuer: str = "http://localhost:3000"
    resource: Optional[str] = None
    db_path: str = "oauth2_storage.db"
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_days: int = 30
    auth_code_ttl_seconds: int = 600
    scopes_supported: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    default_scope: str = "mcp"
    cimd_timeout_seconds: float = 5.0
    user_agent: str = "reader-oauth/1.0"
    burn_code_on_pkce_failure: bool = False

    @property
    def resource_identifier(self) -> str:
        """Protected resource identifier (RFC 9728), defaults to the MCP endpoint."""
        return self.resource or f"{self.issuer.rstrip('/')}/api/mcp"

    def endpoint(self, path: str) -> str:
        return f"{self.issuer.rstrip('/')}{path}"

    @classmethod
    def from_env(cls) -> "OAuthConfig":
        """Load configuration from environment variables."""
        return cls(
            issuer=os.getenv("OAUTH_ISSUER", "http://localhost:3000"),
            resource=os.getenv("OAUTH_RESOURCE") or None,
            db_path=os.getenv("OAUTH_DB_PATH", "oauth2_storage.db"),
            access_token_ttl_seconds=int(os.getenv("OAUTH_ACCESS_TOKEN_TTL_SECONDS", "3600")),
            refresh_token_ttl_days=int(os.getenv("OAUTH_REFRESH_TOKEN_TTL_DAYS", "30")),
            auth_code_ttl_seconds=int(os.getenv("OAUTH_AUTH_CODE_TTL_SECONDS", "600")),
            scopes_supported=_parse_list(os.getenv("OAUTH_SCOPES"), DEFAULT_SCOPES),
            default_scope=os.getenv("OAUTH_DEFAULT_SCOPE", "mcp"),
            cimd_timeout_seconds=float(os.getenv("OAUTH_CIMD_TIMEOUT_SECONDS", "5.0")),
            user_agent=os.getenv("OAUTH_USER_AGENT", "reader-oauth/1.0"),
            burn_code_on_pkce_failure=_parse_bool(os.getenv("OAUTH_BURN_CODE_ON_PKCE_FAILURE")),
        )

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.issuer.startswith(("https://", "http://localhost", "http://127.0.0.1")):
            issues.append(f"Issuer must be an https URL (got {self.issuer})")

        for name, value in [
            ("access_token_ttl_seconds", self.access_token_ttl_seconds),
            ("refresh_token_ttl_days", self.refresh_token_ttl_days),
            ("auth_code_ttl_seconds", self.auth_code_ttl_seconds),
        ]:
            if value <= 0:
                issues.append(f"{name} must be positive")

        if not self.scopes_supported:
            issues.append("At least one scope must be supported")
        elif self.default_scope not in self.scopes_supported:
            issues.append(f"Default scope {self.default_scope} is not in the supported scopes")

        if self.cimd_timeout_seconds <= 0:
            issues.append("CIMD fetch timeout must be positive")

        return issues


# Global configuration instance
_config: Optional[OAuthConfig] = None


def get_config() -> OAuthConfig:
    """Get the global OAuth configuration instance."""
    global _config
    if _config is None:
        _config = OAuthConfig.from_env()
        for issue in _config.validate():
            logger.warning(f"OAuth configuration issue: {issue}")
    return _config


def reload_config() -> OAuthConfig:
    """Reload the global configuration from the environment."""
    global _config
    _config = None
    return get_config()
