"""
Reader OAuth 2.1 authorization server core.

Authorization codes with PKCE (S256), opaque bearer tokens with refresh
rotation, consent tracking, dynamic client registration and Client ID
Metadata Document clients, over a SQLite store.
"""

from .config import OAuthConfig, get_config, reload_config
from .oauth2_clients import ClientResolver, ResolvedClient, authenticate_client, upsert_client
from .oauth2_codes import AuthCodeGrant, AuthCodeParams, AuthorizationCodeService
from .oauth2_dcr import ClientRegistrar, RegistrationResult
from .oauth2_errors import ErrorCode, OAuth2Error
from .oauth2_storage import OAuth2Storage, OAuth2StorageError, get_oauth2_storage, oauth2_transaction
from .oauth2_tokens import OAuthTokenData, TokenPair, TokenParams, TokenService
from .oauth_consent import ConsentStore

__all__ = [
    "OAuthConfig",
    "get_config",
    "reload_config",
    "ClientResolver",
    "ResolvedClient",
    "authenticate_client",
    "upsert_client",
    "AuthCodeGrant",
    "AuthCodeParams",
    "AuthorizationCodeService",
    "ClientRegistrar",
    "RegistrationResult",
    "ErrorCode",
    "OAuth2Error",
    "OAuth2Storage",
    "OAuth2StorageError",
    "get_oauth2_storage",
    "oauth2_transaction",
    "OAuthTokenData",
    "TokenPair",
    "TokenParams",
    "TokenService",
    "ConsentStore",
]
