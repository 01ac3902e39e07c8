"""
OAuth 2.1 credential utilities

Token generation, hashing, PKCE validation and the small validators shared
by the authorization and token endpoints.

Credentials are 32 random bytes (256 bits) encoded as unpadded base64url.
Only their SHA-256 hex digest is ever persisted; presented credentials are
re-hashed and looked up by digest. No salt is used since the inputs are
already high-entropy random secrets.
"""

import base64
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlsplit

TOKEN_BYTES = 32

_CODE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
_CODE_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")
_LOOPBACK_HOSTS = ("localhost", "127.0.0.1")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Generate a secure random token (access or refresh)."""
    return _b64url(secrets.token_bytes(TOKEN_BYTES))


def generate_authorization_code() -> str:
    """Generate a secure random authorization code."""
    return _b64url(secrets.token_bytes(TOKEN_BYTES))


def hash_token(token: str) -> str:
    """Hash a credential for storage and lookup (SHA-256 hex)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def compute_pkce_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(ASCII(code_verifier))) as defined by RFC 7636."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def validate_pkce_s256(code_verifier: str, code_challenge: str) -> bool:
    """Validate a PKCE code_verifier against its S256 code_challenge."""
    try:
        expected = compute_pkce_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), code_challenge.encode("utf-8"))


def is_valid_code_verifier(code_verifier: str) -> bool:
    """43-128 characters from the RFC 7636 unreserved set."""
    return bool(_CODE_VERIFIER_RE.match(code_verifier or ""))


def is_valid_code_challenge(code_challenge: str) -> bool:
    """A SHA-256 digest is exactly 43 unpadded base64url characters."""
    return bool(_CODE_CHALLENGE_RE.match(code_challenge or ""))


def is_valid_redirect_uri_format(redirect_uri: str) -> bool:
    """
    Check OAuth 2.1 redirect URI rules.

    The URI must be absolute, must not carry a fragment, and must use https
    unless the host is a loopback name, which may use plain http.
    """
    if not isinstance(redirect_uri, str) or not redirect_uri:
        return False
    try:
        parsed = urlsplit(redirect_uri)
        hostname = parsed.hostname
    except ValueError:
        return False

    if not parsed.scheme or not parsed.netloc or not hostname:
        return False
    if parsed.fragment or "#" in redirect_uri:
        return False

    if hostname in _LOOPBACK_HOSTS:
        return parsed.scheme in ("http", "https")
    return parsed.scheme == "https"


def validate_redirect_uri(redirect_uri: str, allowed_uris: list[str]) -> bool:
    """Exact string match against the registered redirect URIs."""
    return redirect_uri in allowed_uris


def is_client_id_url(client_id: str) -> bool:
    """Whether a client_id names a Client ID Metadata Document."""
    try:
        parsed = urlsplit(client_id)
    except ValueError:
        return False
    return parsed.scheme == "https" and bool(parsed.netloc)


def parse_scopes(scope: Optional[str], supported_scopes: list[str]) -> list[str]:
    """Split a space separated scope string, keeping only known scopes."""
    if not scope:
        return []
    return [s for s in scope.split() if s in supported_scopes]


def validate_scopes(
    requested_scopes: list[str],
    allowed_scopes: Optional[list[str]],
    supported_scopes: list[str],
) -> list[str]:
    """Intersect requested scopes with the client's allowed scopes (None = all supported)."""
    allowed = allowed_scopes if allowed_scopes is not None else supported_scopes
    return [s for s in requested_scopes if s in allowed]


def expiry_after(seconds: int = 0, days: int = 0, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(seconds=seconds, days=days)
