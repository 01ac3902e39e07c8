"""
OAuth 2.0 error codes (RFC 6749 / RFC 7591) and the protocol exception.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """OAuth 2.0 error codes as defined in RFC 6749 and RFC 7591."""
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    # RFC 7591 Dynamic Client Registration
    INVALID_REDIRECT_URI = "invalid_redirect_uri"
    INVALID_CLIENT_METADATA = "invalid_client_metadata"


class ErrorResponse(BaseModel):
    """OAuth 2.0 error response format as defined in RFC 6749."""

    error: str
    error_description: Optional[str] = None
    error_uri: Optional[str] = None


class OAuth2Error(Exception):
    """OAuth 2.0 error with proper error codes and descriptions."""

    def __init__(self, error: ErrorCode, description: str = "", status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error.value}: {description}")

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.error.value, error_description=self.description or None)
