"""
OAuth 2.1 HTTP Endpoints

FastAPI routes exposing the authorization server core.

Endpoints:
- GET  /oauth/authorize - Authorization request (login / consent / code redirect)
- POST /oauth/authorize - Consent decision (approve / deny)
- POST /oauth/token - Authorization code and refresh token grants
- POST /oauth/register - Dynamic Client Registration (RFC 7591)
- POST /oauth/revoke - Token revocation (RFC 7009)
- GET  /.well-known/oauth-authorization-server - RFC 8414 metadata
- GET  /.well-known/oauth-protected-resource - RFC 9728 metadata

Usage:
    from reader_oauth.oauth2_endpoints import OAuthServices, create_oauth_router

    app = FastAPI()
    app.state.oauth_services = OAuthServices.create(storage)
    app.include_router(create_oauth_router())

Login is pluggable: ``get_current_user_id`` reads ``request.state.user_id``
(set by the host application's session middleware) and can be replaced with
``app.dependency_overrides``. Protected resources depend on
``require_oauth_token``.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qsl, unquote_plus, urlencode, urlsplit, urlunsplit

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .config import OAuthConfig, get_config
from .oauth2_clients import ClientResolver, ResolvedClient, authenticate_client
from .oauth2_codes import AuthCodeParams, AuthorizationCodeService
from .oauth2_crypto import (
    is_valid_code_challenge,
    is_valid_code_verifier,
    is_valid_redirect_uri_format,
    parse_scopes,
    validate_redirect_uri,
    validate_scopes,
)
from .oauth2_dcr import ClientRegistrar
from .oauth2_errors import ErrorCode, OAuth2Error
from .oauth2_metadata import build_authorization_server_metadata, build_protected_resource_metadata
from .oauth2_storage import OAuth2Storage, OAuth2StorageError
from .oauth2_tokens import OAuthTokenData, TokenParams, TokenService
from .oauth_consent import ConsentStore

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass
class OAuthServices:
    """The wired-up authorization server components shared by all routes."""
    config: OAuthConfig
    storage: OAuth2Storage
    clients: ClientResolver
    registrar: ClientRegistrar
    codes: AuthorizationCodeService
    tokens: TokenService
    consent: ConsentStore

    @classmethod
    def create(
        cls,
        storage: OAuth2Storage,
        config: Optional[OAuthConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OAuthServices":
        config = config or get_config()
        tokens = TokenService(storage, config)
        return cls(
            config=config,
            storage=storage,
            clients=ClientResolver(storage, config, transport=transport),
            registrar=ClientRegistrar(storage, config),
            codes=AuthorizationCodeService(storage, config),
            tokens=tokens,
            consent=ConsentStore(storage, tokens),
        )


def get_oauth_services(request: Request) -> OAuthServices:
    return request.app.state.oauth_services


async def get_current_user_id(request: Request) -> Optional[str]:
    """Current end-user id, or None when nobody is logged in."""
    return getattr(request.state, "user_id", None)


def oauth_error_response(error: OAuth2Error, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    """Render an OAuth 2.0 error body with its HTTP status."""
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_response().model_dump(exclude_none=True),
        headers=headers,
    )


def _append_query(uri: str, params: dict[str, Optional[str]]) -> str:
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _error_redirect(redirect_uri: str, error: ErrorCode, description: str, state: Optional[str]) -> RedirectResponse:
    location = _append_query(redirect_uri, {
        "error": error.value,
        "error_description": description,
        "state": state,
    })
    return RedirectResponse(location, status_code=status.HTTP_302_FOUND)


def _parse_basic_auth(header: Optional[str]) -> Optional[tuple[str, str]]:
    """Decode ``Authorization: Basic`` client credentials (RFC 6749 section 2.3.1)."""
    if not header or not header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        return None
    # Both parts are form-encoded before being joined
    return unquote_plus(client_id), unquote_plus(client_secret)


async def _read_params(request: Request) -> dict[str, Any]:
    """Read a form or JSON request body into a flat dict."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type == "application/x-www-form-urlencoded":
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    if content_type == "application/json":
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Invalid JSON body")
        if not isinstance(body, dict):
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Request body must be a JSON object")
        return body

    raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Unsupported content type")


def _require(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value:
        raise OAuth2Error(ErrorCode.INVALID_REQUEST, f"Missing required parameter: {name}")
    return value


async def _resolve_authorize_client(
    services: OAuthServices,
    client_id: Optional[str],
    redirect_uri: Optional[str],
) -> ResolvedClient:
    """
    Checks that must pass before errors may be sent to the redirect URI.

    Failures here are rendered as JSON; redirecting to an unverified URI
    would turn the endpoint into an open redirector.
    """
    if not client_id or not redirect_uri:
        raise OAuth2Error(ErrorCode.INVALID_REQUEST, "client_id and redirect_uri are required")
    if not is_valid_redirect_uri_format(redirect_uri):
        raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Invalid redirect_uri")

    client = await services.clients.resolve_client(client_id)
    if not client:
        raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Unknown client")
    if not validate_redirect_uri(redirect_uri, client.redirect_uris):
        raise OAuth2Error(ErrorCode.INVALID_REQUEST, "redirect_uri is not registered for this client")
    return client


def _requested_scopes(services: OAuthServices, client: ResolvedClient, scope: Optional[str]) -> list[str]:
    # Unknown or missing scopes fall back to the default scope
    supported = services.config.scopes_supported
    requested = parse_scopes(scope, supported) or [services.config.default_scope]
    return validate_scopes(requested, client.scopes, supported)


async def _issue_code_redirect(
    services: OAuthServices,
    client: ResolvedClient,
    user_id: str,
    redirect_uri: str,
    scopes: list[str],
    code_challenge: str,
    state: Optional[str],
    resource: Optional[str],
) -> RedirectResponse:
    code = await services.codes.create_authorization_code(AuthCodeParams(
        client_id=client.client_id,
        user_id=user_id,
        redirect_uri=redirect_uri,
        scopes=scopes,
        code_challenge=code_challenge,
        resource=resource,
        state=state,
    ))
    location = _append_query(redirect_uri, {"code": code, "state": state})
    return RedirectResponse(location, status_code=status.HTTP_302_FOUND)


async def require_oauth_token(request: Request) -> OAuthTokenData:
    """
    Dependency for protected resources: validates ``Authorization: Bearer``.

    Raises 401 with a ``WWW-Authenticate`` challenge pointing at the
    protected resource metadata document.
    """
    services = get_oauth_services(request)
    metadata_url = services.config.endpoint("/.well-known/oauth-protected-resource")
    challenge = f'Bearer resource_metadata="{metadata_url}"'

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": challenge},
        )

    token_data = await services.tokens.validate_access_token(token.strip())
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": f'{challenge}, error="invalid_token"'},
        )
    return token_data


def create_oauth_router() -> APIRouter:
    """Create FastAPI router with the OAuth 2.1 endpoints."""

    router = APIRouter()

    @router.get("/oauth/authorize", summary="OAuth 2.1 authorization request")
    async def authorize(
        request: Request,
        services: OAuthServices = Depends(get_oauth_services),
        user_id: Optional[str] = Depends(get_current_user_id),
    ):
        params = request.query_params
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        state = params.get("state")

        try:
            client = await _resolve_authorize_client(services, client_id, redirect_uri)
        except OAuth2Error as e:
            logger.warning(f"Authorization request rejected for client {client_id}: {e}")
            return oauth_error_response(e)

        if params.get("response_type") != "code":
            return _error_redirect(
                redirect_uri, ErrorCode.UNSUPPORTED_RESPONSE_TYPE, "Only response_type=code is supported", state
            )

        code_challenge = params.get("code_challenge")
        if not code_challenge:
            return _error_redirect(redirect_uri, ErrorCode.INVALID_REQUEST, "code_challenge is required", state)
        if params.get("code_challenge_method") != "S256":
            return _error_redirect(
                redirect_uri, ErrorCode.INVALID_REQUEST, "code_challenge_method must be S256", state
            )
        if not is_valid_code_challenge(code_challenge):
            return _error_redirect(redirect_uri, ErrorCode.INVALID_REQUEST, "Invalid code_challenge format", state)

        scopes = _requested_scopes(services, client, params.get("scope"))
        if not scopes:
            return _error_redirect(redirect_uri, ErrorCode.INVALID_SCOPE, "No valid scopes requested", state)

        resource = params.get("resource")

        if not user_id:
            login_target = request.url.path
            if request.url.query:
                login_target = f"{login_target}?{request.url.query}"
            return RedirectResponse(
                f"/login?{urlencode({'redirect': login_target})}", status_code=status.HTTP_302_FOUND
            )

        if not await services.consent.has_consent(user_id, client.client_id, scopes):
            consent_params = {
                "client_id": client.client_id,
                "redirect_uri": redirect_uri,
                "scope": " ".join(scopes),
                "code_challenge": code_challenge,
                "state": state,
                "resource": resource,
            }
            return RedirectResponse(
                _append_query("/oauth/consent", consent_params), status_code=status.HTTP_302_FOUND
            )

        return await _issue_code_redirect(
            services, client, user_id, redirect_uri, scopes, code_challenge, state, resource
        )

    @router.post("/oauth/authorize", summary="OAuth 2.1 consent decision")
    async def authorize_decision(
        request: Request,
        services: OAuthServices = Depends(get_oauth_services),
        user_id: Optional[str] = Depends(get_current_user_id),
    ):
        if not user_id:
            return oauth_error_response(
                OAuth2Error(ErrorCode.ACCESS_DENIED, "Authentication required", status.HTTP_401_UNAUTHORIZED)
            )

        try:
            params = await _read_params(request)
            client_id = params.get("client_id")
            redirect_uri = params.get("redirect_uri")
            client = await _resolve_authorize_client(services, client_id, redirect_uri)
            code_challenge = _require(params, "code_challenge")
            if not is_valid_code_challenge(code_challenge):
                raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Invalid code_challenge format")
        except OAuth2Error as e:
            logger.warning(f"Consent decision rejected: {e}")
            return oauth_error_response(e)

        state = params.get("state") or None
        action = params.get("action")

        if action == "deny":
            logger.info(f"User {user_id} denied access to client {client.client_id}")
            return _error_redirect(redirect_uri, ErrorCode.ACCESS_DENIED, "User denied access", state)

        if action != "approve":
            return oauth_error_response(OAuth2Error(ErrorCode.INVALID_REQUEST, "action must be approve or deny"))

        scopes = _requested_scopes(services, client, params.get("scope"))
        if not scopes:
            return _error_redirect(redirect_uri, ErrorCode.INVALID_SCOPE, "No valid scopes requested", state)

        await services.consent.record_consent(user_id, client.client_id, scopes)
        return await _issue_code_redirect(
            services, client, user_id, redirect_uri, scopes, code_challenge, state, params.get("resource") or None
        )

    @router.post("/oauth/token", summary="OAuth 2.1 token endpoint")
    async def token(
        request: Request,
        services: OAuthServices = Depends(get_oauth_services),
    ):
        try:
            params = await _read_params(request)
            grant_type = _require(params, "grant_type")

            if grant_type == "authorization_code":
                pair = await _authorization_code_grant(services, request, params)
            elif grant_type == "refresh_token":
                pair = await _refresh_token_grant(services, request, params)
            else:
                raise OAuth2Error(ErrorCode.UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {grant_type}")
        except OAuth2Error as e:
            logger.warning(f"Token request failed: {e}")
            return oauth_error_response(e, headers=NO_STORE_HEADERS)
        except OAuth2StorageError as e:
            logger.error(f"Storage failure during token request: {e}", exc_info=True)
            return oauth_error_response(
                OAuth2Error(ErrorCode.SERVER_ERROR, "Internal server error", 500), headers=NO_STORE_HEADERS
            )

        return JSONResponse(content=pair.to_response().model_dump(), headers=NO_STORE_HEADERS)

    @router.post("/oauth/register", status_code=status.HTTP_201_CREATED, summary="Register OAuth 2.0 Client")
    async def register(
        request: Request,
        services: OAuthServices = Depends(get_oauth_services),
    ):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return oauth_error_response(OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, "Invalid JSON body"))

        result = await services.registrar.register_client(body)
        if result.success:
            return JSONResponse(status_code=status.HTTP_201_CREATED, content=result.response, headers=NO_STORE_HEADERS)

        status_code = 500 if result.error == ErrorCode.SERVER_ERROR.value else 400
        content = {"error": result.error, "error_description": result.error_description}
        return JSONResponse(status_code=status_code, content=content)

    @router.post("/oauth/revoke", summary="Token revocation (RFC 7009)")
    async def revoke(
        request: Request,
        services: OAuthServices = Depends(get_oauth_services),
    ):
        try:
            params = await _read_params(request)
            token_value = _require(params, "token")
            client = await _authenticated_client(services, request, params)
            # Unknown, foreign or already revoked tokens are not an error (RFC 7009 section 2.2)
            await services.tokens.revoke_token(token_value, params.get("token_type_hint"), client_id=client.client_id)
        except OAuth2Error as e:
            logger.warning(f"Revocation request failed: {e}")
            return oauth_error_response(e)
        except OAuth2StorageError as e:
            logger.error(f"Storage failure during revocation: {e}", exc_info=True)
            return oauth_error_response(OAuth2Error(ErrorCode.SERVER_ERROR, "Internal server error", 500))

        return Response(status_code=status.HTTP_200_OK)

    @router.get("/.well-known/oauth-authorization-server", summary="Authorization server metadata (RFC 8414)")
    async def authorization_server_metadata(services: OAuthServices = Depends(get_oauth_services)):
        return build_authorization_server_metadata(services.config).model_dump()

    @router.get("/.well-known/oauth-protected-resource", summary="Protected resource metadata (RFC 9728)")
    @router.get("/.well-known/oauth-protected-resource/{resource_path:path}", include_in_schema=False)
    async def protected_resource_metadata(services: OAuthServices = Depends(get_oauth_services)):
        return build_protected_resource_metadata(services.config).model_dump()

    return router


async def _authenticated_client(
    services: OAuthServices,
    request: Request,
    params: dict[str, Any],
) -> ResolvedClient:
    basic = _parse_basic_auth(request.headers.get("authorization"))
    client_id = params.get("client_id") or (basic[0] if basic else None)
    if not isinstance(client_id, str) or not client_id:
        raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Missing required parameter: client_id")

    client = await services.clients.resolve_client(client_id)
    if not client:
        raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Unknown client", status.HTTP_401_UNAUTHORIZED)

    client_secret = basic[1] if basic and basic[0] == client_id else params.get("client_secret")
    if not authenticate_client(client, client_secret if isinstance(client_secret, str) else None):
        raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Client authentication failed", status.HTTP_401_UNAUTHORIZED)
    return client


async def _authorization_code_grant(services: OAuthServices, request: Request, params: dict[str, Any]):
    code = _require(params, "code")
    redirect_uri = _require(params, "redirect_uri")
    code_verifier = _require(params, "code_verifier")
    if not is_valid_code_verifier(code_verifier):
        raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Invalid code_verifier format")

    client = await _authenticated_client(services, request, params)

    grant = await services.codes.validate_and_consume_auth_code(
        code, client.client_id, redirect_uri, code_verifier
    )
    if not grant:
        raise OAuth2Error(ErrorCode.INVALID_GRANT, "Invalid, expired, or already used authorization code")

    return await services.tokens.create_tokens(TokenParams(
        client_id=client.client_id,
        user_id=grant.user_id,
        scopes=grant.scopes,
        resource=grant.resource,
    ))


async def _refresh_token_grant(services: OAuthServices, request: Request, params: dict[str, Any]):
    refresh_token = _require(params, "refresh_token")
    client = await _authenticated_client(services, request, params)

    pair = await services.tokens.rotate_refresh_token(refresh_token, client.client_id)
    if not pair:
        raise OAuth2Error(ErrorCode.INVALID_GRANT, "Invalid or expired refresh token")
    return pair
