"""
HTTP application for the reader OAuth 2.1 authorization server.

Mounts the OAuth router plus a minimal protected resource:
- /oauth/* and /.well-known/* (see reader_oauth.oauth2_endpoints)
- GET /api/mcp/whoami - bearer-protected identity echo
- GET /health

Run with ``python server_http.py`` or ``uvicorn server_http:create_app --factory``.
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Any, Optional

import httpx
from fastapi import Depends, FastAPI

from reader_oauth.config import OAuthConfig, get_config
from reader_oauth.oauth2_endpoints import OAuthServices, create_oauth_router, require_oauth_token
from reader_oauth.oauth2_storage import OAuth2Storage, get_oauth2_storage
from reader_oauth.oauth2_tokens import OAuthTokenData

logger = logging.getLogger(__name__)


def create_app(
    storage: Optional[OAuth2Storage] = None,
    config: Optional[OAuthConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    config = config or get_config()
    storage = storage or get_oauth2_storage(config.db_path)

    app = FastAPI(title="Reader OAuth 2.1 Authorization Server")
    app.state.oauth_services = OAuthServices.create(storage, config, transport=transport)
    app.include_router(create_oauth_router(), tags=["oauth"])

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "issuer": config.issuer}

    @app.get("/api/mcp/whoami")
    async def whoami(token: OAuthTokenData = Depends(require_oauth_token)) -> dict[str, Any]:
        return {
            "user_id": token.user_id,
            "email": token.user.email if token.user else None,
            "client_id": token.client_id,
            "scopes": token.scopes,
            "resource": token.resource,
        }

    logger.info(f"OAuth server app created (issuer={config.issuer}, db={storage.db_path})")
    return app


def main():
    """Main entry point for the server."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Reader OAuth 2.1 Authorization Server")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"), help="Host to bind to")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")), help="Port to bind to")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
