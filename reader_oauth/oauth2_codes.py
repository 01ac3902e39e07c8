"""
Authorization code issuance and single-use redemption (PKCE S256 only).

A code moves from issued to redeemed exactly once, or expires. Redemption is
decided by one conditional update in the store, so two concurrent exchanges
of the same code can never both succeed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import OAuthConfig, get_config
from .oauth2_crypto import (
    expiry_after,
    generate_authorization_code,
    hash_token,
    utcnow,
    validate_pkce_s256,
)
from .oauth2_storage import AuthorizationCodeRecord, OAuth2Storage, new_id

logger = logging.getLogger(__name__)


@dataclass
class AuthCodeParams:
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: list[str]
    code_challenge: str
    resource: Optional[str] = None
    state: Optional[str] = None


@dataclass
class AuthCodeGrant:
    """What a successfully redeemed code grants."""
    user_id: str
    scopes: list[str]
    resource: Optional[str] = None


class AuthorizationCodeService:
    """Issue and redeem authorization codes."""

    def __init__(
        self,
        storage: OAuth2Storage,
        config: Optional[OAuthConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock

    async def create_authorization_code(self, params: AuthCodeParams) -> str:
        """Create a code bound to the request; the raw code is returned once and never stored."""
        code = generate_authorization_code()
        now = self.clock()

        record = AuthorizationCodeRecord(
            id=new_id(),
            code_hash=hash_token(code),
            client_id=params.client_id,
            user_id=params.user_id,
            redirect_uri=params.redirect_uri,
            scopes=list(params.scopes),
            code_challenge=params.code_challenge,
            code_challenge_method="S256",
            resource=params.resource,
            state=params.state,
            created_at=now,
            expires_at=expiry_after(seconds=self.config.auth_code_ttl_seconds, now=now),
        )
        self.storage.insert_authorization_code(record)

        logger.debug(f"Issued authorization code {record.id} for client {params.client_id}")
        return code

    async def validate_and_consume_auth_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> Optional[AuthCodeGrant]:
        """
        Redeem a code.

        Returns the grant for exactly one caller; unknown, expired, used,
        wrong-client, wrong-redirect and PKCE-mismatched codes all yield None.
        """
        now = self.clock()
        record = self.storage.find_active_authorization_code(
            hash_token(code), client_id, redirect_uri, now
        )
        if not record:
            logger.debug(f"Authorization code not found or no longer valid for client {client_id}")
            return None

        if not validate_pkce_s256(code_verifier, record.code_challenge):
            logger.warning(f"PKCE verification failed for authorization code {record.id}")
            if self.config.burn_code_on_pkce_failure:
                self.storage.mark_authorization_code_used(record.id, now)
            return None

        if not self.storage.mark_authorization_code_used(record.id, now):
            logger.warning(f"Authorization code {record.id} was redeemed concurrently")
            return None

        logger.info(f"Authorization code {record.id} redeemed by client {client_id}")
        return AuthCodeGrant(user_id=record.user_id, scopes=list(record.scopes), resource=record.resource)
