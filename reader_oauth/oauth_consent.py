"""
OAuth 2.0 consent tracking
Per-(user, client) scope approval with cascading token revocation
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from .config import SCOPE_DESCRIPTIONS
from .oauth2_crypto import utcnow
from .oauth2_storage import ConsentGrant, OAuth2Storage
from .oauth2_tokens import TokenService

logger = logging.getLogger(__name__)


def covers_scopes(grant: ConsentGrant, requested_scopes: list[str]) -> bool:
    """Check if an active grant covers all requested scopes"""
    if grant.revoked_at is not None:
        return False
    return set(requested_scopes).issubset(grant.scopes)


class ConsentStore:
    """Durable consent grants, one per (user, client) pair"""

    def __init__(
        self,
        storage: OAuth2Storage,
        token_service: TokenService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.token_service = token_service
        self.clock = clock

    async def has_consent(self, user_id: str, client_id: str, requested_scopes: list[str]) -> bool:
        grant = self.storage.get_consent_grant(user_id, client_id)
        return grant is not None and covers_scopes(grant, requested_scopes)

    async def record_consent(self, user_id: str, client_id: str, scopes: list[str]) -> ConsentGrant:
        """Record (or replace) the user's approval; clears any earlier revocation"""
        grant = self.storage.upsert_consent_grant(user_id, client_id, list(scopes), self.clock())
        logger.info(f"Consent recorded for user {user_id} and client {client_id}: {scopes}")
        return grant

    async def revoke_consent(self, user_id: str, client_id: str) -> int:
        """
        Revoke consent and every token issued to the client for this user.

        Returns the number of tokens revoked.
        """
        now = self.clock()
        with self.storage.transaction() as conn:
            self.storage.revoke_consent_grant(user_id, client_id, now, conn=conn)
            revoked = await self.token_service.revoke_client_tokens(user_id, client_id, conn=conn)

        logger.info(f"Consent revoked for user {user_id} and client {client_id} ({revoked} tokens)")
        return revoked

    async def get_user_consents(self, user_id: str) -> list[ConsentGrant]:
        return self.storage.list_active_consent_grants(user_id)

    @staticmethod
    def describe_scopes(scopes: list[str]) -> list[dict[str, str]]:
        """Scope names with their user-facing descriptions, for consent screens"""
        return [
            {"name": scope, "description": SCOPE_DESCRIPTIONS.get(scope, scope)}
            for scope in scopes
        ]
