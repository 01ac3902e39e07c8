"""
OAuth 2.1 Token Service

Issues opaque bearer tokens, validates access tokens and rotates refresh
tokens. Tokens are 256-bit random values; only their SHA-256 digests are
stored.

Refresh tokens rotate on every use: the presented token is revoked and
linked to its successor through ``replaced_by_id``, building a rotation
chain that allows a replayed (already rotated) token to be traced.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from .config import OAuthConfig, get_config
from .oauth2_crypto import expiry_after, generate_token, hash_token, utcnow
from .oauth2_storage import (
    AccessTokenRecord,
    OAuth2Storage,
    RefreshTokenRecord,
    User,
    new_id,
)

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    """Successful token response (RFC 6749 section 5.1)."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str


@dataclass
class TokenParams:
    client_id: str
    user_id: str
    scopes: list[str]
    resource: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"
    access_token_id: Optional[str] = None
    refresh_token_id: Optional[str] = None

    def to_response(self) -> TokenResponse:
        return TokenResponse(
            access_token=self.access_token,
            token_type=self.token_type,
            expires_in=self.expires_in,
            refresh_token=self.refresh_token,
            scope=self.scope,
        )


@dataclass
class OAuthTokenData:
    """Identity and grant behind a validated access token."""
    token_id: str
    user_id: str
    client_id: str
    scopes: list[str]
    expires_at: datetime
    resource: Optional[str] = None
    user: Optional[User] = None

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class _RotationConflict(Exception):
    """Another rotation revoked the refresh token first; rolls the transaction back."""


class TokenService:
    """Access / refresh token lifecycle."""

    def __init__(
        self,
        storage: OAuth2Storage,
        config: Optional[OAuthConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock
        self._background_tasks: set[asyncio.Task] = set()

    def _insert_pair(self, params: TokenParams, conn, now: datetime) -> TokenPair:
        access_token = generate_token()
        refresh_token = generate_token()

        access_expires = expiry_after(seconds=self.config.access_token_ttl_seconds, now=now)
        access = AccessTokenRecord(
            id=new_id(),
            token_hash=hash_token(access_token),
            client_id=params.client_id,
            user_id=params.user_id,
            scopes=list(params.scopes),
            resource=params.resource,
            created_at=now,
            expires_at=access_expires,
        )
        refresh = RefreshTokenRecord(
            id=new_id(),
            token_hash=hash_token(refresh_token),
            client_id=params.client_id,
            user_id=params.user_id,
            scopes=list(params.scopes),
            access_token_id=access.id,
            created_at=now,
            expires_at=expiry_after(days=self.config.refresh_token_ttl_days, now=now),
        )
        self.storage.insert_access_token(access, conn=conn)
        self.storage.insert_refresh_token(refresh, conn=conn)

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int((access_expires - now).total_seconds()),
            scope=" ".join(params.scopes),
            access_token_id=access.id,
            refresh_token_id=refresh.id,
        )

    async def create_tokens(self, params: TokenParams, conn=None) -> TokenPair:
        """Mint an access / refresh pair; joins ``conn``'s transaction when given."""
        now = self.clock()
        if conn is not None:
            pair = self._insert_pair(params, conn, now)
        else:
            with self.storage.transaction() as own:
                pair = self._insert_pair(params, own, now)

        logger.info(f"Issued tokens {pair.access_token_id} for user {params.user_id} and client {params.client_id}")
        return pair

    async def validate_access_token(self, token: str) -> Optional[OAuthTokenData]:
        """Resolve a bearer token to its grant, or None if unknown, expired or revoked."""
        if not token:
            return None

        found = self.storage.find_active_access_token(hash_token(token), self.clock())
        if not found:
            return None
        record, user = found

        task = asyncio.create_task(self._touch_last_used(record.id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        return OAuthTokenData(
            token_id=record.id,
            user_id=record.user_id,
            client_id=record.client_id,
            scopes=list(record.scopes),
            expires_at=record.expires_at,
            resource=record.resource,
            user=user,
        )

    async def _touch_last_used(self, token_id: str) -> None:
        try:
            self.storage.touch_access_token(token_id, self.clock())
        except Exception as e:
            logger.warning(f"Failed to update last_used_at for access token {token_id}: {e}")

    async def rotate_refresh_token(self, refresh_token: str, client_id: str) -> Optional[TokenPair]:
        """
        Exchange a refresh token for a new pair.

        Lookup, issuance and revocation of the old pair happen in one
        transaction. Returns None for unknown, expired, revoked or
        wrong-client tokens, and for the loser of a concurrent rotation.
        """
        token_hash = hash_token(refresh_token)
        now = self.clock()

        try:
            with self.storage.transaction() as conn:
                old = self.storage.find_active_refresh_token(token_hash, client_id, now, conn=conn)
                if not old:
                    pair = None
                else:
                    resource = None
                    if old.access_token_id:
                        old_access = self.storage.get_access_token(old.access_token_id, conn=conn)
                        resource = old_access.resource if old_access else None

                    pair = self._insert_pair(
                        TokenParams(
                            client_id=old.client_id,
                            user_id=old.user_id,
                            scopes=old.scopes,
                            resource=resource,
                        ),
                        conn,
                        now,
                    )

                    if not self.storage.revoke_refresh_token(
                        old.id, now, replaced_by_id=pair.refresh_token_id, conn=conn
                    ):
                        raise _RotationConflict(old.id)

                    if old.access_token_id:
                        self.storage.revoke_access_token(old.access_token_id, now, conn=conn)
        except _RotationConflict as e:
            logger.warning(f"Refresh token {e} was rotated concurrently")
            return None

        if pair is None:
            chain = self.detect_refresh_token_reuse(refresh_token)
            if chain:
                logger.warning(
                    f"Rotated refresh token replayed by client {client_id}; rotation chain: {chain}"
                )
            return None

        logger.info(f"Rotated refresh token for client {client_id} -> {pair.refresh_token_id}")
        return pair

    def detect_refresh_token_reuse(self, refresh_token: str) -> Optional[list[str]]:
        """
        Return the rotation chain (presented token first) when a revoked,
        already rotated refresh token is presented; otherwise None.
        """
        record = self.storage.get_refresh_token_by_hash(hash_token(refresh_token))
        if not record or record.revoked_at is None or not record.replaced_by_id:
            return None

        chain = [record.id]
        next_id = record.replaced_by_id
        while next_id and next_id not in chain:
            chain.append(next_id)
            successor = self.storage.get_refresh_token(next_id)
            next_id = successor.replaced_by_id if successor else None
        return chain

    async def revoke_client_tokens(self, user_id: str, client_id: str, conn=None) -> int:
        """Revoke all active tokens for a (user, client) pair; returns rows revoked."""
        now = self.clock()
        if conn is not None:
            count = self.storage.revoke_tokens_for_user_client(user_id, client_id, now, conn=conn)
        else:
            with self.storage.transaction() as own:
                count = self.storage.revoke_tokens_for_user_client(user_id, client_id, now, conn=own)

        logger.info(f"Revoked {count} tokens for user {user_id} and client {client_id}")
        return count

    async def revoke_token(
        self,
        token: str,
        token_type_hint: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> bool:
        """
        Revoke a single token by its raw value (RFC 7009).

        When ``client_id`` is given, only tokens issued to that client are
        revoked; anything else is treated like an unknown token. Revoking a
        refresh token also revokes the access token it was issued with.
        """
        token_hash = hash_token(token)
        now = self.clock()

        if token_type_hint == "refresh_token":
            order = ("refresh_token", "access_token")
        else:
            order = ("access_token", "refresh_token")

        for kind in order:
            if kind == "access_token":
                record = self.storage.get_access_token_by_hash(token_hash)
            else:
                record = self.storage.get_refresh_token_by_hash(token_hash)
            if not record or record.revoked_at is not None:
                continue
            if client_id is not None and record.client_id != client_id:
                logger.warning(f"Client {client_id} tried to revoke {kind} {record.id} issued to {record.client_id}")
                return False

            if kind == "access_token":
                changed = self.storage.revoke_access_token(record.id, now)
            else:
                with self.storage.transaction() as conn:
                    changed = self.storage.revoke_refresh_token(record.id, now, conn=conn)
                    if changed and record.access_token_id:
                        self.storage.revoke_access_token(record.access_token_id, now, conn=conn)
            if changed:
                logger.info(f"Revoked {kind} {record.id}")
                return True
        return False
