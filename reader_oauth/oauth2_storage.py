"""
OAuth 2.1 Storage Layer

SQLite-backed relational store for the authorization server. It is the sole
source of truth for clients, authorization codes, tokens and consent grants;
nothing is cached in process.

Key Features:
- Versioned schema migrations
- Unique constraints on credential hashes, client ids and consent pairs
- Indexed hash lookups (raw credentials are never stored)
- Explicit transaction boundary (``transaction()``) for multi-row mutations
- Conditional (compare-and-set) updates for single-use state transitions
- Cleanup of expired data

Connections are opened per operation in autocommit mode. Operations that must
be atomic run inside ``transaction()`` and pass the yielded connection to
every storage call they compose.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_list(values: list[str] | None) -> str | None:
    if values is None:
        return None
    return json.dumps(list(values))


def _load_list(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return json.loads(value)


@dataclass
class User:
    """Minimal user row that tokens are joined against."""
    id: str
    email: str
    name: str | None = None
    created_at: datetime | None = None


@dataclass
class OAuthClientRecord:
    """Persisted OAuth client registration."""
    id: str
    client_id: str
    name: str
    redirect_uris: list[str]
    grant_types: list[str]
    scopes: list[str] | None
    is_public: bool
    client_secret_hash: str | None = None
    token_endpoint_auth_method: str = "none"
    response_types: list[str] = field(default_factory=lambda: ["code"])
    metadata_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    client_id_issued_at: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AuthorizationCodeRecord:
    """Authorization code row. Only the hash of the raw code is stored."""
    id: str
    code_hash: str
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: list[str]
    code_challenge: str
    expires_at: datetime
    code_challenge_method: str = "S256"
    resource: str | None = None
    state: str | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class AccessTokenRecord:
    """Access token row."""
    id: str
    token_hash: str
    client_id: str
    user_id: str
    scopes: list[str]
    expires_at: datetime
    resource: str | None = None
    revoked_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class RefreshTokenRecord:
    """Refresh token row; ``replaced_by_id`` links the rotation chain."""
    id: str
    token_hash: str
    client_id: str
    user_id: str
    scopes: list[str]
    expires_at: datetime
    access_token_id: str | None = None
    revoked_at: datetime | None = None
    replaced_by_id: str | None = None
    created_at: datetime | None = None


@dataclass
class ConsentGrant:
    """A user's approval of a client's scopes."""
    id: str
    user_id: str
    client_id: str
    scopes: list[str]
    created_at: datetime | None = None
    updated_at: datetime | None = None
    revoked_at: datetime | None = None


class OAuth2StorageError(Exception):
    """OAuth 2.0 storage operation error."""
    pass


class OAuth2Storage:
    """
    Relational store for OAuth 2.1 state backed by SQLite.

    Each public method accepts an optional ``conn``; when given, the call
    joins the caller's transaction instead of opening its own connection.
    """

    SCHEMA_VERSION = 1
    DEFAULT_DB_PATH = "oauth2_storage.db"

    def __init__(self, db_path: str | None = None, busy_timeout: float = 30.0):
        """
        Initialize OAuth 2.1 storage.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.busy_timeout = busy_timeout

        self._init_database()

        logger.info(f"OAuth2 storage initialized: {self.db_path}")

    def _init_database(self):
        """Initialize SQLite database with schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            cursor = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
            current_version = cursor.fetchone()
            current_version = current_version[0] if current_version else 0

            if current_version < self.SCHEMA_VERSION:
                self._apply_migrations(conn, current_version)

    def _apply_migrations(self, conn: sqlite3.Connection, from_version: int):
        """Apply database schema migrations."""
        logger.info(f"Applying OAuth2 schema migrations from version {from_version} to {self.SCHEMA_VERSION}")

        conn.execute("BEGIN IMMEDIATE")
        try:
            if from_version < 1:
                conn.execute("""
                    CREATE TABLE users (
                        id TEXT PRIMARY KEY,
                        email TEXT UNIQUE NOT NULL,
                        name TEXT,
                        created_at TEXT NOT NULL
                    )
                """)

                conn.execute("""
                    CREATE TABLE oauth_clients (
                        id TEXT PRIMARY KEY,
                        client_id TEXT UNIQUE NOT NULL,
                        client_secret_hash TEXT,
                        name TEXT NOT NULL,
                        redirect_uris TEXT NOT NULL,
                        grant_types TEXT NOT NULL,
                        response_types TEXT NOT NULL,
                        scopes TEXT,
                        is_public INTEGER NOT NULL DEFAULT 1,
                        token_endpoint_auth_method TEXT NOT NULL DEFAULT 'none',
                        metadata_url TEXT,
                        metadata TEXT,
                        client_id_issued_at INTEGER,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,

                        CHECK (is_public IN (0, 1))
                    )
                """)

                conn.execute("""
                    CREATE TABLE oauth_authorization_codes (
                        id TEXT PRIMARY KEY,
                        code_hash TEXT UNIQUE NOT NULL,
                        client_id TEXT NOT NULL,
                        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                        redirect_uri TEXT NOT NULL,
                        scopes TEXT NOT NULL,
                        code_challenge TEXT NOT NULL,
                        code_challenge_method TEXT NOT NULL DEFAULT 'S256',
                        resource TEXT,
                        state TEXT,
                        used_at TEXT,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,

                        CHECK (code_challenge_method = 'S256')
                    )
                """)

                conn.execute("""
                    CREATE TABLE oauth_access_tokens (
                        id TEXT PRIMARY KEY,
                        token_hash TEXT UNIQUE NOT NULL,
                        client_id TEXT NOT NULL,
                        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                        scopes TEXT NOT NULL,
                        resource TEXT,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        revoked_at TEXT,
                        last_used_at TEXT
                    )
                """)

                conn.execute("""
                    CREATE TABLE oauth_refresh_tokens (
                        id TEXT PRIMARY KEY,
                        token_hash TEXT UNIQUE NOT NULL,
                        client_id TEXT NOT NULL,
                        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                        scopes TEXT NOT NULL,
                        access_token_id TEXT REFERENCES oauth_access_tokens (id) ON DELETE SET NULL,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        revoked_at TEXT,
                        replaced_by_id TEXT REFERENCES oauth_refresh_tokens (id) ON DELETE SET NULL
                    )
                """)

                conn.execute("""
                    CREATE TABLE oauth_consent_grants (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                        client_id TEXT NOT NULL,
                        scopes TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        revoked_at TEXT,

                        UNIQUE (user_id, client_id)
                    )
                """)

                conn.execute("CREATE INDEX idx_oauth_auth_codes_user ON oauth_authorization_codes (user_id)")
                conn.execute("CREATE INDEX idx_oauth_auth_codes_expires ON oauth_authorization_codes (expires_at)")
                conn.execute("CREATE INDEX idx_oauth_access_tokens_user ON oauth_access_tokens (user_id)")
                conn.execute("CREATE INDEX idx_oauth_access_tokens_client ON oauth_access_tokens (client_id)")
                conn.execute("CREATE INDEX idx_oauth_access_tokens_expires ON oauth_access_tokens (expires_at)")
                conn.execute("CREATE INDEX idx_oauth_refresh_tokens_user ON oauth_refresh_tokens (user_id)")
                conn.execute("CREATE INDEX idx_oauth_refresh_tokens_client ON oauth_refresh_tokens (client_id)")
                conn.execute("CREATE INDEX idx_oauth_refresh_tokens_expires ON oauth_refresh_tokens (expires_at)")
                conn.execute("CREATE INDEX idx_oauth_refresh_tokens_access ON oauth_refresh_tokens (access_token_id)")
                conn.execute("CREATE INDEX idx_oauth_consent_grants_client ON oauth_consent_grants (client_id)")

            conn.execute("""
                INSERT INTO schema_version (version, applied_at)
                VALUES (?, ?)
            """, (self.SCHEMA_VERSION, _ts(datetime.now(timezone.utc))))

            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

        logger.info(f"OAuth2 schema migration to version {self.SCHEMA_VERSION} completed")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,  # Autocommit mode
                check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            raise OAuth2StorageError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of storage calls atomically.

        Takes the write lock up front (``BEGIN IMMEDIATE``) and commits on
        success; any exception rolls the whole block back and is re-raised.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _use(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self._get_connection() as own:
                yield own

    # User Methods
    def create_user(self, email: str, name: str | None = None, user_id: str | None = None) -> User:
        """Create a user row (owned by the login mechanism)."""
        user = User(id=user_id or new_id(), email=email, name=name, created_at=datetime.now(timezone.utc))
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO users (id, email, name, created_at) VALUES (?, ?, ?, ?)",
                (user.id, user.email, user.name, _ts(user.created_at)),
            )
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    # Client Methods
    def insert_client(self, client: OAuthClientRecord, conn: sqlite3.Connection | None = None) -> OAuthClientRecord:
        """Persist a new client; fails on a duplicate client_id."""
        now = datetime.now(timezone.utc)
        client.created_at = client.created_at or now
        client.updated_at = client.updated_at or now

        with self._use(conn) as c:
            c.execute("""
                INSERT INTO oauth_clients (
                    id, client_id, client_secret_hash, name, redirect_uris,
                    grant_types, response_types, scopes, is_public,
                    token_endpoint_auth_method, metadata_url, metadata,
                    client_id_issued_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                client.id, client.client_id, client.client_secret_hash, client.name,
                _dump_list(client.redirect_uris), _dump_list(client.grant_types),
                _dump_list(client.response_types), _dump_list(client.scopes),
                1 if client.is_public else 0, client.token_endpoint_auth_method,
                client.metadata_url, json.dumps(client.metadata) if client.metadata else None,
                client.client_id_issued_at, _ts(client.created_at), _ts(client.updated_at)
            ))

        logger.info(f"OAuth2 client stored: {client.client_id}")
        return client

    def upsert_client(self, client: OAuthClientRecord) -> OAuthClientRecord:
        """Insert a client or update the existing row with the same client_id."""
        now = datetime.now(timezone.utc)
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO oauth_clients (
                    id, client_id, client_secret_hash, name, redirect_uris,
                    grant_types, response_types, scopes, is_public,
                    token_endpoint_auth_method, metadata_url, metadata,
                    client_id_issued_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (client_id) DO UPDATE SET
                    client_secret_hash = excluded.client_secret_hash,
                    name = excluded.name,
                    redirect_uris = excluded.redirect_uris,
                    grant_types = excluded.grant_types,
                    response_types = excluded.response_types,
                    scopes = excluded.scopes,
                    is_public = excluded.is_public,
                    token_endpoint_auth_method = excluded.token_endpoint_auth_method,
                    updated_at = excluded.updated_at
            """, (
                client.id, client.client_id, client.client_secret_hash, client.name,
                _dump_list(client.redirect_uris), _dump_list(client.grant_types),
                _dump_list(client.response_types), _dump_list(client.scopes),
                1 if client.is_public else 0, client.token_endpoint_auth_method,
                client.metadata_url, json.dumps(client.metadata) if client.metadata else None,
                client.client_id_issued_at, _ts(now), _ts(now)
            ))
            row = conn.execute(
                "SELECT * FROM oauth_clients WHERE client_id = ?", (client.client_id,)
            ).fetchone()

        return self._row_to_client(row)

    def get_client(self, client_id: str, conn: sqlite3.Connection | None = None) -> OAuthClientRecord | None:
        """Retrieve a client by exact client_id."""
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM oauth_clients WHERE client_id = ?", (client_id,)
            ).fetchone()
        return self._row_to_client(row) if row else None

    # Authorization Code Methods
    def insert_authorization_code(
        self,
        record: AuthorizationCodeRecord,
        conn: sqlite3.Connection | None = None
    ) -> AuthorizationCodeRecord:
        record.created_at = record.created_at or datetime.now(timezone.utc)
        with self._use(conn) as c:
            c.execute("""
                INSERT INTO oauth_authorization_codes (
                    id, code_hash, client_id, user_id, redirect_uri, scopes,
                    code_challenge, code_challenge_method, resource, state,
                    used_at, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id, record.code_hash, record.client_id, record.user_id,
                record.redirect_uri, _dump_list(record.scopes), record.code_challenge,
                record.code_challenge_method, record.resource, record.state,
                _ts(record.used_at), _ts(record.created_at), _ts(record.expires_at)
            ))
        return record

    def find_active_authorization_code(
        self,
        code_hash: str,
        client_id: str,
        redirect_uri: str,
        now: datetime,
        conn: sqlite3.Connection | None = None
    ) -> AuthorizationCodeRecord | None:
        """Find an unused, unexpired code bound to this client and redirect URI."""
        with self._use(conn) as c:
            row = c.execute("""
                SELECT * FROM oauth_authorization_codes
                WHERE code_hash = ?
                  AND client_id = ?
                  AND redirect_uri = ?
                  AND used_at IS NULL
                  AND expires_at > ?
                LIMIT 1
            """, (code_hash, client_id, redirect_uri, _ts(now))).fetchone()
        return self._row_to_code(row) if row else None

    def get_authorization_code_by_hash(self, code_hash: str) -> AuthorizationCodeRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_authorization_codes WHERE code_hash = ?", (code_hash,)
            ).fetchone()
        return self._row_to_code(row) if row else None

    def mark_authorization_code_used(
        self,
        code_id: str,
        now: datetime,
        conn: sqlite3.Connection | None = None
    ) -> bool:
        """
        Consume a code with a single compare-and-set update.

        Returns True only for the caller whose update flipped ``used_at``
        from NULL; concurrent or later callers get False.
        """
        with self._use(conn) as c:
            cursor = c.execute("""
                UPDATE oauth_authorization_codes
                SET used_at = ?
                WHERE id = ? AND used_at IS NULL AND expires_at > ?
            """, (_ts(now), code_id, _ts(now)))
            return cursor.rowcount == 1

    # Access Token Methods
    def insert_access_token(self, record: AccessTokenRecord, conn: sqlite3.Connection | None = None) -> AccessTokenRecord:
        record.created_at = record.created_at or datetime.now(timezone.utc)
        with self._use(conn) as c:
            c.execute("""
                INSERT INTO oauth_access_tokens (
                    id, token_hash, client_id, user_id, scopes, resource,
                    created_at, expires_at, revoked_at, last_used_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id, record.token_hash, record.client_id, record.user_id,
                _dump_list(record.scopes), record.resource, _ts(record.created_at),
                _ts(record.expires_at), _ts(record.revoked_at), _ts(record.last_used_at)
            ))
        return record

    def find_active_access_token(
        self,
        token_hash: str,
        now: datetime
    ) -> tuple[AccessTokenRecord, User] | None:
        """Find an unrevoked, unexpired access token joined to its user."""
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT t.*, u.email AS user_email, u.name AS user_name,
                       u.created_at AS user_created_at
                FROM oauth_access_tokens t
                INNER JOIN users u ON u.id = t.user_id
                WHERE t.token_hash = ?
                  AND t.revoked_at IS NULL
                  AND t.expires_at > ?
                LIMIT 1
            """, (token_hash, _ts(now))).fetchone()

        if not row:
            return None

        user = User(
            id=row["user_id"],
            email=row["user_email"],
            name=row["user_name"],
            created_at=_parse_ts(row["user_created_at"]),
        )
        return self._row_to_access_token(row), user

    def get_access_token(self, token_id: str, conn: sqlite3.Connection | None = None) -> AccessTokenRecord | None:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM oauth_access_tokens WHERE id = ?", (token_id,)).fetchone()
        return self._row_to_access_token(row) if row else None

    def get_access_token_by_hash(self, token_hash: str) -> AccessTokenRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_access_tokens WHERE token_hash = ?", (token_hash,)
            ).fetchone()
        return self._row_to_access_token(row) if row else None

    def touch_access_token(self, token_id: str, now: datetime) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE oauth_access_tokens SET last_used_at = ? WHERE id = ?",
                (_ts(now), token_id),
            )

    def revoke_access_token(self, token_id: str, now: datetime, conn: sqlite3.Connection | None = None) -> bool:
        with self._use(conn) as c:
            cursor = c.execute("""
                UPDATE oauth_access_tokens SET revoked_at = ?
                WHERE id = ? AND revoked_at IS NULL
            """, (_ts(now), token_id))
            return cursor.rowcount > 0

    # Refresh Token Methods
    def insert_refresh_token(self, record: RefreshTokenRecord, conn: sqlite3.Connection | None = None) -> RefreshTokenRecord:
        record.created_at = record.created_at or datetime.now(timezone.utc)
        with self._use(conn) as c:
            c.execute("""
                INSERT INTO oauth_refresh_tokens (
                    id, token_hash, client_id, user_id, scopes, access_token_id,
                    created_at, expires_at, revoked_at, replaced_by_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id, record.token_hash, record.client_id, record.user_id,
                _dump_list(record.scopes), record.access_token_id, _ts(record.created_at),
                _ts(record.expires_at), _ts(record.revoked_at), record.replaced_by_id
            ))
        return record

    def find_active_refresh_token(
        self,
        token_hash: str,
        client_id: str,
        now: datetime,
        conn: sqlite3.Connection | None = None
    ) -> RefreshTokenRecord | None:
        """Find an unrevoked, unexpired refresh token issued to this client."""
        with self._use(conn) as c:
            row = c.execute("""
                SELECT * FROM oauth_refresh_tokens
                WHERE token_hash = ?
                  AND client_id = ?
                  AND revoked_at IS NULL
                  AND expires_at > ?
                LIMIT 1
            """, (token_hash, client_id, _ts(now))).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def get_refresh_token(self, token_id: str, conn: sqlite3.Connection | None = None) -> RefreshTokenRecord | None:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM oauth_refresh_tokens WHERE id = ?", (token_id,)).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_refresh_tokens WHERE token_hash = ?", (token_hash,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(
        self,
        token_id: str,
        now: datetime,
        replaced_by_id: str | None = None,
        conn: sqlite3.Connection | None = None
    ) -> bool:
        """Revoke a refresh token if still active, optionally linking its successor."""
        with self._use(conn) as c:
            cursor = c.execute("""
                UPDATE oauth_refresh_tokens
                SET revoked_at = ?, replaced_by_id = COALESCE(?, replaced_by_id)
                WHERE id = ? AND revoked_at IS NULL
            """, (_ts(now), replaced_by_id, token_id))
            return cursor.rowcount > 0

    def revoke_tokens_for_user_client(
        self,
        user_id: str,
        client_id: str,
        now: datetime,
        conn: sqlite3.Connection | None = None
    ) -> int:
        """Revoke every active access and refresh token of a (user, client) pair."""
        with self._use(conn) as c:
            access = c.execute("""
                UPDATE oauth_access_tokens SET revoked_at = ?
                WHERE user_id = ? AND client_id = ? AND revoked_at IS NULL
            """, (_ts(now), user_id, client_id)).rowcount
            refresh = c.execute("""
                UPDATE oauth_refresh_tokens SET revoked_at = ?
                WHERE user_id = ? AND client_id = ? AND revoked_at IS NULL
            """, (_ts(now), user_id, client_id)).rowcount
        return access + refresh

    def count_active_tokens(self, user_id: str, client_id: str) -> dict[str, int]:
        """Count unrevoked tokens for a (user, client) pair, regardless of expiry."""
        with self._get_connection() as conn:
            access = conn.execute("""
                SELECT COUNT(*) FROM oauth_access_tokens
                WHERE user_id = ? AND client_id = ? AND revoked_at IS NULL
            """, (user_id, client_id)).fetchone()[0]
            refresh = conn.execute("""
                SELECT COUNT(*) FROM oauth_refresh_tokens
                WHERE user_id = ? AND client_id = ? AND revoked_at IS NULL
            """, (user_id, client_id)).fetchone()[0]
        return {"access_tokens": access, "refresh_tokens": refresh}

    # Consent Methods
    def get_consent_grant(self, user_id: str, client_id: str) -> ConsentGrant | None:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM oauth_consent_grants WHERE user_id = ? AND client_id = ?
            """, (user_id, client_id)).fetchone()
        return self._row_to_consent(row) if row else None

    def upsert_consent_grant(self, user_id: str, client_id: str, scopes: list[str], now: datetime) -> ConsentGrant:
        """Insert or replace the scopes of a consent grant, clearing any revocation."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO oauth_consent_grants (
                    id, user_id, client_id, scopes, created_at, updated_at, revoked_at
                ) VALUES (?, ?, ?, ?, ?, ?, NULL)
                ON CONFLICT (user_id, client_id) DO UPDATE SET
                    scopes = excluded.scopes,
                    updated_at = excluded.updated_at,
                    revoked_at = NULL
            """, (new_id(), user_id, client_id, _dump_list(scopes), _ts(now), _ts(now)))
            row = conn.execute("""
                SELECT * FROM oauth_consent_grants WHERE user_id = ? AND client_id = ?
            """, (user_id, client_id)).fetchone()
        return self._row_to_consent(row)

    def revoke_consent_grant(
        self,
        user_id: str,
        client_id: str,
        now: datetime,
        conn: sqlite3.Connection | None = None
    ) -> bool:
        with self._use(conn) as c:
            cursor = c.execute("""
                UPDATE oauth_consent_grants SET revoked_at = ?, updated_at = ?
                WHERE user_id = ? AND client_id = ? AND revoked_at IS NULL
            """, (_ts(now), _ts(now), user_id, client_id))
            return cursor.rowcount > 0

    def list_active_consent_grants(self, user_id: str) -> list[ConsentGrant]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM oauth_consent_grants
                WHERE user_id = ? AND revoked_at IS NULL
                ORDER BY updated_at DESC
            """, (user_id,)).fetchall()
        return [self._row_to_consent(row) for row in rows]

    # Maintenance
    def cleanup_expired_data(self, now: datetime | None = None) -> dict[str, int]:
        """
        Cleanup expired OAuth 2.1 data.

        Revoked refresh tokens are kept until they expire so a replayed token
        can still be traced through its rotation chain.

        Returns:
            Dictionary with cleanup counts for each entity type
        """
        current_time = _ts(now or datetime.now(timezone.utc))
        cleanup_counts = {}

        with self.transaction() as conn:
            cleanup_counts["authorization_codes"] = conn.execute("""
                DELETE FROM oauth_authorization_codes
                WHERE expires_at <= ? OR used_at IS NOT NULL
            """, (current_time,)).rowcount

            cleanup_counts["refresh_tokens"] = conn.execute("""
                DELETE FROM oauth_refresh_tokens WHERE expires_at <= ?
            """, (current_time,)).rowcount

            cleanup_counts["access_tokens"] = conn.execute("""
                DELETE FROM oauth_access_tokens WHERE expires_at <= ?
            """, (current_time,)).rowcount

        logger.debug(f"OAuth2 cleanup completed: {cleanup_counts}")
        return cleanup_counts

    def get_storage_stats(self) -> dict[str, Any]:
        """Row counts per table."""
        stats = {}
        with self._get_connection() as conn:
            for table in (
                "users",
                "oauth_clients",
                "oauth_authorization_codes",
                "oauth_access_tokens",
                "oauth_refresh_tokens",
                "oauth_consent_grants",
            ):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        stats["db_path"] = self.db_path
        stats["schema_version"] = self.SCHEMA_VERSION
        return stats

    # Row mapping
    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_client(row: sqlite3.Row) -> OAuthClientRecord:
        return OAuthClientRecord(
            id=row["id"],
            client_id=row["client_id"],
            name=row["name"],
            redirect_uris=_load_list(row["redirect_uris"]) or [],
            grant_types=_load_list(row["grant_types"]) or [],
            scopes=_load_list(row["scopes"]),
            is_public=bool(row["is_public"]),
            client_secret_hash=row["client_secret_hash"],
            token_endpoint_auth_method=row["token_endpoint_auth_method"],
            response_types=_load_list(row["response_types"]) or [],
            metadata_url=row["metadata_url"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            client_id_issued_at=row["client_id_issued_at"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_code(row: sqlite3.Row) -> AuthorizationCodeRecord:
        return AuthorizationCodeRecord(
            id=row["id"],
            code_hash=row["code_hash"],
            client_id=row["client_id"],
            user_id=row["user_id"],
            redirect_uri=row["redirect_uri"],
            scopes=_load_list(row["scopes"]) or [],
            code_challenge=row["code_challenge"],
            code_challenge_method=row["code_challenge_method"],
            resource=row["resource"],
            state=row["state"],
            used_at=_parse_ts(row["used_at"]),
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
        )

    @staticmethod
    def _row_to_access_token(row: sqlite3.Row) -> AccessTokenRecord:
        return AccessTokenRecord(
            id=row["id"],
            token_hash=row["token_hash"],
            client_id=row["client_id"],
            user_id=row["user_id"],
            scopes=_load_list(row["scopes"]) or [],
            resource=row["resource"],
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
            revoked_at=_parse_ts(row["revoked_at"]),
            last_used_at=_parse_ts(row["last_used_at"]),
        )

    @staticmethod
    def _row_to_refresh_token(row: sqlite3.Row) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=row["id"],
            token_hash=row["token_hash"],
            client_id=row["client_id"],
            user_id=row["user_id"],
            scopes=_load_list(row["scopes"]) or [],
            access_token_id=row["access_token_id"],
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
            revoked_at=_parse_ts(row["revoked_at"]),
            replaced_by_id=row["replaced_by_id"],
        )

    @staticmethod
    def _row_to_consent(row: sqlite3.Row) -> ConsentGrant:
        return ConsentGrant(
            id=row["id"],
            user_id=row["user_id"],
            client_id=row["client_id"],
            scopes=_load_list(row["scopes"]) or [],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            revoked_at=_parse_ts(row["revoked_at"]),
        )


# Global storage instance
_oauth2_storage: OAuth2Storage | None = None
_storage_lock = threading.Lock()


def get_oauth2_storage(db_path: str | None = None) -> OAuth2Storage:
    """Get or create the global OAuth2 storage instance."""
    global _oauth2_storage

    if _oauth2_storage is None:
        with _storage_lock:
            if _oauth2_storage is None:
                _oauth2_storage = OAuth2Storage(db_path=db_path)

    return _oauth2_storage


def reset_oauth2_storage() -> None:
    """Drop the global storage instance (next access re-opens it)."""
    global _oauth2_storage
    with _storage_lock:
        _oauth2_storage = None


@contextmanager
def oauth2_transaction(storage: OAuth2Storage | None = None):
    """
    Context manager for OAuth2 storage transactions.

    Args:
        storage: OAuth2Storage instance (uses global if None)
    """
    if storage is None:
        storage = get_oauth2_storage()

    with storage.transaction() as conn:
        yield conn
