"""
Shared fixtures for the OAuth 2.1 server tests.

Every test gets its own SQLite database under ``tmp_path``.
"""

from datetime import datetime, timedelta, timezone

import pytest

from reader_oauth.config import OAuthConfig
from reader_oauth.oauth2_clients import upsert_client
from reader_oauth.oauth2_crypto import compute_pkce_challenge
from reader_oauth.oauth2_storage import OAuth2Storage

PUBLIC_CLIENT_ID = "reader-desktop"
CONFIDENTIAL_CLIENT_ID = "reader-backend"
CONFIDENTIAL_SECRET = "s3cret-value-for-tests"
REDIRECT_URI = "https://app.example.com/callback"
CODE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CODE_CHALLENGE = compute_pkce_challenge(CODE_VERIFIER)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def config(tmp_path):
    return OAuthConfig(
        issuer="https://reader.example.com",
        db_path=str(tmp_path / "oauth.db"),
    )


@pytest.fixture
def storage(config):
    return OAuth2Storage(db_path=config.db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user(storage):
    return storage.create_user(email="reader@example.com", name="Reader")


@pytest.fixture
def public_client(storage):
    return upsert_client(
        storage,
        client_id=PUBLIC_CLIENT_ID,
        name="Reader Desktop",
        redirect_uris=[REDIRECT_URI],
    )


@pytest.fixture
def confidential_client(storage):
    return upsert_client(
        storage,
        client_id=CONFIDENTIAL_CLIENT_ID,
        name="Reader Backend",
        redirect_uris=[REDIRECT_URI],
        is_public=False,
        client_secret=CONFIDENTIAL_SECRET,
    )
