"""
Shared test configuration and fixtures.

Provides a throwaway SQLite database per test, a fake Redis client, generated
key material and helpers for building the mocked aiohttp responses that the
request chain consumes.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import hdrs
from cryptography.fernet import Fernet
from jwcrypto import jwk
from multidict import CIMultiDict, CIMultiDictProxy
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.statusphere.app.config import Settings
from social.statusphere.atproto.keys import CryptoKeyProvider, generate_dpop_key
from social.statusphere.model.base import Base
from social.statusphere.model.oauth import OAuthSession
from social.statusphere.model.store import DatabaseSessionStore

TEST_DID = "did:plc:testuser123"
TEST_HANDLE = "alice.test"
TEST_PDS = "https://pds.example.com"
TEST_ISSUER = "https://auth.example.com"
TEST_TOKEN_ENDPOINT = "https://auth.example.com/oauth/token"

SIGNING_KEY_ID = "signing-key-1"
COOKIE_KEY_ID = "cookie-key-1"


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    body: Any = None,
    content_type: str = "application/json",
) -> Mock:
    """Create a mock aiohttp ClientResponse carrying a JSON body."""
    mock_response = Mock()
    mock_response.status = status

    headers_dict = dict(headers or {})
    if hdrs.CONTENT_TYPE not in headers_dict:
        headers_dict[hdrs.CONTENT_TYPE] = content_type
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    mock_response.json = AsyncMock(return_value=body)
    mock_response.text = AsyncMock(return_value=str(body))
    mock_response.read = AsyncMock(return_value=b"")
    mock_response.url = "https://example.com/"
    mock_response.release = Mock()
    mock_response.close = Mock()
    mock_response.closed = False
    return mock_response


def create_mock_http_session(responses: List[Mock]) -> Mock:
    """Create a mock ClientSession whose `request` returns `responses` in order."""
    http_session = Mock()
    http_session.request = AsyncMock(side_effect=responses)
    return http_session


@pytest.fixture
def response_factory():
    return create_mock_response


@pytest.fixture
def http_session_factory():
    return create_mock_http_session


@pytest.fixture
def json_web_keys() -> jwk.JWKSet:
    keys = jwk.JWKSet()
    keys.add(jwk.JWK.generate(kty="EC", crv="P-256", kid=SIGNING_KEY_ID, alg="ES256"))
    keys.add(jwk.JWK.generate(kty="EC", crv="P-256", kid=COOKIE_KEY_ID, alg="ES256"))
    return keys


@pytest.fixture
def encryption_key() -> Fernet:
    return Fernet(Fernet.generate_key())


@pytest.fixture
def settings(json_web_keys, encryption_key) -> Settings:
    return Settings(
        external_hostname="statusphere.example.com",
        plc_hostname="plc.example.com",
        json_web_keys=json_web_keys,
        active_signing_keys=[SIGNING_KEY_ID],
        service_auth_keys=[COOKIE_KEY_ID],
        encryption_key=encryption_key,
        consume_firehose=False,
    )


@pytest.fixture
def crypto_keys(json_web_keys, encryption_key) -> CryptoKeyProvider:
    return CryptoKeyProvider(json_web_keys, [SIGNING_KEY_ID], encryption_key)


@pytest.fixture
def statsd_client() -> Mock:
    """Stand-in for TelegrafStatsdClient; its methods are fire-and-forget."""
    return Mock()


@pytest_asyncio.fixture
async def fake_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def store(tmp_path):
    """DatabaseSessionStore backed by a fresh SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    yield DatabaseSessionStore(database_session)

    await engine.dispose()


@pytest.fixture
def dpop_key() -> jwk.JWK:
    return generate_dpop_key()


@pytest.fixture
def oauth_session_factory(crypto_keys, dpop_key):
    """Build OAuthSession rows bound to the shared DPoP key."""

    def factory(
        did: str = TEST_DID,
        expires_in: timedelta = timedelta(hours=1),
        **overrides: Any,
    ) -> OAuthSession:
        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {
            "did": did,
            "pds_url": TEST_PDS,
            "issuer": TEST_ISSUER,
            "token_endpoint": TEST_TOKEN_ENDPOINT,
            "access_token": "access-token-1",
            "refresh_token": "refresh-token-1",
            "dpop_authserver_nonce": "as-nonce-1",
            "dpop_pds_nonce": "",
            "dpop_jwk": crypto_keys.serialize_dpop_key(dpop_key),
            "created_at": now,
            "expires_at": now + expires_in,
        }
        values.update(overrides)
        return OAuthSession(**values)

    return factory
