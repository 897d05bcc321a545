"""
Configuration for the Statusphere service.

Settings are read from the environment once at startup by pydantic-settings and
passed explicitly to the components that need them. Shared resources (database
store, HTTP session, Redis client, metrics client, key material) are created in
the application's cleanup context and reached through the typed AppKeys below.
"""

import asyncio
import base64
from typing import Annotated, Final, List, Optional
import logging
from aio_statsd import TelegrafStatsdClient
from jwcrypto import jwk
from pydantic import (
    AliasChoices,
    Field,
    field_validator,
    RedisDsn,
)
from pydantic_settings import BaseSettings, NoDecode
from aiohttp import web
from aiohttp import ClientSession
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncEngine
from redis import asyncio as redis

from social.statusphere.app.cookies import CookieCodec
from social.statusphere.atproto.keys import CryptoKeyProvider
from social.statusphere.model.health import HealthGauge
from social.statusphere.model.store import DatabaseSessionStore


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings, loaded from environment variables.

    Key material:

    - `JSON_WEB_KEYS` is a path to a JWK set file.
    - `ACTIVE_SIGNING_KEYS` lists the key IDs used for client assertions and
      published at `/jwks.json`.
    - `SERVICE_AUTH_KEYS` lists the key IDs used to sign browser cookies.
    - `ENCRYPTION_KEY` is a base64 encoded Fernet key used to encrypt stored
      DPoP keys.
    """

    debug: bool = False

    http_port: int = Field(alias="port", default=8080)

    external_hostname: str = "localhost:8080"
    """
    Public hostname of the service. The OAuth client ID and redirect URI are
    derived from it.
    """

    plc_hostname: str = "plc.directory"

    client_name: str = "Statusphere"

    sentry_dsn: Optional[str] = None

    redis_dsn: RedisDsn = Field(
        "redis://localhost:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore

    database_url: str = Field(
        "sqlite+aiosqlite:///statusphere.db",
        validation_alias=AliasChoices("database_url", "db_dsn"),
    )

    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()

    active_signing_keys: List[str] = list()

    service_auth_keys: List[str] = list()

    encryption_key: Fernet = Fernet(Fernet.generate_key())

    http_timeout: float = 5.0
    """Total timeout in seconds for every outbound HTTP request."""

    login_lock_ttl: int = 120
    """Seconds a subject stays locked while its login request is stored."""

    request_cleanup_interval: int = 3600
    """Seconds between purges of pending requests that never got a callback."""

    cookie_name: str = "statusphere-session"

    cookie_secure: bool = True

    login_cookie_max_age: int = 300

    session_cookie_max_age: int = 86400 * 7

    consume_firehose: bool = True

    jetstream_url: str = "wss://jetstream.atproto.tools/subscribe"

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """Accept a JWKSet or the path to a JSON file containing one."""
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """Accept a Fernet instance or a base64 encoded Fernet key."""
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


SettingsAppKey: Final = web.AppKey("settings", Settings)

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)

StoreAppKey: Final = web.AppKey("store", DatabaseSessionStore)

SessionAppKey: Final = web.AppKey("http_session", ClientSession)

RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)

CryptoKeysAppKey: Final = web.AppKey("crypto_keys", CryptoKeyProvider)

CookieCodecAppKey: Final = web.AppKey("cookie_codec", CookieCodec)

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])

RequestCleanupTaskAppKey: Final = web.AppKey(
    "request_cleanup_task", asyncio.Task[None]
)

JetstreamTaskAppKey: Final = web.AppKey("jetstream_task", asyncio.Task[None])

TelegrafStatsdClientAppKey: Final = web.AppKey(
    "telegraf_statsd_client", TelegrafStatsdClient
)
