import asyncio
import contextlib
import logging
from time import time
from typing import (
    Optional,
)
from aio_statsd import TelegrafStatsdClient
import jinja2
from aiohttp import web
import aiohttp_jinja2
import aiohttp
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.statusphere.app.config import (
    CookieCodecAppKey,
    CryptoKeysAppKey,
    DatabaseAppKey,
    HealthGaugeAppKey,
    JetstreamTaskAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    RequestCleanupTaskAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    StoreAppKey,
    TelegrafStatsdClientAppKey,
    TickHealthTaskAppKey,
)
from social.statusphere.app.cookies import CookieCodec
from social.statusphere.app.handlers.helpers import (
    SessionManagerAppKey,
    XrpcExecutorAppKey,
)
from social.statusphere.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.statusphere.app.handlers.oauth import (
    handle_client_metadata,
    handle_jwks,
    handle_login,
    handle_login_submit,
    handle_logout,
    handle_oauth_callback,
)
from social.statusphere.app.handlers.status import handle_home, handle_status_submit
from social.statusphere.app.tasks import (
    jetstream_consumer_task,
    request_cleanup_task,
    tick_health_task,
)
from social.statusphere.atproto.keys import CryptoKeyProvider
from social.statusphere.atproto.session import SessionManager
from social.statusphere.atproto.xrpc import XrpcExecutor
from social.statusphere.model.base import Base
from social.statusphere.model.health import HealthGauge
from social.statusphere.model.store import DatabaseSessionStore

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(settings.database_url)
    app[DatabaseAppKey] = engine
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[StoreAppKey] = DatabaseSessionStore(database_session)

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %d",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
        trace_configs=[trace_config],
    )

    app[RedisPoolAppKey] = redis.ConnectionPool.from_url(str(settings.redis_dsn))
    app[RedisClientAppKey] = redis.Redis(connection_pool=app[RedisPoolAppKey])

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    app[TelegrafStatsdClientAppKey] = statsd_client

    session_manager = SessionManager(
        settings,
        app[CryptoKeysAppKey],
        statsd_client,
        app[SessionAppKey],
        app[StoreAppKey],
    )
    app[SessionManagerAppKey] = session_manager
    app[XrpcExecutorAppKey] = XrpcExecutor(
        app[SessionAppKey], statsd_client, session_manager, app[CryptoKeysAppKey]
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[RequestCleanupTaskAppKey] = asyncio.create_task(request_cleanup_task(app))
    if settings.consume_firehose:
        app[JetstreamTaskAppKey] = asyncio.create_task(jetstream_consumer_task(app))

    yield

    logger.info("Shutting down background tasks")

    tasks = [app[TickHealthTaskAppKey], app[RequestCleanupTaskAppKey]]
    if JetstreamTaskAppKey in app:
        tasks.append(app[JetstreamTaskAppKey])

    for task in tasks:
        task.cancel()

    for task in tasks:
        with contextlib.suppress(asyncio.exceptions.CancelledError):
            await task

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[TelegrafStatsdClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    statsd_client = request.app[TelegrafStatsdClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        statsd_client.increment(
            "statusphere.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        statsd_client.timer(
            "statusphere.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        statsd_client.increment(
            "statusphere.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    app[CryptoKeysAppKey] = CryptoKeyProvider(
        settings.json_web_keys, settings.active_signing_keys, settings.encryption_key
    )
    app[CookieCodecAppKey] = CookieCodec(
        settings.json_web_keys, settings.service_auth_keys
    )

    app.add_routes(
        [
            web.get("/", handle_home),
            web.post("/status", handle_status_submit),
            web.get("/login", handle_login),
            web.post("/login", handle_login_submit),
            web.get("/oauth-callback", handle_oauth_callback),
            web.post("/logout", handle_logout),
            web.get("/oauth-client-metadata.json", handle_client_metadata),
            web.get("/jwks.json", handle_jwks),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    _ = aiohttp_jinja2.setup(
        app,
        enable_async=True,
        loader=jinja2.PackageLoader("social.statusphere.app", "templates"),
    )

    app.cleanup_ctx.append(background_tasks)

    return app
