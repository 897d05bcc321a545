"""
Tests for the web handlers, driven through aiohttp's test client.

The application is assembled without its cleanup context; the OAuth flow
functions and the session manager are patched or mocked at the handler seams.
"""

from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse
from unittest.mock import AsyncMock, Mock, patch

import aiohttp_jinja2
import jinja2
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from social.statusphere.app.config import (
    CookieCodecAppKey,
    CryptoKeysAppKey,
    HealthGaugeAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SettingsAppKey,
    StoreAppKey,
    TelegrafStatsdClientAppKey,
)
from social.statusphere.app.cookies import BrowserSession, CookieCodec
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
from social.statusphere.atproto.errors import (
    AuthorizationFlowError,
    NotFoundError,
    RefreshError,
    RequestError,
)
from social.statusphere.atproto.oauth import LoginRedirect
from social.statusphere.model.health import HealthGauge

DID = "did:plc:testuser123"
RECORD_URI = f"at://{DID}/xyz.statusphere.status/3k2abc"


@pytest_asyncio.fixture
async def app_parts(settings, crypto_keys, statsd_client, store, fake_redis):
    settings.cookie_secure = False
    session_manager = Mock()
    session_manager.get_valid_session = AsyncMock()
    session_manager.delete_session = AsyncMock()

    app = web.Application()
    app[SettingsAppKey] = settings
    app[CryptoKeysAppKey] = crypto_keys
    app[CookieCodecAppKey] = CookieCodec(
        settings.json_web_keys, settings.service_auth_keys
    )
    app[HealthGaugeAppKey] = HealthGauge()
    app[StoreAppKey] = store
    app[SessionAppKey] = Mock()
    app[RedisClientAppKey] = fake_redis
    app[TelegrafStatsdClientAppKey] = statsd_client
    app[SessionManagerAppKey] = session_manager
    app[XrpcExecutorAppKey] = Mock()

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
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )
    aiohttp_jinja2.setup(
        app,
        enable_async=True,
        loader=jinja2.PackageLoader("social.statusphere.app", "templates"),
    )

    async with TestClient(TestServer(app)) as client:
        yield client, app, session_manager


def cookie_header(app: web.Application, session: BrowserSession) -> dict:
    settings = app[SettingsAppKey]
    value = app[CookieCodecAppKey].encode(session, 300)
    return {"Cookie": f"{settings.cookie_name}={value}"}


def response_session(app: web.Application, response) -> BrowserSession:
    settings = app[SettingsAppKey]
    return app[CookieCodecAppKey].decode(response.cookies[settings.cookie_name].value)


class TestDocuments:
    async def test_client_metadata(self, app_parts):
        client, _, _ = app_parts

        resp = await client.get("/oauth-client-metadata.json")

        assert resp.status == 200
        body = await resp.json()
        assert body["client_id"] == (
            "https://statusphere.example.com/oauth-client-metadata.json"
        )
        assert body["redirect_uris"] == ["https://statusphere.example.com/oauth-callback"]
        assert body["scope"] == "atproto transition:generic"
        assert body["dpop_bound_access_tokens"] is True
        assert body["token_endpoint_auth_method"] == "private_key_jwt"
        assert body["jwks_uri"] == "https://statusphere.example.com/jwks.json"

    async def test_jwks(self, app_parts):
        client, _, _ = app_parts

        resp = await client.get("/jwks.json")

        body = await resp.json()
        assert [key["kid"] for key in body["keys"]] == ["signing-key-1"]
        assert "d" not in body["keys"][0]

    async def test_health_endpoints(self, app_parts):
        client, app, _ = app_parts

        assert (await client.get("/internal/alive")).status == 200
        assert (await client.get("/internal/ready")).status == 200

        await app[HealthGaugeAppKey].record_error(weight=1000)
        assert (await client.get("/internal/ready")).status == 503


class TestLogin:
    async def test_form(self, app_parts):
        client, _, _ = app_parts

        resp = await client.get("/login")

        assert resp.status == 200
        assert 'name="handle"' in await resp.text()

    async def test_submit_redirects_to_authorization_server(self, app_parts):
        client, app, _ = app_parts
        login = LoginRedirect(
            url="https://auth.example.com/oauth/authorize?request_uri=urn%3Ax",
            state="abc123",
            did=DID,
        )

        with patch(
            "social.statusphere.app.handlers.oauth.oauth_init",
            new=AsyncMock(return_value=login),
        ) as oauth_init:
            resp = await client.post(
                "/login", data={"handle": "alice.test"}, allow_redirects=False
            )

        assert resp.status == 302
        location = urlparse(resp.headers["Location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            "https://auth.example.com/oauth/authorize"
        )
        assert parse_qs(location.query) == {"request_uri": ["urn:x"]}
        assert oauth_init.await_args.args[-1] == "alice.test"
        session = response_session(app, resp)
        assert session.oauth_state == "abc123"
        assert session.oauth_did == DID

    async def test_submit_failure_is_generic(self, app_parts):
        client, app, _ = app_parts

        with patch(
            "social.statusphere.app.handlers.oauth.oauth_init",
            new=AsyncMock(side_effect=AuthorizationFlowError.par_rejected(400)),
        ):
            resp = await client.post("/login", data={"handle": "alice.test"})

        assert resp.status == 200
        text = await resp.text()
        assert "error logging in" in text
        assert "error-oauth" not in text
        assert await app[HealthGaugeAppKey].record_error(weight=0) == 1

    async def test_submit_without_handle(self, app_parts):
        client, _, _ = app_parts

        with patch(
            "social.statusphere.app.handlers.oauth.oauth_init", new=AsyncMock()
        ) as oauth_init:
            resp = await client.post("/login", data={"handle": "  "})

        assert resp.status == 200
        oauth_init.assert_not_awaited()


class TestOAuthCallback:
    async def test_completes_login(self, app_parts):
        client, app, _ = app_parts
        headers = cookie_header(
            app, BrowserSession(oauth_state="abc123", oauth_did=DID)
        )

        with patch(
            "social.statusphere.app.handlers.oauth.oauth_complete",
            new=AsyncMock(return_value=DID),
        ) as oauth_complete:
            resp = await client.get(
                "/oauth-callback",
                params={"state": "abc123", "iss": "https://auth.example.com", "code": "xyz"},
                headers=headers,
                allow_redirects=False,
            )

        assert resp.status == 302
        assert resp.headers["Location"] == "/"
        assert oauth_complete.await_args.args[-3:] == (
            "abc123",
            "https://auth.example.com",
            "xyz",
        )
        assert response_session(app, resp).did == DID

    async def test_state_must_match_cookie(self, app_parts):
        client, app, _ = app_parts
        headers = cookie_header(app, BrowserSession(oauth_state="other", oauth_did=DID))

        with patch(
            "social.statusphere.app.handlers.oauth.oauth_complete", new=AsyncMock()
        ) as oauth_complete:
            resp = await client.get(
                "/oauth-callback",
                params={"state": "abc123", "iss": "https://auth.example.com", "code": "xyz"},
                headers=headers,
            )

        assert "error logging in" in await resp.text()
        oauth_complete.assert_not_awaited()

    async def test_missing_parameters(self, app_parts):
        client, _, _ = app_parts

        resp = await client.get("/oauth-callback", params={"state": "abc123"})

        assert "error logging in" in await resp.text()

    async def test_unknown_state(self, app_parts):
        client, app, _ = app_parts
        headers = cookie_header(app, BrowserSession(oauth_state="abc123"))

        with patch(
            "social.statusphere.app.handlers.oauth.oauth_complete",
            new=AsyncMock(side_effect=NotFoundError.request_not_found()),
        ):
            resp = await client.get(
                "/oauth-callback",
                params={"state": "abc123", "iss": "https://auth.example.com", "code": "xyz"},
                headers=headers,
            )

        text = await resp.text()
        assert "error logging in" in text
        assert "error-store" not in text


class TestStatus:
    async def test_home_requires_login(self, app_parts):
        client, _, _ = app_parts

        resp = await client.get("/", allow_redirects=False)

        assert resp.status == 302
        assert resp.headers["Location"] == "/login"

    async def test_home_lists_statuses(self, app_parts):
        client, app, _ = app_parts
        store = app[StoreAppKey]
        now = datetime.now(timezone.utc)
        await store.upsert_handle(DID, "alice.test", "https://pds.example.com")
        await store.create_status(RECORD_URI, DID, "🦋", now, now)

        resp = await client.get("/", headers=cookie_header(app, BrowserSession(did=DID)))

        assert resp.status == 200
        text = await resp.text()
        assert "alice.test" in text
        assert "is feeling 🦋 today" in text

    async def test_submit_writes_status(self, app_parts, oauth_session_factory):
        client, app, session_manager = app_parts
        oauth_session = oauth_session_factory()
        session_manager.get_valid_session.return_value = oauth_session

        with patch(
            "social.statusphere.app.handlers.status.create_status",
            new=AsyncMock(return_value=RECORD_URI),
        ) as create_status:
            resp = await client.post(
                "/status",
                data={"status": "👍"},
                headers=cookie_header(app, BrowserSession(did=DID)),
                allow_redirects=False,
            )

        assert resp.status == 302
        assert resp.headers["Location"] == "/"
        session_manager.get_valid_session.assert_awaited_once_with(DID)
        assert create_status.await_args.args[1] is oauth_session
        assert create_status.await_args.args[2] == "👍"

        statuses = await app[StoreAppKey].get_statuses()
        assert [status.uri for status in statuses] == [RECORD_URI]

    async def test_submit_write_failure(self, app_parts, oauth_session_factory):
        client, app, session_manager = app_parts
        session_manager.get_valid_session.return_value = oauth_session_factory()

        with patch(
            "social.statusphere.app.handlers.status.create_status",
            new=AsyncMock(side_effect=RequestError.transport("reset")),
        ):
            resp = await client.post(
                "/status",
                data={"status": "👍"},
                headers=cookie_header(app, BrowserSession(did=DID)),
                allow_redirects=False,
            )

        assert resp.status == 302
        assert resp.headers["Location"] == "/"
        assert await app[StoreAppKey].get_statuses() == []
        assert await app[HealthGaugeAppKey].record_error(weight=0) == 1

    async def test_submit_rejects_long_status(self, app_parts):
        client, app, session_manager = app_parts

        resp = await client.post(
            "/status",
            data={"status": "x" * 33},
            headers=cookie_header(app, BrowserSession(did=DID)),
            allow_redirects=False,
        )

        assert resp.status == 400
        session_manager.get_valid_session.assert_not_awaited()

    async def test_refresh_failure_logs_out(self, app_parts):
        client, app, session_manager = app_parts
        session_manager.get_valid_session.side_effect = RefreshError.rejected(400)

        resp = await client.post(
            "/status",
            data={"status": "👍"},
            headers=cookie_header(app, BrowserSession(did=DID)),
            allow_redirects=False,
        )

        assert resp.status == 302
        assert resp.headers["Location"] == "/login"
        assert resp.cookies[app[SettingsAppKey].cookie_name].value == ""

    async def test_logout(self, app_parts):
        client, app, session_manager = app_parts

        resp = await client.post(
            "/logout",
            headers=cookie_header(app, BrowserSession(did=DID)),
            allow_redirects=False,
        )

        assert resp.status == 302
        session_manager.delete_session.assert_awaited_once_with(DID)
