"""
OAuth login handlers.

- GET /login - Login form
- POST /login - Start a login for the submitted handle or DID
- GET /oauth-callback - Authorization server callback
- POST /logout - Forget the session
- GET /oauth-client-metadata.json - OAuth client metadata document
- GET /jwks.json - Public keys for client assertions

Every failure in the login flow is logged, reported to Sentry, counted against
the health gauge and rendered as a generic "error logging in" message; details
never reach the browser.
"""

import logging
from typing import List, Optional
from aiohttp import web
import aiohttp_jinja2
from pydantic import BaseModel
import sentry_sdk

from social.statusphere.app.config import (
    CryptoKeysAppKey,
    HealthGaugeAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SettingsAppKey,
    StoreAppKey,
    TelegrafStatsdClientAppKey,
)
from social.statusphere.app.cookies import BrowserSession
from social.statusphere.app.handlers.helpers import (
    SessionManagerAppKey,
    browser_session,
    clear_browser_session,
    set_browser_session,
)
from social.statusphere.atproto.errors import OAuthClientException
from social.statusphere.atproto.oauth import (
    OAUTH_SCOPE,
    client_id_for,
    oauth_complete,
    oauth_init,
    redirect_uri_for,
)

logger = logging.getLogger(__name__)

LOGIN_ERROR_MESSAGE = "error logging in"


class ATProtocolOAuthClientMetadata(BaseModel):
    """Client metadata document for a confidential AT Protocol OAuth client."""

    client_id: str
    client_name: str
    client_uri: str
    application_type: str
    grant_types: List[str]
    response_types: List[str]
    redirect_uris: List[str]
    scope: str
    dpop_bound_access_tokens: bool
    token_endpoint_auth_method: str
    token_endpoint_auth_signing_alg: str
    jwks_uri: str


async def _login_error(
    request: web.Request, e: Exception, handle: Optional[str] = None
) -> web.Response:
    sentry_sdk.capture_exception(e)
    await request.app[HealthGaugeAppKey].record_error()
    return await aiohttp_jinja2.render_template_async(
        "login.html",
        request,
        context={"handle": handle, "error_message": LOGIN_ERROR_MESSAGE},
    )


async def handle_login(request: web.Request):
    return await aiohttp_jinja2.render_template_async(
        "login.html", request, context={}
    )


async def handle_login_submit(request: web.Request):
    data = await request.post()
    subject: Optional[str] = data.get("handle", None)  # type: ignore

    if subject is None or len(subject.strip()) == 0:
        return await aiohttp_jinja2.render_template_async(
            "login.html",
            request,
            context={"error_message": "No handle provided"},
        )

    settings = request.app[SettingsAppKey]

    try:
        login_redirect = await oauth_init(
            settings,
            request.app[CryptoKeysAppKey],
            request.app[TelegrafStatsdClientAppKey],
            request.app[SessionAppKey],
            request.app[StoreAppKey],
            request.app[RedisClientAppKey],
            subject,
        )
    except OAuthClientException as e:
        logger.exception("Unable to start login for %s", subject)
        return await _login_error(request, e, subject)

    response = web.HTTPFound(login_redirect.url)
    set_browser_session(
        request,
        response,
        BrowserSession(oauth_state=login_redirect.state, oauth_did=login_redirect.did),
        settings.login_cookie_max_age,
    )
    raise response


async def handle_oauth_callback(request: web.Request):
    state: Optional[str] = request.query.get("state", None)
    issuer: Optional[str] = request.query.get("iss", None)
    code: Optional[str] = request.query.get("code", None)

    if not state or not issuer or not code:
        logger.error("OAuth callback is missing parameters")
        return await aiohttp_jinja2.render_template_async(
            "login.html", request, context={"error_message": LOGIN_ERROR_MESSAGE}
        )

    session = browser_session(request)
    if session is None or session.oauth_state != state:
        logger.error("OAuth callback state does not match the browser session")
        return await aiohttp_jinja2.render_template_async(
            "login.html", request, context={"error_message": LOGIN_ERROR_MESSAGE}
        )

    settings = request.app[SettingsAppKey]

    try:
        did = await oauth_complete(
            settings,
            request.app[CryptoKeysAppKey],
            request.app[TelegrafStatsdClientAppKey],
            request.app[SessionAppKey],
            request.app[StoreAppKey],
            state,
            issuer,
            code,
        )
    except OAuthClientException as e:
        logger.exception("Unable to complete login")
        return await _login_error(request, e)

    if session.oauth_did is not None and session.oauth_did != did:
        logger.warning("Login for %s completed as %s", session.oauth_did, did)

    response = web.HTTPFound("/")
    set_browser_session(
        request, response, BrowserSession(did=did), settings.session_cookie_max_age
    )
    raise response


async def handle_logout(request: web.Request):
    session = browser_session(request)
    if session is not None and session.did is not None:
        await request.app[SessionManagerAppKey].delete_session(session.did)

    response = web.HTTPFound("/")
    clear_browser_session(request, response)
    raise response


async def handle_jwks(request: web.Request):
    keys = request.app[CryptoKeysAppKey]
    return web.json_response(keys.public_jwks())


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    client_metadata = ATProtocolOAuthClientMetadata(
        client_id=client_id_for(settings),
        client_name=settings.client_name,
        client_uri=f"https://{settings.external_hostname}",
        application_type="web",
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        redirect_uris=[redirect_uri_for(settings)],
        scope=OAUTH_SCOPE,
        dpop_bound_access_tokens=True,
        token_endpoint_auth_method="private_key_jwt",
        token_endpoint_auth_signing_alg="ES256",
        jwks_uri=f"https://{settings.external_hostname}/jwks.json",
    )
    return web.json_response(client_metadata.model_dump())
