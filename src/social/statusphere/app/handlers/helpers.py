from typing import Final, Optional
from aiohttp import web

from social.statusphere.app.config import CookieCodecAppKey, SettingsAppKey
from social.statusphere.app.cookies import BrowserSession
from social.statusphere.atproto.session import SessionManager
from social.statusphere.atproto.xrpc import XrpcExecutor

SessionManagerAppKey: Final = web.AppKey("session_manager", SessionManager)

XrpcExecutorAppKey: Final = web.AppKey("xrpc_executor", XrpcExecutor)


def browser_session(request: web.Request) -> Optional[BrowserSession]:
    """Decode the request's session cookie, if it has a valid one."""
    settings = request.app[SettingsAppKey]
    cookie_codec = request.app[CookieCodecAppKey]
    return cookie_codec.decode(request.cookies.get(settings.cookie_name, None))


def logged_in_did(request: web.Request) -> Optional[str]:
    session = browser_session(request)
    if session is None:
        return None
    return session.did


def set_browser_session(
    request: web.Request,
    response: web.StreamResponse,
    session: BrowserSession,
    max_age: int,
) -> None:
    settings = request.app[SettingsAppKey]
    cookie_codec = request.app[CookieCodecAppKey]
    response.set_cookie(
        settings.cookie_name,
        cookie_codec.encode(session, max_age),
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="Lax",
    )


def clear_browser_session(request: web.Request, response: web.StreamResponse) -> None:
    settings = request.app[SettingsAppKey]
    response.del_cookie(settings.cookie_name, path="/")
