import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional
from aiohttp import ClientError, web
import aiohttp_jinja2
import sentry_sdk

from social.statusphere.app.config import (
    HealthGaugeAppKey,
    SessionAppKey,
    SettingsAppKey,
    StoreAppKey,
)
from social.statusphere.app.handlers.helpers import (
    SessionManagerAppKey,
    XrpcExecutorAppKey,
    clear_browser_session,
    logged_in_did,
)
from social.statusphere.atproto.errors import (
    NotFoundError,
    OAuthClientException,
    RefreshError,
)
from social.statusphere.atproto.xrpc import create_status
from social.statusphere.model.handles import Handle
from social.statusphere.resolve.handle import resolve_did

logger = logging.getLogger(__name__)

AVAILABLE_STATUSES = [
    "👍",
    "👎",
    "💙",
    "🥹",
    "😧",
    "😤",
    "🙃",
    "😉",
    "😎",
    "🤓",
    "🤨",
    "🥳",
    "😭",
    "🤯",
    "🫡",
    "💀",
    "✊",
    "🤘",
    "👀",
    "🧠",
    "👩‍💻",
    "🧑‍💻",
    "🥷",
    "🧌",
    "🦋",
    "🚀",
]

# Matches the maxLength of the xyz.statusphere.status lexicon.
STATUS_MAX_LENGTH = 32


async def _handles_for(request: web.Request, dids: List[str]) -> Dict[str, Handle]:
    """Stored handles for `dids`, resolving and storing the ones not seen yet."""
    store = request.app[StoreAppKey]
    settings = request.app[SettingsAppKey]
    http_session = request.app[SessionAppKey]

    handles = await store.get_handles(dids)
    for did in set(dids) - handles.keys():
        try:
            resolved = await resolve_did(http_session, settings.plc_hostname, did)
        except (ClientError, asyncio.TimeoutError, ValueError):
            logger.warning("Unable to resolve %s, skipping", did, exc_info=True)
            continue
        if resolved is None:
            continue
        await store.upsert_handle(resolved.did, resolved.handle, resolved.pds)
        handles[did] = Handle(did=resolved.did, handle=resolved.handle, pds=resolved.pds)
    return handles


async def handle_home(request: web.Request):
    did = logged_in_did(request)
    if did is None:
        raise web.HTTPFound("/login")

    store = request.app[StoreAppKey]
    statuses = await store.get_statuses(10)
    handles = await _handles_for(request, [did] + [status.did for status in statuses])

    today = datetime.now(timezone.utc).date()
    user_statuses: List[Dict[str, Any]] = []
    for status in statuses:
        handle: Optional[Handle] = handles.get(status.did, None)
        if handle is None:
            continue
        user_statuses.append(
            {
                "status": status.status,
                "handle": handle.handle,
                "handle_url": f"https://bsky.app/profile/{status.did}",
                "date": status.created_at.date().isoformat(),
                "is_today": status.created_at.date() == today,
            }
        )

    current_user = handles.get(did, None)
    return await aiohttp_jinja2.render_template_async(
        "home.html",
        request,
        context={
            "display_name": current_user.handle if current_user else did,
            "available_statuses": AVAILABLE_STATUSES,
            "user_statuses": user_statuses,
        },
    )


async def handle_status_submit(request: web.Request):
    did = logged_in_did(request)
    if did is None:
        raise web.HTTPFound("/login")

    data = await request.post()
    status: Optional[str] = data.get("status", None)  # type: ignore
    if not status or len(status) > STATUS_MAX_LENGTH:
        raise web.HTTPBadRequest(text="invalid status")

    session_manager = request.app[SessionManagerAppKey]
    health_gauge = request.app[HealthGaugeAppKey]

    try:
        oauth_session = await session_manager.get_valid_session(did)
    except (NotFoundError, RefreshError) as e:
        logger.warning("Session for %s is unusable, logging out: %s", did, e)
        if isinstance(e, RefreshError):
            sentry_sdk.capture_exception(e)
            await health_gauge.record_error()
        response = web.HTTPFound("/login")
        clear_browser_session(request, response)
        raise response

    created_at = datetime.now(timezone.utc)
    try:
        uri = await create_status(
            request.app[XrpcExecutorAppKey], oauth_session, status, created_at
        )
    except OAuthClientException as e:
        logger.exception("Unable to create status for %s", did)
        sentry_sdk.capture_exception(e)
        await health_gauge.record_error()
        raise web.HTTPFound("/")

    # The firehose delivers the same record later; the insert is idempotent.
    await request.app[StoreAppKey].create_status(
        uri, did, status, created_at, datetime.now(timezone.utc)
    )

    raise web.HTTPFound("/")
