import asyncio
from datetime import datetime, timezone, timedelta
import json
import logging
from typing import Any, Dict, NoReturn, Optional
from urllib.parse import urlencode
from aiohttp import WSMsgType, web
import sentry_sdk

from social.statusphere.app.config import (
    HealthGaugeAppKey,
    SessionAppKey,
    SettingsAppKey,
    StoreAppKey,
    TelegrafStatsdClientAppKey,
)
from social.statusphere.model.status import STATUS_COLLECTION
from social.statusphere.model.store import DatabaseSessionStore

logger = logging.getLogger(__name__)

JETSTREAM_RECONNECT_DELAY = 5


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the error score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def request_cleanup_task(app: web.Application) -> NoReturn:
    """
    Delete pending authorization requests that expired without a callback.
    """
    logger.info("Starting pending request cleanup task")

    settings = app[SettingsAppKey]
    store = app[StoreAppKey]
    statsd_client = app[TelegrafStatsdClientAppKey]

    while True:
        try:
            await asyncio.sleep(settings.request_cleanup_interval)

            expired_requests_count = await store.delete_expired_requests(
                datetime.now(timezone.utc)
            )
            if expired_requests_count > 0:
                logger.info(
                    "Cleaned up %d expired OAuth requests", expired_requests_count
                )
            statsd_client.increment(
                "statusphere.task.request_cleanup.removed", expired_requests_count
            )
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Pending request cleanup failed")


def jetstream_url(base_url: str, cursor: int) -> str:
    query = urlencode([("wantedCollections", STATUS_COLLECTION), ("cursor", cursor)])
    return f"{base_url}?{query}"


async def handle_event(
    store: DatabaseSessionStore,
    event: Dict[str, Any],
    now: Optional[datetime] = None,
) -> bool:
    """
    Store the status record carried by a Jetstream commit event.

    Returns True when a status was stored. Events for other collections,
    non-create operations and malformed records are skipped.
    """
    if event.get("kind", None) != "commit":
        return False

    commit = event.get("commit", None)
    if not isinstance(commit, dict):
        return False

    if commit.get("operation", None) != "create":
        return False

    if commit.get("collection", None) != STATUS_COLLECTION:
        return False

    did = event.get("did", None)
    rkey = commit.get("rkey", None)
    record = commit.get("record", None)
    if not did or not rkey or not isinstance(record, dict):
        logger.warning("Skipping malformed commit event: %s", event)
        return False

    status = record.get("status", None)
    if not isinstance(status, str) or len(status) == 0:
        logger.warning("Skipping status record without a status: %s", record)
        return False

    try:
        created_at = datetime.fromisoformat(record.get("createdAt", None))
    except (TypeError, ValueError):
        logger.warning("Skipping status record with bad createdAt: %s", record)
        return False
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    if now is None:
        now = datetime.now(timezone.utc)

    await store.create_status(
        f"at://{did}/{STATUS_COLLECTION}/{rkey}", did, status, created_at, now
    )
    return True


async def jetstream_consumer_task(app: web.Application) -> NoReturn:
    """
    Consume status records from Jetstream, reconnecting until cancelled.

    The first connection replays the last minute; reconnects resume from the
    last event seen.
    """
    logger.info("Starting Jetstream consumer")

    settings = app[SettingsAppKey]
    store = app[StoreAppKey]
    http_session = app[SessionAppKey]
    statsd_client = app[TelegrafStatsdClientAppKey]

    cursor = int(
        (datetime.now(timezone.utc) - timedelta(minutes=1)).timestamp() * 1_000_000
    )

    while True:
        try:
            async with http_session.ws_connect(
                jetstream_url(settings.jetstream_url, cursor), heartbeat=30
            ) as ws:
                logger.info("Connected to Jetstream at %s", settings.jetstream_url)
                async for msg in ws:
                    if msg.type == WSMsgType.ERROR:
                        logger.error("Jetstream connection error: %s", ws.exception())
                        break
                    if msg.type != WSMsgType.TEXT:
                        continue

                    try:
                        event = json.loads(msg.data)
                    except ValueError:
                        logger.warning("Undecodable Jetstream message")
                        continue
                    if not isinstance(event, dict):
                        continue

                    time_us = event.get("time_us", None)
                    if isinstance(time_us, int):
                        cursor = time_us

                    if await handle_event(store, event):
                        statsd_client.increment("statusphere.jetstream.status", 1)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Jetstream consumer failed")

        await asyncio.sleep(JETSTREAM_RECONNECT_DELAY)
