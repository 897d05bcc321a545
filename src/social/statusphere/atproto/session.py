"""
Session lifecycle for logged in subjects.

SessionManager is the only way the rest of the application obtains a session
to make authenticated calls with. It refreshes tokens that are about to expire
and keeps the resource server's DPoP nonce up to date.

Refreshes are single-flight per subject: concurrent callers for the same DID
wait on one asyncio.Lock and re-read the stored session once they hold it, so a
waiter picks up the token pair its predecessor stored instead of spending the
refresh token a second time.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
import logging
from typing import AsyncIterator, Dict, Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientSession
import sentry_sdk

from social.statusphere.app.config import Settings
from social.statusphere.atproto.errors import NotFoundError, RefreshError
from social.statusphere.atproto.keys import CryptoKeyProvider
from social.statusphere.atproto.oauth import oauth_refresh
from social.statusphere.model.oauth import OAuthSession
from social.statusphere.model.store import SessionStore

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        keys: CryptoKeyProvider,
        statsd_client: TelegrafStatsdClient,
        http_session: ClientSession,
        store: SessionStore,
        refresh_margin: timedelta = REFRESH_MARGIN,
    ) -> None:
        self._settings = settings
        self._keys = keys
        self._statsd_client = statsd_client
        self._http_session = http_session
        self._store = store
        self._refresh_margin = refresh_margin
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _refresh_lock(self, did: str) -> AsyncIterator[None]:
        """Hold the refresh lock for `did`; it is dropped once nobody waits on it."""
        lock = self._locks.get(did, None)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[did] = lock
        self._lock_users[did] = self._lock_users.get(did, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[did] -= 1
            if self._lock_users[did] == 0:
                del self._lock_users[did]
                del self._locks[did]

    def _needs_refresh(self, oauth_session: OAuthSession, now: datetime) -> bool:
        return oauth_session.expires_at - now <= self._refresh_margin

    async def get_valid_session(
        self, did: str, now: Optional[datetime] = None
    ) -> OAuthSession:
        """
        Return a session for `did` whose access token is good for at least the
        refresh margin, refreshing it first when it is not.

        Raises:
            NotFoundError: The subject has no session and must log in
            RefreshError: The refresh exchange failed and the subject must log
                in again
        """
        if now is None:
            now = datetime.now(timezone.utc)

        oauth_session = await self._store.get_session(did)
        if oauth_session is None:
            raise NotFoundError.session_not_found()

        if not self._needs_refresh(oauth_session, now):
            return oauth_session

        async with self._refresh_lock(did):
            oauth_session = await self._store.get_session(did)
            if oauth_session is None:
                raise NotFoundError.session_not_found()

            if not self._needs_refresh(oauth_session, now):
                return oauth_session

            logger.debug("Refreshing session for %s", did)
            try:
                token_set = await oauth_refresh(
                    self._settings,
                    self._keys,
                    self._statsd_client,
                    self._http_session,
                    oauth_session,
                )
            except RefreshError:
                self._statsd_client.increment(
                    "statusphere.session.refresh", 1, tag_dict={"result": "error"}
                )
                raise

            try:
                await self._store.update_session_tokens(
                    did,
                    token_set.access_token,
                    token_set.refresh_token,
                    token_set.authserver_nonce,
                    token_set.expires_at,
                )
            except Exception as e:
                # The old refresh token has been spent at this point.
                raise RefreshError.unexpected("unable to store refreshed tokens") from e

            self._statsd_client.increment(
                "statusphere.session.refresh", 1, tag_dict={"result": "ok"}
            )

            oauth_session.access_token = token_set.access_token
            oauth_session.refresh_token = token_set.refresh_token
            oauth_session.dpop_authserver_nonce = token_set.authserver_nonce
            oauth_session.expires_at = token_set.expires_at
            return oauth_session

    async def record_resource_server_nonce(self, did: str, nonce: str) -> None:
        """Persist a new PDS nonce. Failures are logged, never raised."""
        try:
            await self._store.update_session_pds_nonce(did, nonce)
        except Exception as e:
            logger.exception("Unable to store PDS nonce for %s", did)
            sentry_sdk.capture_exception(e)

    async def delete_session(self, did: str) -> None:
        """Remove the subject's session. A missing session is not an error."""
        deleted = await self._store.delete_session(did)
        if not deleted:
            logger.debug("No session to delete for %s", did)
