"""
Storage interface for authorization requests, sessions and statuses.

The OAuth client only depends on the narrow SessionStore interface. The
DatabaseSessionStore implementation backs it with SQLAlchemy's async ORM; every
mutating operation is a single statement scoped to one `oauth_state` or one
DID, so concurrent writers for the same subject can at worst overwrite each
other's nonce, never interleave a token pair.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.statusphere.model.handles import Handle, upsert_handle_stmt
from social.statusphere.model.oauth import OAuthRequest, OAuthSession
from social.statusphere.model.status import Status, insert_status_stmt


class SessionStore(ABC):
    @abstractmethod
    async def create_request(self, oauth_request: OAuthRequest) -> None:
        """Store a pending request. Raises IntegrityError on a duplicate state."""

    @abstractmethod
    async def get_request(self, state: str) -> Optional[OAuthRequest]:
        pass

    @abstractmethod
    async def delete_request(self, state: str) -> bool:
        """Delete a pending request, returning whether this call deleted it."""

    @abstractmethod
    async def delete_expired_requests(self, now: datetime) -> int:
        pass

    @abstractmethod
    async def create_session(self, oauth_session: OAuthSession) -> bool:
        """Insert a session unless the subject already has one.

        Returns False, leaving the existing row untouched, when a session for
        the DID already exists.
        """

    @abstractmethod
    async def get_session(self, did: str) -> Optional[OAuthSession]:
        pass

    @abstractmethod
    async def update_session_tokens(
        self,
        did: str,
        access_token: str,
        refresh_token: str,
        authserver_nonce: str,
        expires_at: datetime,
    ) -> None:
        pass

    @abstractmethod
    async def update_session_pds_nonce(self, did: str, nonce: str) -> None:
        pass

    @abstractmethod
    async def delete_session(self, did: str) -> bool:
        pass


class DatabaseSessionStore(SessionStore):
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]):
        self._database_session_maker = database_session_maker

    async def create_request(self, oauth_request: OAuthRequest) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(oauth_request)

    async def get_request(self, state: str) -> Optional[OAuthRequest]:
        async with self._database_session_maker() as database_session:
            stmt = select(OAuthRequest).where(OAuthRequest.oauth_state == state)
            return (await database_session.scalars(stmt)).first()

    async def delete_request(self, state: str) -> bool:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthRequest).where(OAuthRequest.oauth_state == state)
                )
        return result.rowcount > 0

    async def delete_expired_requests(self, now: datetime) -> int:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthRequest).where(OAuthRequest.expires_at < now)
                )
        return result.rowcount

    async def create_session(self, oauth_session: OAuthSession) -> bool:
        values = {
            column.key: getattr(oauth_session, column.key)
            for column in OAuthSession.__table__.columns
        }
        # TODO: Switch to on_conflict_do_update once re-login is meant to replace
        # the stored tokens.
        stmt = insert(OAuthSession).values([values]).on_conflict_do_nothing(
            index_elements=["did"]
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
        return result.rowcount > 0

    async def get_session(self, did: str) -> Optional[OAuthSession]:
        async with self._database_session_maker() as database_session:
            stmt = select(OAuthSession).where(OAuthSession.did == did)
            return (await database_session.scalars(stmt)).first()

    async def update_session_tokens(
        self,
        did: str,
        access_token: str,
        refresh_token: str,
        authserver_nonce: str,
        expires_at: datetime,
    ) -> None:
        stmt = (
            update(OAuthSession)
            .where(OAuthSession.did == did)
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                dpop_authserver_nonce=authserver_nonce,
                expires_at=expires_at,
            )
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    async def update_session_pds_nonce(self, did: str, nonce: str) -> None:
        stmt = (
            update(OAuthSession)
            .where(OAuthSession.did == did)
            .values(dpop_pds_nonce=nonce)
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    async def delete_session(self, did: str) -> bool:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthSession).where(OAuthSession.did == did)
                )
        return result.rowcount > 0

    async def upsert_handle(self, did: str, handle: str, pds: str) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(upsert_handle_stmt(did, handle, pds))

    async def get_handles(self, dids: Sequence[str]) -> Dict[str, Handle]:
        if len(dids) == 0:
            return {}
        async with self._database_session_maker() as database_session:
            stmt = select(Handle).where(Handle.did.in_(set(dids)))
            return {handle.did: handle for handle in await database_session.scalars(stmt)}

    async def create_status(
        self,
        uri: str,
        did: str,
        status: str,
        created_at: datetime,
        indexed_at: datetime,
    ) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    insert_status_stmt(uri, did, status, created_at, indexed_at)
                )

    async def get_statuses(self, limit: int = 10) -> List[Status]:
        async with self._database_session_maker() as database_session:
            stmt = select(Status).order_by(Status.created_at.desc()).limit(limit)
            return list(await database_session.scalars(stmt))
