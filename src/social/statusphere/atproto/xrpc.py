"""
Authenticated XRPC calls to a subject's PDS.

XrpcExecutor performs one logical call per `execute`, signing a DPoP proof
bound to the session's access token and the PDS's latest nonce. A
`use_dpop_nonce` challenge is answered with one re-signed retry using the
nonce from the challenge; the request chain never makes more than two HTTP
calls, so a write is sent at most twice and only when the first attempt was
refused before being processed.
"""

import asyncio
from datetime import datetime
import logging
from typing import Any, Dict, Optional
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientError, ClientSession, hdrs

from social.statusphere.atproto.chain import (
    AttemptOutcome,
    ChainMiddlewareClient,
    GenerateDpopMiddleware,
    StatsdMiddleware,
    USE_DPOP_NONCE,
)
from social.statusphere.atproto.errors import RequestError
from social.statusphere.atproto.keys import CryptoKeyProvider
from social.statusphere.atproto.session import SessionManager
from social.statusphere.model.oauth import OAuthSession
from social.statusphere.model.status import STATUS_COLLECTION

logger = logging.getLogger(__name__)


class XrpcExecutor:
    def __init__(
        self,
        http_session: ClientSession,
        statsd_client: TelegrafStatsdClient,
        session_manager: SessionManager,
        keys: CryptoKeyProvider,
    ) -> None:
        self._http_session = http_session
        self._statsd_client = statsd_client
        self._session_manager = session_manager
        self._keys = keys

    async def execute(
        self,
        oauth_session: OAuthSession,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make one authenticated call and return its decoded JSON body.

        POST payloads are sent as JSON, GET payloads as query parameters. Every
        new nonce the PDS hands out is written to the in-memory session and
        recorded through the session manager.

        Raises:
            RequestError: The call failed, including a second nonce challenge and
                transport failures
            SigningError: The session's DPoP key is unusable
        """
        dpop_key = self._keys.load_dpop_key(oauth_session.dpop_jwk)

        async def on_nonce(nonce: str) -> None:
            oauth_session.dpop_pds_nonce = nonce
            await self._session_manager.record_resource_server_nonce(
                oauth_session.did, nonce
            )

        dpop_middleware = GenerateDpopMiddleware(
            dpop_key,
            nonce=oauth_session.dpop_pds_nonce,
            access_token=oauth_session.access_token,
            issuer=oauth_session.issuer,
            on_nonce=on_nonce,
        )
        chain_client = ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=[StatsdMiddleware(self._statsd_client), dpop_middleware],
        )

        kwargs: Dict[str, Any] = {}
        if payload is not None:
            if method.upper() == hdrs.METH_GET:
                kwargs["params"] = payload
            else:
                kwargs["json"] = payload

        context = chain_client.request(method, url, **kwargs)
        try:
            async with context as (client_response, chain_response):
                if context.outcome == AttemptOutcome.success:
                    if isinstance(chain_response.body, dict):
                        return chain_response.body
                    return {}

                if context.outcome == AttemptOutcome.nonce_challenge:
                    logger.warning(
                        "Nonce challenge persisted after %d attempts: %s %s",
                        context.attempts,
                        method,
                        url,
                    )
                    raise RequestError(
                        chain_response.status,
                        USE_DPOP_NONCE,
                        chain_response.body_value("message"),
                    )

                raise RequestError(
                    chain_response.status,
                    chain_response.body_value("error"),
                    chain_response.body_value("message"),
                )
        except (ClientError, asyncio.TimeoutError) as e:
            raise RequestError.transport(str(e)) from e


async def create_status(
    executor: XrpcExecutor,
    oauth_session: OAuthSession,
    status: str,
    created_at: datetime,
) -> str:
    """Write a status record to the subject's repository, returning its URI."""
    result = await executor.execute(
        oauth_session,
        hdrs.METH_POST,
        f"{oauth_session.pds_url}/xrpc/com.atproto.repo.createRecord",
        {
            "repo": oauth_session.did,
            "collection": STATUS_COLLECTION,
            "record": {
                "$type": STATUS_COLLECTION,
                "status": status,
                "createdAt": created_at.isoformat(),
            },
        },
    )
    uri = result.get("uri", None)
    if not isinstance(uri, str):
        raise RequestError(200, "InvalidResponse", "createRecord returned no uri")
    return uri
