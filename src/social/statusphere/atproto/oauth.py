"""
AT Protocol OAuth Client

Implements the confidential-client side of AT Protocol OAuth:

- Proof Key for Code Exchange (PKCE) (RFC 7636)
- Pushed Authorization Requests (PAR) (RFC 9126)
- JWT client authentication, `private_key_jwt` (RFC 7523)
- DPoP sender-constrained tokens (RFC 9449)

The flow has three stages:

1. `oauth_init` resolves the subject, discovers its authorization server,
   pushes the authorization request and stores the pending request.
2. `oauth_complete` consumes the pending request exactly once and exchanges
   the authorization code for a DPoP-bound token pair, creating the session.
3. `oauth_refresh` exchanges a session's refresh token for a new token pair.

Every request to the authorization server goes through the bounded request
chain, so a `use_dpop_nonce` challenge is answered by exactly one re-signed
retry and the most recent nonce is kept for the next request.
"""

import asyncio
import base64
from datetime import datetime, timezone, timedelta
import hashlib
import logging
import secrets
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
import redis.asyncio as redis
from sqlalchemy.exc import IntegrityError

from social.statusphere.app.config import Settings
from social.statusphere.atproto.chain import (
    ChainMiddlewareClient,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    StatsdMiddleware,
)
from social.statusphere.atproto.errors import (
    AuthorizationFlowError,
    NotFoundError,
    RefreshError,
    ScopeMismatchError,
    SigningError,
)
from social.statusphere.atproto.jwt import CLIENT_ASSERTION_TYPE
from social.statusphere.atproto.keys import CryptoKeyProvider, generate_dpop_key
from social.statusphere.atproto.pds import (
    oauth_authorization_server,
    oauth_protected_resource,
)
from social.statusphere.model.oauth import OAuthRequest, OAuthSession
from social.statusphere.model.store import DatabaseSessionStore, SessionStore
from social.statusphere.resolve.handle import ResolvedSubject, resolve_subject

logger = logging.getLogger(__name__)

OAUTH_SCOPE = "atproto transition:generic"

DEFAULT_PAR_EXPIRES_IN = 60
DEFAULT_TOKEN_EXPIRES_IN = 1800


class LoginRedirect(BaseModel):
    """Where to send the browser, and what to remember about the attempt."""

    url: str
    state: str
    did: str


class TokenSet(BaseModel):
    access_token: str
    refresh_token: str
    authserver_nonce: str
    expires_at: datetime


def client_id_for(settings: Settings) -> str:
    return f"https://{settings.external_hostname}/oauth-client-metadata.json"


def redirect_uri_for(settings: Settings) -> str:
    return f"https://{settings.external_hostname}/oauth-callback"


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge). The verifier is kept
        with the pending request and sent with the token request; the challenge
        is sent with the pushed authorization request.
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def _expires_in(body: Dict[str, Any], default: int) -> Optional[int]:
    """Lifetime in seconds from a PAR or token response, or None when unusable."""
    if "expires_in" not in body:
        return default
    value = body["expires_in"]
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _authorization_redirect(
    authorization_endpoint: str, client_id: str, request_uri: str
) -> str:
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update({"client_id": client_id, "request_uri": request_uri})
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


async def _authorization_server_request(
    settings: Settings,
    keys: CryptoKeyProvider,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    dpop_middleware: GenerateDpopMiddleware,
    issuer: str,
    url: str,
    data: Dict[str, str],
) -> Tuple[int, Optional[Dict[str, Any]]]:
    """POST a client-authenticated, DPoP-signed form to the authorization server.

    Returns the final status and the JSON body when the body is an object. The
    nonce the server handed out last is available from `dpop_middleware.nonce`.
    """
    chain_middleware = [
        StatsdMiddleware(statsd_client),
        dpop_middleware,
        GenerateClaimAssertionMiddleware(
            keys.signing_key,
            keys.signing_key_id,
            client_id_for(settings),
            issuer,
        ),
    ]
    chain_client = ChainMiddlewareClient(
        client_session=http_session, middleware=chain_middleware
    )

    async with chain_client.post(url, data=data) as (
        client_response,
        chain_response,
    ):
        if isinstance(chain_response.body, dict):
            return chain_response.status, chain_response.body
        return chain_response.status, None


async def oauth_init(
    settings: Settings,
    keys: CryptoKeyProvider,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    store: DatabaseSessionStore,
    redis_session: redis.Redis,
    subject: str,
) -> LoginRedirect:
    """
    Start a login for a handle or DID.

    Args:
        settings: Application settings
        keys: Client signing key and DPoP key serialization
        statsd_client: Metrics client for outbound requests
        http_session: Shared HTTP session
        store: Storage for pending requests and handles
        redis_session: Redis client holding the per-subject login lock
        subject: What the user typed into the login form

    Returns:
        LoginRedirect: The authorization URL to redirect to, with the state and
        DID of the pending request.

    Raises:
        AuthorizationFlowError: Identity resolution, metadata discovery or the
            pushed authorization request failed, or another login for the same
            subject is in progress. The upstream cause is chained.
    """
    try:
        resolved_subject = await resolve_subject(
            http_session, settings.plc_hostname, subject
        )
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise AuthorizationFlowError.unresolved_subject(subject) from e
    if resolved_subject is None:
        raise AuthorizationFlowError.unresolved_subject(subject)

    # Held from discovery until the pending request is stored.
    login_lock_key = f"login:{resolved_subject.did}"
    lock_acquired = await redis_session.set(
        login_lock_key, "1", nx=True, ex=settings.login_lock_ttl
    )
    if not lock_acquired:
        raise AuthorizationFlowError.login_in_progress()

    try:
        login_redirect = await _push_authorization_request(
            settings, keys, statsd_client, http_session, store, resolved_subject
        )
    finally:
        await redis_session.delete(login_lock_key)

    logger.info(
        "Started login for %s at %s", resolved_subject.did, login_redirect.url
    )
    return login_redirect


async def _push_authorization_request(
    settings: Settings,
    keys: CryptoKeyProvider,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    store: DatabaseSessionStore,
    resolved_subject: ResolvedSubject,
) -> LoginRedirect:
    try:
        protected_resource = await oauth_protected_resource(
            http_session, resolved_subject.pds
        )
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise AuthorizationFlowError.no_protected_resource() from e
    if not isinstance(protected_resource, dict):
        raise AuthorizationFlowError.no_protected_resource()

    first_authorization_server = next(
        iter(protected_resource.get("authorization_servers", None) or []), None
    )
    if first_authorization_server is None:
        raise AuthorizationFlowError.no_authorization_server()

    try:
        authorization_server = await oauth_authorization_server(
            http_session, first_authorization_server
        )
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise AuthorizationFlowError.no_authorization_server() from e
    if authorization_server is None:
        raise AuthorizationFlowError.no_authorization_server()

    dpop_key = generate_dpop_key()
    state = secrets.token_urlsafe(32)
    (pkce_verifier, code_challenge) = generate_pkce_verifier()
    client_id = client_id_for(settings)

    data = {
        "response_type": "code",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
        "client_id": client_id,
        "redirect_uri": redirect_uri_for(settings),
        "scope": OAUTH_SCOPE,
        "login_hint": resolved_subject.handle,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
    }

    dpop_middleware = GenerateDpopMiddleware(dpop_key)
    try:
        status, par_response = await _authorization_server_request(
            settings,
            keys,
            statsd_client,
            http_session,
            dpop_middleware,
            authorization_server.issuer,
            authorization_server.pushed_authorization_request_endpoint,
            data,
        )
    except (ClientError, asyncio.TimeoutError) as e:
        raise AuthorizationFlowError.unexpected(str(e)) from e

    if status not in (200, 201) or par_response is None:
        raise AuthorizationFlowError.par_rejected(status)

    par_request_uri = par_response.get("request_uri", None)
    if par_request_uri is None:
        raise AuthorizationFlowError.unexpected("no request_uri in PAR response")
    par_expires = _expires_in(par_response, DEFAULT_PAR_EXPIRES_IN)
    if par_expires is None:
        raise AuthorizationFlowError.unexpected("invalid expires_in in PAR response")

    now = datetime.now(timezone.utc)

    try:
        await store.upsert_handle(
            resolved_subject.did, resolved_subject.handle, resolved_subject.pds
        )
        await store.create_request(
            OAuthRequest(
                oauth_state=state,
                issuer=authorization_server.issuer,
                did=resolved_subject.did,
                pds_url=resolved_subject.pds,
                token_endpoint=authorization_server.token_endpoint,
                pkce_verifier=pkce_verifier,
                dpop_authserver_nonce=dpop_middleware.nonce,
                dpop_jwk=keys.serialize_dpop_key(dpop_key),
                created_at=now,
                expires_at=now + timedelta(0, par_expires),
            )
        )
    except IntegrityError as e:
        raise AuthorizationFlowError.unexpected("duplicate state") from e

    return LoginRedirect(
        url=_authorization_redirect(
            authorization_server.authorization_endpoint, client_id, par_request_uri
        ),
        state=state,
        did=resolved_subject.did,
    )

async def oauth_complete(
    settings: Settings,
    keys: CryptoKeyProvider,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    store: SessionStore,
    state: str,
    issuer: str,
    code: str,
) -> str:
    """
    Exchange an authorization code for a session.

    The pending request is deleted before the code is exchanged, so a replayed
    callback, or the loser of two concurrent callbacks, fails with
    NotFoundError without reaching the token endpoint.

    Returns:
        str: The DID of the logged in subject.

    Raises:
        NotFoundError: No pending request for `state`, or it was already consumed
        AuthorizationFlowError: Issuer or subject mismatch, or the token
            endpoint rejected the exchange
        ScopeMismatchError: The granted scope differs from the requested scope
        SigningError: The stored DPoP key could not be reconstructed
    """
    oauth_request = await store.get_request(state)
    if oauth_request is None:
        raise NotFoundError.request_not_found()

    if not await store.delete_request(state):
        raise NotFoundError.request_not_found()

    if oauth_request.issuer != issuer:
        raise AuthorizationFlowError.issuer_mismatch()

    dpop_key = keys.load_dpop_key(oauth_request.dpop_jwk)

    data = {
        "client_id": client_id_for(settings),
        "redirect_uri": redirect_uri_for(settings),
        "grant_type": "authorization_code",
        "code": code,
        "code_verifier": oauth_request.pkce_verifier,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
    }

    dpop_middleware = GenerateDpopMiddleware(
        dpop_key, nonce=oauth_request.dpop_authserver_nonce
    )
    try:
        status, token_response = await _authorization_server_request(
            settings,
            keys,
            statsd_client,
            http_session,
            dpop_middleware,
            oauth_request.issuer,
            oauth_request.token_endpoint,
            data,
        )
    except (ClientError, asyncio.TimeoutError) as e:
        raise AuthorizationFlowError.unexpected(str(e)) from e

    if status != 200 or token_response is None:
        raise AuthorizationFlowError.token_rejected(status)

    access_token = token_response.get("access_token", None)
    if access_token is None:
        raise AuthorizationFlowError.unexpected("no access token")

    refresh_token = token_response.get("refresh_token", None)
    if refresh_token is None:
        raise AuthorizationFlowError.unexpected("no refresh token")

    granted_scope = token_response.get("scope", None)
    if granted_scope != OAUTH_SCOPE:
        raise ScopeMismatchError(OAUTH_SCOPE, granted_scope)

    token_subject = token_response.get("sub", None)
    if token_subject is not None and token_subject != oauth_request.did:
        raise AuthorizationFlowError.subject_mismatch()

    expires_in = _expires_in(token_response, DEFAULT_TOKEN_EXPIRES_IN)
    if expires_in is None:
        raise AuthorizationFlowError.unexpected("invalid expires_in in token response")
    now = datetime.now(timezone.utc)

    created = await store.create_session(
        OAuthSession(
            did=oauth_request.did,
            pds_url=oauth_request.pds_url,
            issuer=oauth_request.issuer,
            token_endpoint=oauth_request.token_endpoint,
            access_token=access_token,
            refresh_token=refresh_token,
            dpop_authserver_nonce=dpop_middleware.nonce,
            dpop_pds_nonce="",
            dpop_jwk=oauth_request.dpop_jwk,
            created_at=now,
            expires_at=now + timedelta(0, expires_in),
        )
    )
    if not created:
        logger.warning(
            "Session for %s already exists, keeping the stored tokens",
            oauth_request.did,
        )

    return oauth_request.did


async def oauth_refresh(
    settings: Settings,
    keys: CryptoKeyProvider,
    statsd_client: TelegrafStatsdClient,
    http_session: ClientSession,
    oauth_session: OAuthSession,
) -> TokenSet:
    """
    Exchange a session's refresh token for a new token pair.

    Nothing is persisted here; the caller stores the returned TokenSet.

    Raises:
        RefreshError: The refresh exchange failed for any reason. The user has
            to log in again.
    """
    try:
        dpop_key = keys.load_dpop_key(oauth_session.dpop_jwk)
    except SigningError as e:
        raise RefreshError.unexpected("stored DPoP key is unusable") from e

    data = {
        "client_id": client_id_for(settings),
        "redirect_uri": redirect_uri_for(settings),
        "grant_type": "refresh_token",
        "refresh_token": oauth_session.refresh_token,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
    }

    dpop_middleware = GenerateDpopMiddleware(
        dpop_key, nonce=oauth_session.dpop_authserver_nonce
    )
    try:
        status, token_response = await _authorization_server_request(
            settings,
            keys,
            statsd_client,
            http_session,
            dpop_middleware,
            oauth_session.issuer,
            oauth_session.token_endpoint,
            data,
        )
    except (ClientError, asyncio.TimeoutError) as e:
        raise RefreshError.unexpected(str(e)) from e

    if status != 200 or token_response is None:
        raise RefreshError.rejected(status)

    access_token = token_response.get("access_token", None)
    if access_token is None:
        raise RefreshError.unexpected("no access token")

    refresh_token = token_response.get("refresh_token", None)
    if refresh_token is None:
        raise RefreshError.unexpected("no refresh token")

    expires_in = _expires_in(token_response, DEFAULT_TOKEN_EXPIRES_IN)
    if expires_in is None:
        raise RefreshError.unexpected("invalid expires_in in token response")
    now = datetime.now(timezone.utc)

    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        authserver_nonce=dpop_middleware.nonce,
        expires_at=now + timedelta(0, expires_in),
    )
