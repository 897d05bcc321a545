"""
Middleware chain for outbound AT Protocol requests.

Every request to an authorization server or a PDS goes through a
ChainMiddlewareClient. The client wraps the shared aiohttp session with an
ordered list of middleware; each middleware may decorate the request (sign a
DPoP proof, attach a client assertion) and inspect the response.

A middleware can ask for the request to be sent again by returning a third
element, the request to retry. The ChainMiddlewareContext drives the attempts
as a small state machine: every attempt's response is classified as an
AttemptOutcome and the context never issues more than `attempt_max` HTTP calls.
With the default of two, a DPoP nonce challenge is absorbed exactly once and a
second challenge is handed back to the caller as the final response.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Sequence,
    Tuple,
    Dict,
)
import logging
from urllib.parse import urlparse, urlunparse
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk
from multidict import CIMultiDictProxy

from social.statusphere.atproto.jwt import create_client_assertion_jwt, create_dpop_jwt

RequestFunc = Callable[..., Awaitable[ClientResponse]]
NonceCallback = Callable[[str], Awaitable[None]]

logger = logging.getLogger(__name__)

USE_DPOP_NONCE = "use_dpop_nonce"


class AttemptOutcome(IntEnum):
    """Result of a single HTTP attempt."""

    success = 1
    nonce_challenge = 2
    failure = 3


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=request.headers,
            kwargs=request.kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            try:
                body = await response.json()
            except ValueError:
                # The status is still meaningful when the body is garbage.
                logger.warning("Undecodable JSON body from %s", response.url)
                body = None
            return ChainResponse(status=status, headers=headers, body=body)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def body_value(self, key: str) -> Optional[str]:
        if isinstance(self.body, dict):
            value = self.body.get(key, None)
            if value is not None:
                return str(value)
        return None


def classify_response(response: ChainResponse) -> AttemptOutcome:
    """Classify a response as success, DPoP nonce challenge or failure.

    Authorization servers signal a stale or missing nonce with a 400 and
    `{"error": "use_dpop_nonce"}`. Resource servers use a 401 with the same
    error either in the body or in the `WWW-Authenticate` header.
    """
    if 200 <= response.status < 300:
        return AttemptOutcome.success

    if response.status in (400, 401):
        if response.body_matches_kv("error", USE_DPOP_NONCE):
            return AttemptOutcome.nonce_challenge

        www_authenticate = response.headers.get(hdrs.WWW_AUTHENTICATE, "")
        if USE_DPOP_NONCE in www_authenticate:
            return AttemptOutcome.nonce_challenge

    return AttemptOutcome.failure


def htu_for(url: StrOrURL) -> str:
    """The `htu` claim: the request URL without query and fragment."""
    parsed = urlparse(str(url))
    return urlunparse(parsed._replace(query="", fragment=""))


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(
        self, statsd_client: TelegrafStatsdClient, prefix: str = "statusphere.client"
    ) -> None:
        super().__init__()
        self._statsd_client = statsd_client
        self._prefix = prefix

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        tags = {
            "method": request.method.lower(),
            "host": urlparse(str(request.url)).netloc,
        }
        try:
            response = await next(request)
        except Exception as e:
            self._statsd_client.increment(
                f"{self._prefix}.request.exception",
                1,
                tag_dict={**tags, "exception": type(e).__name__},
            )
            raise

        self._statsd_client.timer(
            f"{self._prefix}.request.time", time() - start_time, tag_dict=tags
        )
        self._statsd_client.increment(
            f"{self._prefix}.request.count",
            1,
            tag_dict={**tags, "status": response[1].status},
        )
        return response


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """Attach a freshly signed `private_key_jwt` client assertion to form data."""

    def __init__(
        self,
        signing_key: jwk.JWK,
        signing_key_id: str,
        client_id: str,
        audience: str,
    ) -> None:
        super().__init__()
        self._signing_key = signing_key
        self._signing_key_id = signing_key_id
        self._client_id = client_id
        self._audience = audience

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.kwargs is None:
            request.kwargs = {}

        data: Dict[str, str] = dict(request.kwargs.get("data", None) or {})
        data["client_assertion"] = create_client_assertion_jwt(
            self._signing_key, self._signing_key_id, self._client_id, self._audience
        )
        request.kwargs["data"] = data

        return await next(request)


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Sign a DPoP proof for every attempt and track the server's nonce.

    The nonce used for the next proof is always the most recent one the server
    handed out. Whenever a response carries a `DPoP-Nonce` header different from
    the current nonce, the nonce is updated and `on_nonce` is awaited with it.
    When the response is a nonce challenge and the server supplied a new nonce,
    the request is handed back for one more attempt.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        nonce: str = "",
        access_token: Optional[str] = None,
        issuer: Optional[str] = None,
        on_nonce: Optional[NonceCallback] = None,
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._nonce = nonce
        self._access_token = access_token
        self._issuer = issuer
        self._on_nonce = on_nonce

    @property
    def nonce(self) -> str:
        return self._nonce

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        dpop_proof = create_dpop_jwt(
            self._dpop_key,
            request.method,
            htu_for(request.url),
            nonce=self._nonce,
            access_token=self._access_token,
            issuer=self._issuer,
        )

        headers = dict(request.headers or {})
        headers["DPoP"] = dpop_proof
        if self._access_token is not None:
            headers[hdrs.AUTHORIZATION] = f"DPoP {self._access_token}"
        request.headers = headers

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        nonce_changed = False
        server_nonce = chain_response.headers.get("DPoP-Nonce", "")
        if server_nonce and server_nonce != self._nonce:
            self._nonce = server_nonce
            nonce_changed = True
            if self._on_nonce is not None:
                await self._on_nonce(server_nonce)

        if classify_response(chain_response) == AttemptOutcome.nonce_challenge:
            logger.debug(
                "DPoP nonce challenge from %s (new nonce: %s)",
                htu_for(request.url),
                nonce_changed,
            )
            if nonce_changed and new_request is None:
                new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    def __init__(self, request_func: RequestFunc) -> None:
        super().__init__()
        self._request_func = request_func

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        logger.debug("Making request: %s %s", request.method, request.url)

        response: ClientResponse = await self._request_func(
            request.method.upper(),
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        )

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    """
    Drives a bounded series of attempts through the middleware chain.

    Each attempt yields an AttemptOutcome. Only a nonce challenge for which a
    middleware supplied a retry request leads to another attempt, and never
    beyond `attempt_max` attempts in total. The final response, whatever its
    outcome, is returned to the caller to interpret.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max

        self.attempts = 0
        self.outcome: AttemptOutcome | None = None
        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        chain_request = self._chain_request

        while True:
            self.attempts += 1
            logger.debug("Attempt %d out of %d", self.attempts, self._attempt_max)

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self.client_response = client_response
            self.outcome = classify_response(chain_response)

            if (
                self.outcome != AttemptOutcome.nonce_challenge
                or new_request is None
                or self.attempts >= self._attempt_max
            ):
                return client_response, chain_response

            client_response.release()
            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._attempt_max = attempt_max

    def request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(method=method, url=url, **kwargs)

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_GET, url=url, **kwargs)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            attempt_max=self._attempt_max,
        )
