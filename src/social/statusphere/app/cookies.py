"""
Browser session cookie.

The cookie holds a BrowserSession, signed as an ES256 JWT with one of the
service auth keys. It is decoded once per request at the trust boundary; a
missing, expired, forged or malformed cookie decodes to None and handlers only
ever see the typed record.
"""

from datetime import datetime, timezone
import json
import logging
from typing import List, Optional
from jwcrypto import jwk, jwt
from jwcrypto.common import JWException
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class BrowserSession(BaseModel):
    """
    Per-browser login state.

    During a login the cookie carries the pending request's state and DID; once
    the callback succeeds it carries only the logged in DID.
    """

    oauth_state: Optional[str] = None
    oauth_did: Optional[str] = None
    did: Optional[str] = None


class CookieCodec:
    def __init__(self, json_web_keys: jwk.JWKSet, service_auth_keys: List[str]):
        self._json_web_keys = json_web_keys
        self._key_id = next(
            (kid for kid in service_auth_keys if json_web_keys.get_key(kid) is not None),
            None,
        )
        if self._key_id is None:
            raise ValueError("No service auth key available for signing cookies")

    def encode(
        self,
        browser_session: BrowserSession,
        max_age: int,
        now: Optional[datetime] = None,
    ) -> str:
        if now is None:
            now = datetime.now(timezone.utc)

        claims = browser_session.model_dump(exclude_none=True)
        claims["iat"] = int(now.timestamp())
        claims["exp"] = int(now.timestamp()) + max_age

        token = jwt.JWT(header={"alg": "ES256", "kid": self._key_id}, claims=claims)
        token.make_signed_token(self._json_web_keys.get_key(self._key_id))
        return token.serialize()

    def decode(self, value: Optional[str]) -> Optional[BrowserSession]:
        if not value:
            return None

        try:
            validated = jwt.JWT(jwt=value, key=self._json_web_keys, algs=["ES256"])
            claims = json.loads(validated.claims)
        except (JWException, ValueError) as e:
            logger.debug("Rejected session cookie: %s", e)
            return None

        try:
            return BrowserSession.model_validate(claims)
        except ValidationError:
            return None
