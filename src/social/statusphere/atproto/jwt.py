"""
JWT and DPoP utilities for AT Protocol authentication.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession)
proofs as specified in RFC 9449, and the `private_key_jwt` client assertions
(RFC 7523) used to authenticate this confidential client at the authorization
server.

A DPoP proof binds a request to:
- the HTTP method (`htm`) and target URI (`htu`),
- the most recent nonce issued by the server being called (`nonce`),
- the access token presented alongside it (`ath`), for resource server calls.

Every proof carries a fresh `jti` so that a captured proof cannot be replayed.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from jwcrypto import jwt, jwk
from jwcrypto.common import JWException

from social.statusphere.atproto.errors import SigningError

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def access_token_hash(access_token: str) -> str:
    """Base64url encoded SHA-256 of an access token, without padding."""
    hashed = hashlib.sha256(access_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    return encoded.decode("ascii").rstrip("=")


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public portion of the DPoP key

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "alg": "ES256",
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    issuer: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Most recent server-issued nonce. Omitted when empty, which is
            the case for the very first request to a server.
        access_token: Access token sent with the request. When present its
            hash is bound into the proof as `ath`.
        issuer: Authorization server that issued the access token

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    if issuer is not None:
        claims["iss"] = issuer

    return claims


def _sign(key: jwk.JWK, header: Dict[str, Any], claims: Dict[str, Any]) -> str:
    if not key.has_private:
        raise SigningError.unusable_key("key has no private component")
    try:
        token = jwt.JWT(header=header, claims=claims)
        token.make_signed_token(key)
        return token.serialize()
    except (JWException, ValueError, TypeError) as e:
        raise SigningError.unusable_key(str(e)) from e


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    issuer: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
) -> str:
    """Create a complete DPoP proof for a single HTTP request.

    Usage:
        ```python
        dpop_key = generate_dpop_key()
        headers["DPoP"] = create_dpop_jwt(
            dpop_key, "POST", "https://bsky.social/oauth/token", nonce=nonce
        )
        ```

    Raises:
        SigningError: If the key cannot be used to sign
    """
    header = create_dpop_header(dpop_key.export_public(as_dict=True))
    claims = create_dpop_claims(
        http_method,
        http_uri,
        issued_at=issued_at,
        expires_in_seconds=expires_in_seconds,
        nonce=nonce,
        access_token=access_token,
        issuer=issuer,
    )

    # Unique identifier per proof prevents replay
    claims["jti"] = secrets.token_urlsafe(32)

    return _sign(dpop_key, header, claims)


def create_client_assertion_header(signing_key_id: str) -> Dict[str, Any]:
    return {"alg": "ES256", "kid": signing_key_id}


def create_client_assertion_claims(
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Claims for a `private_key_jwt` client assertion.

    The client is both issuer and subject; the audience is the authorization
    server's issuer identifier.
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    return {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "iat": int(issued_at.timestamp()),
    }


def create_client_assertion_jwt(
    signing_key: jwk.JWK,
    signing_key_id: str,
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
) -> str:
    """Sign a client assertion with the confidential client key.

    Raises:
        SigningError: If the key cannot be used to sign
    """
    header = create_client_assertion_header(signing_key_id)
    claims = create_client_assertion_claims(client_id, audience, issued_at)
    claims["jti"] = secrets.token_urlsafe(32)
    return _sign(signing_key, header, claims)
