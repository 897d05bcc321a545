"""
Tests for DPoP proof and client assertion signing.
"""

import base64
import hashlib
import json
from datetime import datetime, timezone

import pytest
from jwcrypto import jwk, jwt

from social.statusphere.atproto.errors import SigningError
from social.statusphere.atproto.jwt import (
    access_token_hash,
    create_client_assertion_claims,
    create_client_assertion_jwt,
    create_dpop_claims,
    create_dpop_header,
    create_dpop_jwt,
)
from social.statusphere.atproto.keys import generate_dpop_key


def verified(token: str, key: jwk.JWK) -> jwt.JWT:
    public_key = jwk.JWK(**key.export_public(as_dict=True))
    return jwt.JWT(jwt=token, key=public_key)


class TestAccessTokenHash:
    def test_matches_sha256_base64url(self):
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(b"my-access-token").digest())
            .decode("ascii")
            .rstrip("=")
        )
        assert access_token_hash("my-access-token") == expected

    def test_has_no_padding(self):
        assert "=" not in access_token_hash("x")


class TestCreateDpopClaims:
    """Claims bound into a DPoP proof."""

    issued_at = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_basic_claims(self):
        claims = create_dpop_claims(
            "post", "https://auth.example.com/oauth/par", issued_at=self.issued_at
        )

        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://auth.example.com/oauth/par"
        assert claims["iat"] == int(self.issued_at.timestamp())
        assert claims["exp"] == claims["iat"] + 30
        assert "nonce" not in claims
        assert "ath" not in claims
        assert "iss" not in claims

    def test_empty_nonce_is_omitted(self):
        claims = create_dpop_claims(
            "GET", "https://pds.example.com/xrpc/x", issued_at=self.issued_at, nonce=""
        )
        assert "nonce" not in claims

    def test_nonce_included(self):
        claims = create_dpop_claims(
            "GET", "https://pds.example.com/xrpc/x", nonce="n1"
        )
        assert claims["nonce"] == "n1"

    def test_access_token_binding(self):
        claims = create_dpop_claims(
            "POST",
            "https://pds.example.com/xrpc/x",
            access_token="token",
            issuer="https://auth.example.com",
        )
        assert claims["ath"] == access_token_hash("token")
        assert claims["iss"] == "https://auth.example.com"

    def test_custom_lifetime(self):
        claims = create_dpop_claims(
            "GET", "https://x", issued_at=self.issued_at, expires_in_seconds=60
        )
        assert claims["exp"] - claims["iat"] == 60


class TestCreateDpopJwt:
    def test_header_embeds_public_key(self):
        dpop_key = generate_dpop_key()
        token = verified(
            create_dpop_jwt(dpop_key, "POST", "https://auth.example.com/token"),
            dpop_key,
        )

        header = token.token.jose_header
        assert header["typ"] == "dpop+jwt"
        assert header["alg"] == "ES256"
        assert "d" not in header["jwk"]
        assert header["jwk"]["x"] == dpop_key.export_public(as_dict=True)["x"]

    def test_claims_round_trip(self):
        dpop_key = generate_dpop_key()
        token = verified(
            create_dpop_jwt(
                dpop_key,
                "POST",
                "https://pds.example.com/xrpc/com.atproto.repo.createRecord",
                nonce="n2",
                access_token="at",
            ),
            dpop_key,
        )

        claims = json.loads(token.claims)
        assert claims["htm"] == "POST"
        assert claims["nonce"] == "n2"
        assert claims["ath"] == access_token_hash("at")
        assert claims["exp"] - claims["iat"] == 30

    def test_every_proof_has_fresh_jti(self):
        dpop_key = generate_dpop_key()
        first = json.loads(
            verified(create_dpop_jwt(dpop_key, "GET", "https://x"), dpop_key).claims
        )
        second = json.loads(
            verified(create_dpop_jwt(dpop_key, "GET", "https://x"), dpop_key).claims
        )
        assert first["jti"] != second["jti"]

    def test_public_key_cannot_sign(self):
        dpop_key = generate_dpop_key()
        public_key = jwk.JWK(**dpop_key.export_public(as_dict=True))

        with pytest.raises(SigningError):
            create_dpop_jwt(public_key, "GET", "https://x")

    def test_header_helper(self):
        header = create_dpop_header({"kty": "EC"})
        assert header == {"alg": "ES256", "jwk": {"kty": "EC"}, "typ": "dpop+jwt"}


class TestClientAssertion:
    def test_claims(self):
        issued_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        claims = create_client_assertion_claims(
            "https://client.example.com/oauth-client-metadata.json",
            "https://auth.example.com",
            issued_at,
        )
        assert claims == {
            "iss": "https://client.example.com/oauth-client-metadata.json",
            "sub": "https://client.example.com/oauth-client-metadata.json",
            "aud": "https://auth.example.com",
            "iat": int(issued_at.timestamp()),
        }

    def test_signed_with_key_id(self):
        signing_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="k1", alg="ES256")
        token = verified(
            create_client_assertion_jwt(
                signing_key, "k1", "https://client", "https://auth.example.com"
            ),
            signing_key,
        )

        assert token.token.jose_header["kid"] == "k1"
        claims = json.loads(token.claims)
        assert claims["aud"] == "https://auth.example.com"
        assert "jti" in claims
