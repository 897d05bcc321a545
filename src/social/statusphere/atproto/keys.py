"""
Key material for the OAuth client.

The client holds two kinds of keys:

- The confidential client signing key, loaded once from the configured JSON Web
  Key Set and used for `private_key_jwt` client assertions. Its public half is
  published at `/jwks.json` and referenced from the client metadata document.
- Ephemeral DPoP keys, generated fresh for every authorization flow and stored
  (encrypted) with the pending request and later the session. Every proof for a
  subject's tokens is signed with that subject's DPoP key.
"""

import json
from typing import Any, Dict, List, Optional
from cryptography.fernet import Fernet, InvalidToken
from jwcrypto import jwk
from jwcrypto.common import JWException
from ulid import ULID

from social.statusphere.atproto.errors import SigningError


def generate_dpop_key() -> jwk.JWK:
    """Generate a new ES256 key pair for token binding."""
    return jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")


class CryptoKeyProvider:
    """
    Holds the client signing key and serializes DPoP keys for storage.

    Args:
        json_web_keys: Key set containing at least one active signing key
        active_signing_keys: Key IDs from the set that may be used for signing
        encryption_key: Symmetric key used to encrypt stored DPoP private keys

    Raises:
        SigningError: If none of the active key IDs is present in the key set
    """

    def __init__(
        self,
        json_web_keys: jwk.JWKSet,
        active_signing_keys: List[str],
        encryption_key: Fernet,
    ) -> None:
        self._json_web_keys = json_web_keys
        self._active_signing_keys = [
            kid
            for kid in active_signing_keys
            if json_web_keys.get_key(kid) is not None
        ]
        self._encryption_key = encryption_key

        if len(self._active_signing_keys) == 0:
            raise SigningError.no_active_key()

    @property
    def signing_key_id(self) -> str:
        return self._active_signing_keys[0]

    @property
    def signing_key(self) -> jwk.JWK:
        key: Optional[jwk.JWK] = self._json_web_keys.get_key(self.signing_key_id)
        if key is None:
            raise SigningError.no_active_key()
        return key

    def public_jwks(self) -> Dict[str, Any]:
        """Public halves of every active signing key, as a JWKS document."""
        results: List[Dict[str, Any]] = []
        for kid in self._active_signing_keys:
            key = self._json_web_keys.get_key(kid)
            if key is None:
                continue
            results.append(key.export_public(as_dict=True))
        return {"keys": results}

    def serialize_dpop_key(self, dpop_key: jwk.JWK) -> str:
        """Export a DPoP private key and encrypt it for storage."""
        if not dpop_key.has_private:
            raise SigningError.unusable_key("DPoP key has no private component")
        exported = dpop_key.export(private_key=True)
        return self._encryption_key.encrypt(exported.encode("utf-8")).decode("ascii")

    def load_dpop_key(self, serialized: str) -> jwk.JWK:
        """Reconstruct a DPoP private key from its stored form."""
        try:
            decrypted = self._encryption_key.decrypt(serialized.encode("ascii"))
            return jwk.JWK(**json.loads(decrypted))
        except (InvalidToken, ValueError, TypeError, JWException) as e:
            raise SigningError.undecodable_key() from e
