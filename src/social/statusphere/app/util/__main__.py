import argparse
import asyncio
import base64
import logging
from cryptography.fernet import Fernet
from jwcrypto import jwk
from ulid import ULID

logger = logging.getLogger(__name__)


async def genJwk() -> None:
    key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    print(key.export(private_key=True))


async def genJwks(count: int) -> None:
    key_set = jwk.JWKSet()
    for _ in range(count):
        key_set.add(
            jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
        )
    print(key_set.export(private_keys=True))


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="statusphere-util", description="Statusphere key utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-jwk", help="Generate a JWK")
    gen_jwks = subparsers.add_parser(
        "gen-jwks", help="Generate a JWK set for JSON_WEB_KEYS"
    )
    gen_jwks.add_argument(
        "--count",
        type=int,
        default=2,
        help="Number of keys, one for client assertions and one for cookies.",
    )
    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwk":
        await genJwk()
    elif command == "gen-jwks":
        await genJwks(args.get("count", 2))
    elif command == "gen-crypto":
        await genCryptoKey()


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
