import argparse
import asyncio
import base64
import json
import logging
from cryptography.fernet import Fernet
from jwcrypto import jwk
from ulid import ULID

logger = logging.getLogger(__name__)


def genJwks(count: int) -> str:
    """A JWK set of ES256 keys for signing service auth tokens."""
    key_set = jwk.JWKSet()
    for _ in range(count):
        key_set.add(
            jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
        )
    return key_set.export(private_keys=True)


def genCryptoKey() -> str:
    """A Fernet key in the base64 form ENCRYPTION_KEY expects."""
    key = Fernet.generate_key()
    return base64.b64encode(key).decode("utf-8")


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="bookshelf-util", description="Bookshelf utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_jwks = subparsers.add_parser(
        "gen-jwks", help="Generate a JWK set for JSON_WEB_KEYS"
    )
    gen_jwks.add_argument("--count", type=int, default=1, help="Number of keys.")
    _ = subparsers.add_parser("gen-crypto", help="Generate an ENCRYPTION_KEY value")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwks":
        exported = genJwks(args.get("count", 1))
        print(exported)
        kids = [key["kid"] for key in json.loads(exported)["keys"]]
        print(f"SERVICE_AUTH_KEYS={json.dumps(kids)}")
    elif command == "gen-crypto":
        print(genCryptoKey())


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
