from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.bookshelf.atproto.pds import discover_identity
from social.graze.bookshelf.errors import BookshelfException

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="bookshelf-resolve",
        description="Resolve handles to their DID, PDS and OAuth endpoints",
    )
    parser.add_argument("subject", nargs="+", help="The handle(s) to resolve.")
    parser.add_argument(
        "--plc-directory",
        default="https://plc.directory",
        help="The PLC directory to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--identity-service",
        default="https://bsky.social",
        help="The identity service asked after the handle's own domain.",
    )
    parser.add_argument(
        "--fallback-identity-service",
        default="https://api.bsky.app",
        help="The identity service asked last.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                identity = await discover_identity(
                    session,
                    args["plc_directory"],
                    subject,
                    args["identity_service"],
                    args["fallback_identity_service"],
                )
                print(identity.model_dump_json(indent=2))
            except BookshelfException as e:
                print(f"{subject}: {e.code} {e.message}")
            except Exception:
                logging.exception("Exception resolving subject %s", subject)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
