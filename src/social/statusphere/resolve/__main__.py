from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.statusphere.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="statusphere-resolve", description="Resolve handles and DIDs"
    )
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                resolved = await resolve_subject(
                    session, args.get("plc_hostname", "plc.directory"), subject
                )
            except aiohttp.ClientError:
                logger.exception("Exception resolving subject %s", subject)
                continue
            if resolved is None:
                print(f"{subject}: unresolved")
                continue
            print(f"{subject}: {resolved.did} {resolved.handle} {resolved.pds}")


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
