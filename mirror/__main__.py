"""Entry point: python -m mirror

Runs one catch-up sync of the content repository into the post store and
exits. Useful after downtime or for a first import.

Usage:
    python -m mirror                   # sync every branch since the last stored update
    python -m mirror --content-dir out # write HTML and images under ./out
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from blog.config import settings
from blog.database import close_db, init_db
from mirror.service import create_post_service

logger = logging.getLogger("mirror")


async def run(content_dir: str | None) -> int:
    await init_db()
    try:
        service, source = await create_post_service(content_dir=content_dir)
    except Exception:
        logger.exception("Could not connect to the content repository")
        await close_db()
        return 1

    try:
        report = await service.sync_repository_changes()
    except Exception:
        logger.exception("Catch-up sync aborted")
        return 1
    finally:
        await service.close()
        await source.close()
        await close_db()

    print(json.dumps(report.as_dict(), indent=2))
    return 1 if report.failed_branches else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m mirror",
        description="Mirror the content repository into the post store.",
    )
    parser.add_argument(
        "--content-dir",
        default=None,
        help=f"Directory for rendered HTML and images (default: {settings.content_dir})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(args.content_dir))


if __name__ == "__main__":
    sys.exit(main())
