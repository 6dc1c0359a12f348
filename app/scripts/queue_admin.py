"""Operator commands for the outbound queue.

    python -m app.scripts.queue_admin stats
    python -m app.scripts.queue_admin requeue [--limit 100]
    python -m app.scripts.queue_admin purge [--hours 24]
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, List, Optional

from app.services import container
from config import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="queue_admin", description="Outbound message queue maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="print queue statistics as JSON")
    requeue = sub.add_parser("requeue", help="reset dead-lettered messages to pending")
    requeue.add_argument("--limit", type=int, default=100)
    purge = sub.add_parser("purge", help="delete finished messages past retention")
    purge.add_argument("--hours", type=float, default=settings.QUEUE_RETENTION_HOURS)
    return parser


async def run(args: argparse.Namespace) -> Any:
    async with container.open_services(settings) as services:
        if args.command == "stats":
            return await services.queue.stats()
        if args.command == "requeue":
            return {"requeued": await services.queue.requeue_failed(args.limit)}
        return {"purged": await services.queue.purge_finished(args.hours)}


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    print(json.dumps(asyncio.run(run(args)), indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
