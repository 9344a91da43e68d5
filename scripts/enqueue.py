#!/usr/bin/env python3
"""Push a named-handler job to the remote scheduler.

Usage:
  NETFLEX_API_URL=https://api.netflexapp.com/v1/ NETFLEX_PUBLIC_KEY=... NETFLEX_PRIVATE_KEY=... python scripts/enqueue.py "App\\Jobs\\SendEmail@handle" --data '{"to": "a@b.com"}' --delay 60

Environment variables:
- NETFLEX_API_URL, NETFLEX_PUBLIC_KEY, NETFLEX_PRIVATE_KEY
- APP_URL (callback address of this process)
- SCHEDULER_AUTH_MODE=digest|token
"""
import argparse
import asyncio
import json
import sys

from netflex_scheduler.config import load_settings
from netflex_scheduler.dispatch import connect
from netflex_scheduler.errors import SchedulerError
from netflex_scheduler.log import setup_logging


async def enqueue(handler: str, data, delay: int):
    async with connect(load_settings()) as queue:
        if delay:
            return await queue.later(delay, handler, data)
        return await queue.push(handler, data)


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("handler", help='handler reference, e.g. "App\\Jobs\\SendEmail@handle"')
    parser.add_argument("--data", default='""', help="JSON data passed to the handler")
    parser.add_argument("--delay", type=int, default=0, help="seconds before the job starts")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    try:
        remote_id = asyncio.run(enqueue(args.handler, json.loads(args.data), args.delay))
    except SchedulerError as exc:
        print(f"enqueue: {exc.message}", file=sys.stderr)
        return 1
    print(f"enqueue: submitted {remote_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
