#!/usr/bin/env python3
"""Sign a callback body in digest mode and print the headers the scheduler would send.

Usage:
  NETFLEX_PUBLIC_KEY=... python scripts/sign_callback.py payload.json

Pipe the output into curl to exercise the callback endpoint locally.
"""
import argparse
import json
import sys
from datetime import datetime, timezone

from netflex_scheduler.auth import DIGEST_HEADER, JOB_ID_HEADER, PROCESSED_AT_HEADER
from netflex_scheduler.config import load_settings
from netflex_scheduler.errors import SchedulerError
from netflex_scheduler.signing import sign_digest


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("payload", help="path to the JSON job envelope")
    parser.add_argument("--processed-at", help="ISO 8601 timestamp (default: now)")
    args = parser.parse_args(argv)

    with open(args.payload, "rb") as f:
        body = f.read()
    try:
        job_id = json.loads(body)["uuid"]
        key = load_settings().signing_key()
    except (ValueError, KeyError) as exc:
        print(f"sign_callback: payload has no uuid: {exc}", file=sys.stderr)
        return 1
    except SchedulerError as exc:
        print(f"sign_callback: {exc.message}", file=sys.stderr)
        return 1

    processed_at = args.processed_at or datetime.now(timezone.utc).isoformat()
    credentials = sign_digest(key, job_id, processed_at, body)
    print(f"{JOB_ID_HEADER}: {credentials.job_id}")
    print(f"{PROCESSED_AT_HEADER}: {credentials.processed_at}")
    print(f"{DIGEST_HEADER}: {credentials.digest}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
