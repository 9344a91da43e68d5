import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx

from netflex_scheduler.jobs import Command, registry
from netflex_scheduler.payload import PayloadBuilder
from netflex_scheduler.signing import sign_digest

PRIMARY_KEY = "primary-key-0123456789abcdef0123456789"
ROTATED_KEY = "rotated-key-0123456789abcdef0123456789"
FOREIGN_KEY = "foreign-key-0123456789abcdef0123456789"

calls: list = []


@registry.command("tests.SendEmail")
class SendEmail(Command):
    tries = 3
    max_exceptions = 2
    timeout = 120

    to: str
    tags: List[str] = []

    def handle(self):
        calls.append(("send", self.to))
        return {"sent": self.to}


@registry.command("tests.Newsletter")
class Newsletter(Command):
    edition: int

    def display_name(self) -> str:
        return "Newsletter"

    def job_label(self) -> Optional[str]:
        return f"Newsletter #{self.edition}"

    def retry_after(self):
        return timedelta(seconds=90)

    def retry_until(self):
        return datetime(2030, 1, 1, tzinfo=timezone.utc)

    def handle(self):
        calls.append(("newsletter", self.edition))


@registry.command("tests.Ping")
class Ping(Command):
    async def handle(self):
        await asyncio.sleep(0)
        calls.append(("ping",))
        return "pong"


@registry.command("tests.Explode")
class Explode(Command):
    def handle(self):
        calls.append(("explode",))
        raise RuntimeError("boom")


@registry.command("tests.Sleepy")
class Sleepy(Command):
    async def handle(self):
        await asyncio.sleep(5)


@registry.handler("App\\Jobs\\SendEmail")
class SendEmailHandler:
    def handle(self, data):
        calls.append(("named", data))
        return "queued"

    def resend(self, data):
        calls.append(("resend", data))


@registry.closure("tests.cleanup")
def cleanup(days=30):
    calls.append(("cleanup", days))
    return days


def envelope_body(job, data="") -> bytes:
    envelope = PayloadBuilder("scheduler").build(job, "default", data)
    return json.dumps(envelope.to_payload()).encode("utf-8")


def digest_headers(body: bytes, key: str = PRIMARY_KEY, processed_at: Optional[str] = None, job_id: Optional[str] = None):
    job_id = job_id or json.loads(body)["uuid"]
    processed_at = processed_at or datetime.now(timezone.utc).isoformat()
    credentials = sign_digest(key, job_id, processed_at, body)
    return {
        "X-NF-JOB-ID": credentials.job_id,
        "X-NF-JOB-PROCESSED-AT": credentials.processed_at,
        "X-NF-DIGEST": credentials.digest,
        "Content-Type": "application/json",
    }


class FakeSchedulerAPI:
    """httpx.MockTransport handler standing in for the remote scheduling API."""

    def __init__(self, fail_on: Optional[int] = None, size: int = 0):
        self.requests: list = []
        self.fail_on = fail_on
        self.size = size

    def __call__(self, request):
        self.requests.append(request)
        if request.method == "GET" and request.url.path.endswith("/size"):
            return httpx.Response(200, json={"size": self.size})
        submitted = len(self.submissions())
        if submitted == self.fail_on:
            return httpx.Response(500, json={"error": "scheduler unavailable"})
        return httpx.Response(201, json={"id": submitted})

    def submissions(self):
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]
