import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

import httpx

from . import metrics
from .config import AUTH_MODE_TOKEN, CALLBACK_PATH, Settings
from .errors import ConfigurationFailure, DispatchFailure
from .jobs import JobRegistry
from .payload import PayloadBuilder, PayloadHook
from .schemas import DispatchRequest, JobEnvelope
from .signing import sign_token

logger = logging.getLogger(__name__)

Delay = Union[int, float, timedelta, datetime]

START_FORMAT = "%Y-%m-%d %H:%M:%S"


class SchedulerQueue:
    """Queue driver that hands jobs to the remote scheduling API.

    Nothing is executed locally: each push becomes one ``POST scheduler/jobs``
    and the scheduler later calls back into this process to run the job.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        hooks: Iterable[PayloadHook] = (),
        registry: Optional[JobRegistry] = None,
        connection_name: Optional[str] = None,
    ):
        self.client = client
        self.settings = settings
        self.connection_name = connection_name or settings.connection
        self.builder = PayloadBuilder(self.connection_name, hooks, registry)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    def get_connection_name(self) -> str:
        return self.connection_name

    def set_connection_name(self, name: str) -> "SchedulerQueue":
        self.connection_name = name
        self.builder.connection_name = name
        return self

    def get_queue(self, queue: Optional[str] = None) -> str:
        # the scheduler has a single logical queue per connection
        return "default"

    async def size(self, queue: Optional[str] = None) -> int:
        url = f"scheduler/queue/{self.connection_name}/size"
        response = await self._request("GET", url)
        try:
            return int(response.json()["size"])
        except (ValueError, KeyError, TypeError) as exc:
            metrics.dispatch_errors_total.inc()
            raise DispatchFailure(f"Scheduler API returned an unreadable queue size for GET {url}") from exc

    async def push(self, job: Any, data: Any = "", queue: Optional[str] = None):
        envelope = self.builder.build(job, self.get_queue(queue), data)
        return await self.submit(envelope, self.get_queue(queue))

    async def push_on(self, queue: str, job: Any, data: Any = ""):
        return await self.push(job, data, queue)

    async def later(self, delay: Delay, job: Any, data: Any = "", queue: Optional[str] = None):
        envelope = self.builder.build(job, self.get_queue(queue), data)
        return await self.submit(envelope, self.get_queue(queue), start_at=available_at(delay))

    async def later_on(self, queue: str, delay: Delay, job: Any, data: Any = ""):
        return await self.later(delay, job, data, queue)

    async def bulk(self, jobs: Iterable[Any], data: Any = "", queue: Optional[str] = None) -> List[Any]:
        # one request per job; the first failure aborts the rest
        return [await self.push(job, data, queue) for job in jobs]

    async def push_raw(self, payload: Dict[str, Any], queue: Optional[str] = None, start: Optional[Delay] = None):
        envelope = JobEnvelope.model_validate(payload)
        start_at = available_at(start) if start is not None else None
        return await self.submit(envelope, self.get_queue(queue), start_at=start_at)

    async def submit(self, envelope: JobEnvelope, queue: str, start_at: Optional[int] = None):
        """Send one envelope to the scheduler and return the remote job id."""
        request = DispatchRequest(
            envelope=envelope,
            display_label=envelope.name or f"{envelope.display_name} ({envelope.id})",
            callback_url=self.callback_url(),
            start_at_epoch=int(time.time()) if start_at is None else start_at,
        )
        body = {
            "method": "post",
            "name": request.display_label,
            "url": request.callback_url,
            "payload": self.signed_payload(request),
            "start": self.format_start(request.start_at_epoch),
            "enabled": request.enabled,
        }

        start = time.time()
        try:
            response = await self._request("POST", "scheduler/jobs", json=body)
        finally:
            metrics.dispatch_latency_seconds.observe(time.time() - start)
        metrics.jobs_dispatched_total.inc()
        logger.info("Dispatched job %s (%s) to start at %s", envelope.id, request.display_label, body["start"])

        return remote_job_id(response)

    def signed_payload(self, request: DispatchRequest) -> Dict[str, Any]:
        if self.settings.auth_mode != AUTH_MODE_TOKEN:
            # digest mode: the scheduler signs the body when it calls back
            return request.envelope.to_payload()
        timeout = self.settings.connection_settings(self.connection_name).timeout
        ttl = max(0, request.start_at_epoch - int(time.time())) + timeout
        return {"token": sign_token(request.envelope, self.settings.signing_key(), ttl)}

    def callback_url(self) -> str:
        base_uri = self.settings.connection_settings(self.connection_name).base_uri
        if base_uri:
            return base_uri.rstrip("/") + CALLBACK_PATH
        return self.settings.app_url.rstrip("/") + CALLBACK_PATH

    def format_start(self, epoch: int) -> str:
        return datetime.fromtimestamp(epoch, ZoneInfo(self.settings.timezone)).strftime(START_FORMAT)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            metrics.dispatch_errors_total.inc()
            logger.error("Scheduler API %s %s returned %s", method, url, exc.response.status_code)
            raise DispatchFailure(
                f"Scheduler API returned {exc.response.status_code} for {method} {url}"
            ) from exc
        except httpx.HTTPError as exc:
            metrics.dispatch_errors_total.inc()
            logger.error("Scheduler API %s %s failed: %s", method, url, exc)
            raise DispatchFailure(f"Scheduler API request failed: {exc}") from exc
        return response


def remote_job_id(response: httpx.Response) -> Any:
    """Remote job id from the scheduler's response body; plain text bodies are returned as is."""
    if not response.content:
        return None
    try:
        data = response.json()
    except ValueError:
        return response.text
    return data.get("id") if isinstance(data, dict) else data


def available_at(delay: Delay) -> int:
    """Epoch seconds for a delay given as seconds, a timedelta or an instant."""
    if isinstance(delay, datetime):
        return int(delay.timestamp())
    if isinstance(delay, timedelta):
        return int(time.time() + delay.total_seconds())
    return int(time.time() + delay)


def connect(
    settings: Settings,
    hooks: Iterable[PayloadHook] = (),
    registry: Optional[JobRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SchedulerQueue:
    if not settings.api_url:
        raise ConfigurationFailure("Queue URL not configured")
    auth = None
    if settings.public_key and settings.private_key:
        auth = httpx.BasicAuth(settings.public_key, settings.private_key)
    client = httpx.AsyncClient(base_url=settings.api_url, auth=auth, timeout=30.0, transport=transport)
    return SchedulerQueue(client, settings, hooks=hooks, registry=registry)
