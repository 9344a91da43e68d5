"""Inbound side of the scheduler protocol.

A callback moves through RECEIVED -> AUTHENTICATED -> FRESH -> DESERIALIZED
-> EXECUTED -> RESPONDED inside a single request. Authentication, replay and
staleness problems are raised as client errors before any job code runs.
Failures while rebuilding or running the job are reported as a structured
500 response, except in local mode where they propagate.
"""
import asyncio
import functools
import inspect
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python
from starlette.concurrency import run_in_threadpool

from . import metrics
from .config import DEFAULT_EXECUTION_TIME_LIMIT
from .errors import (
    ConfigurationFailure,
    ExecutionFailure,
    ReplayDetected,
    SchedulerError,
    StaleRequest,
    VerificationFailure,
)
from .jobs import JobRegistry, registry as default_registry
from .replay import ReplayGuard
from .schemas import CallbackResponse, CommandKind, JobEnvelope
from .signing import DigestCredentials, VerifiedCallback, verify_digest, verify_token

logger = logging.getLogger(__name__)

MAX_CALLBACK_AGE_SECONDS = 300

_timestamp = TypeAdapter(datetime)


class CallbackHandler:
    def __init__(
        self,
        replay_guard: ReplayGuard,
        key_source: Callable[[], List[str]],
        registry: Optional[JobRegistry] = None,
        debug: bool = False,
        time_limit: int = DEFAULT_EXECUTION_TIME_LIMIT,
        max_age_seconds: int = MAX_CALLBACK_AGE_SECONDS,
        timezone_name: str = "UTC",
    ):
        self.replay_guard = replay_guard
        self.key_source = key_source
        self.registry = registry or default_registry
        self.debug = debug
        self.time_limit = time_limit
        self.max_age_seconds = max_age_seconds
        self.tz = ZoneInfo(timezone_name)

    def candidate_keys(self) -> List[str]:
        keys = self.key_source()
        if not keys:
            raise ConfigurationFailure("Need to have at least one possible key to validate against")
        return keys

    async def handle_digest(self, credentials: DigestCredentials, body: bytes) -> Tuple[int, CallbackResponse]:
        metrics.callbacks_received_total.inc()
        verified = self._rejecting(verify_digest, credentials, body, self.candidate_keys())
        self._rejecting(self.ensure_recent, verified)
        await self.ensure_first_delivery(verified)
        return await self.run(verified)

    async def handle_token(self, token: str) -> Tuple[int, CallbackResponse]:
        metrics.callbacks_received_total.inc()
        # the token's own expiry replaces the processed-at age check
        verified = self._rejecting(verify_token, token, self.candidate_keys())
        await self.ensure_first_delivery(verified)
        return await self.run(verified)

    def ensure_recent(self, verified: VerifiedCallback):
        job_id = verified.job_id
        try:
            processed_at = _timestamp.validate_python(verified.processed_at)
        except ValidationError as exc:
            raise VerificationFailure(
                VerificationFailure.MALFORMED, "X-NF-JOB-PROCESSED-AT is not an ISO 8601 timestamp", job_id=job_id
            ) from exc
        if processed_at.tzinfo is None:
            processed_at = processed_at.replace(tzinfo=self.tz)
        age = datetime.now(timezone.utc) - processed_at
        if abs(age.total_seconds()) > self.max_age_seconds:
            raise StaleRequest("This request is too old, we won't process it", job_id=job_id)

    async def ensure_first_delivery(self, verified: VerifiedCallback):
        job_id = verified.job_id
        if not await self.replay_guard.check_and_record(job_id, verified.processed_at):
            metrics.callbacks_rejected_total.labels(reason=ReplayDetected.reason).inc()
            raise ReplayDetected("This request has already been received", job_id=job_id)

    async def run(self, verified: VerifiedCallback) -> Tuple[int, CallbackResponse]:
        job_id = verified.job_id
        start = time.time()
        try:
            envelope = verified.envelope()
            call = self.resolve(envelope)
            output = await self.execute(call, envelope.timeout_seconds or self.time_limit)
        except Exception as exc:
            metrics.job_failures_total.inc()
            logger.exception("Job %s failed", job_id)
            if self.debug:
                raise
            return 500, CallbackResponse(uuid=job_id, success=False, error=str(exc))
        finally:
            metrics.execution_latency_seconds.observe(time.time() - start)

        metrics.jobs_executed_total.inc()
        logger.info("Job %s (%s) completed", job_id, envelope.display_name)
        return 200, CallbackResponse(uuid=job_id, success=True, output=to_jsonable_python(output, fallback=str))

    def resolve(self, envelope: JobEnvelope) -> Callable[[], Any]:
        if envelope.command_kind == CommandKind.string_handler:
            return functools.partial(self.registry.resolve_handler(envelope.handler_ref), envelope.command_data)
        command = self.registry.deserialize_command(envelope.command_data)
        return self.registry.command_callable(command)

    async def execute(self, call: Callable[[], Any], time_limit: int) -> Any:
        if inspect.iscoroutinefunction(call):
            pending = call()
        else:
            pending = run_in_threadpool(call)
        try:
            result = await asyncio.wait_for(pending, timeout=time_limit)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=time_limit)
        except asyncio.TimeoutError as exc:
            raise ExecutionFailure(f"Job exceeded the execution time limit of {time_limit} seconds") from exc
        return result

    def _rejecting(self, step, *args):
        try:
            return step(*args)
        except SchedulerError as exc:
            metrics.callbacks_rejected_total.labels(reason=exc.reason).inc()
            logger.warning("Rejected scheduler callback: %s", exc.message)
            raise
