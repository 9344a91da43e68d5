import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from .jobs import (
    OBJECT_HANDLER,
    CallQueuedClosure,
    Closure,
    Command,
    JobDescriptor,
    JobRegistry,
    Named,
    describe,
    registry as default_registry,
    split_handler,
)
from .schemas import CommandKind, JobEnvelope

# (connection, queue, envelope so far) -> fields to merge over the envelope
PayloadHook = Callable[[str, str, Dict[str, Any]], Dict[str, Any]]


class PayloadBuilder:
    """Turns job descriptors into envelopes.

    Hooks run in the order given; a later hook overwrites fields set by an
    earlier one.
    """

    def __init__(
        self,
        connection_name: str,
        hooks: Iterable[PayloadHook] = (),
        registry: Optional[JobRegistry] = None,
    ):
        self.connection_name = connection_name
        self.hooks = list(hooks)
        self.registry = registry or default_registry

    def build(self, job: JobDescriptor, queue: str, data: Any = "") -> JobEnvelope:
        job = describe(job, data)
        if isinstance(job, Closure):
            command = CallQueuedClosure(
                closure=self.registry.closure_name_for(job.fn), kwargs=job.kwargs
            )
            return self._object_payload(command, queue, CommandKind.closure)
        if isinstance(job, Command):
            return self._object_payload(job, queue, CommandKind.serialized_object)
        if isinstance(job, Named):
            return self._string_payload(job.handler, queue, job.data)
        raise TypeError(f"Unsupported job descriptor: {type(job).__name__}")

    def _object_payload(self, job: Command, queue: str, kind: CommandKind) -> JobEnvelope:
        payload = self._with_hooks(queue, {
            "uuid": str(uuid.uuid4()),
            "displayName": job.display_name(),
            "job": OBJECT_HANDLER,
            "maxTries": job.tries,
            "maxExceptions": job.max_exceptions,
            "delay": retry_delay_seconds(job),
            "timeout": job.timeout,
            "timeoutAt": expiration_epoch(job),
            "commandKind": kind.value,
            "data": {
                "commandName": job.command_name or type(job).__name__,
            },
        })
        label = job.job_label()
        if label:
            payload["name"] = f"{label} ({payload['uuid']})"
        # hooks see the command name only; the serialized state always wins
        payload["data"] = self.registry.serialize_command(job)
        return JobEnvelope.model_validate(payload)

    def _string_payload(self, handler: str, queue: str, data: Any) -> JobEnvelope:
        name, _ = split_handler(handler)
        payload = self._with_hooks(queue, {
            "uuid": str(uuid.uuid4()),
            "displayName": name,
            "job": handler,
            "maxTries": None,
            "maxExceptions": None,
            "delay": None,
            "timeout": None,
            "commandKind": CommandKind.string_handler.value,
            "data": data,
        })
        return JobEnvelope.model_validate(payload)

    def _with_hooks(self, queue: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        for hook in self.hooks:
            payload = {**payload, **hook(self.connection_name, queue, dict(payload))}
        return payload


def retry_delay_seconds(job: Command) -> Optional[int]:
    delay = job.retry_after()
    if isinstance(delay, datetime):
        return seconds_until(delay)
    if isinstance(delay, timedelta):
        return int(delay.total_seconds())
    return None if delay is None else int(delay)


def expiration_epoch(job: Command) -> Optional[int]:
    expiration = job.retry_until()
    if isinstance(expiration, datetime):
        return int(expiration.timestamp())
    return None if expiration is None else int(expiration)


def seconds_until(moment: datetime) -> int:
    return max(0, int(moment.timestamp() - time.time()))
