"""Job descriptors and the registry that resolves them on callback.

Jobs cross the wire as plain data: object commands are pydantic models
tagged with a registered type name, named handlers are ``"<name>@<method>"``
strings, and closures are registered functions referenced by name.
"""
import functools
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ClassVar, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from .errors import DeserializationFailure

OBJECT_HANDLER = "CallQueuedHandler@call"
DEFAULT_METHOD = "handle"


class Command(BaseModel):
    """Base class for object jobs.

    Subclasses declare their state as fields and define ``handle()``,
    which may be a coroutine. The base class has no ``handle``; the registry
    refuses to run a command without one. The methods below are the retry
    policy and labelling hooks; override the ones a job cares about.
    """

    tries: ClassVar[Optional[int]] = None
    max_exceptions: ClassVar[Optional[int]] = None
    timeout: ClassVar[Optional[int]] = None
    command_name: ClassVar[Optional[str]] = None
    version: ClassVar[int] = 1

    def display_name(self) -> str:
        return self.command_name or type(self).__name__

    def job_label(self) -> Optional[str]:
        return None

    def retry_after(self) -> Union[int, float, timedelta, datetime, None]:
        return None

    def retry_until(self) -> Union[int, float, datetime, None]:
        return None


class CallQueuedClosure(Command):
    command_name: ClassVar[Optional[str]] = "CallQueuedClosure"

    closure: str
    kwargs: Dict[str, Any] = {}

    def display_name(self) -> str:
        return f"Closure ({self.closure})"


@dataclass(frozen=True)
class Closure:
    fn: Callable[..., Any]
    kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Named:
    handler: str
    data: Any = ""


JobDescriptor = Union[Closure, Command, Named]


def describe(job: Any, data: Any = "") -> JobDescriptor:
    """Coerce what callers pass to ``push`` into a tagged descriptor."""
    if isinstance(job, (Closure, Command, Named)):
        return job
    if isinstance(job, str):
        return Named(job, data)
    if callable(job):
        return Closure(job)
    raise TypeError(f"Unsupported job type: {type(job).__name__}")


def split_handler(handler: str):
    name, _, method = handler.partition("@")
    return name, method or DEFAULT_METHOD


class JobRegistry:
    """Maps wire names back to executable code."""

    def __init__(self):
        self._commands: Dict[str, type] = {}
        self._handlers: Dict[str, Any] = {}
        self._closures: Dict[str, Callable[..., Any]] = {}
        self.command("CallQueuedClosure")(CallQueuedClosure)

    def command(self, name: Optional[str] = None):
        def decorator(cls):
            if not (isinstance(cls, type) and issubclass(cls, Command)):
                raise TypeError(f"{cls!r} is not a Command subclass")
            cls.command_name = name or cls.__name__
            self._commands[cls.command_name] = cls
            return cls
        return decorator

    def handler(self, name: str):
        def decorator(target):
            self._handlers[name] = target
            return target
        return decorator

    def closure(self, name: Optional[str] = None):
        def decorator(fn):
            self._closures[name or closure_name(fn)] = fn
            return fn
        return decorator

    def closure_name_for(self, fn: Callable[..., Any]) -> str:
        for name, registered in self._closures.items():
            if registered is fn:
                return name
        raise DeserializationFailure(f"Closure {closure_name(fn)} is not registered")

    def serialize_command(self, command: Command) -> Dict[str, Any]:
        name = command.command_name or type(command).__name__
        if self._commands.get(name) is not type(command):
            raise DeserializationFailure(f"Command {name} is not registered")
        # deep copy so validators and serializers never touch the caller's instance
        snapshot = command.model_copy(deep=True)
        return {
            "commandName": name,
            "command": {
                "type": name,
                "version": command.version,
                "data": snapshot.model_dump(mode="json"),
            },
        }

    def deserialize_command(self, data: Any) -> Command:
        try:
            body = data["command"]
            name = body["type"]
            version = body.get("version", 1)
            state = body["data"]
        except (KeyError, TypeError) as exc:
            raise DeserializationFailure(f"Malformed command payload: {exc}") from exc

        cls = self._commands.get(name)
        if cls is None:
            raise DeserializationFailure(f"Unknown command type: {name}")
        if version != cls.version:
            raise DeserializationFailure(
                f"Command {name} version {version} does not match registered version {cls.version}"
            )
        try:
            return cls.model_validate(state)
        except ValidationError as exc:
            raise DeserializationFailure(f"Invalid {name} payload: {exc}") from exc

    def resolve_handler(self, handler: str) -> Callable[[Any], Any]:
        name, method = split_handler(handler)
        target = self._handlers.get(name)
        if target is None:
            raise DeserializationFailure(f"Handler not found: {name}")
        if inspect.isclass(target):
            bound = getattr(target(), method, None)
            if bound is None:
                raise DeserializationFailure(f"Handler {name} has no method {method}")
            return bound
        return target

    def resolve_closure(self, name: str) -> Callable[..., Any]:
        fn = self._closures.get(name)
        if fn is None:
            raise DeserializationFailure(f"Closure not found: {name}")
        return fn

    def command_callable(self, command: Command) -> Callable[[], Any]:
        if isinstance(command, CallQueuedClosure):
            return functools.partial(self.resolve_closure(command.closure), **command.kwargs)
        handle = getattr(command, "handle", None)
        if handle is None:
            raise DeserializationFailure(f"Command {command.command_name} has no handle method")
        return handle


def closure_name(fn: Callable[..., Any]) -> str:
    return f"{fn.__module__}:{fn.__qualname__}"


registry = JobRegistry()
