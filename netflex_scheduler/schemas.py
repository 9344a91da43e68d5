from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class CommandKind(str, Enum):
    closure = "closure"
    string_handler = "stringHandler"
    serialized_object = "serializedObject"


class JobEnvelope(BaseModel):
    """Canonical, serializable description of a job to run later.

    Field aliases are the wire names the scheduler echoes back on callback.
    Extra keys contributed by payload hooks are kept.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    id: str = Field(alias="uuid")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    handler_ref: str = Field(alias="job")
    max_attempts: Optional[int] = Field(default=None, alias="maxTries")
    max_failed_steps: Optional[int] = Field(default=None, alias="maxExceptions")
    retry_delay_seconds: Optional[int] = Field(default=None, alias="delay")
    timeout_seconds: Optional[int] = Field(default=None, alias="timeout")
    expire_at_epoch: Optional[int] = Field(default=None, alias="timeoutAt")
    command_kind: CommandKind = Field(alias="commandKind")
    command_data: Any = Field(default=None, alias="data")
    name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DispatchRequest(BaseModel):
    envelope: JobEnvelope
    display_label: str
    callback_url: str
    start_at_epoch: int
    enabled: bool = True


class CallbackResponse(BaseModel):
    uuid: str
    success: bool
    output: Any = None
    error: Optional[str] = None
