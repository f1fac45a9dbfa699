"""Wire frames for the gateway WebSocket protocol.

Every frame is a JSON object tagged by ``type``:

* ``req``   client → server request
* ``res``   server → client response, correlated by ``id``
* ``event`` server → client push
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

PROTOCOL_VERSION = 3

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006
CLOSE_CONNECT_FAILED = 4008


class RequestFrame(BaseModel):
    type: Literal["req"] = "req"
    id: str
    method: str
    params: dict[str, Any] | None = None


class ResponseError(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str = "request failed"
    code: str | int | None = None
    details: Any = None


class ResponseFrame(BaseModel):
    type: Literal["res"]
    id: str
    ok: bool
    payload: Any = None
    error: ResponseError | None = None

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_error(cls, value: Any) -> Any:
        # Some gateway builds send a bare string instead of an error object
        if isinstance(value, str):
            return {"message": value}
        return value


class EventFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["event"] = "event"
    event: str
    payload: Any = None
    seq: int | None = None
    state_version: Any = Field(default=None, alias="stateVersion")


InboundFrame = Annotated[Union[ResponseFrame, EventFrame], Field(discriminator="type")]

_inbound_adapter: TypeAdapter[ResponseFrame | EventFrame] = TypeAdapter(InboundFrame)


def parse_inbound_frame(raw: str | bytes) -> ResponseFrame | EventFrame | None:
    """Decode a server frame; malformed JSON or unknown tags yield ``None``."""
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError:
        return None


# ── Handshake ────────────────────────────────────────────────────────


class SessionDefaults(BaseModel):
    model_config = ConfigDict(extra="allow")

    default_agent_id: str | None = Field(default=None, alias="defaultAgentId")
    main_key: str | None = Field(default=None, alias="mainKey")
    main_session_key: str | None = Field(default=None, alias="mainSessionKey")
    scope: str | None = None


class HelloSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_defaults: SessionDefaults | None = Field(default=None, alias="sessionDefaults")


class HelloFeatures(BaseModel):
    methods: list[str] | None = None
    events: list[str] | None = None


class HelloPolicy(BaseModel):
    model_config = ConfigDict(extra="allow")

    tick_interval_ms: int | None = Field(default=None, alias="tickIntervalMs")


class HelloPayload(BaseModel):
    """``hello-ok`` payload returned by a successful ``connect``."""

    model_config = ConfigDict(extra="allow")

    type: str = "hello-ok"
    protocol: int | None = None
    features: HelloFeatures | None = None
    snapshot: HelloSnapshot | None = None
    policy: HelloPolicy | None = None


# ── Chat events ──────────────────────────────────────────────────────


class ChatRunState(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    DELTA = "delta"
    FINAL = "final"
    ABORTED = "aborted"
    ERROR = "error"


class ChatEventPayload(BaseModel):
    """Payload of a ``chat`` event frame."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    session_key: str = Field(alias="sessionKey")
    state: ChatRunState
    message: Any = None
    error_message: str | None = Field(default=None, alias="errorMessage")

    @field_validator("error_message", mode="before")
    @classmethod
    def _drop_non_string_error(cls, value: Any) -> Any:
        # Structured errorMessage values are treated as absent
        return value if isinstance(value, str) else None


def parse_chat_event(payload: Any) -> ChatEventPayload | None:
    if not isinstance(payload, dict):
        return None
    try:
        return ChatEventPayload.model_validate(payload)
    except ValidationError:
        return None
