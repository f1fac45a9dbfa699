"""Chat session schemas: messages, attachments and state snapshots."""

from __future__ import annotations

import time
import uuid
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


class ConnectionStatus(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ChatImage(BaseModel):
    id: str = Field(default_factory=new_id)
    data_url: str
    mime_type: str = "image/png"
    file_name: str | None = None


class ChatMessage(BaseModel):
    """One line of the visible conversation.

    Assistant messages are rewritten in place while ``streaming`` is true.
    """
    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant", "system"]
    text: str
    created_at: float = Field(default_factory=time.time)
    streaming: bool = False
    images: list[ChatImage] = Field(default_factory=list)


class OutboundAttachment(BaseModel):
    """A file already stored by the upload endpoint, as listed in its manifest."""
    file_name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    relative_path: str
    absolute_path: str = ""
    image_data_url: str | None = None


class AgentItem(BaseModel):
    id: str
    name: str
    is_default: bool = False


class ChatState(BaseModel):
    """Snapshot of everything a UI needs to render the session."""
    status: ConnectionStatus = ConnectionStatus.IDLE
    last_error: str | None = None
    notice: str | None = None
    session_key: str = "main"
    main_session_key: str = "main"
    last_prompt: str = ""
    is_streaming: bool = False
    agents: list[AgentItem] = Field(default_factory=list)
    agent_models: dict[str, str] = Field(default_factory=dict)
    active_agent_id: str | None = None
    agents_loading: bool = False
    agent_switching: bool = False
    messages: list[ChatMessage] = Field(default_factory=list)


# ── Relay API bodies ─────────────────────────────────────────────────


class SendPromptRequest(BaseModel):
    message: str = ""
    attachments: list[OutboundAttachment] = Field(default_factory=list)


class SwitchAgentRequest(BaseModel):
    agent_id: str


class CancelRequest(BaseModel):
    reason: str = "Cancelled."


class ActionResponse(BaseModel):
    accepted: bool
    state: ChatState
