"""Helpers that turn loosely-shaped gateway payloads into chat models."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, NamedTuple

from gatewaychat.schemas.chat import AgentItem, ChatImage, ChatMessage
from gatewaychat.schemas.frames import HelloPayload
from gatewaychat.utils.images import parse_data_url, to_data_url

IMAGE_ONLY_LABEL = "[image]"

_SESSION_AGENT_RE = re.compile(r"^agent:([^:]+):")


class AssistantEntry(NamedTuple):
    text: str
    timestamp: float | None  # epoch seconds


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def extract_text(value: Any) -> str:
    """Pull display text out of a message, content block list or bare string."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(text for text in (extract_text(entry) for entry in value) if text)
    if isinstance(value, dict):
        for key in ("text", "message", "content"):
            if isinstance(value.get(key), str):
                return value[key]
        for key in ("content", "parts", "blocks"):
            if isinstance(value.get(key), list):
                return extract_text(value[key])
    return ""


def extract_image_items(content: Any) -> list[ChatImage]:
    """Collect ``image`` / ``input_image`` blocks, deduplicated by mime + URL."""
    if not isinstance(content, list):
        return []

    items: list[ChatImage] = []
    seen: set[str] = set()
    for entry in content:
        if not isinstance(entry, dict):
            continue
        kind = entry.get("type")
        mime_type = _clean(entry.get("mimeType")).lower()
        file_name = _clean(entry.get("fileName")) or None
        data_url: str | None = None

        if kind == "image":
            if _clean(entry.get("data")):
                data_url = to_data_url(mime_type or "image/png", _clean(entry["data"]))
            elif _clean(entry.get("url")):
                data_url = _clean(entry["url"])
        elif kind == "input_image" and isinstance(entry.get("source"), dict):
            source = entry["source"]
            source_mime = _clean(source.get("media_type")).lower()
            if source.get("type") == "base64" and _clean(source.get("data")):
                mime_type = source_mime or mime_type
                data_url = to_data_url(mime_type or "image/png", _clean(source["data"]))
            elif source.get("type") == "url" and _clean(source.get("url")):
                data_url = _clean(source["url"])
                mime_type = source_mime or mime_type

        if not data_url:
            continue
        if not mime_type and data_url.startswith("data:"):
            parsed = parse_data_url(data_url)
            if parsed:
                mime_type = parsed[0]
        mime_type = mime_type or "image/png"

        key = f"{mime_type}:{data_url}"
        if key in seen:
            continue
        seen.add(key)
        items.append(ChatImage(data_url=data_url, mime_type=mime_type, file_name=file_name))

    return items


def message_content(entry: dict[str, Any]) -> Any:
    content = entry.get("content")
    return content if content is not None else entry.get("message")


def parse_message_timestamp(entry: dict[str, Any]) -> float | None:
    """Best-effort epoch seconds from ``timestamp`` / ``createdAt`` / ``ts``."""
    for key in ("timestamp", "createdAt", "ts"):
        value = entry.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            # Gateways report milliseconds; anything this large is not seconds
            return value / 1000 if value > 1e11 else float(value)
        if isinstance(value, str) and value.strip():
            try:
                return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp()
            except ValueError:
                continue
    return None


def latest_assistant_entry(messages: list[Any]) -> AssistantEntry | None:
    for candidate in reversed(messages):
        if not isinstance(candidate, dict) or candidate.get("role") != "assistant":
            continue
        text = extract_text(message_content(candidate)).strip()
        if text:
            return AssistantEntry(text, parse_message_timestamp(candidate))
    return None


def map_history_to_messages(messages: list[Any]) -> list[ChatMessage]:
    mapped: list[ChatMessage] = []
    for item in messages:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        if role not in ("user", "assistant"):
            continue
        content = message_content(item)
        text = extract_text(content).strip()
        images = extract_image_items(content)
        if not text and not images:
            continue
        timestamp = parse_message_timestamp(item)
        message = ChatMessage(
            role=role,
            text=text or IMAGE_ONLY_LABEL,
            images=images if role == "user" else [],
        )
        if timestamp is not None:
            message.created_at = timestamp
        mapped.append(message)
    return mapped


def pick_session_key(hello: HelloPayload) -> str:
    defaults = hello.snapshot.session_defaults if hello.snapshot else None
    if defaults is None:
        return "main"
    return _clean(defaults.main_session_key) or _clean(defaults.main_key) or "main"


def parse_session_agent_id(session_key: str) -> str | None:
    match = _SESSION_AGENT_RE.match(session_key.strip())
    return match.group(1) if match else None


def extract_agent_items(result: Any) -> list[AgentItem]:
    if not isinstance(result, dict):
        return []
    default_id = result.get("defaultId") if isinstance(result.get("defaultId"), str) else None
    raw_agents = result.get("agents") if isinstance(result.get("agents"), list) else []

    agents: list[AgentItem] = []
    for candidate in raw_agents:
        if not isinstance(candidate, dict):
            continue
        agent_id = _clean(candidate.get("id"))
        if not agent_id:
            continue
        name = _clean(candidate.get("name"))
        if not name and isinstance(candidate.get("identity"), dict):
            name = _clean(candidate["identity"].get("name"))
        agents.append(AgentItem(id=agent_id, name=name or agent_id, is_default=agent_id == default_id))
    return agents


def extract_agent_model_map(result: Any, default_agent_id: str | None) -> dict[str, str]:
    """Map agent id -> ``provider/model`` using the first session seen per agent."""
    sessions = result.get("sessions") if isinstance(result, dict) else None
    models: dict[str, str] = {}
    for session in sessions if isinstance(sessions, list) else []:
        if not isinstance(session, dict):
            continue
        key = _clean(session.get("key"))
        model = _clean(session.get("model"))
        if not model:
            continue
        provider = _clean(session.get("modelProvider"))
        label = f"{provider}/{model}" if provider else model

        agent_id = parse_session_agent_id(key)
        if not agent_id and default_agent_id and key == "main":
            agent_id = default_agent_id
        if agent_id and agent_id not in models:
            models[agent_id] = label
    return models
