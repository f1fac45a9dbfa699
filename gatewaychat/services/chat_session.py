"""Chat session controller: one resumable conversation over the gateway.

Owns the ``GatewayClient`` and turns its frame stream into chat state:

* tracks at most one in-flight run (user turn) at a time
* merges streamed ``delta`` text into the assistant placeholder
* falls back to polling ``chat.history`` when a terminal event never arrives
* resolves the canonical session key when switching agents

Everything runs on one event loop. State mutations happen only in the event
handler and at request-completion points, and every mutation ends with a
``_notify()`` so subscribers can re-render.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, NamedTuple

from gatewaychat.adapters.errors import GatewayError, GatewayTimeoutError
from gatewaychat.adapters.gateway import GatewayClient, resolve_gateway_token
from gatewaychat.adapters.identity import DeviceIdentityStore
from gatewaychat.config import Settings, settings
from gatewaychat.schemas.chat import (
    ChatImage,
    ChatMessage,
    ChatState,
    ConnectionStatus,
    OutboundAttachment,
    new_id,
)
from gatewaychat.schemas.frames import (
    CLOSE_CONNECT_FAILED,
    CLOSE_NORMAL,
    ChatEventPayload,
    ChatRunState,
    EventFrame,
    HelloPayload,
    parse_chat_event,
)
from gatewaychat.services.history import (
    AssistantEntry,
    extract_agent_items,
    extract_agent_model_map,
    extract_text,
    latest_assistant_entry,
    map_history_to_messages,
    parse_session_agent_id,
    pick_session_key,
)
from gatewaychat.utils.images import (
    data_url_size,
    normalize_image_data_url,
    parse_data_url,
    to_data_url,
)

logger = logging.getLogger(__name__)

MAIN_AGENT_ID = "main"
LEGACY_MAIN_SESSION_KEYS = ("main", "agent:main:main")
INVALID_IMAGE_DATA_RE = re.compile(r"image data .* valid image", re.IGNORECASE)

# ── User-visible texts ───────────────────────────────────────────────

WELCOME_TEXT = "Connect to the gateway to start chatting."
EMPTY_SESSION_TEXT = "No messages in this session yet. Send the first instruction to begin."
HISTORY_FAILED_TEXT = "Could not load the session history. You can still send instructions."
THINKING_TEXT = "Thinking..."
ABORTED_TEXT = "This run was terminated."
DISCONNECTED_TEXT = "Disconnected before the reply finished."
CONNECTION_LOST_TEXT = "Connection lost before the reply finished."
SWITCH_CANCELLED_TEXT = "Cancelled: switched to another agent."
NOT_CONNECTED_TEXT = "Gateway is not connected. Connect first."
RUN_BUSY_TEXT = "A request is already in progress. Wait for the current reply to finish."
SWITCHING_TEXT = "Switching agents. Try again in a moment."
INVALID_IMAGE_TEXT = (
    "The image could not be processed. Retry with a screenshot, PNG or JPEG, "
    "or try a different image."
)
IMAGE_ONLY_PROMPT = "Please answer with reference to the attached images."
ATTACHMENTS_HEADER = "Attachments (saved to the project directory):"


@dataclass
class ChatRun:
    """The single in-flight user turn.

    ``run_id`` and ``session_key`` are overwritten by whatever the gateway
    reports, since servers may canonicalize both.
    """
    run_id: str
    session_key: str
    assistant_message_id: str
    started_at: float
    baseline_text: str = ""


class PreparedImage(NamedTuple):
    attachment: OutboundAttachment
    payload: dict[str, Any]
    image: ChatImage


StateListener = Callable[[ChatState], None]
ClientFactory = Callable[..., GatewayClient]


def build_attachment_notes(attachments: list[OutboundAttachment], image_paths: set[str]) -> str:
    """Machine-readable manifest appended to the outbound message."""
    return "\n".join(
        f"- {'[image]' if item.relative_path in image_paths else '[file]'} "
        f"{item.file_name} ({item.mime_type or 'application/octet-stream'}) -> {item.relative_path}"
        for item in attachments
    )


def is_fresh_reply(entry: AssistantEntry, run: ChatRun, clock_skew: float) -> bool:
    """Guess whether a history entry is the reply to *run*.

    Accepts entries stamped at/after the send (minus clock skew) or whose text
    differs from what was on screen before the send. This is an approximation:
    an identical legitimate reply with no usable timestamp is not recognised,
    and a differing stale entry is.
    """
    if entry.timestamp is not None and entry.timestamp >= run.started_at - clock_skew:
        return True
    return entry.text.strip() != run.baseline_text.strip()


class ChatSessionController:
    """Drives one chat session over a ``GatewayClient``."""

    def __init__(
        self,
        *,
        url: str | None = None,
        token: str | None = None,
        config: Settings | None = None,
        client_factory: ClientFactory | None = None,
        identity_store: DeviceIdentityStore | None = None,
    ) -> None:
        self.config = config or settings
        self.url = url or self.config.gateway_url
        self.token = token
        self._client_factory: ClientFactory = client_factory or GatewayClient
        self._identity_store = identity_store or DeviceIdentityStore(self.config.identity_path)

        self._client: GatewayClient | None = None
        self._unsubscribe_events: Callable[[], None] | None = None
        self._state = ChatState(
            messages=[ChatMessage(id="welcome", role="system", text=WELCOME_TEXT)]
        )
        self._default_agent_id: str | None = None
        self._run: ChatRun | None = None
        self._streaming_text = ""
        self._generation = 0
        self._fallback_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._abandoned_run_ids: deque[str] = deque(maxlen=64)
        self._recovered_session_keys: set[str] = set()
        self._listeners: list[StateListener] = []

    # ── Reactive state ───────────────────────────────────────────────

    @property
    def state(self) -> ChatState:
        return self._state.model_copy(deep=True)

    @property
    def active_run(self) -> ChatRun | None:
        return self._run

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener* with a fresh snapshot after every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Chat state listener failed")

    # ── Connection lifecycle ─────────────────────────────────────────

    async def connect(self) -> None:
        await self._tear_down_client()
        self._abort_run(DISCONNECTED_TEXT)
        self._state.status = ConnectionStatus.CONNECTING
        self._state.last_error = None
        self._state.is_streaming = False
        self._notify()

        client: GatewayClient = self._client_factory(
            self.url,
            token=resolve_gateway_token(self.token, self.config),
            identity_store=self._identity_store,
            config=self.config,
            on_hello=lambda hello: self._handle_hello(client, hello),
            on_close=lambda code, reason: self._handle_close(client, code, reason),
            on_error=lambda exc: self._handle_client_error(client, exc),
        )
        self._unsubscribe_events = client.on_event(lambda frame: self._handle_event(client, frame))
        self._client = client
        await client.start()

    async def disconnect(self) -> None:
        self._abort_run(DISCONNECTED_TEXT)
        await self._tear_down_client()
        self._state.status = ConnectionStatus.IDLE
        self._state.active_agent_id = None
        self._state.agent_switching = False
        self._state.session_key = self._state.main_session_key
        self._notify()

    async def _tear_down_client(self) -> None:
        if self._unsubscribe_events:
            self._unsubscribe_events()
            self._unsubscribe_events = None
        client, self._client = self._client, None
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if client is not None:
            await client.stop()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _handle_hello(self, client: GatewayClient, hello: HelloPayload) -> None:
        if client is not self._client:
            return
        session_key = pick_session_key(hello)
        self._state.session_key = session_key
        self._state.main_session_key = session_key
        self._state.status = ConnectionStatus.CONNECTED
        self._state.last_error = None
        logger.info("Gateway ready; session %s", session_key)
        self._notify()
        self._spawn(self._load_initial(client, session_key))

    async def _load_initial(self, client: GatewayClient, session_key: str) -> None:
        await asyncio.gather(
            self._load_history(client, session_key),
            self._refresh_agents(client, session_key),
        )

    def _handle_close(self, client: GatewayClient, code: int, reason: str) -> None:
        if client is not self._client:
            return
        self._abort_run(CONNECTION_LOST_TEXT)
        self._state.is_streaming = False
        self._state.agent_switching = False
        if code == CLOSE_NORMAL:
            self._state.status = ConnectionStatus.IDLE
        else:
            self._state.status = ConnectionStatus.ERROR
            # A rejected handshake already reported its reason through on_error
            if not (code == CLOSE_CONNECT_FAILED and self._state.last_error):
                self._state.last_error = f"Connection closed ({code}): {reason or 'no reason'}"
        self._notify()

    def _handle_client_error(self, client: GatewayClient, error: Exception) -> None:
        if client is not self._client:
            return
        self._state.status = ConnectionStatus.ERROR
        self._state.last_error = str(error)
        self._notify()

    async def _request(self, client: GatewayClient, method: str, params: dict[str, Any]) -> Any:
        return await client.request(method, params, timeout=self.config.request_timeout)

    # ── History & agents ─────────────────────────────────────────────

    def _can_replace_messages(self, client: GatewayClient, session_key: str) -> bool:
        return client is self._client and session_key == self._state.session_key and self._run is None

    async def _load_history(self, client: GatewayClient, session_key: str) -> None:
        try:
            result = await self._request(
                client, "chat.history", {"sessionKey": session_key, "limit": self.config.history_limit}
            )
        except GatewayError as exc:
            logger.warning("Failed to load history for %s: %s", session_key, exc)
            if self._can_replace_messages(client, session_key):
                self._state.messages = [ChatMessage(role="system", text=HISTORY_FAILED_TEXT)]
                self._notify()
            return

        if not self._can_replace_messages(client, session_key):
            return
        raw = result.get("messages") if isinstance(result, dict) else None
        mapped = map_history_to_messages(raw if isinstance(raw, list) else [])
        self._state.messages = mapped or [ChatMessage(role="system", text=EMPTY_SESSION_TEXT)]
        self._notify()

    async def _refresh_agents(self, client: GatewayClient, session_key: str) -> None:
        self._state.agents_loading = True
        self._notify()
        try:
            result = await self._request(client, "agents.list", {})
            agents = extract_agent_items(result)
            default_id = result.get("defaultId") if isinstance(result, dict) else None
            default_id = default_id if isinstance(default_id, str) and default_id else None
            try:
                sessions = await self._request(
                    client,
                    "sessions.list",
                    {"includeGlobal": False, "includeUnknown": False, "limit": 500},
                )
                models = extract_agent_model_map(sessions, default_id)
            except GatewayError as exc:
                logger.debug("sessions.list failed: %s", exc)
                models = {}

            if client is not self._client:
                return
            self._state.agents = agents
            self._state.agent_models = models
            self._default_agent_id = default_id
            if not self._state.agent_switching:
                from_session = parse_session_agent_id(self._state.session_key)
                default_agent = next((a for a in agents if a.is_default), agents[0] if agents else None)
                self._state.active_agent_id = from_session or (default_agent.id if default_agent else None)
        except GatewayError as exc:
            logger.warning("Failed to list agents: %s", exc)
            if client is self._client:
                self._state.agents = []
                self._state.agent_models = {}
                self._state.active_agent_id = None
        finally:
            if client is self._client:
                self._state.agents_loading = False
                self._notify()

    # ── Sending ──────────────────────────────────────────────────────

    def _ready_for_prompt(self) -> bool:
        if self._client is None or self._state.status != ConnectionStatus.CONNECTED:
            error = NOT_CONNECTED_TEXT
        elif self._run is not None:
            error = RUN_BUSY_TEXT
        elif self._state.agent_switching:
            error = SWITCHING_TEXT
        else:
            return True
        self._state.last_error = error
        self._notify()
        return False

    async def _prepare_images(
        self, attachments: list[OutboundAttachment]
    ) -> tuple[list[PreparedImage], int]:
        """Normalize image attachments and apply the per-turn byte budget.

        The first image is always kept; later ones are dropped once adding
        them would exceed ``image_send_total_max_bytes``.
        """
        prepared: list[PreparedImage] = []
        total = 0
        dropped = 0
        for attachment in attachments:
            if not attachment.image_data_url:
                continue
            data_url = attachment.image_data_url
            try:
                data_url = await asyncio.to_thread(
                    normalize_image_data_url,
                    data_url,
                    target_bytes=self.config.image_send_target_bytes,
                    hard_max_bytes=self.config.image_send_hard_max_bytes,
                    max_dimension=self.config.image_send_max_dimension_px,
                )
            except (OSError, ValueError) as exc:
                logger.warning("Sending %s unmodified, normalization failed: %s", attachment.file_name, exc)
                data_url = attachment.image_data_url

            parsed = parse_data_url(data_url)
            if parsed is None:
                continue
            mime_type = parsed[0] or attachment.mime_type or "image/png"
            normalized = to_data_url(mime_type, parsed[1])
            size = data_url_size(normalized)
            if prepared and total + size > self.config.image_send_total_max_bytes:
                dropped += 1
                continue
            total += size
            prepared.append(
                PreparedImage(
                    attachment=attachment,
                    payload={
                        "type": "image",
                        "mimeType": mime_type,
                        "content": normalized,
                        "fileName": attachment.file_name,
                    },
                    image=ChatImage(data_url=normalized, mime_type=mime_type, file_name=attachment.file_name),
                )
            )
        return prepared, dropped

    def _latest_assistant_text(self) -> str:
        for message in reversed(self._state.messages):
            if message.role == "assistant" and not message.streaming and message.text.strip():
                return message.text
        return ""

    async def send_prompt(
        self, text: str, attachments: list[OutboundAttachment] | None = None
    ) -> bool:
        """Start a new run. Returns ``False`` if nothing was sent."""
        message = text.strip()
        attachments = list(attachments or [])
        if not message and not attachments:
            return False
        if not self._ready_for_prompt():
            return False

        images, dropped = await self._prepare_images(attachments)
        image_paths = {item.attachment.relative_path for item in images}
        notes = build_attachment_notes(attachments, image_paths)
        final_message = f"{message}\n\n{ATTACHMENTS_HEADER}\n{notes}".strip() if notes else message
        final_message = final_message or (IMAGE_ONLY_PROMPT if images else "")
        if not final_message:
            return False
        # Image work yielded the loop; re-check before claiming the run slot
        client = self._client
        if client is None or not self._ready_for_prompt():
            return False

        run = ChatRun(
            run_id=new_id(),
            session_key=self._state.session_key,
            assistant_message_id=new_id(),
            started_at=time.time(),
            baseline_text=self._latest_assistant_text(),
        )
        self._run = run
        self._streaming_text = ""

        preview = ""
        if attachments:
            preview = "\n\nAttachments:\n" + "\n".join(
                f"{'[image]' if item.relative_path in image_paths else '[file]'} {item.file_name}"
                for item in attachments
            )
        display_text = f"{message or ('[image]' if images else '[attachments only]')}{preview}".strip()
        self._state.messages.append(
            ChatMessage(role="user", text=display_text, images=[item.image for item in images])
        )
        self._state.messages.append(
            ChatMessage(id=run.assistant_message_id, role="assistant", text=THINKING_TEXT, streaming=True)
        )
        self._state.is_streaming = True
        self._state.last_error = None
        self._state.last_prompt = final_message
        self._state.notice = (
            f"{dropped} image(s) left out: this message would exceed the image size budget."
            if dropped
            else None
        )
        generation = self._bump_generation()
        self._fallback_task = self._spawn(self._history_fallback(generation, run))
        self._notify()

        params: dict[str, Any] = {
            "sessionKey": run.session_key,
            "message": final_message,
            "deliver": False,
            "idempotencyKey": run.run_id,
        }
        if images:
            params["attachments"] = [item.payload for item in images]

        try:
            ack = await self._request(client, "chat.send", params)
        except GatewayTimeoutError as exc:
            # The gateway may still have accepted the turn; history will tell
            logger.warning("chat.send timed out for run %s: %s", run.run_id, exc)
            return True
        except GatewayError as exc:
            logger.warning("chat.send failed for run %s: %s", run.run_id, exc)
            if self._run is run:
                self._finalize_run(f"Request failed: {exc}", error=str(exc))
            return False

        ack_run_id = ack.get("runId") if isinstance(ack, dict) else None
        if self._run is run and isinstance(ack_run_id, str) and ack_run_id:
            run.run_id = ack_run_id
        return True

    # ── Run completion ───────────────────────────────────────────────

    def _bump_generation(self) -> int:
        """Invalidate any armed history fallback."""
        self._generation += 1
        task, self._fallback_task = self._fallback_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        return self._generation

    def _set_message_text(self, message_id: str, text: str, *, streaming: bool) -> None:
        for message in self._state.messages:
            if message.id == message_id:
                message.text = text
                message.streaming = streaming
                return

    def _finalize_run(self, text: str, *, error: str | None = None) -> bool:
        """Freeze the assistant placeholder with *text* and release the run slot.

        Returns ``False`` if another path already finalized the run.
        """
        run = self._run
        if run is None:
            return False
        self._run = None
        self._streaming_text = ""
        self._bump_generation()
        self._set_message_text(run.assistant_message_id, text, streaming=False)
        self._state.is_streaming = False
        if error is not None:
            self._state.last_error = error
        self._notify()
        return True

    def _abort_run(self, text: str) -> None:
        if self._run is not None:
            self._finalize_run(text)

    def cancel_pending(self, reason: str = "Cancelled.") -> bool:
        """Stop waiting for the current run. Nothing is sent to the gateway."""
        run = self._run
        if run is None:
            return False
        self._abandoned_run_ids.append(run.run_id)
        logger.info("Run %s cancelled locally: %s", run.run_id, reason)
        return self._finalize_run(reason)

    # ── Gateway events ───────────────────────────────────────────────

    def _handle_event(self, client: GatewayClient, frame: EventFrame) -> None:
        if client is not self._client or frame.event != "chat":
            return
        payload = parse_chat_event(frame.payload)
        if payload is None:
            logger.debug("Dropping malformed chat event")
            return
        if payload.run_id in self._abandoned_run_ids:
            return

        run = self._run
        if run is None:
            if payload.session_key == self._state.session_key:
                logger.debug("No active run; ignoring %s for run %s", payload.state, payload.run_id)
            return

        if payload.run_id != run.run_id:
            logger.debug("Adopting gateway run id %s (was %s)", payload.run_id, run.run_id)
            run.run_id = payload.run_id
        if payload.session_key != self._state.session_key:
            logger.info("Adopting gateway session key %s (was %s)", payload.session_key, self._state.session_key)
            run.session_key = payload.session_key
            self._state.session_key = payload.session_key

        match payload.state:
            case ChatRunState.DELTA:
                self._apply_delta(run, payload)
            case ChatRunState.QUEUED | ChatRunState.RUNNING:
                self._state.is_streaming = True
                self._notify()
            case ChatRunState.FINAL:
                text = extract_text(payload.message) or self._streaming_text
                if text.strip():
                    self._finalize_run(text)
                else:
                    logger.info("Run %s finalized without text; waiting for history", run.run_id)
            case ChatRunState.ABORTED:
                self._finalize_run(ABORTED_TEXT)
            case ChatRunState.ERROR:
                self._apply_error(run, payload)

    def _apply_delta(self, run: ChatRun, payload: ChatEventPayload) -> None:
        text = extract_text(payload.message)
        # Deltas are cumulative; a shorter one is stale or out of order
        if not text or len(text) < len(self._streaming_text):
            return
        self._streaming_text = text
        self._state.is_streaming = True
        self._set_message_text(run.assistant_message_id, text, streaming=True)
        self._notify()

    def _apply_error(self, run: ChatRun, payload: ChatEventPayload) -> None:
        raw = payload.error_message or "chat error"
        invalid_image = bool(INVALID_IMAGE_DATA_RE.search(raw))
        normalized = INVALID_IMAGE_TEXT if invalid_image else raw
        session_key = run.session_key
        self._finalize_run(f"Error: {normalized}", error=normalized)
        if invalid_image:
            self._recover_session(session_key)

    def _recover_session(self, poisoned_key: str) -> None:
        """Move to a fresh session for the same agent after an unreadable image."""
        if poisoned_key in self._recovered_session_keys:
            logger.info("Session %s already recovered once; not recovering again", poisoned_key)
            return
        self._recovered_session_keys.add(poisoned_key)
        agent_id = parse_session_agent_id(poisoned_key) or self._state.active_agent_id or MAIN_AGENT_ID
        fresh_key = f"agent:{agent_id}:recovery-{uuid.uuid4().hex[:8]}"
        logger.warning("Session %s holds an unreadable image; switching to %s", poisoned_key, fresh_key)
        self._state.session_key = fresh_key
        self._state.messages.append(
            ChatMessage(
                role="system",
                text=f"The previous session contained an image the gateway could not read. "
                f"Continuing in a fresh session ({fresh_key}).",
            )
        )
        self._notify()

    # ── History-poll fallback ────────────────────────────────────────

    def _active_agent_is_main(self) -> bool:
        return self._state.active_agent_id in (None, MAIN_AGENT_ID)

    def _fallback_session_keys(self) -> list[str]:
        keys = [self._state.session_key, self._state.main_session_key]
        if self._active_agent_is_main():
            keys.extend(LEGACY_MAIN_SESSION_KEYS)
        return list(dict.fromkeys(key for key in keys if key))

    def _fallback_is_current(self, generation: int, run: ChatRun) -> bool:
        return generation == self._generation and self._run is run

    async def _poll_history_once(
        self, client: GatewayClient, session_keys: list[str], run: ChatRun
    ) -> tuple[str, str] | None:
        for session_key in session_keys:
            try:
                result = await self._request(
                    client, "chat.history", {"sessionKey": session_key, "limit": self.config.history_limit}
                )
            except GatewayError as exc:
                logger.debug("History poll for %s failed: %s", session_key, exc)
                continue
            raw = result.get("messages") if isinstance(result, dict) else None
            entry = latest_assistant_entry(raw if isinstance(raw, list) else [])
            if entry is not None and is_fresh_reply(entry, run, self.config.fallback_clock_skew):
                return session_key, entry.text
        return None

    def _fallback_timeout_text(self, tried: list[str]) -> str:
        waited = self.config.fallback_initial_delay + self.config.fallback_interval * max(
            self.config.fallback_max_attempts - 1, 0
        )
        if self._active_agent_is_main() and len(tried) > 1:
            return (
                f"No reply received after {waited:.0f}s. "
                f"Checked main session aliases: {', '.join(tried)}."
            )
        return f"No reply received after {waited:.0f}s. The gateway may still be working; reload the history later."

    async def _history_fallback(self, generation: int, run: ChatRun) -> None:
        """Poll history until the run's reply shows up or the attempt budget runs out."""
        await asyncio.sleep(self.config.fallback_initial_delay)
        tried: list[str] = []
        attempts = self.config.fallback_max_attempts
        for attempt in range(1, attempts + 1):
            client = self._client
            if client is None or not self._fallback_is_current(generation, run):
                return
            session_keys = self._fallback_session_keys()
            tried.extend(key for key in session_keys if key not in tried)
            found = await self._poll_history_once(client, session_keys, run)
            if not self._fallback_is_current(generation, run):
                return
            if found is not None:
                session_key, text = found
                logger.info("Recovered reply for run %s from %s history (attempt %d)", run.run_id, session_key, attempt)
                if session_key != self._state.session_key:
                    self._state.session_key = session_key
                self._finalize_run(text)
                return
            if attempt < attempts:
                await asyncio.sleep(self.config.fallback_interval)

        if self._fallback_is_current(generation, run):
            logger.warning("No reply for run %s after %d history polls", run.run_id, attempts)
            text = self._fallback_timeout_text(tried)
            self._finalize_run(text, error=text)

    # ── Agents ───────────────────────────────────────────────────────

    def _is_default_agent(self, agent_id: str) -> bool:
        return agent_id == (self._default_agent_id or MAIN_AGENT_ID)

    def _on_agent_session(self, agent_id: str) -> bool:
        session_agent = parse_session_agent_id(self._state.session_key)
        if session_agent is not None:
            return session_agent == agent_id
        return self._is_default_agent(agent_id)

    async def _resolve_session_key(self, client: GatewayClient, agent_id: str) -> str:
        """Ask the gateway for the agent's canonical session key.

        Tries ``agent:<id>:main`` and, for the default agent, the literal
        ``main``; falls back to ``agent:<id>:main`` if neither resolves.
        """
        requested = f"agent:{agent_id}:main"
        candidates = [requested]
        if self._is_default_agent(agent_id):
            candidates.append(MAIN_AGENT_ID)
        for key in candidates:
            try:
                result = await self._request(client, "sessions.resolve", {"key": key, "includeGlobal": True})
            except GatewayError as exc:
                logger.debug("sessions.resolve %s failed: %s", key, exc)
                continue
            resolved = result.get("key") if isinstance(result, dict) else None
            if isinstance(resolved, str) and resolved.strip():
                return resolved.strip()
        return requested

    async def switch_agent(self, agent_id: str) -> bool:
        client = self._client
        next_agent = agent_id.strip()
        if client is None or not next_agent:
            return False
        if self._state.status != ConnectionStatus.CONNECTED:
            self._state.last_error = NOT_CONNECTED_TEXT
            self._notify()
            return False
        if self._state.agent_switching:
            return False
        if next_agent == self._state.active_agent_id and self._on_agent_session(next_agent):
            return True

        self.cancel_pending(SWITCH_CANCELLED_TEXT)
        self._state.agent_switching = True
        self._state.last_error = None
        self._notify()
        try:
            session_key = await self._resolve_session_key(client, next_agent)
            if client is not self._client:
                return False
            self._bump_generation()
            self._streaming_text = ""
            self._state.active_agent_id = next_agent
            self._state.session_key = session_key
            self._state.is_streaming = False
            self._state.last_prompt = ""
            self._state.messages = [ChatMessage(role="system", text=f"Switched to agent: {next_agent}")]
            logger.info("Switched to agent %s (session %s)", next_agent, session_key)
            self._notify()
            await self._load_history(client, session_key)
            return True
        finally:
            if client is self._client:
                self._state.agent_switching = False
                self._notify()


# Shared across the application
chat_session = ChatSessionController()
