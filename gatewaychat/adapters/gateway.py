"""OpenClaw Gateway WebSocket client.

Implements the Gateway WS protocol:
  - connect handshake (auth token + device identity signing), sent either
    in answer to a ``connect.challenge`` event or unprompted after a short delay
  - req/res multiplexing over one socket, correlated by request id
  - event fan-out to subscribers

The client never reconnects on its own; callers decide what to do after
``on_close``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import platform
import time
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from gatewaychat.adapters.errors import (
    GatewayClosedError,
    GatewayError,
    GatewayNotConnectedError,
    GatewayRequestError,
    GatewayTimeoutError,
)
from gatewaychat.adapters.identity import (
    DeviceIdentity,
    DeviceIdentityStore,
    build_device_auth_payload,
)
from gatewaychat.config import Settings, settings
from gatewaychat.schemas.frames import (
    CLOSE_ABNORMAL,
    CLOSE_CONNECT_FAILED,
    CLOSE_NORMAL,
    PROTOCOL_VERSION,
    EventFrame,
    HelloPayload,
    RequestFrame,
    ResponseError,
    parse_inbound_frame,
)

logger = logging.getLogger(__name__)

OPENCLAW_HOME = Path.home() / ".openclaw"

EventHandler = Callable[[EventFrame], None]
Connector = Callable[[str], Awaitable[ClientConnection]]


def resolve_gateway_token(explicit: str | None = None, config: Settings | None = None) -> str | None:
    """Resolve the gateway auth token.

    Priority: 1) explicit argument
              2) GATEWAYCHAT_GATEWAY_TOKEN env / *config* (default: settings)
              3) ~/.openclaw/openclaw.json  gateway.auth.token
    """
    if explicit and explicit.strip():
        return explicit.strip()
    config = config or settings
    if config.gateway_token.strip():
        return config.gateway_token.strip()

    config_path = OPENCLAW_HOME / "openclaw.json"
    if config_path.exists():
        try:
            cfg = json.loads(config_path.read_text())
            token = cfg.get("gateway", {}).get("auth", {}).get("token")
            if isinstance(token, str) and token.strip():
                logger.debug("Resolved gateway token from openclaw.json")
                return token.strip()
        except (json.JSONDecodeError, OSError, AttributeError) as exc:
            logger.warning("Failed to read openclaw.json for token: %s", exc)

    return None


async def _open_websocket(url: str) -> ClientConnection:
    # Attachments travel inline as base64, so frames can be large
    return await connect(url, max_size=None)


class GatewayClient:
    """WebSocket client for the OpenClaw Gateway."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        client_id: str | None = None,
        client_version: str | None = None,
        client_mode: str | None = None,
        role: str | None = None,
        scopes: list[str] | None = None,
        locale: str | None = None,
        identity_store: DeviceIdentityStore | None = None,
        handshake_delay: float | None = None,
        connect_timeout: float | None = 15.0,
        on_hello: Callable[[HelloPayload], None] | None = None,
        on_close: Callable[[int, str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        connector: Connector | None = None,
        config: Settings | None = None,
    ) -> None:
        config = config or settings
        self.url = url
        self.token = token.strip() if token and token.strip() else None
        self.client_id = client_id or config.client_id
        self.client_version = client_version or config.client_version
        self.client_mode = client_mode or config.client_mode
        self.role = role or config.role
        self.scopes = list(scopes if scopes is not None else config.scopes)
        self.locale = locale or config.locale
        self.identity_store = identity_store
        self.handshake_delay = config.handshake_delay if handshake_delay is None else handshake_delay
        self.connect_timeout = connect_timeout
        self.on_hello = on_hello
        self.on_close = on_close
        self.on_error = on_error
        self.instance_id = str(uuid.uuid4())
        self.hello: HelloPayload | None = None

        self._connector: Connector = connector or _open_websocket
        self._ws: ClientConnection | None = None
        self._generation = 0
        self._reader_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._connect_timer: asyncio.TimerHandle | None = None
        self._connect_nonce: str | None = None
        self._connect_sent = False
        self._disposed = True
        self._identity: DeviceIdentity | None = None
        self._identity_loaded = False
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._event_handlers: list[EventHandler] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    # ── Connection lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        """Open a fresh socket in the background, replacing any previous one."""
        await self.stop()
        self._disposed = False
        self.hello = None
        self._generation += 1
        logger.info("Connecting to gateway at %s", self.url)
        self._reader_task = asyncio.create_task(self._run(self._generation))

    async def stop(self) -> None:
        """Close the socket and reject outstanding requests. Idempotent."""
        self._disposed = True
        self._generation += 1
        self._clear_connect_timer()
        self._connect_sent = False
        self._connect_nonce = None
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        self._flush_pending(GatewayClosedError("gateway client stopped"))
        if ws is not None:
            await ws.close(CLOSE_NORMAL, "client stop")
        current = asyncio.current_task()
        for task in (reader, self._connect_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._connect_task = None

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to every event frame; returns an unsubscribe callable."""
        self._event_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._event_handlers:
                self._event_handlers.remove(handler)

        return unsubscribe

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a req and wait for the matching res payload."""
        ws = self._ws
        if ws is None or ws.state is not State.OPEN:
            raise GatewayNotConnectedError()

        req_id = str(uuid.uuid4())
        frame = RequestFrame(id=req_id, method=method, params=params)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future

        try:
            await ws.send(frame.model_dump_json(exclude_none=True))
        except ConnectionClosed as exc:
            self._pending.pop(req_id, None)
            raise GatewayClosedError(f"gateway closed while sending '{method}'") from exc

        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as exc:
            raise GatewayTimeoutError(method, timeout or 0) from exc
        finally:
            self._pending.pop(req_id, None)

    # ── Socket handling ──────────────────────────────────────────────

    async def _run(self, generation: int) -> None:
        """Background loop: open the socket, then dispatch frames until it closes."""
        try:
            ws = await self._connector(self.url)
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            if generation != self._generation:
                return
            logger.warning("Gateway connection to %s failed: %s", self.url, exc)
            self._report_error(GatewayClosedError(f"websocket transport error: {exc}"))
            self._handle_close(generation, CLOSE_ABNORMAL, str(exc))
            return

        if generation != self._generation:
            await ws.close(CLOSE_NORMAL, "client stop")
            return

        self._ws = ws
        self._handle_open()
        try:
            async for raw in ws:
                if generation != self._generation:
                    return
                self._handle_message(raw)
        except ConnectionClosed:
            pass

        code = ws.close_code if ws.close_code is not None else CLOSE_ABNORMAL
        self._handle_close(generation, code, ws.close_reason or "")

    def _handle_open(self) -> None:
        self._connect_nonce = None
        self._connect_sent = False
        self._clear_connect_timer()
        loop = asyncio.get_running_loop()
        self._connect_timer = loop.call_later(self.handshake_delay, self._begin_connect)

    def _handle_close(self, generation: int, code: int, reason: str) -> None:
        if generation != self._generation:
            return
        self._clear_connect_timer()
        self._connect_sent = False
        self._connect_nonce = None
        self._ws = None
        self._flush_pending(GatewayClosedError(f"gateway closed ({code}): {reason or 'no reason'}"))
        if self._disposed:
            return
        logger.warning("Gateway connection closed (%d): %s", code, reason or "no reason")
        if self.on_close:
            self.on_close(code, reason)

    def _handle_message(self, raw: str | bytes) -> None:
        frame = parse_inbound_frame(raw)
        if frame is None:
            logger.debug("Dropping malformed gateway frame")
            return

        if isinstance(frame, EventFrame):
            if frame.event == "connect.challenge" and isinstance(frame.payload, dict):
                nonce = frame.payload.get("nonce")
                if isinstance(nonce, str) and nonce:
                    self._connect_nonce = nonce
                    self._begin_connect()
            for handler in list(self._event_handlers):
                try:
                    handler(frame)
                except Exception:
                    logger.exception("Gateway event handler failed for %s", frame.event)
            return

        future = self._pending.pop(frame.id, None)
        if future is None or future.done():
            return
        if frame.ok:
            future.set_result(frame.payload)
            return
        error = frame.error or ResponseError()
        future.set_exception(
            GatewayRequestError(error.message, code=error.code, details=error.details)
        )

    def _flush_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _clear_connect_timer(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _report_error(self, error: Exception) -> None:
        if self.on_error:
            self.on_error(error)

    # ── Handshake ────────────────────────────────────────────────────

    def _begin_connect(self) -> None:
        """Send ``connect`` at most once per socket (challenge or timer, whichever is first)."""
        if self._connect_sent or not self.connected:
            return
        self._connect_sent = True
        self._clear_connect_timer()
        self._connect_task = asyncio.create_task(self._send_connect(self._generation))

    def _device_identity(self) -> DeviceIdentity | None:
        if not self._identity_loaded:
            self._identity_loaded = True
            if self.identity_store is not None:
                self._identity = self.identity_store.load_or_create()
        return self._identity

    def build_connect_params(self, nonce: str | None) -> dict[str, Any]:
        device: dict[str, Any] | None = None
        try:
            identity = self._device_identity()
            if identity is not None:
                signed_at = int(time.time() * 1000)
                payload = build_device_auth_payload(
                    device_id=identity.device_id,
                    client_id=self.client_id,
                    client_mode=self.client_mode,
                    role=self.role,
                    scopes=self.scopes,
                    signed_at_ms=signed_at,
                    token=self.token,
                    nonce=nonce,
                )
                device = {
                    "id": identity.device_id,
                    "publicKey": identity.public_key_b64url,
                    "signature": identity.sign(payload),
                    "signedAt": signed_at,
                }
                if nonce:
                    device["nonce"] = nonce
        except Exception as exc:
            # Signing is best-effort: the token alone may still be accepted
            logger.warning("Device signing failed, continuing token-only: %s", exc)
            self._report_error(exc)

        params: dict[str, Any] = {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": self.client_id,
                "version": self.client_version,
                "platform": platform.system().lower() or "python",
                "mode": self.client_mode,
                "instanceId": self.instance_id,
            },
            "role": self.role,
            "scopes": self.scopes,
            "caps": [],
            "locale": self.locale,
            "userAgent": f"gatewaychat/{self.client_version} (Python {platform.python_version()})",
        }
        if self.token:
            params["auth"] = {"token": self.token}
        if device:
            params["device"] = device
        return params

    async def _send_connect(self, generation: int) -> None:
        params = self.build_connect_params(self._connect_nonce)
        try:
            payload = await self.request("connect", params, timeout=self.connect_timeout)
            hello = HelloPayload.model_validate(payload if isinstance(payload, dict) else {})
        except (GatewayError, ValidationError) as exc:
            if generation != self._generation or self._disposed:
                return
            logger.warning("Gateway connect rejected: %s", exc)
            self._report_error(exc)
            ws = self._ws
            if ws is not None:
                await ws.close(CLOSE_CONNECT_FAILED, "connect failed")
            return

        if generation != self._generation:
            return
        self.hello = hello
        logger.info("Connected to gateway (protocol %s)", hello.protocol)
        if self.on_hello:
            self.on_hello(hello)
