"""Shared fixtures: fake gateway socket, fake gateway client, relay HTTP client."""

import asyncio
import inspect
import json
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from websockets.protocol import State

from gatewaychat.adapters.errors import GatewayNotConnectedError
from gatewaychat.adapters.identity import DeviceIdentityStore
from gatewaychat.config import Settings
from gatewaychat.schemas.frames import EventFrame, HelloPayload
from gatewaychat.services.chat_session import ChatSessionController

_CLOSED = object()


async def settle(rounds: int = 50) -> None:
    """Let callbacks and spawned tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── Fake socket for GatewayClient ────────────────────────────────────


class FakeConnection:
    """Stands in for ``websockets.asyncio.client.ClientConnection``."""

    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSED)

    def feed(self, frame: Any) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def server_close(self, code: int, reason: str = "") -> None:
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSED)

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == "req" and f.get("method") == method]

    async def wait_for_request(self, method: str, count: int = 1, timeout: float = 2.0) -> dict[str, Any]:
        async def poll() -> dict[str, Any]:
            while len(self.requests(method)) < count:
                await asyncio.sleep(0.005)
            return self.requests(method)[count - 1]

        return await asyncio.wait_for(poll(), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def connector(fake_connection):
    async def connect(url: str) -> FakeConnection:
        return fake_connection

    return connect


# ── Fake GatewayClient for the chat controller ───────────────────────

DEFAULT_RESPONSES: dict[str, Any] = {
    "chat.history": {"messages": []},
    "agents.list": {
        "defaultId": "main",
        "agents": [{"id": "main", "name": "Main"}, {"id": "ops", "identity": {"name": "Ops"}}],
    },
    "sessions.list": {
        "sessions": [{"key": "agent:main:main", "model": "gpt-4.1-mini", "modelProvider": "openai"}]
    },
    "sessions.resolve": lambda params: {"key": params["key"]},
    "chat.send": lambda params: {"runId": params["idempotencyKey"], "status": "started"},
}


class FakeGatewayClient:
    """Scriptable replacement for ``GatewayClient``.

    ``responses`` maps a method to a payload, an exception to raise, an
    awaitable to wait on, or a callable taking the params.
    """

    def __init__(self, url, *, token=None, identity_store=None, on_hello=None, on_close=None, on_error=None, **kwargs):
        self.url = url
        self.token = token
        self.identity_store = identity_store
        self.on_hello = on_hello
        self.on_close = on_close
        self.on_error = on_error
        self.connected = False
        self.started = False
        self.stopped = False
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, Any] = dict(DEFAULT_RESPONSES)
        self._handlers: list = []

    async def start(self) -> None:
        self.started = True
        self.connected = True

    async def stop(self) -> None:
        self.stopped = True
        self.connected = False

    def on_event(self, handler):
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def request(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        params = params or {}
        self.calls.append((method, params))
        if not self.connected:
            raise GatewayNotConnectedError()
        response = self.responses.get(method, {})
        if callable(response):
            response = response(params)
        if isinstance(response, BaseException):
            raise response
        if inspect.isawaitable(response):
            response = await response
        return response

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def params_for(self, method: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == method]

    # Server-side triggers

    def hello(self, main_session_key: str | None = "agent:main:main") -> None:
        payload: dict[str, Any] = {"type": "hello-ok", "protocol": 3}
        if main_session_key is not None:
            payload["snapshot"] = {"sessionDefaults": {"mainSessionKey": main_session_key}}
        self.on_hello(HelloPayload.model_validate(payload))

    def emit(self, event: str, payload: Any) -> None:
        frame = EventFrame(event=event, payload=payload)
        for handler in list(self._handlers):
            handler(frame)

    def emit_chat(self, run_id: str, state: str, *, session_key: str = "agent:main:main", **extra: Any) -> None:
        self.emit("chat", {"runId": run_id, "sessionKey": session_key, "state": state, **extra})

    def close(self, code: int, reason: str = "") -> None:
        self.connected = False
        self.on_close(code, reason)


@pytest.fixture
def fast_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        state_dir=tmp_path,
        request_timeout=1.0,
        fallback_initial_delay=0.05,
        fallback_interval=0.02,
        fallback_max_attempts=3,
        fallback_clock_skew=2.0,
    )


@pytest.fixture
def gateway_clients() -> list[FakeGatewayClient]:
    return []


@pytest.fixture
def controller(fast_settings, gateway_clients, tmp_path) -> ChatSessionController:
    def factory(url, **kwargs) -> FakeGatewayClient:
        client = FakeGatewayClient(url, **kwargs)
        gateway_clients.append(client)
        return client

    return ChatSessionController(
        url="ws://gateway.test",
        token="test-token",
        config=fast_settings,
        client_factory=factory,
        identity_store=DeviceIdentityStore(tmp_path / "device.json"),
    )


@pytest_asyncio.fixture
async def session(controller, gateway_clients):
    """A controller that completed the handshake on ``agent:main:main``."""
    await controller.connect()
    client = gateway_clients[-1]
    client.hello()
    await settle()
    yield controller, client
    await controller.disconnect()


# ── Relay HTTP client ────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client():
    from gatewaychat.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
