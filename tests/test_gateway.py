"""GatewayClient transport tests over a fake socket."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from conftest import settle
from gatewaychat.adapters.errors import (
    GatewayClosedError,
    GatewayNotConnectedError,
    GatewayRequestError,
    GatewayTimeoutError,
)
from gatewaychat.adapters.gateway import GatewayClient, resolve_gateway_token
from gatewaychat.adapters.identity import DeviceIdentityStore, build_device_auth_payload
from gatewaychat.config import Settings, settings

HELLO = {
    "type": "hello-ok",
    "protocol": 3,
    "snapshot": {"sessionDefaults": {"mainSessionKey": "agent:main:main"}},
}


def make_client(connector, tmp_path=None, **kwargs) -> GatewayClient:
    store = DeviceIdentityStore(tmp_path / "device.json") if tmp_path else None
    kwargs.setdefault("handshake_delay", 0.05)
    return GatewayClient("ws://gateway.test", token="secret", identity_store=store, connector=connector, **kwargs)


async def complete_handshake(conn, payload=None) -> dict:
    frame = await conn.wait_for_request("connect")
    conn.feed({"type": "res", "id": frame["id"], "ok": True, "payload": payload or HELLO})
    await settle()
    return frame


@pytest.mark.asyncio
async def test_challenge_sends_signed_connect_once(fake_connection, connector, tmp_path):
    on_hello = MagicMock()
    gw = make_client(connector, tmp_path, on_hello=on_hello)
    await gw.start()
    await settle()

    fake_connection.feed({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n-123"}})
    frame = await complete_handshake(fake_connection)
    # Timer would have fired by now if it were still armed
    await asyncio.sleep(0.1)

    assert len(fake_connection.requests("connect")) == 1
    params = frame["params"]
    assert params["minProtocol"] == 3 and params["maxProtocol"] == 3
    assert params["client"]["id"] == "webchat-ui"
    assert params["client"]["instanceId"] == gw.instance_id
    assert params["auth"] == {"token": "secret"}

    device = params["device"]
    assert device["nonce"] == "n-123"
    identity = DeviceIdentityStore(tmp_path / "device.json").load_or_create()
    assert device["id"] == identity.device_id
    expected = build_device_auth_payload(
        device_id=identity.device_id,
        client_id="webchat-ui",
        client_mode="webchat",
        role="operator",
        scopes=["operator.admin"],
        signed_at_ms=device["signedAt"],
        token="secret",
        nonce="n-123",
    )
    assert expected.startswith("v2|")
    assert identity.verify(expected, device["signature"])

    on_hello.assert_called_once()
    assert gw.hello.snapshot.session_defaults.main_session_key == "agent:main:main"
    await gw.stop()


@pytest.mark.asyncio
async def test_timer_sends_connect_without_challenge(fake_connection, connector, tmp_path):
    gw = make_client(connector, tmp_path)
    await gw.start()

    frame = await complete_handshake(fake_connection)
    # A late challenge must not trigger a second connect
    fake_connection.feed({"type": "event", "event": "connect.challenge", "payload": {"nonce": "late"}})
    await asyncio.sleep(0.1)

    assert len(fake_connection.requests("connect")) == 1
    assert "nonce" not in frame["params"]["device"]
    await gw.stop()


@pytest.mark.asyncio
async def test_connect_rejection_closes_with_4008(fake_connection, connector):
    on_error = MagicMock()
    on_close = MagicMock()
    gw = make_client(connector, on_error=on_error, on_close=on_close)
    await gw.start()

    frame = await fake_connection.wait_for_request("connect")
    fake_connection.feed({"type": "res", "id": frame["id"], "ok": False, "error": {"message": "pairing required"}})
    await settle()

    assert fake_connection.close_code == 4008
    assert fake_connection.close_reason == "connect failed"
    assert isinstance(on_error.call_args.args[0], GatewayRequestError)
    on_close.assert_called_once_with(4008, "connect failed")
    assert gw.hello is None


@pytest.mark.asyncio
async def test_duplicate_response_is_ignored(fake_connection, connector):
    gw = make_client(connector)
    await gw.start()
    await complete_handshake(fake_connection)

    task = asyncio.create_task(gw.request("agents.list", {}))
    frame = await fake_connection.wait_for_request("agents.list")
    fake_connection.feed({"type": "res", "id": frame["id"], "ok": True, "payload": {"agents": ["first"]}})
    fake_connection.feed({"type": "res", "id": frame["id"], "ok": False, "error": "late duplicate"})
    await settle()

    assert await task == {"agents": ["first"]}
    assert gw._pending == {}
    await gw.stop()


@pytest.mark.asyncio
async def test_error_response_raises_request_error(fake_connection, connector):
    gw = make_client(connector)
    await gw.start()
    await complete_handshake(fake_connection)

    task = asyncio.create_task(gw.request("sessions.resolve", {"key": "x"}))
    frame = await fake_connection.wait_for_request("sessions.resolve")
    fake_connection.feed(
        {"type": "res", "id": frame["id"], "ok": False, "error": {"message": "unknown session", "code": "NOT_FOUND"}}
    )

    with pytest.raises(GatewayRequestError) as exc_info:
        await task
    assert exc_info.value.code == "NOT_FOUND"
    assert str(exc_info.value) == "unknown session"
    await gw.stop()


@pytest.mark.asyncio
async def test_request_before_open_raises_not_connected():
    gw = GatewayClient("ws://gateway.test")
    with pytest.raises(GatewayNotConnectedError):
        await gw.request("chat.history", {"sessionKey": "main"})


@pytest.mark.asyncio
async def test_request_timeout_removes_pending(fake_connection, connector):
    gw = make_client(connector)
    await gw.start()
    await complete_handshake(fake_connection)

    with pytest.raises(GatewayTimeoutError):
        await gw.request("chat.history", {"sessionKey": "main"}, timeout=0.05)
    assert gw._pending == {}
    await gw.stop()


@pytest.mark.asyncio
async def test_stop_rejects_pending_and_suppresses_on_close(fake_connection, connector):
    on_close = MagicMock()
    gw = make_client(connector, on_close=on_close)
    await gw.start()
    await complete_handshake(fake_connection)

    task = asyncio.create_task(gw.request("chat.history", {}))
    await fake_connection.wait_for_request("chat.history")
    await gw.stop()

    with pytest.raises(GatewayClosedError):
        await task
    assert fake_connection.close_code == 1000
    assert fake_connection.close_reason == "client stop"
    on_close.assert_not_called()
    assert not gw.connected
    # Idempotent
    await gw.stop()


@pytest.mark.asyncio
async def test_server_close_rejects_pending_and_reports(fake_connection, connector):
    on_close = MagicMock()
    gw = make_client(connector, on_close=on_close)
    await gw.start()
    await complete_handshake(fake_connection)

    task = asyncio.create_task(gw.request("chat.history", {}))
    await fake_connection.wait_for_request("chat.history")
    fake_connection.server_close(1011, "internal error")
    await settle()

    with pytest.raises(GatewayClosedError):
        await task
    on_close.assert_called_once_with(1011, "internal error")


@pytest.mark.asyncio
async def test_failed_open_reports_error_then_abnormal_close():
    on_error = MagicMock()
    on_close = MagicMock()

    async def refuse(url):
        raise ConnectionRefusedError("connection refused")

    gw = GatewayClient("ws://gateway.test", connector=refuse, on_error=on_error, on_close=on_close)
    await gw.start()
    await settle()

    assert isinstance(on_error.call_args.args[0], GatewayClosedError)
    assert on_close.call_args.args[0] == 1006


@pytest.mark.asyncio
async def test_events_reach_handlers_and_malformed_frames_are_dropped(fake_connection, connector):
    gw = make_client(connector, handshake_delay=10)
    seen = []
    unsubscribe = gw.on_event(lambda frame: seen.append(frame.event))
    await gw.start()
    await settle()

    fake_connection.feed("{not json")
    fake_connection.feed({"type": "mystery", "id": "1"})
    fake_connection.feed({"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc"}})
    await complete_handshake(fake_connection)
    fake_connection.feed({"type": "event", "event": "chat", "payload": {"runId": "r"}})
    await settle()
    unsubscribe()
    fake_connection.feed({"type": "event", "event": "tick", "payload": {}})
    await settle()

    assert seen == ["connect.challenge", "chat"]
    await gw.stop()


@pytest.mark.asyncio
async def test_signing_failure_falls_back_to_token_only(fake_connection, connector, tmp_path):
    on_error = MagicMock()
    gw = make_client(connector, tmp_path, on_error=on_error)
    with patch("gatewaychat.adapters.identity.DeviceIdentity.sign", side_effect=RuntimeError("no key")):
        await gw.start()
        frame = await complete_handshake(fake_connection)

    assert "device" not in frame["params"]
    assert frame["params"]["auth"] == {"token": "secret"}
    assert isinstance(on_error.call_args.args[0], RuntimeError)
    assert gw.hello is not None
    await gw.stop()


@pytest.mark.asyncio
async def test_restart_ignores_superseded_socket(tmp_path):
    sockets = []

    async def connect(url):
        from conftest import FakeConnection

        conn = FakeConnection()
        sockets.append(conn)
        return conn

    on_close = MagicMock()
    gw = GatewayClient("ws://gateway.test", connector=connect, handshake_delay=0.05, on_close=on_close)
    await gw.start()
    await settle()
    await gw.start()
    await settle()

    sockets[0].feed({"type": "event", "event": "connect.challenge", "payload": {"nonce": "old"}})
    await asyncio.sleep(0.1)

    assert len(sockets) == 2
    assert sockets[0].close_code == 1000
    assert sockets[0].requests("connect") == []
    assert len(sockets[1].requests("connect")) == 1
    on_close.assert_not_called()
    await gw.stop()


def test_resolve_gateway_token_priority(tmp_path):
    openclaw_home = tmp_path / ".openclaw"
    openclaw_home.mkdir()
    (openclaw_home / "openclaw.json").write_text('{"gateway": {"auth": {"token": "from-file"}}}')

    with (
        patch("gatewaychat.adapters.gateway.OPENCLAW_HOME", openclaw_home),
        patch.object(settings, "gateway_token", ""),
    ):
        assert resolve_gateway_token(" explicit ") == "explicit"
        assert resolve_gateway_token() == "from-file"
        with patch.object(settings, "gateway_token", "from-env"):
            assert resolve_gateway_token() == "from-env"


def test_injected_config_overrides_module_settings(tmp_path):
    config = Settings(_env_file=None, state_dir=tmp_path, gateway_token="cfg-token", client_id="custom-ui", handshake_delay=0.2)

    with patch.object(settings, "gateway_token", "from-env"):
        assert resolve_gateway_token(None, config) == "cfg-token"
        assert resolve_gateway_token("explicit", config) == "explicit"

    gw = GatewayClient("ws://gateway.test", config=config)
    assert gw.client_id == "custom-ui"
    assert gw.handshake_delay == 0.2


def test_settings_only_declare_used_fields():
    assert "env" not in Settings.model_fields
    assert {"gateway_url", "gateway_token", "client_id", "handshake_delay"} <= set(Settings.model_fields)
