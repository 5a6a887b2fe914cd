"""
End-to-end tests against a real websockets server on localhost.

The server speaks just enough of the Home Assistant protocol: the auth
handshake, get_states, subscribe_events and ping.
"""
import asyncio
import json

import pytest
from websockets.asyncio.server import serve

from conftest import StatusRecorder, wait_until
from hass_link import ConnectionConfig, HomeAssistantAPI, HomeAssistantConnection, ReconnectPolicy
from hass_link.errors import AuthError


TOKEN = "valid-token"
STATES = [{"entity_id": "light.kitchen", "state": "on", "attributes": {}}]


async def fake_home_assistant(websocket):
    await websocket.send(json.dumps({"type": "auth_required", "ha_version": "2024.1.0"}))
    auth = json.loads(await websocket.recv())
    if auth.get("access_token") != TOKEN:
        await websocket.send(json.dumps({"type": "auth_invalid", "message": "Invalid access token or password"}))
        return
    await websocket.send(json.dumps({"type": "auth_ok", "ha_version": "2024.1.0"}))

    async for raw in websocket:
        message = json.loads(raw)
        msg_id = message["id"]
        if message["type"] == "get_states":
            await websocket.send(json.dumps({"id": msg_id, "type": "result", "success": True, "result": STATES}))
        elif message["type"] == "subscribe_events":
            await websocket.send(json.dumps({"id": msg_id, "type": "result", "success": True, "result": None}))
            await websocket.send(json.dumps({
                "id": msg_id,
                "type": "event",
                "event": {
                    "event_type": "state_changed",
                    "data": {"entity_id": "light.kitchen", "new_state": {"state": "off"}},
                    "origin": "LOCAL",
                    "time_fired": "2024-01-01T00:00:00+00:00",
                },
            }))
        elif message["type"] == "ping":
            await websocket.send(json.dumps({"id": msg_id, "type": "pong"}))
        else:
            await websocket.send(json.dumps({
                "id": msg_id,
                "type": "result",
                "success": False,
                "error": {"code": "unknown_command", "message": "Unknown command."},
            }))


@pytest.fixture
async def hass_url():
    async with serve(fake_home_assistant, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"http://127.0.0.1:{port}"


async def test_full_session(hass_url):
    statuses = StatusRecorder()
    batches = []
    config = ConnectionConfig(
        url=hass_url,
        token=TOKEN,
        on_status=statuses,
        on_batch=batches.append,
        batch_window=0.01,
    )

    async with HomeAssistantConnection(config) as conn:
        api = HomeAssistantAPI(conn)
        assert await api.get_states() == STATES
        await api.ping()

        await wait_until(lambda: batches, timeout=2.0)
        assert batches[0]["light.kitchen"].data["new_state"] == {"state": "off"}
        assert list(conn.subscriptions) == ["state_changed"]

    assert statuses.statuses == ["connecting", "connected", "idle"]


async def test_rejected_token(hass_url):
    statuses = StatusRecorder()
    config = ConnectionConfig(
        url=hass_url,
        token="wrong",
        on_status=statuses,
        reconnect=ReconnectPolicy(base_delay=0.01),
    )
    conn = HomeAssistantConnection(config)
    await conn.connect()

    with pytest.raises(AuthError):
        await conn.wait_connected(timeout=2.0)
    assert statuses.calls[-1] == ("auth_invalid", "Invalid access token or password")

    await asyncio.sleep(0.05)
    assert conn.reconnect_delays == []
    await conn.disconnect()
