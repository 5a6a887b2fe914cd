"""Tests for the high-level command helpers."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from hass_link.hass_api import HomeAssistantAPI


@pytest.fixture
def ws():
    connection = MagicMock()
    connection.send = AsyncMock()
    connection.subscribe_events = AsyncMock(return_value=7)
    return connection


@pytest.fixture
def api(ws):
    return HomeAssistantAPI(ws)


async def test_get_states(api, ws):
    ws.send.return_value = [{"entity_id": "light.kitchen", "state": "on"}]

    assert await api.get_states() == [{"entity_id": "light.kitchen", "state": "on"}]
    ws.send.assert_awaited_once_with("get_states")


async def test_get_state_finds_entity(api, ws):
    ws.send.return_value = [
        {"entity_id": "light.kitchen", "state": "on"},
        {"entity_id": "switch.fan", "state": "off"},
    ]

    assert (await api.get_state("switch.fan"))["state"] == "off"
    assert await api.get_state("sensor.missing") is None


async def test_call_service_builds_service_data(api, ws):
    await api.call_service("light", "turn_on", "light.kitchen", brightness=128)

    ws.send.assert_awaited_once_with(
        "call_service",
        domain="light",
        service="turn_on",
        service_data={"entity_id": "light.kitchen", "brightness": 128},
    )


async def test_call_service_without_data_or_with_response(api, ws):
    await api.call_service("homeassistant", "restart")
    ws.send.assert_awaited_with("call_service", domain="homeassistant", service="restart")

    await api.call_service("weather", "get_forecasts", "weather.home", return_response=True, type="daily")
    ws.send.assert_awaited_with(
        "call_service",
        domain="weather",
        service="get_forecasts",
        service_data={"entity_id": "weather.home", "type": "daily"},
        return_response=True,
    )


async def test_subscriptions(api, ws):
    assert await api.subscribe_events("state_changed") == 7
    ws.subscribe_events.assert_awaited_once_with("state_changed")

    await api.unsubscribe_events(7)
    ws.send.assert_awaited_once_with("unsubscribe_events", subscription=7)


@pytest.mark.parametrize(
    "method, command",
    [
        ("get_config", "get_config"),
        ("get_services", "get_services"),
        ("list_areas", "config/area_registry/list"),
        ("list_devices", "config/device_registry/list"),
        ("list_entities", "config/entity_registry/list"),
        ("ping", "ping"),
    ],
)
async def test_simple_commands(api, ws, method, command):
    await getattr(api, method)()
    ws.send.assert_awaited_once_with(command)


async def test_history_during_period(api, ws):
    await api.history_during_period(("sensor.temp",), "2024-01-01T00:00:00Z")

    ws.send.assert_awaited_once_with(
        "history/history_during_period",
        entity_ids=["sensor.temp"],
        start_time="2024-01-01T00:00:00Z",
        minimal_response=True,
    )


async def test_sign_path(api, ws):
    ws.send.return_value = {"path": "/api/camera_proxy/camera.door?authSig=abc"}

    assert await api.sign_path("/api/camera_proxy/camera.door") == "/api/camera_proxy/camera.door?authSig=abc"
    ws.send.assert_awaited_once_with("auth/sign_path", path="/api/camera_proxy/camera.door")
