"""
Home Assistant API Operations

Thin, typed helpers over ``HomeAssistantConnection.send``. Each method builds
one WebSocket command and returns Home Assistant's ``result`` untouched;
interpreting entity payloads is left to the caller.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from .websocket_client import HomeAssistantConnection


logger = logging.getLogger(__name__)


class HomeAssistantAPI:
    """
    High-level interface to Home Assistant via WebSocket.

    Provides methods for common operations:
    - Fetching entity states and registries
    - Calling services
    - Managing event subscriptions
    """

    def __init__(self, connection: HomeAssistantConnection):
        """
        Initialize API wrapper.

        Args:
            connection: Connection to send commands through
        """
        self.ws = connection

    async def get_states(self) -> List[Dict[str, Any]]:
        """
        Fetch all entity states from Home Assistant.

        Returns:
            List of entity state dictionaries (entity_id, state, attributes,
            last_changed, last_updated)
        """
        result = await self.ws.send("get_states")
        logger.info(f"Fetched {len(result)} entities")
        return result

    async def get_state(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """
        Get state of a specific entity.

        Returns:
            Entity state dict or None if not found
        """
        for state in await self.get_states():
            if state.get("entity_id") == entity_id:
                return state
        return None

    async def call_service(
        self,
        domain: str,
        service: str,
        entity_id: Optional[str] = None,
        return_response: bool = False,
        **service_data: Any,
    ) -> Any:
        """
        Call a Home Assistant service.

        Args:
            domain: Service domain (e.g., "light", "climate")
            service: Service name (e.g., "turn_on", "set_temperature")
            entity_id: Target entity (optional)
            return_response: Ask Home Assistant to return the service response
            **service_data: Additional service parameters

        Returns:
            Service response data
        """
        service_call: Dict[str, Any] = {
            "domain": domain,
            "service": service,
        }

        data: Dict[str, Any] = {}
        if entity_id:
            data["entity_id"] = entity_id
        data.update(service_data)

        if data:
            service_call["service_data"] = data
        if return_response:
            service_call["return_response"] = True

        logger.info(f"Calling service {domain}.{service} on {entity_id}")
        return await self.ws.send("call_service", **service_call)

    async def subscribe_events(self, event_type: Optional[str] = None) -> int:
        """Subscribe to an event type (all events when None). Returns the subscription id."""
        return await self.ws.subscribe_events(event_type)

    async def unsubscribe_events(self, subscription: int) -> None:
        await self.ws.send("unsubscribe_events", subscription=subscription)

    async def get_config(self) -> Dict[str, Any]:
        """Location, units, time zone and version of the instance."""
        return await self.ws.send("get_config")

    async def get_services(self) -> Dict[str, Any]:
        return await self.ws.send("get_services")

    async def list_areas(self) -> List[Dict[str, Any]]:
        return await self.ws.send("config/area_registry/list")

    async def list_devices(self) -> List[Dict[str, Any]]:
        return await self.ws.send("config/device_registry/list")

    async def list_entities(self) -> List[Dict[str, Any]]:
        return await self.ws.send("config/entity_registry/list")

    async def history_during_period(
        self,
        entity_ids: Sequence[str],
        start_time: str,
        end_time: Optional[str] = None,
        minimal_response: bool = True,
    ) -> Dict[str, Any]:
        """
        Fetch recorded history for some entities.

        Args:
            entity_ids: Entities to fetch
            start_time: ISO 8601 start of the period
            end_time: ISO 8601 end of the period (defaults to now on the server)
        """
        params: Dict[str, Any] = {
            "entity_ids": list(entity_ids),
            "start_time": start_time,
            "minimal_response": minimal_response,
        }
        if end_time is not None:
            params["end_time"] = end_time
        return await self.ws.send("history/history_during_period", **params)

    async def sign_path(self, path: str, expires: Optional[int] = None) -> str:
        """Get a signed URL path, e.g. for camera proxies. Returns the path."""
        params: Dict[str, Any] = {"path": path}
        if expires is not None:
            params["expires"] = expires
        result = await self.ws.send("auth/sign_path", **params)
        return result["path"]

    async def ping(self) -> None:
        """Round-trip a ping; raises if Home Assistant does not answer."""
        await self.ws.send("ping")
