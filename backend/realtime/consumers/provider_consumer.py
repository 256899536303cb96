"""Provider WebSocket consumer for location streaming and service offers."""

import logging
from typing import Dict, Any

from channels.db import database_sync_to_async

from .base import BaseConsumer
from services.lifecycle.exceptions import InvalidValue, ProviderNotAvailableError

logger = logging.getLogger(__name__)


class ProviderConsumer(BaseConsumer):
    """
    WebSocket consumer for providers.

    Handles:
        - location updates (geo index refresh + tracking feed while engaged)
        - online / offline toggle
        - service offers and offer withdrawals (via user_<id>)
    """

    async def on_connect(self):
        if self.role != "provider":
            await self.send_error("This endpoint is for providers only")
            await self.close()
            return

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Provider connected successfully",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "location_update":
            await self._handle_location_update(data)
        elif msg_type == "set_online":
            await self._handle_set_online(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_location_update(self, data: Dict[str, Any]):
        lat = data.get("latitude")
        lon = data.get("longitude")

        if lat is None or lon is None:
            await self.send_error("location_update requires latitude and longitude")
            return

        try:
            lat = float(lat)
            lon = float(lon)
        except (TypeError, ValueError):
            await self.send_error("latitude and longitude must be numbers")
            return

        try:
            request_id = await self._update_location(lat, lon, data.get("heading"))
        except InvalidValue as exc:
            await self.send_error(str(exc), code="invalid_value")
            return

        logger.debug("Provider %s location update: lat=%s, lon=%s, request=%s",
                     self.user_id, lat, lon, request_id)

    async def _handle_set_online(self, data: Dict[str, Any]):
        is_online = bool(data.get("is_online"))
        try:
            await self._set_online(is_online)
        except ProviderNotAvailableError as exc:
            await self.send_error(str(exc), code="provider_not_available")
            return

        await self.send_success("status_updated", is_online=is_online)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _update_location(self, lat: float, lon: float, heading=None) -> int:
        from providers.services import update_provider_location
        from realtime.broadcast import TRACKING_STATUSES
        from chamados.models import ServiceRequest

        update_provider_location(self.user.provider_profile, lat, lon, heading=heading)
        engaged = (
            ServiceRequest.objects
            .filter(provider_id=self.user_id, status__in=TRACKING_STATUSES)
            .values_list("id", flat=True)
            .first()
        )
        return engaged or 0

    @database_sync_to_async
    def _set_online(self, is_online: bool):
        from providers.services import set_provider_online

        return set_provider_online(self.user.provider_profile, is_online)
