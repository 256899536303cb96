"""Request tracking WebSocket consumer shared by clients and providers."""

import logging
from typing import Dict, Any, Optional

from channels.db import database_sync_to_async

from .base import BaseConsumer
from realtime.broadcast import request_group

logger = logging.getLogger(__name__)


class RequestConsumer(BaseConsumer):
    """
    WebSocket consumer for following a service request.

    Handles:
        - subscribe / unsubscribe to ``request_<id>``
        - resync: on subscribe the current snapshot and every status event
          after ``after_sequence`` are replayed, in order
        - status changes, negotiation updates, chat and the tracking feed
    """

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Request tracking connection established",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "subscribe":
            await self._handle_subscribe(data)
        elif msg_type == "unsubscribe":
            await self._handle_unsubscribe(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_subscribe(self, data: Dict[str, Any]):
        request_id = _as_int(data.get("request_id"))
        if request_id is None:
            await self.send_error("subscribe requires request_id")
            return

        snapshot = await self._load_snapshot(request_id, _as_int(data.get("after_sequence")))
        if snapshot is None:
            await self.send_error("You are not a participant of this request", code="permission_denied")
            return

        await self._join_group(request_group(request_id))

        for event in snapshot["events"]:
            await self.request_status_changed({"type": "request_status_changed", **event})

        self._is_newer(request_id, snapshot["request"]["status_sequence"])
        await self.send_success(
            "subscribed",
            request_id=request_id,
            sequence=snapshot["request"]["status_sequence"],
            request=snapshot["request"],
        )

    async def _handle_unsubscribe(self, data: Dict[str, Any]):
        request_id = _as_int(data.get("request_id"))
        if request_id is None:
            return

        await self._leave_group(request_group(request_id))
        self.delivered_sequences.pop(request_id, None)
        await self.send_success("unsubscribed", request_id=request_id)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _load_snapshot(self, request_id: int, after_sequence: Optional[int]):
        """Current request plus missed status events, or None for outsiders."""
        from chamados.models import ServiceRequest
        from chamados.serializers import ServiceRequestSerializer

        request = (
            ServiceRequest.objects
            .select_related("client", "provider")
            .filter(id=request_id)
            .first()
        )
        if request is None or request.side_of(self.user) is None:
            return None

        events = []
        if after_sequence is not None:
            for event in request.status_events.filter(sequence__gt=after_sequence):
                events.append({
                    "request_id": request.id,
                    "client_id": request.client_id,
                    "provider_id": request.provider_id,
                    "status": event.to_status,
                    "from_status": event.from_status,
                    "sequence": event.sequence,
                    "actor": event.actor,
                    "note": event.note,
                    "updated_at": event.created_at.isoformat(),
                    "replayed": True,
                })
        return {"request": ServiceRequestSerializer(request).data, "events": events}


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
