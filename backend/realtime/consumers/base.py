"""Base WebSocket consumer with shared functionality for all consumers."""

import logging
from typing import Dict, Any, Set

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)

class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer with shared connection management and helper methods.

    Subclasses should override:
        - on_connect(): role checks, extra groups
        - handle_message(msg_type, data): handle incoming messages

    Status changes reach a connection through more than one group
    (``user_<id>`` and ``request_<id>``), so every request_status_changed
    is checked against the highest sequence already delivered for that
    request and dropped when it is not newer.
    """

    async def connect(self):
        self.user = self.scope["user"]

        if self.user.is_anonymous:
            await self.close()
            return

        self.user_id = getattr(self.user, "id", None)
        self.role = getattr(self.user, "role", None)

        self.joined_groups: Set[str] = set()
        # request_id -> last delivered status sequence
        self.delivered_sequences: Dict[int, int] = {}
        self.delivered_updates: Set[tuple] = set()

        # Personal group (useful for targeted server->user messages)
        self.user_group = f"user_{self.user_id}"
        await self._join_group(self.user_group)

        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        """Override in subclass for custom connect logic."""
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
        })

    async def disconnect(self, close_code):
        """Leave all joined groups on disconnect."""
        for group in list(getattr(self, "joined_groups", ())):
            await self._leave_group(group)
        await self.on_disconnect(close_code)

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive_json(self, data: Dict[str, Any]):
        """Route incoming messages to appropriate handlers."""
        msg_type = data.get("type")
        if not msg_type:
            await self.send_error("Message type is required")
            return

        if msg_type == "ping":
            await self.send_json({"type": "pong"})
            return

        try:
            await self.handle_message(msg_type, data)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Override in subclass to handle specific message types."""
        await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Group Management Helpers ----------------------

    async def _join_group(self, group_name: str):
        """Join a channel group and track it."""
        await self.channel_layer.group_add(group_name, self.channel_name)
        self.joined_groups.add(group_name)

    async def _leave_group(self, group_name: str):
        """Leave a channel group and untrack it."""
        await self.channel_layer.group_discard(group_name, self.channel_name)
        self.joined_groups.discard(group_name)

    # ---------------------- Response Helpers ----------------------

    async def send_error(self, message: str, code: str = ""):
        """Send an error message to the client."""
        payload = {"type": "error", "message": message}
        if code:
            payload["code"] = code
        await self.send_json(payload)

    async def send_success(self, event_type: str, **kwargs):
        """Send a success response to the client."""
        await self.send_json({
            "type": event_type,
            **kwargs,
        })

    # ---------------------- Sequence Tracking ----------------------

    def _is_newer(self, request_id, sequence) -> bool:
        """Record ``sequence`` for ``request_id``; False if already delivered."""
        if request_id is None or sequence is None:
            return True
        last = self.delivered_sequences.get(request_id)
        if last is not None and sequence <= last:
            return False
        self.delivered_sequences[request_id] = sequence
        return True

    # ---------------------- Common Event Handlers ----------------------
    # These handle group_send events from server-side code

    async def request_status_changed(self, event):
        """Committed status change; duplicates and stale deliveries are dropped."""
        if not self._is_newer(event.get("request_id"), event.get("sequence")):
            logger.debug(
                "Dropping stale status event for request %s seq=%s",
                event.get("request_id"), event.get("sequence")
            )
            return
        await self.send_json({**event, "type": "request_status_changed"})

    async def request_updated(self, event):
        """Non-status update (proposal, chat, payment sub-state)."""
        key = (
            event.get("request_id"),
            event.get("event"),
            event.get("sequence"),
            event.get("updated_at"),
            event.get("message_id"),
        )
        if key in self.delivered_updates:
            return
        self.delivered_updates.add(key)
        if len(self.delivered_updates) > 500:
            self.delivered_updates.clear()
        await self.send_json({**event, "type": event.get("event", "request_updated")})

    async def provider_location_updated(self, event):
        """Tracking feed for the engaged provider."""
        await self.send_json({
            "type": "provider_location_updated",
            "request_id": event.get("request_id"),
            "provider_id": event.get("provider_id"),
            "latitude": event.get("latitude"),
            "longitude": event.get("longitude"),
            "heading": event.get("heading"),
            "timestamp": event.get("timestamp"),
        })

    # ---------------------- Search & Offer Events ----------------------

    async def service_offer(self, event):
        """Sent by the matching engine to a provider inside the search radius."""
        await self.send_json({
            "type": "service_offer",
            "request_id": event.get("request_id"),
            "radius_km": event.get("radius_km"),
            "request": event.get("request_data"),
        })

    async def offer_withdrawn(self, event):
        """The offer is no longer available (engaged elsewhere, canceled, timed out)."""
        await self.send_json({
            "type": "offer_withdrawn",
            "request_id": event.get("request_id"),
            "message": event.get("message", "This request is no longer available."),
        })

    async def provider_found(self, event):
        await self.send_json({**event, "type": "provider_found"})

    async def search_update(self, event):
        await self.send_json({**event, "type": "search_update"})

    async def search_timeout(self, event):
        await self.send_json({**event, "type": "search_timeout"})

    async def search_degraded(self, event):
        await self.send_json({**event, "type": "search_degraded"})

    # ---------------------- Lifecycle Events ----------------------

    async def provider_engaged(self, event):
        await self.send_json({**event, "type": "provider_engaged"})

    async def provider_withdrew(self, event):
        await self.send_json({**event, "type": "provider_withdrew"})

    async def confirm_completion_required(self, event):
        await self.send_json({**event, "type": "confirm_completion_required"})

    async def completion_disputed(self, event):
        await self.send_json({**event, "type": "completion_disputed"})

    async def request_auto_finished(self, event):
        await self.send_json({**event, "type": "request_auto_finished"})

    # ---------------------- Payment Events ----------------------

    async def payment_confirmed(self, event):
        await self.send_json({**event, "type": "payment_confirmed"})

    async def payment_unconfirmed(self, event):
        await self.send_json({**event, "type": "payment_unconfirmed"})

    async def payment_refund_required(self, event):
        await self.send_json({**event, "type": "payment_refund_required"})
