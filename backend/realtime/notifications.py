"""
Notification helpers for sending WebSocket messages to connected clients.

This module provides functions to:
- Fan out service offers to providers found by a search step
- Tell the client that a provider was found (plays the "found" sound)
- Send request-related events to the client or to a single provider

All helpers are fire-and-forget: they return False instead of raising.
"""

from __future__ import annotations

import logging
from typing import Dict, Any, Iterable

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)


def _send(group: str, payload: Dict[str, Any]) -> bool:
    try:
        channel_layer = get_channel_layer()
        if channel_layer is None:
            return False
        logger.debug("WS -> %s: %s", group, payload.get("type"))
        async_to_sync(channel_layer.group_send)(group, payload)
        return True
    except Exception:
        logger.exception("Failed to send %s to %s", payload.get("type"), group)
        return False


def _request_data(request) -> Dict[str, Any]:
    from chamados.serializers import ServiceRequestSerializer
    return ServiceRequestSerializer(request).data


# ---------------------- Provider Notifications ----------------------

def notify_provider_offers(request, provider_ids: Iterable[int], radius_km) -> int:
    """
    Send the request to each provider's personal group: user_<provider_id>

    Returns the number of providers the offer reached.
    """
    try:
        request_data = _request_data(request)
    except Exception:
        logger.exception("Failed to serialize request %s for offers", request.id)
        return 0

    sent = 0
    for provider_id in provider_ids:
        payload = {
            "type": "service_offer",
            "request_id": request.id,
            "provider_id": provider_id,
            "radius_km": radius_km,
            "request_data": request_data,
        }
        if _send(f"user_{provider_id}", payload):
            sent += 1
    return sent


def notify_provider_event(
    event_type: str,
    request,
    provider_id: int | None,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send an event to a specific provider using their personal group.

    Args:
        event_type: Handler name in consumer (offer_withdrawn, request_canceled, ...)
        request: ServiceRequest model instance
        provider_id: Target provider's user ID
        message: Optional message to include
        extra: Additional payload data
    """
    if not provider_id:
        return False

    payload = {
        "type": event_type,
        "request_id": request.id,
        "provider_id": provider_id,
        **(extra or {}),
    }
    if message:
        payload["message"] = message
    return _send(f"user_{provider_id}", payload)


# ---------------------- Client Notifications ----------------------

def notify_client_event(
    event_type: str,
    request,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send request-related event to the client through: user_<client_id>

    Args:
        event_type: Handler name in consumer (search_update, search_timeout, ...)
        request: ServiceRequest model instance
        message: Optional message to include
        extra: Additional payload data
    """
    if not request.client_id:
        return False

    payload = {
        "type": event_type,
        "request_id": request.id,
        "status": request.status,
        **(extra or {}),
    }
    if message:
        payload["message"] = message
    return _send(f"user_{request.client_id}", payload)


def notify_provider_found(request, provider_count: int, radius_km) -> bool:
    """Tell the client that providers were found; the app plays the alert sound."""
    return notify_client_event(
        "provider_found",
        request,
        "We found providers near you. Waiting for one to accept.",
        extra={
            "provider_count": provider_count,
            "radius_km": radius_km,
            "play_sound": True,
        },
    )
