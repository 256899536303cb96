"""
Change broadcaster and tracking feed for service requests.

Status changes are fanned out through channel groups:
1. ``request_<id>`` - everyone currently watching the request
2. ``user_<client_id>`` - the client's personal group
3. ``user_<provider_id>`` - the engaged provider's personal group

Every message carries the request's ``sequence`` so consumers can drop
duplicates and out-of-order deliveries. Sending is fire-and-forget: a
failure is logged and never propagates into the caller's transaction.
"""

from __future__ import annotations

import logging
from typing import Dict, Any, Optional, List

from channels.layers import get_channel_layer
from asgiref.sync import async_to_sync
from django.utils import timezone

logger = logging.getLogger(__name__)

# Provider positions are only streamed while the request is in one of these
TRACKING_STATUSES = {
    'accepted',
    'negotiating',
    'awaiting_payment',
    'in_service',
}


def request_group(request_id: int) -> str:
    return f"request_{request_id}"


def user_group(user_id: int) -> str:
    return f"user_{user_id}"


def _group_send(groups: List[str], payload: Dict[str, Any]) -> int:
    """Send ``payload`` to each group; returns how many sends went out."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer available for broadcast")
        return 0

    sent = 0
    for group in groups:
        try:
            async_to_sync(channel_layer.group_send)(group, payload)
            sent += 1
        except Exception:
            logger.exception("Failed to broadcast %s to %s", payload.get("type"), group)
    return sent


# ---------------------- Change Broadcaster ----------------------

def broadcast_request_change(snapshot: Dict[str, Any]) -> int:
    """
    Publish a committed status change to both parties.

    ``snapshot`` is built by the state machine at transition time, so the
    payload reflects the committed row even if it changes again later.
    """
    groups = [
        request_group(snapshot["request_id"]),
        user_group(snapshot["client_id"]),
    ]
    if snapshot.get("provider_id"):
        groups.append(user_group(snapshot["provider_id"]))

    payload = {
        "type": "request_status_changed",
        **snapshot,
    }
    logger.debug(
        "Broadcasting request %s status=%s seq=%s",
        snapshot["request_id"], snapshot["status"], snapshot["sequence"]
    )
    return _group_send(groups, payload)


def broadcast_request_update(request, event_type: str, extra: Optional[Dict[str, Any]] = None) -> int:
    """
    Publish a non-status update (new proposal, chat message, payment sub-state)
    to the request group, tagged with the current sequence.
    """
    payload = {
        "type": "request_updated",
        "event": event_type,
        "request_id": request.id,
        "status": request.status,
        "sequence": request.status_sequence,
        "updated_at": request.updated_at.isoformat() if request.updated_at else None,
        **(extra or {}),
    }
    groups = [request_group(request.id), user_group(request.client_id)]
    if request.provider_id:
        groups.append(user_group(request.provider_id))
    return _group_send(groups, payload)


# ---------------------- Tracking Feed ----------------------

def publish_provider_location(
    provider_id: int,
    lat: float,
    lon: float,
    heading: Optional[float] = None,
) -> int:
    """
    Stream a provider's position to the request it is currently engaged in.

    Returns the request id the position went to, or 0 when the provider is
    not engaged in a trackable request.
    """
    from chamados.models import ServiceRequest

    request = (
        ServiceRequest.objects
        .filter(provider_id=provider_id, status__in=TRACKING_STATUSES)
        .only("id", "client_id")
        .first()
    )
    if request is None:
        return 0

    payload = {
        "type": "provider_location_updated",
        "request_id": request.id,
        "provider_id": provider_id,
        "latitude": lat,
        "longitude": lon,
        "heading": heading,
        "timestamp": timezone.now().isoformat(),
    }
    _group_send([request_group(request.id)], payload)
    return request.id
