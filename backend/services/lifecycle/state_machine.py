"""
Transition graph and bookkeeping for ServiceRequest status changes.

Every status change goes through ``transition()``: the move is checked
against the graph before anything is mutated, ``updated_at`` and
``status_sequence`` are bumped, a StatusEvent is appended and the change is
broadcast once the surrounding transaction commits.
"""

import logging
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from chamados.models import ServiceRequest, StatusEvent, PROVIDER_BOUND_STATUSES
from .exceptions import InvalidTransition

logger = logging.getLogger(__name__)


# Older clients still send 'confirmed' for a paid, running service
LEGACY_STATUS_ALIASES = {
    'confirmed': 'in_service',
}

ALLOWED_TRANSITIONS = {
    'idle': {'searching'},
    'searching': {'accepted', 'canceled'},
    'accepted': {'negotiating', 'searching', 'canceled'},
    'negotiating': {'awaiting_payment', 'searching', 'canceled'},
    'awaiting_payment': {'in_service', 'canceled'},
    'in_service': {'pending_client_confirmation', 'canceled'},
    'pending_client_confirmation': {'finished', 'in_service'},
    'finished': set(),
    'canceled': set(),
}

CANCELABLE_STATUSES = {
    status for status, targets in ALLOWED_TRANSITIONS.items() if 'canceled' in targets
}


def normalize_status(status: str) -> str:
    return LEGACY_STATUS_ALIASES.get(status, status)


def can_transition(from_status: str, to_status: str) -> bool:
    from_status = normalize_status(from_status)
    to_status = normalize_status(to_status)
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def ensure_status(request: ServiceRequest, *statuses: str) -> None:
    """Raise InvalidTransition unless the request is in one of ``statuses``."""
    if request.status not in statuses:
        raise InvalidTransition(
            f"Request {request.id} is {request.status}; expected {' or '.join(statuses)}"
        )


def next_updated_at(request: ServiceRequest):
    """A timestamp strictly greater than the request's current updated_at."""
    now = timezone.now()
    if request.updated_at and now <= request.updated_at:
        return request.updated_at + timedelta(microseconds=1)
    return now


def check_invariants(request: ServiceRequest) -> None:
    """Validate the aggregate before it is written."""
    if request.value_accepted != (request.agreed_value is not None):
        raise InvalidTransition("agreed_value must be set exactly when the value is accepted")

    if request.status in PROVIDER_BOUND_STATUSES and request.provider_id is None:
        raise InvalidTransition(f"Status {request.status} requires an engaged provider")

    has_destination = (
        request.destination_latitude is not None
        and request.destination_longitude is not None
    )
    if has_destination != request.requires_destination:
        raise InvalidTransition("Destination must be present only for services that require one")

    if request.status == 'searching' and (
        request.value_accepted or request.proposed_value is not None
    ):
        raise InvalidTransition("Negotiation fields must be empty while searching")


def touch(request: ServiceRequest, update_fields=None) -> None:
    """Persist a non-status change, keeping updated_at strictly increasing."""
    request.updated_at = next_updated_at(request)
    check_invariants(request)
    if update_fields is not None:
        update_fields = list(set(update_fields) | {'updated_at'})
    request.save(update_fields=update_fields)


def transition(
    request: ServiceRequest,
    to_status: str,
    actor: str,
    note: str = "",
    update_fields=None,
) -> StatusEvent:
    """
    Move ``request`` to ``to_status`` and record it.

    Must be called inside ``transaction.atomic`` with the request row locked.
    Extra fields changed by the caller are saved along with the status when
    listed in ``update_fields``.
    """
    to_status = normalize_status(to_status)
    from_status = request.status

    if not can_transition(from_status, to_status):
        raise InvalidTransition(f"Cannot move request {request.id} from {from_status} to {to_status}")

    request.status = to_status
    request.status_sequence += 1
    request.updated_at = next_updated_at(request)
    check_invariants(request)

    fields = {'status', 'status_sequence', 'updated_at'}
    if update_fields:
        fields |= set(update_fields)
    request.save(update_fields=list(fields))

    event = StatusEvent.objects.create(
        request=request,
        sequence=request.status_sequence,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        note=note[:255],
        created_at=request.updated_at,
    )

    logger.info(
        "Request %s: %s -> %s (actor=%s, seq=%s)",
        request.id, from_status, to_status, actor, request.status_sequence
    )

    _broadcast_on_commit(request, event)
    return event


def _broadcast_on_commit(request: ServiceRequest, event: StatusEvent) -> None:
    from realtime.broadcast import broadcast_request_change

    snapshot = {
        'request_id': request.id,
        'client_id': request.client_id,
        'provider_id': request.provider_id,
        'status': request.status,
        'from_status': event.from_status,
        'updated_at': request.updated_at.isoformat(),
        'sequence': request.status_sequence,
        'actor': event.actor,
        'note': event.note,
    }
    transaction.on_commit(lambda: broadcast_request_change(snapshot))
