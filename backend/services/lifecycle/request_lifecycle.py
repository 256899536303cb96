"""
Core service request lifecycle operations.

This module contains the business logic for driving a ServiceRequest from
creation to completion. Every mutating operation runs in its own
transaction and re-reads the request with ``select_for_update`` before any
check, so concurrent calls on one request are applied one at a time.
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any
from dataclasses import dataclass

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from chamados.models import (
    ServiceRequest,
    ACTIVE_STATUSES,
    PROVIDER_BOUND_STATUSES,
    TERMINAL_STATUSES,
    requires_destination,
)
from common.utils import is_valid_coordinate, to_coordinate
from providers.models import ProviderProfile, SERVICE_TYPE_CHOICES
from services.matching import search_engine
from .exceptions import (
    RequestNotFoundError,
    InvalidTransition,
    InvalidValue,
    ActiveRequestExists,
    ProviderNotAvailableError,
    PermissionDenied,
)
from .state_machine import transition, touch, ensure_status, CANCELABLE_STATUSES

logger = logging.getLogger(__name__)

User = get_user_model()

CLIENT_CANCEL_REASONS = {
    'changed_mind',
    'found_alternative',
    'wait_time_too_long',
    'price_disagreement',
    'emergency_resolved',
    'other',
}

PROVIDER_CANCEL_REASONS = {
    'unavailable',
    'location_too_far',
    'vehicle_issue',
    'emergency',
    'incorrect_info',
    'other',
}

SYSTEM_CANCEL_REASONS = {
    'payment_timeout',
    'auto_canceled',
}


@dataclass
class RequestResult:
    """Result object for request operations."""
    success: bool
    request: Optional[ServiceRequest] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


# ===================== Helpers =====================

def lock_request(request_id: int) -> ServiceRequest:
    """Re-read the request row with a lock. Call inside transaction.atomic."""
    try:
        return ServiceRequest.objects.select_for_update().get(id=request_id)
    except ServiceRequest.DoesNotExist:
        raise RequestNotFoundError(f"Request {request_id} not found")


def require_side(request: ServiceRequest, user, *sides: str) -> str:
    side = request.side_of(user)
    if side is None or (sides and side not in sides):
        raise PermissionDenied("You are not allowed to perform this action on this request")
    return side


def lock_user(user_id: int) -> None:
    """
    Lock the user row. Serializes the one-active-request checks of a single
    client or provider; taken after the request row when both are needed.
    """
    User.objects.select_for_update().filter(id=user_id).first()


def merge_exclusions(request: ServiceRequest, provider_id: int) -> bool:
    """Add ``provider_id`` to the request's exclusions; the list only grows."""
    if provider_id in request.excluded_provider_ids:
        return False
    request.excluded_provider_ids = list(request.excluded_provider_ids) + [provider_id]
    return True


def _on_commit(func, *args, **kwargs):
    transaction.on_commit(lambda: func(*args, **kwargs))


# ===================== Queries =====================

def get_active_request_for_client(client) -> Optional[ServiceRequest]:
    """Get client's current active request."""
    return (
        ServiceRequest.objects
        .filter(client=client, status__in=ACTIVE_STATUSES)
        .select_related('provider__provider_profile')
        .first()
    )


def get_active_request_for_provider(provider) -> Optional[ServiceRequest]:
    """Get provider's current engaged request."""
    busy_statuses = [s for s in PROVIDER_BOUND_STATUSES if s not in TERMINAL_STATUSES]
    return (
        ServiceRequest.objects
        .filter(provider=provider, status__in=busy_statuses)
        .select_related('client')
        .first()
    )


def get_current_request_for_client(client) -> Optional[ServiceRequest]:
    """
    The request the client app should show: the active one, or the latest
    terminal one the client has not acknowledged yet. None means idle.
    """
    active = get_active_request_for_client(client)
    if active:
        return active
    latest = ServiceRequest.objects.filter(client=client).order_by('-created_at', '-id').first()
    if latest and latest.is_terminal and latest.acknowledged_at is None:
        return latest
    return None


def get_request_for_participant(user, request_id: int) -> ServiceRequest:
    try:
        request = ServiceRequest.objects.select_related('client', 'provider').get(id=request_id)
    except ServiceRequest.DoesNotExist:
        raise RequestNotFoundError(f"Request {request_id} not found")
    require_side(request, user)
    return request


# ===================== Client Operations =====================

@transaction.atomic
def create_request(
    client,
    service_type: str,
    origin_latitude,
    origin_longitude,
    origin_address: str,
    destination_latitude=None,
    destination_longitude=None,
    destination_address: Optional[str] = None,
    vehicle_type: str = "",
) -> RequestResult:
    """
    Create a new service request and start searching for a provider.

    Raises:
        PermissionDenied: caller is not a client
        InvalidValue: unknown service, bad coordinates, destination mismatch
        ActiveRequestExists: client already has an active request
    """
    if getattr(client, 'role', None) != 'client':
        raise PermissionDenied("Only clients can create service requests")

    if service_type not in dict(SERVICE_TYPE_CHOICES):
        raise InvalidValue(f"Unknown service type: {service_type}")

    if not is_valid_coordinate(origin_latitude, origin_longitude):
        raise InvalidValue("Origin coordinates are invalid")
    if not origin_address:
        raise InvalidValue("Origin address is required")

    has_destination = destination_latitude is not None or destination_longitude is not None
    if requires_destination(service_type):
        if not is_valid_coordinate(destination_latitude, destination_longitude):
            raise InvalidValue(f"A valid destination is required for {service_type}")
    elif has_destination:
        raise InvalidValue(f"{service_type} does not take a destination")

    lock_user(client.id)
    if get_active_request_for_client(client):
        raise ActiveRequestExists("You already have an active service request")

    now = timezone.now()
    request = ServiceRequest.objects.create(
        client=client,
        service_type=service_type,
        vehicle_type=vehicle_type or "",
        origin_latitude=to_coordinate(origin_latitude),
        origin_longitude=to_coordinate(origin_longitude),
        origin_address=origin_address,
        destination_latitude=to_coordinate(destination_latitude) if requires_destination(service_type) else None,
        destination_longitude=to_coordinate(destination_longitude) if requires_destination(service_type) else None,
        destination_address=destination_address if requires_destination(service_type) else None,
        status='idle',
        updated_at=now,
    )

    transition(request, 'searching', actor='client', note='Request created')
    session = search_engine.start_search(request)

    return RequestResult(
        success=True,
        request=request,
        message="Searching for nearby providers...",
        extra={"search_session_id": session.id},
    )


@transaction.atomic
def cancel_request(
    user,
    request_id: int,
    reason_category: str = "other",
    reason_text: str = "",
) -> RequestResult:
    """
    Cancel a request by its client or its engaged provider.

    Cancel wins: open search sessions stop and open payment attempts are
    superseded and released at the gateway. Late steps are no-ops; money that
    still arrives is flagged for a refund.
    """
    request = lock_request(request_id)
    side = require_side(request, user)

    reasons = CLIENT_CANCEL_REASONS if side == 'client' else PROVIDER_CANCEL_REASONS
    if reason_category not in reasons:
        raise InvalidValue(f"Invalid cancellation reason for {side}: {reason_category}")

    return _cancel(request, side, reason_category, reason_text)


@transaction.atomic
def system_cancel_request(
    request_id: int,
    reason_category: str = "auto_canceled",
    reason_text: str = "",
) -> RequestResult:
    """Cancel a request on behalf of the platform."""
    request = lock_request(request_id)
    if reason_category not in SYSTEM_CANCEL_REASONS:
        raise InvalidValue(f"Invalid system cancellation reason: {reason_category}")
    return _cancel(request, 'system', reason_category, reason_text)


def _cancel(request: ServiceRequest, actor: str, reason_category: str, reason_text: str) -> RequestResult:
    from realtime.notifications import notify_provider_event
    from services.payments.coordinator import supersede_open_attempts

    if request.status not in CANCELABLE_STATUSES:
        raise InvalidTransition(f"Cannot cancel - request is already {request.status}")

    offered_ids = []
    session = search_engine.get_open_session(request)
    if session is not None:
        offered_ids = list(session.offered_provider_ids)
    search_engine.close_open_sessions(request, state='canceled')

    superseded = supersede_open_attempts(request, 'request canceled')

    request.canceled_by = actor
    request.canceled_at = timezone.now()
    request.cancel_reason_category = reason_category
    request.cancel_reason_text = reason_text or ""
    transition(
        request, 'canceled', actor=actor, note=reason_category,
        update_fields=['canceled_by', 'canceled_at', 'cancel_reason_category', 'cancel_reason_text'],
    )

    # Offered providers are not in the request's groups yet
    for provider_id in offered_ids:
        if provider_id != request.provider_id:
            _on_commit(notify_provider_event, 'offer_withdrawn', request, provider_id, 'Request canceled.')

    return RequestResult(
        success=True,
        request=request,
        message="Request canceled successfully",
        extra={"payment_attempts_closed": superseded},
    )


@transaction.atomic
def retry_search(client, request_id: int) -> RequestResult:
    """Start a fresh search after the previous one timed out."""
    request = lock_request(request_id)
    require_side(request, client, 'client')
    ensure_status(request, 'searching')

    session = search_engine.retry(request)
    touch(request, update_fields=[])
    return RequestResult(
        success=True,
        request=request,
        message="Searching again for nearby providers...",
        extra={"search_session_id": session.id, "attempt": session.attempt},
    )


@transaction.atomic
def acknowledge_request(client, request_id: int) -> RequestResult:
    """Client dismisses a finished/canceled request; their view returns to idle."""
    request = lock_request(request_id)
    require_side(request, client, 'client')
    if not request.is_terminal:
        raise InvalidTransition("Only finished or canceled requests can be dismissed")

    if request.acknowledged_at is None:
        request.acknowledged_at = timezone.now()
        touch(request, update_fields=['acknowledged_at'])

    return RequestResult(success=True, request=request, message="Ready for a new request")


@transaction.atomic
def confirm_completion(client, request_id: int) -> RequestResult:
    """Client confirms the service was delivered."""
    request = lock_request(request_id)
    require_side(request, client, 'client')
    ensure_status(request, 'pending_client_confirmation')

    _finish(request, actor='client')
    return RequestResult(success=True, request=request, message="Service completed. Thank you!")


@transaction.atomic
def dispute_completion(client, request_id: int, reason: str = "") -> RequestResult:
    """Client reports the service is not done yet; back to in_service."""
    from realtime.notifications import notify_provider_event

    request = lock_request(request_id)
    require_side(request, client, 'client')
    ensure_status(request, 'pending_client_confirmation')

    request.provider_finished_at = None
    transition(
        request, 'in_service', actor='client', note=reason or 'Completion disputed',
        update_fields=['provider_finished_at'],
    )
    _on_commit(
        notify_provider_event, 'completion_disputed', request, request.provider_id,
        reason or 'The client reported the service is not finished yet.',
    )
    return RequestResult(success=True, request=request, message="The provider was notified")


def _finish(request: ServiceRequest, actor: str, auto: bool = False) -> None:
    request.finished_at = timezone.now()
    request.auto_finished = auto
    transition(
        request, 'finished', actor=actor,
        note='Auto-finished' if auto else 'Completion confirmed',
        update_fields=['finished_at', 'auto_finished'],
    )

    User.objects.filter(id__in=[request.client_id, request.provider_id]).update(
        completed_services=F('completed_services') + 1
    )
    ProviderProfile.objects.filter(user_id=request.provider_id).update(
        total_services=F('total_services') + 1
    )


# ===================== Provider Operations =====================

@transaction.atomic
def engage_provider(provider, request_id: int) -> RequestResult:
    """
    An offered provider takes the request. The first provider to engage wins;
    later attempts see the request is no longer searching.
    """
    from realtime.notifications import notify_provider_event, notify_client_event

    try:
        profile = ProviderProfile.objects.get(user=provider)
    except ProviderProfile.DoesNotExist:
        raise ProviderNotAvailableError("Provider profile not found")

    if not profile.is_online:
        raise ProviderNotAvailableError("Please go online before accepting requests")

    request = lock_request(request_id)
    if request.status != 'searching':
        raise InvalidTransition("This request was already taken or canceled")

    if provider.id in request.excluded_provider_ids:
        raise PermissionDenied("You can no longer accept this request")

    if not search_engine.is_offered(request, provider.id):
        raise PermissionDenied("This request was not offered to you")

    lock_user(provider.id)
    if get_active_request_for_provider(provider):
        raise ProviderNotAvailableError("You are already engaged in another request")

    session = search_engine.get_open_session(request, lock=True)
    other_offered = [pid for pid in session.offered_provider_ids if pid != provider.id]
    search_engine.close_session(session)

    request.provider = provider
    request.accepted_at = timezone.now()
    transition(
        request, 'accepted', actor='provider', note=f'Engaged by provider {provider.id}',
        update_fields=['provider', 'accepted_at'],
    )

    _on_commit(notify_client_event, 'provider_engaged', request, 'A provider accepted your request!',
               {'provider_id': provider.id})
    for provider_id in other_offered:
        _on_commit(notify_provider_event, 'offer_withdrawn', request, provider_id,
                   'Another provider accepted this request.')

    return RequestResult(
        success=True,
        request=request,
        message="Request accepted. Agree on the price with the client.",
    )


@transaction.atomic
def decline_request(provider, request_id: int) -> RequestResult:
    """
    An offered provider declines. The provider is excluded for the rest of
    this request and the search moves on right away.
    """
    request = lock_request(request_id)
    ensure_status(request, 'searching')

    if not search_engine.is_offered(request, provider.id):
        raise PermissionDenied("This request was not offered to you")

    if merge_exclusions(request, provider.id):
        touch(request, update_fields=['excluded_provider_ids'])

    session = search_engine.decline(request, provider.id)
    return RequestResult(
        success=True,
        request=request,
        message="Request declined.",
        extra={"search_state": session.state, "radius_km": session.current_radius_km},
    )


@transaction.atomic
def begin_negotiation(user, request_id: int) -> RequestResult:
    """Either party opens the price negotiation."""
    request = lock_request(request_id)
    side = require_side(request, user)
    ensure_status(request, 'accepted')

    transition(request, 'negotiating', actor=side, note='Negotiation started')
    return RequestResult(success=True, request=request, message="Negotiation started")


@transaction.atomic
def withdraw_provider(provider, request_id: int, reason: str = "") -> RequestResult:
    """
    The engaged provider gives up before a price was agreed. The request goes
    back to searching without that provider.
    """
    from realtime.notifications import notify_client_event

    request = lock_request(request_id)
    require_side(request, provider, 'provider')
    ensure_status(request, 'accepted', 'negotiating')
    if request.value_accepted:
        raise InvalidTransition("The price was already agreed; cancel the request instead")

    merge_exclusions(request, provider.id)
    request.provider = None
    request.accepted_at = None
    request.proposed_value = None
    request.last_proposal_by = 'none'
    request.value_accepted = False
    request.agreed_value = None
    request.direct_payment = False
    transition(
        request, 'searching', actor='provider', note=reason or 'Provider withdrew',
        update_fields=[
            'excluded_provider_ids', 'provider', 'accepted_at', 'proposed_value',
            'last_proposal_by', 'value_accepted', 'agreed_value', 'direct_payment',
        ],
    )
    session = search_engine.start_search(request)

    _on_commit(notify_client_event, 'provider_withdrew', request,
               'The provider could not continue. Searching for another one...')

    return RequestResult(
        success=True,
        request=request,
        message="You left this request.",
        extra={"search_session_id": session.id},
    )


@transaction.atomic
def complete_service(provider, request_id: int) -> RequestResult:
    """Provider marks the service done; the client has to confirm it."""
    from realtime.notifications import notify_client_event

    request = lock_request(request_id)
    require_side(request, provider, 'provider')
    ensure_status(request, 'in_service')

    request.provider_finished_at = timezone.now()
    transition(
        request, 'pending_client_confirmation', actor='provider', note='Service completed by provider',
        update_fields=['provider_finished_at'],
    )
    _on_commit(notify_client_event, 'confirm_completion_required', request,
               'The provider finished the service. Please confirm.',
               {'auto_finish_minutes': auto_finish_minutes()})

    return RequestResult(success=True, request=request, message="Waiting for the client to confirm")


# ===================== System Operations =====================

def auto_finish_minutes() -> int:
    return int(getattr(settings, 'AUTO_FINISH_MINUTES', 15))


@transaction.atomic
def auto_finish_request(request_id: int) -> Optional[ServiceRequest]:
    """
    Finish a request whose client did not confirm within AUTO_FINISH_MINUTES.

    Returns the request when it was finished, None when it no longer qualifies.
    """
    from realtime.notifications import notify_client_event, notify_provider_event

    request = lock_request(request_id)
    if request.status != 'pending_client_confirmation' or request.provider_finished_at is None:
        return None
    if request.provider_finished_at > timezone.now() - timedelta(minutes=auto_finish_minutes()):
        return None

    _finish(request, actor='system', auto=True)

    message = 'The service was completed automatically.'
    _on_commit(notify_client_event, 'request_auto_finished', request, message)
    _on_commit(notify_provider_event, 'request_auto_finished', request, request.provider_id, message)
    logger.info("Request %s auto-finished", request.id)
    return request


def auto_finish_overdue_requests() -> int:
    cutoff = timezone.now() - timedelta(minutes=auto_finish_minutes())
    overdue_ids = list(
        ServiceRequest.objects
        .filter(status='pending_client_confirmation', provider_finished_at__lte=cutoff)
        .values_list('id', flat=True)
    )

    finished = 0
    for request_id in overdue_ids:
        if auto_finish_request(request_id):
            finished += 1
    return finished
