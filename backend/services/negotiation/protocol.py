"""
Turn-based price negotiation between client and provider.

Either side may open with a proposal; after that the sides alternate. The
side that did not make the current proposal may accept it, which freezes
``agreed_value`` for the rest of the request's life. Every proposal and the
acceptance leave a system entry in the request chat.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from django.db import transaction

from chamados.models import ServiceRequest, ChatMessage
from services.lifecycle.exceptions import InvalidTransition, InvalidValue
from services.lifecycle.request_lifecycle import RequestResult, lock_request, require_side
from services.lifecycle.state_machine import transition, touch, ensure_status

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
MAX_VALUE = Decimal('99999999.99')
MAX_CHAT_LENGTH = 1000

CHAT_STATUSES = (
    'accepted',
    'negotiating',
    'awaiting_payment',
    'in_service',
    'pending_client_confirmation',
)


@dataclass(frozen=True)
class NegotiationState:
    proposed_value: Optional[Decimal]
    last_proposal_by: str
    value_accepted: bool
    agreed_value: Optional[Decimal]
    direct_payment: bool
    awaiting_side: Optional[str]
    can_confirm: bool


def get_negotiation_state(request: ServiceRequest) -> NegotiationState:
    if request.value_accepted or request.last_proposal_by == 'none':
        awaiting = None
    else:
        awaiting = 'provider' if request.last_proposal_by == 'client' else 'client'

    return NegotiationState(
        proposed_value=request.proposed_value,
        last_proposal_by=request.last_proposal_by,
        value_accepted=request.value_accepted,
        agreed_value=request.agreed_value,
        direct_payment=request.direct_payment,
        awaiting_side=awaiting,
        can_confirm=request.value_accepted and request.status == 'negotiating',
    )


def parse_value(raw) -> Decimal:
    """Parse a proposed price; must be a finite amount greater than zero."""
    if raw is None or isinstance(raw, bool):
        raise InvalidValue("A value is required")
    try:
        value = Decimal(str(raw).strip().replace(',', '.'))
    except (InvalidOperation, ValueError):
        raise InvalidValue(f"Invalid value: {raw!r}")

    if not value.is_finite():
        raise InvalidValue("Value must be a finite number")
    value = value.quantize(CENTS, rounding=ROUND_HALF_UP)
    if value <= 0:
        raise InvalidValue("Value must be greater than zero")
    if value > MAX_VALUE:
        raise InvalidValue("Value is too large")
    return value


def format_brl(value: Decimal) -> str:
    return f"R$ {Decimal(value).quantize(CENTS):.2f}"


def _system_message(request: ServiceRequest, text: str) -> ChatMessage:
    message = ChatMessage.objects.create(request=request, sender=None, sender_type='system', message=text)
    _broadcast_chat(request, message)
    return message


def _broadcast_chat(request: ServiceRequest, message: ChatMessage) -> None:
    from realtime.broadcast import broadcast_request_update

    extra = {
        'message_id': message.id,
        'sender_type': message.sender_type,
        'sender_id': message.sender_id,
        'message': message.message,
        'created_at': message.created_at.isoformat(),
    }
    transaction.on_commit(lambda: broadcast_request_update(request, 'chat_message', extra))


def _broadcast_negotiation(request: ServiceRequest, event: str) -> None:
    from realtime.broadcast import broadcast_request_update

    state = get_negotiation_state(request)
    extra = {
        'proposed_value': str(state.proposed_value) if state.proposed_value is not None else None,
        'last_proposal_by': state.last_proposal_by,
        'value_accepted': state.value_accepted,
        'agreed_value': str(state.agreed_value) if state.agreed_value is not None else None,
        'direct_payment': state.direct_payment,
        'awaiting_side': state.awaiting_side,
    }
    transaction.on_commit(lambda: broadcast_request_update(request, event, extra))


# ===================== Operations =====================

@transaction.atomic
def propose(user, request_id: int, raw_value) -> RequestResult:
    """
    Propose a price. The first proposal while 'accepted' opens the
    negotiation. A side cannot propose twice in a row.
    """
    value = parse_value(raw_value)

    request = lock_request(request_id)
    side = require_side(request, user)
    ensure_status(request, 'accepted', 'negotiating')

    if request.value_accepted:
        raise InvalidTransition("The value was already accepted")
    if request.last_proposal_by == side:
        raise InvalidTransition("Wait for the other party to respond to your proposal")

    request.proposed_value = value
    request.last_proposal_by = side
    request.value_accepted = False
    fields = ['proposed_value', 'last_proposal_by', 'value_accepted']

    if request.status == 'accepted':
        transition(request, 'negotiating', actor=side, note='First proposal', update_fields=fields)
    else:
        touch(request, update_fields=fields)

    _system_message(request, f"Proposed value: {format_brl(value)}")
    _broadcast_negotiation(request, 'value_proposed')
    logger.info("Request %s: %s proposed %s", request.id, side, value)

    return RequestResult(success=True, request=request, message="Proposal sent")


@transaction.atomic
def accept_value(user, request_id: int) -> RequestResult:
    """Accept the other side's proposal. Accepting twice changes nothing."""
    request = lock_request(request_id)
    side = require_side(request, user)

    if request.value_accepted:
        return RequestResult(
            success=True,
            request=request,
            message="Value already accepted",
            extra={"already_accepted": True},
        )

    ensure_status(request, 'negotiating')
    if request.proposed_value is None:
        raise InvalidTransition("There is no proposal to accept")
    if request.last_proposal_by == side:
        raise InvalidTransition("You cannot accept your own proposal")

    request.value_accepted = True
    request.agreed_value = request.proposed_value
    touch(request, update_fields=['value_accepted', 'agreed_value'])

    _system_message(request, f"Value accepted: {format_brl(request.agreed_value)}")
    _broadcast_negotiation(request, 'value_accepted')
    logger.info("Request %s: value %s accepted by %s", request.id, request.agreed_value, side)

    return RequestResult(
        success=True,
        request=request,
        message="Value accepted",
        extra={"already_accepted": False},
    )


@transaction.atomic
def confirm_and_proceed(client, request_id: int) -> RequestResult:
    """Client confirms the agreed value and moves on to payment."""
    request = lock_request(request_id)
    require_side(request, client, 'client')
    ensure_status(request, 'negotiating')
    if not request.value_accepted:
        raise InvalidTransition("A value must be accepted before proceeding to payment")

    request.payment_status = 'pending'
    transition(
        request, 'awaiting_payment', actor='client', note=f"Agreed value {request.agreed_value}",
        update_fields=['payment_status'],
    )
    return RequestResult(success=True, request=request, message="Proceed to payment")


@transaction.atomic
def set_direct_payment(user, request_id: int, enabled: bool) -> RequestResult:
    """Agree to settle directly with the provider instead of through the app."""
    request = lock_request(request_id)
    require_side(request, user)
    ensure_status(request, 'negotiating')
    if not request.value_accepted:
        raise InvalidTransition("Direct payment can only be set after the value is accepted")

    request.direct_payment = bool(enabled)
    touch(request, update_fields=['direct_payment'])
    _broadcast_negotiation(request, 'direct_payment_changed')

    return RequestResult(success=True, request=request, message="Payment preference updated")


@transaction.atomic
def send_chat_message(user, request_id: int, text: str) -> ChatMessage:
    request = lock_request(request_id)
    side = require_side(request, user)
    ensure_status(request, *CHAT_STATUSES)

    text = (text or "").strip()
    if not text:
        raise InvalidValue("Message cannot be empty")
    if len(text) > MAX_CHAT_LENGTH:
        raise InvalidValue(f"Message is longer than {MAX_CHAT_LENGTH} characters")

    message = ChatMessage.objects.create(request=request, sender=user, sender_type=side, message=text)
    _broadcast_chat(request, message)
    return message


def list_chat_messages(user, request_id: int):
    from services.lifecycle.request_lifecycle import get_request_for_participant

    request = get_request_for_participant(user, request_id)
    return request.chat_messages.select_related('sender').order_by('created_at', 'id')
