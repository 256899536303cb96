"""
Payment settlement for service requests.

Two confirmation topologies end in the same place:

    - card / wallet: the gateway answers synchronously inside begin_payment
    - instant_transfer: the client is sent to a hosted checkout; the result
      arrives later by gateway push (webhook) or by bounded polling

Whichever confirmation lands first moves the request to 'in_service';
repeated confirmations are no-ops, and a canceled request is never revived.
Replaced attempts have their gateway intents released; money that still
arrives for a paid or canceled request is flagged for a refund.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from chamados.models import ServiceRequest, PaymentAttempt
from chamados.tasks import poll_payment_status, release_payment_intent
from services.lifecycle.exceptions import (
    InvalidTransition,
    InvalidValue,
    PaymentFailed,
    PaymentUnconfirmed,
    ExternalUnavailable,
)
from services.lifecycle.request_lifecycle import RequestResult, lock_request, require_side
from services.lifecycle.state_machine import transition, touch, ensure_status
from .gateway import get_gateway

logger = logging.getLogger(__name__)

PAYMENT_METHODS = dict(ServiceRequest.PAYMENT_METHOD_CHOICES)


def poll_interval_seconds() -> int:
    return int(getattr(settings, 'PAYMENT_POLL_INTERVAL_SECONDS', 2))


def poll_ceiling_seconds() -> int:
    return int(getattr(settings, 'PAYMENT_POLL_CEILING_SECONDS', 120))


def _broadcast_payment(request: ServiceRequest, attempt: Optional[PaymentAttempt] = None, **extra) -> None:
    from realtime.broadcast import broadcast_request_update

    payload = {
        'payment_status': request.payment_status,
        'payment_method': request.payment_method,
        'attempt_id': attempt.id if attempt else None,
        **extra,
    }
    transaction.on_commit(lambda: broadcast_request_update(request, 'payment_updated', payload))


def _schedule_poll(attempt: PaymentAttempt, countdown: Optional[int] = None) -> None:
    attempt_id = attempt.id
    delay = poll_interval_seconds() if countdown is None else countdown
    transaction.on_commit(lambda: poll_payment_status.apply_async((attempt_id,), countdown=delay))


def _lock_attempt(request: ServiceRequest, attempt_id: int) -> PaymentAttempt:
    try:
        return PaymentAttempt.objects.select_for_update().get(id=attempt_id, request=request)
    except PaymentAttempt.DoesNotExist:
        raise InvalidValue(f"Payment attempt {attempt_id} not found for this request")


def supersede_open_attempts(request: ServiceRequest, reason: str) -> int:
    """
    Close every open attempt of a locked request. Their gateway intents are
    released after commit so they can no longer be paid.
    """
    open_attempts = list(
        PaymentAttempt.objects.select_for_update().filter(
            request=request, status__in=['pending', 'confirming']
        )
    )
    for attempt in open_attempts:
        attempt.status = 'superseded'
        attempt.failure_reason = reason
        attempt.save(update_fields=['status', 'failure_reason'])
        if attempt.gateway_reference:
            attempt_id = attempt.id
            transaction.on_commit(lambda attempt_id=attempt_id: release_payment_intent.delay(attempt_id))
        logger.info("Request %s: payment attempt %s superseded (%s)", request.id, attempt.id, reason)
    return len(open_attempts)


def release_attempt(attempt_id: int) -> bool:
    attempt = PaymentAttempt.objects.filter(id=attempt_id).first()
    if attempt is None or attempt.status != 'superseded' or not attempt.gateway_reference:
        return False
    try:
        return get_gateway().cancel_intent(attempt.gateway_reference)
    except InvalidValue as exc:
        # A payment that slipped through arrives as a gateway event
        logger.warning("Gateway refused to release attempt %s: %s", attempt.id, exc)
        return False


# ===================== Client Operations =====================

@transaction.atomic
def begin_payment(client, request_id: int, method: str, payment_method_token: str = "") -> RequestResult:
    """
    Start paying the agreed value. Each call opens a fresh attempt and
    supersedes any attempt still open.
    """
    request = lock_request(request_id)
    require_side(request, client, 'client')
    ensure_status(request, 'awaiting_payment')

    if request.payment_confirmed:
        raise InvalidTransition("This request is already paid")
    if method not in PAYMENT_METHODS:
        raise InvalidValue(f"Unknown payment method: {method}")
    if method == 'direct_to_provider' and not request.direct_payment:
        raise InvalidTransition("Direct payment was not agreed during negotiation")

    supersede_open_attempts(request, "replaced by a new payment attempt")

    attempt = PaymentAttempt.objects.create(
        request=request,
        method=method,
        amount=request.agreed_value,
        status='pending',
    )
    request.payment_method = method
    logger.info("Request %s: payment attempt %s opened (%s, %s)", request.id, attempt.id, method, attempt.amount)

    if method == 'direct_to_provider':
        _confirm(request, attempt, via='direct')
        return RequestResult(
            success=True,
            request=request,
            message="Pay the provider directly. Service started.",
            extra={"attempt_id": attempt.id},
        )

    try:
        intent = get_gateway().create_intent(
            request.id, attempt.id, method, request.agreed_value, payment_method_token
        )
    except PaymentFailed as exc:
        _fail(request, attempt, str(exc))
        return RequestResult(
            success=False,
            request=request,
            message=str(exc),
            error_code="payment_failed",
            extra={"attempt_id": attempt.id},
        )

    attempt.gateway_reference = intent.reference
    attempt.client_secret = intent.client_secret
    attempt.checkout_url = intent.checkout_url
    attempt.save(update_fields=['gateway_reference', 'client_secret', 'checkout_url'])

    if intent.confirmed:
        _confirm(request, attempt, via='client')
        return RequestResult(
            success=True,
            request=request,
            message="Payment confirmed. Service started.",
            extra={"attempt_id": attempt.id},
        )

    request.payment_status = 'pending'
    touch(request, update_fields=['payment_method', 'payment_status'])
    _broadcast_payment(request, attempt)
    return RequestResult(
        success=True,
        request=request,
        message="Complete the payment to continue",
        extra={
            "attempt_id": attempt.id,
            "checkout_url": intent.checkout_url,
            "reference": intent.reference,
        },
    )


@transaction.atomic
def payment_returned(client, request_id: int, attempt_id: int) -> RequestResult:
    """
    The client came back from the hosted checkout. Start (or restart) the
    polling window; the webhook may still win the race.
    """
    request = lock_request(request_id)
    require_side(request, client, 'client')
    attempt = _lock_attempt(request, attempt_id)

    if request.payment_confirmed or attempt.status == 'succeeded':
        return RequestResult(success=True, request=request, message="Payment already confirmed")

    ensure_status(request, 'awaiting_payment')
    if attempt.method != 'instant_transfer':
        raise InvalidTransition("Only instant transfers are confirmed after a redirect")
    if not attempt.is_open:
        raise InvalidTransition(f"Payment attempt is {attempt.status}")

    attempt.status = 'confirming'
    attempt.poll_started_at = timezone.now()
    attempt.poll_count = 0
    attempt.save(update_fields=['status', 'poll_started_at', 'poll_count'])

    request.payment_status = 'confirming'
    touch(request, update_fields=['payment_status'])
    _broadcast_payment(request, attempt)
    _schedule_poll(attempt, countdown=0)

    return RequestResult(
        success=True,
        request=request,
        message="Confirming your payment...",
        extra={"attempt_id": attempt.id},
    )


# ===================== Confirmation =====================

@transaction.atomic
def confirm_payment(request_id: int, attempt_id: int, source: str) -> str:
    """
    Record a confirmed payment. Returns:

        'confirmed'        this call moved the request to 'in_service'
        'refund_required'  money arrived for a request that was already paid
                           or canceled; the attempt is flagged for a refund
        'ignored'          repeated confirmation of the same attempt
    """
    request = lock_request(request_id)
    attempt = _lock_attempt(request, attempt_id)

    if attempt.status == 'succeeded':
        logger.info("Attempt %s already confirmed; confirmation via %s ignored", attempt.id, source)
        return 'ignored'
    if request.status == 'canceled' or request.payment_confirmed:
        _flag_refund(request, attempt, via=source)
        return 'refund_required'
    if request.status != 'awaiting_payment':
        logger.warning("Confirmation for request %s in status %s ignored", request.id, request.status)
        return 'ignored'
    if attempt.status in ('superseded', 'failed'):
        logger.warning("Attempt %s was %s but got paid; accepting it", attempt.id, attempt.status)

    _confirm(request, attempt, via=source)
    return 'confirmed'


def _confirm(request: ServiceRequest, attempt: PaymentAttempt, via: str) -> None:
    from realtime.notifications import notify_provider_event

    now = timezone.now()
    attempt.status = 'succeeded'
    attempt.confirmed_via = via
    attempt.confirmed_at = now
    attempt.save(update_fields=['status', 'confirmed_via', 'confirmed_at'])
    supersede_open_attempts(request, "another attempt was paid")

    request.payment_method = attempt.method
    request.payment_confirmed = True
    request.payment_status = 'paid'
    actor = 'client' if via in ('client', 'direct') else 'system'
    transition(
        request, 'in_service', actor=actor, note=f"Payment confirmed via {via}",
        update_fields=['payment_method', 'payment_confirmed', 'payment_status'],
    )

    request_ref, provider_id = request, request.provider_id
    transaction.on_commit(lambda: notify_provider_event(
        'payment_confirmed', request_ref, provider_id, 'Payment confirmed. Head to the client.'
    ))
    logger.info("Request %s paid (attempt %s via %s)", request.id, attempt.id, via)


def _flag_refund(request: ServiceRequest, attempt: PaymentAttempt, via: str) -> None:
    """A second charge went through. Record it and tell the client; the request is left as is."""
    from realtime.notifications import notify_client_event

    attempt.status = 'succeeded'
    attempt.confirmed_via = via
    attempt.confirmed_at = timezone.now()
    attempt.refund_required = True
    attempt.save(update_fields=['status', 'confirmed_via', 'confirmed_at', 'refund_required'])

    logger.warning(
        "Request %s (%s): attempt %s paid %s via %s; refund required",
        request.id, request.status, attempt.id, attempt.amount, via
    )
    _broadcast_payment(request, attempt, refund_required=True)

    request_ref = request
    extra = {'attempt_id': attempt.id, 'amount': str(attempt.amount)}
    transaction.on_commit(lambda: notify_client_event(
        'payment_refund_required',
        request_ref,
        'We received an extra payment for this request. It will be refunded.',
        extra=extra,
    ))


@transaction.atomic
def mark_payment_failed(request_id: int, attempt_id: int, reason: str = "") -> bool:
    """Record a failed attempt. The agreed value stays; the client may retry."""
    request = lock_request(request_id)
    attempt = _lock_attempt(request, attempt_id)

    if request.status != 'awaiting_payment' or request.payment_confirmed:
        return False
    if not attempt.is_open:
        return False

    _fail(request, attempt, reason)
    return True


def _fail(request: ServiceRequest, attempt: PaymentAttempt, reason: str) -> None:
    attempt.status = 'failed'
    attempt.failure_reason = reason or "Payment failed"
    attempt.save(update_fields=['status', 'failure_reason'])

    request.payment_status = 'failed'
    touch(request, update_fields=['payment_method', 'payment_status'])
    _broadcast_payment(request, attempt, failure_reason=attempt.failure_reason)
    logger.info("Request %s: payment attempt %s failed (%s)", request.id, attempt.id, attempt.failure_reason)


# ===================== Background =====================

def poll_attempt(attempt_id: int) -> str:
    """One polling round for an instant-transfer attempt."""
    from realtime.notifications import notify_client_event

    attempt = PaymentAttempt.objects.select_related('request').filter(id=attempt_id).first()
    if attempt is None or attempt.status != 'confirming':
        return 'stopped'

    started = attempt.poll_started_at or attempt.created_at
    if timezone.now() - started > timedelta(seconds=poll_ceiling_seconds()):
        logger.warning(
            "Payment attempt %s still unconfirmed after %ss (%s)",
            attempt.id, poll_ceiling_seconds(), PaymentUnconfirmed.code
        )
        notify_client_event(
            'payment_unconfirmed',
            attempt.request,
            'We could not confirm your payment yet. It will update as soon as it arrives.',
            extra={'reason': PaymentUnconfirmed.code, 'attempt_id': attempt.id},
        )
        return 'ceiling'

    try:
        result = get_gateway().poll_status(attempt.gateway_reference)
    except ExternalUnavailable as exc:
        logger.warning("Polling attempt %s failed: %s", attempt.id, exc)
        result = None

    if result is not None and result.confirmed:
        return confirm_payment(attempt.request_id, attempt.id, source='poll')
    if result is not None and result.failed:
        mark_payment_failed(attempt.request_id, attempt.id, result.reason)
        return 'failed'

    with transaction.atomic():
        updated = PaymentAttempt.objects.filter(id=attempt.id, status='confirming').update(
            poll_count=attempt.poll_count + 1
        )
        if updated:
            _schedule_poll(attempt)
    return 'pending'


def handle_gateway_event(payload: bytes, signature: str) -> Optional[str]:
    """
    Entry point for gateway pushes (webhook). Verifies the signature and
    routes the event to confirm / fail. Returns what was done.
    """
    event = get_gateway().parse_event(payload, signature)
    if not (event.succeeded or event.failed):
        logger.debug("Ignoring gateway event %s", event.type)
        return None

    attempt = None
    if event.reference:
        attempt = PaymentAttempt.objects.filter(gateway_reference=event.reference).first()
    if attempt is None and event.attempt_id:
        attempt = PaymentAttempt.objects.filter(id=event.attempt_id).first()
    if attempt is None:
        logger.warning("Gateway event %s for unknown payment %s", event.type, event.reference)
        return None

    if event.succeeded:
        return confirm_payment(attempt.request_id, attempt.id, source='push')
    return 'failed' if mark_payment_failed(attempt.request_id, attempt.id, event.failure_reason) else 'ignored'
