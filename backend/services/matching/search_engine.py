"""
Progressive radius-expansion search for a provider.

A SearchSession walks an ascending ladder of radii. Each Celery invocation of
``run_search_step`` performs exactly one step under the request's row lock:

    searching         query; found -> provider_found, else re-query until the
                      dwell at this radius has passed -> waiting_cooldown
    provider_found    dwell passed with nobody engaging -> offered providers
                      are excluded for this session -> waiting_cooldown
    waiting_cooldown  deadline passed -> next radius (expanding_radius), or
                      timeout past the end of the ladder
    expanding_radius  query; found -> provider_found, else searching at this
                      radius with a fresh dwell

Every scheduled step carries the session's ``step_token``. Scheduling a new
step bumps the token, so older steps (and steps of closed sessions) are
no-ops.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from chamados.models import ServiceRequest, SearchSession
from chamados.tasks import run_search_step
from services.lifecycle.exceptions import InvalidTransition, PermissionDenied, SearchExhausted
from .geo_index import get_geo_index, ProviderMatch

logger = logging.getLogger(__name__)


def _setting(name: str, default):
    return getattr(settings, name, default)


def radius_ladder() -> List[float]:
    ladder = list(_setting('SEARCH_RADIUS_LADDER_KM', [5, 10, 15, 25]))
    if not ladder or ladder != sorted(ladder):
        raise ValueError("SEARCH_RADIUS_LADDER_KM must be a non-empty ascending list")
    return ladder


def dwell_seconds() -> int:
    return int(_setting('SEARCH_DWELL_SECONDS', 30))


def cooldown_seconds() -> int:
    return int(_setting('SEARCH_COOLDOWN_SECONDS', 10))


def query_interval_seconds() -> int:
    return int(_setting('SEARCH_QUERY_INTERVAL_SECONDS', 5))


# ===================== Session management =====================

def get_open_session(request: ServiceRequest, lock: bool = False) -> Optional[SearchSession]:
    qs = SearchSession.objects.filter(request=request, closed_at__isnull=True)
    if lock:
        qs = qs.select_for_update()
    return qs.order_by('-created_at', '-id').first()


def get_latest_session(request: ServiceRequest) -> Optional[SearchSession]:
    return SearchSession.objects.filter(request=request).order_by('-created_at', '-id').first()


def start_search(request: ServiceRequest) -> SearchSession:
    """
    Open a fresh session at the smallest radius and schedule its first step.

    Must run inside the transaction that moved the request to 'searching'.
    The session starts from the request's exclusions only.
    """
    previous = SearchSession.objects.filter(request=request).count()
    now = timezone.now()
    session = SearchSession.objects.create(
        request=request,
        attempt=previous + 1,
        radius_ladder=radius_ladder(),
        current_index=0,
        state='searching',
        excluded_provider_ids=list(request.excluded_provider_ids),
        offered_provider_ids=[],
        stage_started_at=now,
    )
    logger.info(
        "Search session %s opened for request %s (attempt %s, ladder=%s)",
        session.id, request.id, session.attempt, session.radius_ladder
    )
    schedule_step(session, countdown=0)
    return session


def schedule_step(session: SearchSession, countdown: float = 0) -> int:
    """Invalidate pending steps and enqueue the next one after commit."""
    session.step_token += 1
    session.save(update_fields=['step_token', 'updated_at'])

    session_id, token = session.id, session.step_token
    delay = max(0, int(round(countdown)))
    transaction.on_commit(
        lambda: run_search_step.apply_async((session_id, token), countdown=delay)
    )
    return token


def close_session(session: SearchSession, state: Optional[str] = None) -> None:
    if session.closed_at is not None:
        return
    if state:
        session.state = state
    session.closed_at = timezone.now()
    session.step_token += 1
    session.save(update_fields=['state', 'closed_at', 'step_token', 'updated_at'])
    logger.info("Search session %s closed (state=%s)", session.id, session.state)


def close_open_sessions(request: ServiceRequest, state: Optional[str] = None) -> int:
    closed = 0
    for session in SearchSession.objects.select_for_update().filter(request=request, closed_at__isnull=True):
        close_session(session, state=state)
        closed += 1
    return closed


def is_offered(request: ServiceRequest, provider_id: int) -> bool:
    session = get_open_session(request)
    return bool(session and session.state != 'timeout' and provider_id in session.offered_provider_ids)


# ===================== Step loop =====================

def run_step(session_id: int, token: int) -> str:
    """
    Execute one step of the search loop.

    Returns a short outcome label used for logging. ExternalUnavailable from
    the geo index propagates untouched so the task can retry.
    """
    with transaction.atomic():
        try:
            session = SearchSession.objects.get(id=session_id)
        except SearchSession.DoesNotExist:
            logger.warning("Search session %s not found", session_id)
            return 'missing'

        # Lock order: request row first, then session
        request = ServiceRequest.objects.select_for_update().get(id=session.request_id)
        session = SearchSession.objects.select_for_update().get(id=session_id)

        if session.step_token != token or not session.is_open:
            logger.debug("Stale search step for session %s (token %s)", session_id, token)
            return 'stale'

        if request.status != 'searching':
            close_session(session)
            return 'closed'

        handler = _STEP_HANDLERS.get(session.state)
        if handler is None:
            logger.warning("Search session %s in unexpected state %s", session.id, session.state)
            return 'stale'

        outcome = handler(session, request, timezone.now())
        logger.info(
            "Search step request=%s session=%s radius=%skm -> %s",
            request.id, session.id, session.current_radius_km, outcome
        )
        return outcome


def _query(session: SearchSession, request: ServiceRequest) -> List[ProviderMatch]:
    matches = get_geo_index().query(
        request.service_type,
        (request.origin_latitude, request.origin_longitude),
        session.current_radius_km,
        excluding=session.excluded_provider_ids,
    )
    session.last_query_at = timezone.now()
    session.last_found_count = len(matches)
    return matches


def _offer(session: SearchSession, request: ServiceRequest, matches: List[ProviderMatch], now) -> str:
    from realtime.notifications import notify_provider_offers, notify_provider_found

    previous = set(session.offered_provider_ids)
    offered = [m.provider_id for m in matches]
    session.offered_provider_ids = offered
    session.state = 'provider_found'
    session.stage_started_at = now
    session.save()
    schedule_step(session, countdown=dwell_seconds())

    new_ids = [pid for pid in offered if pid not in previous]
    radius = session.current_radius_km
    request_ref = request
    transaction.on_commit(lambda: notify_provider_offers(request_ref, new_ids, radius))
    transaction.on_commit(lambda: notify_provider_found(request_ref, len(offered), radius))
    return 'provider_found'


def _enter_cooldown(session: SearchSession, now) -> str:
    session.state = 'waiting_cooldown'
    session.cooldown_deadline = now + timedelta(seconds=cooldown_seconds())
    session.save()
    schedule_step(session, countdown=cooldown_seconds())
    return 'cooldown'


def _advance(session: SearchSession, request: ServiceRequest, now) -> str:
    """Move to the next radius, or time out past the end of the ladder."""
    session.current_index += 1
    if session.current_index >= len(session.radius_ladder):
        return _timeout(session, request)
    session.state = 'expanding_radius'
    session.stage_started_at = now
    return _step_expanding(session, request, now)


def _timeout(session: SearchSession, request: ServiceRequest) -> str:
    from realtime.notifications import notify_client_event, notify_provider_event

    withdrawn = list(session.offered_provider_ids)
    session.current_index = min(session.current_index, len(session.radius_ladder))
    session.offered_provider_ids = []
    session.save()
    close_session(session, state='timeout')

    request_ref = request

    def _notify():
        notify_client_event(
            'search_timeout',
            request_ref,
            'No provider accepted your request. You can try again or cancel.',
            extra={'reason': SearchExhausted.code, 'can_retry': True},
        )
        for provider_id in withdrawn:
            notify_provider_event('offer_withdrawn', request_ref, provider_id, 'This request is no longer available.')

    transaction.on_commit(_notify)
    logger.info("Search for request %s exhausted every radius", request.id)
    return 'timeout'


def _step_searching(session, request, now) -> str:
    matches = _query(session, request)
    if matches:
        return _offer(session, request, matches, now)

    elapsed = (now - session.stage_started_at).total_seconds() if session.stage_started_at else 0
    if elapsed >= dwell_seconds():
        return _enter_cooldown(session, now)

    session.save()
    schedule_step(session, countdown=query_interval_seconds())
    return 'requery'


def _step_provider_found(session, request, now) -> str:
    from realtime.notifications import notify_provider_event

    elapsed = (now - session.stage_started_at).total_seconds() if session.stage_started_at else dwell_seconds()
    if elapsed < dwell_seconds():
        schedule_step(session, countdown=dwell_seconds() - elapsed)
        return 'waiting'

    # Nobody engaged: do not offer to the same providers again this session
    withdrawn = list(session.offered_provider_ids)
    session.excluded_provider_ids = _merge(session.excluded_provider_ids, withdrawn)
    session.offered_provider_ids = []

    request_ref = request

    def _notify():
        for provider_id in withdrawn:
            notify_provider_event('offer_withdrawn', request_ref, provider_id, 'This request is no longer available.')

    transaction.on_commit(_notify)
    return _enter_cooldown(session, now)


def _step_waiting_cooldown(session, request, now) -> str:
    if session.cooldown_deadline and now < session.cooldown_deadline:
        schedule_step(session, countdown=(session.cooldown_deadline - now).total_seconds())
        return 'waiting'
    return _advance(session, request, now)


def _step_expanding(session, request, now) -> str:
    from realtime.notifications import notify_client_event, notify_provider_event

    matches = _query(session, request)
    if matches:
        return _offer(session, request, matches, now)

    # Providers the index no longer returns cannot keep an open offer
    withdrawn = list(session.offered_provider_ids)
    session.offered_provider_ids = []
    session.state = 'searching'
    session.stage_started_at = now
    session.save()
    schedule_step(session, countdown=query_interval_seconds())

    request_ref = request
    radius = session.current_radius_km

    def _notify():
        notify_client_event(
            'search_update', request_ref, f'Searching within {radius} km...', extra={'radius_km': radius}
        )
        for provider_id in withdrawn:
            notify_provider_event('offer_withdrawn', request_ref, provider_id, 'This request is no longer available.')

    transaction.on_commit(_notify)
    return 'expanding'


_STEP_HANDLERS = {
    'searching': _step_searching,
    'provider_found': _step_provider_found,
    'waiting_cooldown': _step_waiting_cooldown,
    'expanding_radius': _step_expanding,
}


def _merge(existing, additions) -> list:
    merged = list(existing or [])
    for item in additions:
        if item not in merged:
            merged.append(item)
    return merged


# ===================== Forced expansion =====================

def decline(request: ServiceRequest, provider_id: int) -> SearchSession:
    """
    Record an offered provider's decline and force an immediate re-query.

    Caller holds the request lock and has already added the provider to the
    request's exclusions. The exclusion reaches the session before the forced
    step is enqueued.
    """
    session = get_open_session(request, lock=True)
    if session is None or session.state == 'timeout':
        raise InvalidTransition("There is no active search for this request")
    if provider_id not in session.offered_provider_ids:
        raise PermissionDenied("This request was not offered to you")

    session.excluded_provider_ids = _merge(session.excluded_provider_ids, [provider_id])
    session.offered_provider_ids = [pid for pid in session.offered_provider_ids if pid != provider_id]

    if not session.offered_provider_ids:
        session.current_index += 1
        if session.current_index >= len(session.radius_ladder):
            _timeout(session, request)
            return session

    session.state = 'expanding_radius'
    session.stage_started_at = timezone.now()
    session.save()
    schedule_step(session, countdown=0)
    logger.info(
        "Provider %s declined request %s; forcing search at %skm",
        provider_id, request.id, session.current_radius_km
    )
    return session


def retry(request: ServiceRequest) -> SearchSession:
    """Open a fresh session after the previous one timed out."""
    latest = get_latest_session(request)
    if latest is None or latest.state != 'timeout':
        raise InvalidTransition("Search can only be retried after it timed out")
    close_open_sessions(request)
    return start_search(request)
