"""Celery tasks for service request background processing."""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=5)
def run_search_step(self, session_id: int, token: int):
    """
    Run one step of a request's provider search.

    Scheduled by the search engine with the session's current step token;
    a step whose token is outdated does nothing. When the geo index is
    unreachable the step is retried with exponential backoff and the client
    is told the search is degraded.
    """
    from services.lifecycle.exceptions import ExternalUnavailable
    from services.matching.search_engine import run_step

    try:
        return run_step(session_id, token)
    except ExternalUnavailable as exc:
        logger.warning("Search step for session %s failed: %s (retry %s)", session_id, exc, self.request.retries)
        _notify_search_degraded(session_id)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


def _notify_search_degraded(session_id: int):
    from chamados.models import SearchSession
    from realtime.notifications import notify_client_event

    session = SearchSession.objects.select_related('request').filter(id=session_id).first()
    if session is None:
        return
    notify_client_event(
        'search_degraded',
        session.request,
        'Provider search is temporarily unavailable. We will keep trying.',
    )


@shared_task
def poll_payment_status(attempt_id: int):
    """
    Ask the gateway whether an instant-transfer payment has settled.

    Re-schedules itself every PAYMENT_POLL_INTERVAL_SECONDS until the attempt
    leaves 'confirming' or the polling ceiling passes.
    """
    from services.payments.coordinator import poll_attempt

    return poll_attempt(attempt_id)


@shared_task(bind=True, max_retries=5)
def release_payment_intent(self, attempt_id: int):
    """Close the gateway side of a superseded attempt so it cannot be paid."""
    from services.lifecycle.exceptions import ExternalUnavailable
    from services.payments.coordinator import release_attempt

    try:
        return release_attempt(attempt_id)
    except ExternalUnavailable as exc:
        logger.warning("Releasing attempt %s failed: %s (retry %s)", attempt_id, exc, self.request.retries)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


@shared_task
def auto_finish_pending_confirmations():
    """
    Finish requests the client never confirmed after AUTO_FINISH_MINUTES.

    Run periodically by Celery beat.
    """
    from services.lifecycle import auto_finish_overdue_requests

    finished = auto_finish_overdue_requests()
    if finished:
        logger.info("Auto-finished %d request(s)", finished)
    return finished
