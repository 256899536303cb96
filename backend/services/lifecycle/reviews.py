"""
Post-completion reviews.

Once a request is finished each side may rate the other once. Client reviews
feed the provider's average rating.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP

from django.db import transaction
from django.db.models import Avg

from chamados.models import Review
from providers.models import ProviderProfile
from .exceptions import InvalidTransition, InvalidValue
from .request_lifecycle import get_request_for_participant, lock_request, require_side

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 500


def _validate(rating, tags, comment):
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise InvalidValue("Rating must be a whole number from 1 to 5")
    if not 1 <= rating <= 5:
        raise InvalidValue("Rating must be a whole number from 1 to 5")

    tags = list(dict.fromkeys(tags or []))
    unknown = [tag for tag in tags if tag not in Review.REVIEW_TAGS]
    if unknown:
        raise InvalidValue(f"Unknown review tags: {', '.join(unknown)}")

    comment = (comment or "").strip()
    if len(comment) > MAX_COMMENT_LENGTH:
        raise InvalidValue(f"Comment is limited to {MAX_COMMENT_LENGTH} characters")
    return rating, tags, comment


def update_provider_rating(provider_id: int) -> Decimal:
    """Recompute the provider's rating from every client review they received."""
    average = (
        Review.objects
        .filter(reviewed_id=provider_id, reviewer_side='client')
        .aggregate(avg=Avg('rating'))['avg']
    )
    rating = Decimal(str(average or 5)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    ProviderProfile.objects.filter(user_id=provider_id).update(rating=rating)
    return rating


@transaction.atomic
def submit_review(user, request_id: int, rating, tags=None, comment: str = "") -> Review:
    """
    Rate the other party of a finished request.

    Raises:
        PermissionDenied: caller is not a participant
        InvalidTransition: request not finished, or this side already reviewed
        InvalidValue: rating outside 1..5, unknown tag, comment too long
    """
    request = lock_request(request_id)
    side = require_side(request, user)
    if request.status != 'finished':
        raise InvalidTransition("Only finished requests can be reviewed")

    rating, tags, comment = _validate(rating, tags, comment)

    if Review.objects.filter(request=request, reviewer_side=side).exists():
        raise InvalidTransition("You already reviewed this request")

    reviewed_id = request.provider_id if side == 'client' else request.client_id
    review = Review.objects.create(
        request=request,
        reviewer=user,
        reviewed_id=reviewed_id,
        reviewer_side=side,
        rating=rating,
        tags=tags,
        comment=comment,
    )

    if side == 'client':
        update_provider_rating(reviewed_id)

    logger.info("Request %s reviewed by %s: %s stars", request.id, side, rating)
    return review


def list_reviews(user, request_id: int):
    request = get_request_for_participant(user, request_id)
    return request.reviews.select_related('reviewer', 'reviewed')
