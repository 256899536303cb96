import logging

import redis
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.utils import is_valid_coordinate, to_coordinate
from providers.models import ProviderProfile
from realtime.broadcast import publish_provider_location
from realtime.geo import get_provider_location_index
from services.lifecycle.exceptions import InvalidValue, ProviderNotAvailableError

logger = logging.getLogger(__name__)


def _uses_redis_index() -> bool:
    return getattr(settings, 'GEO_INDEX_BACKEND', 'database') == 'redis'


def _sync_geo_index(profile: ProviderProfile):
    """Mirror the profile into the Redis GEO index; failures are logged only."""
    if not _uses_redis_index():
        return
    try:
        index = get_provider_location_index()
        if profile.is_online and profile.has_location:
            index.update_provider(
                profile.user_id,
                float(profile.current_latitude),
                float(profile.current_longitude),
                services_offered=profile.services_offered or [],
                radar_range_km=profile.radar_range_km,
            )
        else:
            index.remove_provider(profile.user_id)
    except redis.RedisError:
        logger.exception("Failed to sync provider %s into the geo index", profile.user_id)


# PROVIDER ONLINE / OFFLINE
def set_provider_online(profile: ProviderProfile, is_online: bool):
    """
    Toggle availability. Going offline is refused while the provider is
    engaged in an active request.
    """
    from services.lifecycle.request_lifecycle import get_active_request_for_provider, lock_user

    with transaction.atomic():
        # Same lock engage_provider takes before its own check
        lock_user(profile.user_id)
        if not is_online and get_active_request_for_provider(profile.user):
            raise ProviderNotAvailableError("Finish or cancel your current request before going offline")

        profile.is_online = is_online
        profile.save(update_fields=["is_online"])
    _sync_geo_index(profile)

    logger.info("Provider %s is now %s", profile.user_id, "online" if is_online else "offline")
    return profile


def update_provider_location(profile: ProviderProfile, lat, lon, address: str = "", heading=None):
    """
    Update provider location. Used by:
    - HTTP fallback
    - WebSocket provider tracking events

    While the provider is engaged, the position is streamed to the request.
    """
    if not is_valid_coordinate(lat, lon):
        raise InvalidValue("Invalid coordinates")

    profile.current_latitude = to_coordinate(lat)
    profile.current_longitude = to_coordinate(lon)
    profile.last_location_update = timezone.now()
    fields = ["current_latitude", "current_longitude", "last_location_update"]
    if address:
        profile.current_address = address
        fields.append("current_address")
    profile.save(update_fields=fields)

    _sync_geo_index(profile)
    publish_provider_location(profile.user_id, float(lat), float(lon), heading=heading)
    return profile


def set_services_offered(profile: ProviderProfile, services_offered):
    profile.services_offered = list(dict.fromkeys(services_offered))
    profile.save(update_fields=["services_offered"])
    _sync_geo_index(profile)
    return profile
