"""
Provider proximity queries for the matching engine.

Two backends answer the same question, "online providers offering S within
R km of P, excluding X":

    - DatabaseGeoIndex: ORM scan of online profiles + haversine (default)
    - RedisGeoIndex: Redis GEOSEARCH over the index kept by location updates

Select one with ``settings.GEO_INDEX_BACKEND`` ('database' or 'redis').
Results are sorted closest first. Providers already engaged in an active
request are never returned.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

import redis
from django.conf import settings
from django.db import DatabaseError

from chamados.models import ServiceRequest, PROVIDER_BOUND_STATUSES, TERMINAL_STATUSES
from common.utils import calculate_distance_km
from providers.models import ProviderProfile
from services.lifecycle.exceptions import ExternalUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderMatch:
    provider_id: int
    latitude: float
    longitude: float
    distance_km: float


def busy_provider_ids() -> Set[int]:
    """Providers bound to a request that has not finished yet."""
    busy_statuses = [s for s in PROVIDER_BOUND_STATUSES if s not in TERMINAL_STATUSES]
    return set(
        ServiceRequest.objects
        .filter(status__in=busy_statuses, provider__isnull=False)
        .values_list('provider_id', flat=True)
    )


class GeoIndex:
    """Interface shared by the geo index backends."""

    def query(
        self,
        service_type: str,
        origin: Tuple[float, float],
        radius_km: float,
        excluding: Iterable[int] = (),
    ) -> List[ProviderMatch]:
        raise NotImplementedError


class DatabaseGeoIndex(GeoIndex):

    def query(self, service_type, origin, radius_km, excluding=()):
        lat, lon = float(origin[0]), float(origin[1])
        excluded = set(excluding)

        try:
            excluded |= busy_provider_ids()
            profiles = list(
                ProviderProfile.objects
                .filter(
                    is_online=True,
                    current_latitude__isnull=False,
                    current_longitude__isnull=False,
                )
                .exclude(user_id__in=excluded)
            )
        except DatabaseError as exc:
            raise ExternalUnavailable(f"Provider lookup failed: {exc}") from exc

        matches: List[ProviderMatch] = []
        for profile in profiles:
            if not profile.offers(service_type):
                continue
            p_lat = float(profile.current_latitude)
            p_lon = float(profile.current_longitude)
            distance = calculate_distance_km(lat, lon, p_lat, p_lon)
            # Within the search radius and within what the provider accepts
            if distance <= radius_km and distance <= profile.radar_range_km:
                matches.append(ProviderMatch(profile.user_id, p_lat, p_lon, round(distance, 3)))

        matches.sort(key=lambda m: m.distance_km)
        return matches


class RedisGeoIndex(GeoIndex):

    def __init__(self, location_index=None):
        self._location_index = location_index

    @property
    def location_index(self):
        if self._location_index is None:
            from realtime.geo import get_provider_location_index
            self._location_index = get_provider_location_index()
        return self._location_index

    def query(self, service_type, origin, radius_km, excluding=()):
        lat, lon = float(origin[0]), float(origin[1])
        try:
            indexed = self.location_index.search(lat, lon, radius_km, service_type=service_type)
        except redis.RedisError as exc:
            raise ExternalUnavailable(f"Geo index unreachable: {exc}") from exc

        excluded = set(excluding) | busy_provider_ids()
        matches = []
        for entry in indexed:
            if entry.provider_id in excluded:
                continue
            if entry.radar_range_km is not None and entry.distance_km > entry.radar_range_km:
                continue
            matches.append(ProviderMatch(
                entry.provider_id, entry.latitude, entry.longitude, round(entry.distance_km, 3)
            ))
        return matches


_BACKENDS = {
    'database': DatabaseGeoIndex,
    'redis': RedisGeoIndex,
}


def get_geo_index(backend: Optional[str] = None) -> GeoIndex:
    name = backend or getattr(settings, 'GEO_INDEX_BACKEND', 'database')
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown GEO_INDEX_BACKEND: {name}")
