"""
Redis GEO-based provider location index.

This module provides:
- Geospatial indexing of online provider positions using Redis GEO
- Provider metadata (services offered, radar range) stored beside the position
- Fast proximity queries for the matching engine

Architecture:
- Online providers are indexed in a Redis GEO set for fast GEOSEARCH queries
- Metadata lives in a hash per provider with a TTL, so silent providers age out
- Going offline removes the provider from the set immediately
"""

from __future__ import annotations

import logging
from typing import Dict, Any, List, Optional, Iterable
from dataclasses import dataclass, field

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


# ---------------------- Configuration ----------------------

REDIS_GEO_CONFIG = {
    # Key names
    "PROVIDERS_GEO_KEY": "providers:geo",          # GEOADD key for provider positions
    "PROVIDER_META_PREFIX": "provider:meta:",      # HSET for provider metadata

    # Metadata expires when a provider stops sending positions
    "PROVIDER_META_TTL": 300,
}


# ---------------------- Redis Connection ----------------------

def get_redis_client() -> redis.Redis:
    """Get Redis client for GEO operations."""
    return redis.Redis.from_url(
        getattr(settings, 'REDIS_GEO_URL', settings.CELERY_BROKER_URL),
        decode_responses=True,
        socket_timeout=3,
    )


# ---------------------- Provider Location Index ----------------------

@dataclass
class IndexedProvider:
    """Provider position as stored in the GEO index."""
    provider_id: int
    latitude: float
    longitude: float
    services_offered: List[str] = field(default_factory=list)
    radar_range_km: Optional[float] = None
    distance_km: Optional[float] = None


class ProviderLocationIndex:
    """
    Redis GEO-based provider location index.

    Provides:
    - Update provider position (GEOADD + metadata)
    - Remove provider when it goes offline
    - Query providers near a point (GEOSEARCH)

    Redis errors are raised as redis.RedisError; callers decide whether that
    means "unavailable" or "ignore".
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self._redis = redis_client or get_redis_client()
        self._config = REDIS_GEO_CONFIG

    def _meta_key(self, provider_id) -> str:
        return f"{self._config['PROVIDER_META_PREFIX']}{provider_id}"

    def update_provider(
        self,
        provider_id: int,
        lat: float,
        lon: float,
        services_offered: Iterable[str] = (),
        radar_range_km: Optional[float] = None,
    ) -> None:
        geo_key = self._config["PROVIDERS_GEO_KEY"]
        meta_key = self._meta_key(provider_id)

        pipe = self._redis.pipeline()
        pipe.geoadd(geo_key, (lon, lat, str(provider_id)))
        pipe.hset(meta_key, mapping={
            "provider_id": str(provider_id),
            "services": ",".join(services_offered),
            "radar_range_km": "" if radar_range_km is None else str(radar_range_km),
        })
        pipe.expire(meta_key, self._config["PROVIDER_META_TTL"])
        pipe.execute()

    def remove_provider(self, provider_id: int) -> None:
        """Remove provider from GEO index and drop its metadata."""
        pipe = self._redis.pipeline()
        pipe.zrem(self._config["PROVIDERS_GEO_KEY"], str(provider_id))
        pipe.delete(self._meta_key(provider_id))
        pipe.execute()

    def search(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        service_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[IndexedProvider]:
        """
        Query indexed providers using GEOSEARCH, nearest first.

        Entries whose metadata has expired are treated as stale and skipped.
        """
        results = self._redis.geosearch(
            self._config["PROVIDERS_GEO_KEY"],
            longitude=lon,
            latitude=lat,
            radius=radius_km,
            unit="km",
            withdist=True,
            withcoord=True,
            sort="ASC",
            count=limit * 2,  # Fetch more to filter by service
        )

        providers: List[IndexedProvider] = []
        for member, distance, coords in results:
            meta: Dict[str, Any] = self._redis.hgetall(self._meta_key(member))
            if not meta:
                continue

            services = [s for s in meta.get("services", "").split(",") if s]
            if service_type and service_type not in services:
                continue

            radar = meta.get("radar_range_km")
            providers.append(IndexedProvider(
                provider_id=int(member),
                latitude=coords[1],
                longitude=coords[0],
                services_offered=services,
                radar_range_km=float(radar) if radar else None,
                distance_km=float(distance),
            ))

            if len(providers) >= limit:
                break

        return providers


# ---------------------- Singleton Instance ----------------------

_provider_location_index: Optional[ProviderLocationIndex] = None


def get_provider_location_index() -> ProviderLocationIndex:
    """Get singleton ProviderLocationIndex instance."""
    global _provider_location_index
    if _provider_location_index is None:
        _provider_location_index = ProviderLocationIndex()
    return _provider_location_index
