"""
Provider matching service.

This module handles:
    - Proximity queries over online providers (database or Redis GEO)
    - Progressive radius-expansion search sessions
    - Forced expansion when an offered provider declines
"""

from .geo_index import ProviderMatch, GeoIndex, DatabaseGeoIndex, RedisGeoIndex, get_geo_index

__all__ = [
    "ProviderMatch",
    "GeoIndex",
    "DatabaseGeoIndex",
    "RedisGeoIndex",
    "get_geo_index",
]
