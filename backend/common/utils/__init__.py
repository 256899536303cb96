"""Common utility functions."""

from .geo import calculate_distance, calculate_distance_km, is_valid_coordinate, to_coordinate

__all__ = [
    "calculate_distance",
    "calculate_distance_km",
    "is_valid_coordinate",
    "to_coordinate",
]
