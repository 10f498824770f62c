"""Geocoding services."""

from .cache import GeocodeCache, get_geocode_cache, normalize_address
from .geocoder import Geocoder, GeocodingProvider, NominatimGeocodingProvider

__all__ = [
    "GeocodeCache",
    "Geocoder",
    "GeocodingProvider",
    "NominatimGeocodingProvider",
    "get_geocode_cache",
    "normalize_address",
]
