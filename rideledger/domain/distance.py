"""
Journey distance for fare quotes.

Fares are priced on great-circle miles between pickup and dropoff, so a
quote can be reproduced from the stored coordinates alone.  A road-routing
client can replace ``haversine_miles`` without touching the fare rules.
"""

import math

from .entities import Location

EARTH_RADIUS_MILES = 3_958.7613


def haversine_miles(origin: Location, destination: Location) -> float:
    """Great-circle distance in miles."""
    phi1 = math.radians(origin.latitude)
    phi2 = math.radians(destination.latitude)
    half_dphi = math.radians(destination.latitude - origin.latitude) / 2
    half_dlambda = math.radians(destination.longitude - origin.longitude) / 2

    h = math.sin(half_dphi) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(half_dlambda) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))
