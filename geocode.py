# geocode.py
"""
OpenStreetMap Nominatim lookups for the service address.

Geocoding is optional enrichment. Every failure here (network, bad status,
junk JSON) is logged and turned into "no result"; it must never block a
quote or a checkout.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import requests

from submission import GeoPoint

logger = logging.getLogger(__name__)

NOMINATIM_URL = os.environ.get("NOMINATIM_URL", "https://nominatim.openstreetmap.org/search")
# Nominatim's usage policy asks for an identifying User-Agent.
USER_AGENT = os.environ.get("NOMINATIM_USER_AGENT", "ProCanIntake/1.0 (support@procansanitation.com)")
TIMEOUT_SECONDS = float(os.environ.get("NOMINATIM_TIMEOUT", "10"))
MIN_QUERY_LEN = 3


def _search(q: str, limit: int) -> List[Dict[str, Any]]:
    params = {
        "q": q,
        "format": "json",
        "limit": str(limit),
        "addressdetails": "1",
        "countrycodes": "us",
    }
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}

    try:
        r = requests.get(NOMINATIM_URL, params=params, headers=headers, timeout=TIMEOUT_SECONDS)
    except requests.RequestException as e:
        logger.warning("nominatim request failed: %s", e)
        return []

    if r.status_code != 200:
        logger.warning("nominatim returned %s for %r", r.status_code, q)
        return []

    try:
        data = r.json()
    except ValueError:
        logger.warning("nominatim returned non-JSON body")
        return []
    return data if isinstance(data, list) else []


def suggest_addresses(q: str, limit: int = 5) -> List[Dict[str, Any]]:
    """Autocomplete hits for the address field. [] for short queries or failures."""
    q = (q or "").strip()
    if len(q) < MIN_QUERY_LEN:
        return []
    return _search(q, limit)


def geocode_address(address: str) -> Optional[GeoPoint]:
    """Best single match for a full address, or None."""
    q = (address or "").strip()
    if len(q) < MIN_QUERY_LEN:
        return None

    hits = _search(q, 1)
    if not hits:
        return None

    best = hits[0]
    if not isinstance(best, dict) or not best.get("lat") or not best.get("lon"):
        return None
    return GeoPoint(lat=str(best["lat"]), lon=str(best["lon"]), accuracy=str(best.get("type") or ""))
