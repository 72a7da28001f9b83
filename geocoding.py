from __future__ import annotations

import json
import logging
from typing import Any, List, Optional
from urllib.parse import quote

import requests

from config import Config
from exceptions import GeocodingError

logger = logging.getLogger(__name__)


def parse_coordinates(raw: Any) -> Optional[List[float]]:
    """Return ``[lng, lat]`` when ``raw`` is a literal coordinate pair.

    Accepts a list/tuple or its JSON text. A bare number is not a pair, and
    neither is one outside longitude -180..180 or latitude -90..90.
    """
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value):
        return None
    lng, lat = float(value[0]), float(value[1])
    if not (-180 <= lng <= 180 and -90 <= lat <= 90):
        return None
    return [lng, lat]


class GeocodingClient:
    def __init__(self, config: Config, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def forward_geocode(self, query: str) -> List[float]:
        if not self.config.mapbox_token:
            raise GeocodingError("MAPBOX_TOKEN is not configured")
        url = "{}/geocoding/v5/mapbox.places/{}.json".format(
            self.config.mapbox_api_url.rstrip("/"), quote(query, safe="")
        )
        logger.debug("Forward geocoding %r", query)
        try:
            resp = self.session.get(
                url,
                params={"access_token": self.config.mapbox_token, "limit": 1},
                headers={"Accept": "application/json"},
                timeout=self.config.geocoding_timeout,
            )
        except requests.RequestException as exc:
            raise GeocodingError(f"Geocoding request failed: {exc}") from exc
        if resp.status_code != 200:
            raise GeocodingError(f"Geocoding service answered {resp.status_code} for {query!r}")
        try:
            features = resp.json().get("features") or []
        except ValueError as exc:
            raise GeocodingError("Geocoding service returned invalid JSON") from exc
        if not features:
            raise GeocodingError(f"No location found for {query!r}")
        coordinates = features[0].get("geometry", {}).get("coordinates")
        if not coordinates or len(coordinates) != 2:
            raise GeocodingError(f"No coordinates in geocoding result for {query!r}")
        return [float(coordinates[0]), float(coordinates[1])]

    def resolve(self, location: str) -> List[float]:
        coordinates = parse_coordinates(location)
        if coordinates is not None:
            return coordinates
        return self.forward_geocode(location)
