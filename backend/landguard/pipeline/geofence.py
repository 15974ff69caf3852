"""Geofence confirmation between Stage 2 and Stage 3.

The revenue village from the land record is resolved to a center point
(and, when OpenStreetMap has one, an administrative boundary).  The
seller's reported position is then accepted if it falls inside the
boundary or within ``GEOFENCE_RADIUS_KM`` of the center.

State machine::

    IDLE → RESOLVING → READY ──────────→ CHECKING → VERIFIED
                     ↘ RESOLUTION_FAILED          ↘ OUT_OF_RANGE
                       (manual village → RESOLVING)   (retry → CHECKING)
"""

from __future__ import annotations

import asyncio
import math
import time
import logging
import weakref
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any

import httpx

from landguard.config import (
    GEOFENCE_RADIUS_KM, NOMINATIM_URL, NOMINATIM_USER_AGENT, NOMINATIM_TIMEOUT,
    GEOCODE_MIN_INTERVAL, GEOCODE_STATE, GEOCODE_COUNTRY, TRACE_ENABLED,
)
from landguard.pipeline.errors import GeofenceError, GeofenceResolutionFailed, InputValidationError
from landguard.pipeline.schemas import GeoTarget

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


class GeofenceState(str, Enum):
    IDLE = "IDLE"
    RESOLVING = "RESOLVING"
    READY = "READY"
    RESOLUTION_FAILED = "RESOLUTION_FAILED"
    CHECKING = "CHECKING"
    VERIFIED = "VERIFIED"
    OUT_OF_RANGE = "OUT_OF_RANGE"


# States from which a position check may run
_CHECKABLE = {GeofenceState.READY, GeofenceState.VERIFIED, GeofenceState.OUT_OF_RANGE}


# ═══════════════════════════════════════════════════
# GEOMETRY
# ═══════════════════════════════════════════════════

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    r_lat1 = math.radians(lat1)
    r_lat2 = math.radians(lat2)
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(r_lat1) * math.cos(r_lat2) * math.sin(d_lon / 2.0) ** 2
    )
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_KM * c


def _ring_contains(lon: float, lat: float, ring: list[list[float]]) -> bool:
    """Ray casting test against one linear ring of [lon, lat] pairs."""
    if not ring or len(ring) < 3:
        return False
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = float(ring[i][0]), float(ring[i][1])
        xj, yj = float(ring[j][0]), float(ring[j][1])
        if ((yi > lat) != (yj > lat)) and (
            lon < (xj - xi) * (lat - yi) / (yj - yi) + xi
        ):
            inside = not inside
        j = i
    return inside


def _polygon_contains(lon: float, lat: float, rings: list) -> bool:
    # First ring is the shell, the rest are holes
    if not rings or not _ring_contains(lon, lat, rings[0]):
        return False
    return not any(_ring_contains(lon, lat, hole) for hole in rings[1:])


def point_in_polygon(lat: float, lng: float, geometry: dict) -> bool:
    """Test a point against a GeoJSON Polygon or MultiPolygon.

    Raises:
        ValueError: geometry is not a Polygon/MultiPolygon or is malformed
    """
    gtype = (geometry or {}).get("type")
    coords = (geometry or {}).get("coordinates")
    if gtype == "Polygon":
        return _polygon_contains(lng, lat, coords)
    if gtype == "MultiPolygon":
        return any(_polygon_contains(lng, lat, poly) for poly in coords)
    raise ValueError(f"Unsupported geometry type: {gtype!r}")


# ═══════════════════════════════════════════════════
# GEOCODING (OpenStreetMap Nominatim)
# ═══════════════════════════════════════════════════

# Nominatim usage policy: at most one request per second per application.
# One lock per event loop; an asyncio.Lock is bound to the loop that first awaits it.
_rate_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = weakref.WeakKeyDictionary()
_last_request_at: float = 0.0


def _get_rate_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _rate_locks.get(loop)
    if lock is None:
        lock = _rate_locks[loop] = asyncio.Lock()
    return lock


class NominatimGeocoder:
    """Minimal forward geocoder returning the best match with its boundary."""

    def __init__(self, base_url: str = NOMINATIM_URL, user_agent: str = NOMINATIM_USER_AGENT,
                 timeout: float = NOMINATIM_TIMEOUT, min_interval: float = GEOCODE_MIN_INTERVAL,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url
        self.transport = transport
        self.user_agent = user_agent
        self.timeout = timeout
        self.min_interval = min_interval

    async def _throttle(self) -> None:
        global _last_request_at
        wait = self.min_interval - (time.monotonic() - _last_request_at)
        if wait > 0:
            await asyncio.sleep(wait)
        _last_request_at = time.monotonic()

    async def search(self, query: str) -> dict | None:
        """Return the first Nominatim hit for ``query`` or None.

        Raises:
            httpx.HTTPError: transport failure or non-2xx status
        """
        params = {"q": query, "format": "json", "polygon_geojson": 1, "limit": 1}
        async with _get_rate_lock():
            await self._throttle()
            async with httpx.AsyncClient(
                timeout=self.timeout, headers={"User-Agent": self.user_agent}, transport=self.transport,
            ) as client:
                response = await client.get(self.base_url, params=params)
                response.raise_for_status()
                results = response.json()
        _trace(f"GEOCODE {query!r} → {len(results) if isinstance(results, list) else 'invalid'} hit(s)")
        if isinstance(results, list) and results:
            return results[0]
        return None


# ═══════════════════════════════════════════════════
# SESSION STATE
# ═══════════════════════════════════════════════════

@dataclass
class ResolvedTarget:
    latitude: float
    longitude: float
    display_name: str = ""
    query: str = ""
    boundary: dict | None = None

    @property
    def has_boundary(self) -> bool:
        return bool(self.boundary) and self.boundary.get("type") in ("Polygon", "MultiPolygon")

    @classmethod
    def from_hit(cls, hit: dict, query: str) -> "ResolvedTarget":
        geojson = hit.get("geojson")
        boundary = geojson if isinstance(geojson, dict) and geojson.get("type") in ("Polygon", "MultiPolygon") else None
        return cls(
            latitude=float(hit["lat"]),
            longitude=float(hit["lon"]),
            display_name=hit.get("display_name", ""),
            query=query,
            boundary=boundary,
        )


@dataclass
class GeofenceResult:
    verified: bool
    distance_km: float
    inside_boundary: bool
    target_center: dict
    observed_location: dict
    radius_km: float = GEOFENCE_RADIUS_KM
    checked_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GeofenceSession:
    """Per-verification geofence state, persisted inside the session."""
    geo_target: GeoTarget = field(default_factory=GeoTarget)
    state: GeofenceState = GeofenceState.IDLE
    village_override: str = ""
    target: ResolvedTarget | None = None
    last_result: GeofenceResult | None = None

    @property
    def village(self) -> str:
        return self.village_override or self.geo_target.village

    @property
    def is_verified(self) -> bool:
        return self.state == GeofenceState.VERIFIED

    def display_address(self) -> str:
        parts = (self.village, self.geo_target.taluk_name, self.geo_target.district_name)
        return ", ".join(p for p in parts if p)

    def _queries(self) -> list[str]:
        g = self.geo_target
        precise = [self.village, g.taluk_name, g.district_name, GEOCODE_STATE, GEOCODE_COUNTRY]
        broad = [self.village, g.district_name, GEOCODE_STATE]
        queries = []
        for parts in (precise, broad):
            q = ", ".join(p.strip() for p in parts if p and p.strip())
            if q not in queries:
                queries.append(q)
        return queries

    async def resolve(self, geocoder: NominatimGeocoder, override_village: str | None = None) -> ResolvedTarget:
        """Resolve the target village to a center (and boundary when available).

        A manual ``override_village`` re-enters RESOLVING from any state.

        Raises:
            GeofenceResolutionFailed: neither the precise nor the broad query matched
        """
        if override_village is not None and override_village.strip():
            self.village_override = override_village.strip()
        self.state = GeofenceState.RESOLVING
        self.target = None
        self.last_result = None

        if not self.village:
            self.state = GeofenceState.RESOLUTION_FAILED
            raise GeofenceResolutionFailed(
                "The land record did not name a village or taluk. Please enter the village name manually.",
            )

        last_error = ""
        for query in self._queries():
            try:
                hit = await geocoder.search(query)
                target = ResolvedTarget.from_hit(hit, query) if hit else None
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(f"Geocoding request failed for {query!r}: {e}")
                continue
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                # Non-JSON body (block page) or a hit without coordinates
                last_error = f"Unusable geocoding response: {type(e).__name__}: {e}"
                logger.warning(f"Unusable geocoding response for {query!r}: {e}")
                continue
            if target:
                self.target = target
                self.state = GeofenceState.READY
                logger.info(f"Geofence target resolved: {query!r} → "
                            f"({self.target.latitude:.5f}, {self.target.longitude:.5f}), "
                            f"boundary={'yes' if self.target.has_boundary else 'no'}")
                return self.target
            logger.info(f"No geocoding result for {query!r}")

        self.state = GeofenceState.RESOLUTION_FAILED
        raise GeofenceResolutionFailed(
            f'Could not find location for "{self.village}". '
            "Please enter the village name as written in your document.",
            details=last_error or None,
        )

    def check(self, latitude: float, longitude: float) -> GeofenceResult:
        """Check an observed position against the resolved target.

        No retry limit; each call re-enters CHECKING.

        Raises:
            GeofenceError: target not resolved yet
            InputValidationError: coordinates out of range
        """
        if self.state not in _CHECKABLE or self.target is None:
            raise GeofenceError("Resolve the site location before checking your position.")
        if not (-90.0 <= latitude <= 90.0) or not (-180.0 <= longitude <= 180.0):
            raise InputValidationError("Latitude/longitude out of range")

        self.state = GeofenceState.CHECKING
        t = self.target
        distance = haversine_km(latitude, longitude, t.latitude, t.longitude)

        inside = False
        if t.has_boundary:
            try:
                inside = point_in_polygon(latitude, longitude, t.boundary)
            except (ValueError, TypeError, IndexError, KeyError) as e:
                # Fall back to the distance test alone
                logger.warning(f"Boundary containment check failed: {e}")
                inside = False

        verified = inside or distance <= GEOFENCE_RADIUS_KM
        self.state = GeofenceState.VERIFIED if verified else GeofenceState.OUT_OF_RANGE
        self.last_result = GeofenceResult(
            verified=verified,
            distance_km=round(distance, 3),
            inside_boundary=inside,
            target_center={"latitude": t.latitude, "longitude": t.longitude},
            observed_location={"latitude": latitude, "longitude": longitude},
            radius_km=GEOFENCE_RADIUS_KM,
            checked_at=time.strftime("%Y-%m-%dT%H:%M:%S"),
        )
        _trace(f"GEOFENCE check: d={distance:.3f}km inside={inside} → {self.state.value}")
        logger.info(f"Geofence check: {distance:.2f} km from {self.village!r}, "
                    f"inside={inside} → {self.state.value}")
        return self.last_result

    # ── persistence ──

    def to_dict(self) -> dict:
        return {
            "geo_target": self.geo_target.model_dump(),
            "state": self.state.value,
            "village_override": self.village_override,
            "target": asdict(self.target) if self.target else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GeofenceSession":
        data = data or {}
        target = data.get("target")
        result = data.get("last_result")
        return cls(
            geo_target=GeoTarget.model_validate(data.get("geo_target") or {}),
            state=GeofenceState(data.get("state", GeofenceState.IDLE.value)),
            village_override=data.get("village_override", ""),
            target=ResolvedTarget(**target) if target else None,
            last_result=GeofenceResult(**result) if result else None,
        )
